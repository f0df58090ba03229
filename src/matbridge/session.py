"""Host-side session: one engine process and its IPC channel."""

import atexit
import enum
import itertools
import logging
import multiprocessing
import threading
import uuid
from collections.abc import Callable
from multiprocessing.connection import Connection
from multiprocessing.process import BaseProcess

from matbridge import protocol
from matbridge.config import SessionConfig
from matbridge.convert import to_default
from matbridge.convert import to_foreign
from matbridge.engine.worker import worker_entry
from matbridge.errors import ChannelError
from matbridge.errors import EvaluationError
from matbridge.errors import InvalidArgumentError
from matbridge.errors import ProtocolError
from matbridge.errors import SessionBrokenError
from matbridge.errors import SessionStartError
from matbridge.errors import SessionStateError
from matbridge.errors import UndefinedVariableError
from matbridge.value import ForeignValue
from matbridge.value import is_valid_name

logger: logging.Logger = logging.getLogger(__name__)

_SESSION_COUNTER: "itertools.count[int]" = itertools.count(1)
TEMPORARY_PREFIX: str = "mb_tmp_"


class SessionState(enum.Enum):
    """Lifecycle states of a :class:`Session`."""

    CLOSED = "closed"
    STARTING = "starting"
    READY = "ready"
    EVALUATING = "evaluating"
    BROKEN = "broken"


def _require_name(name: object) -> str:
    """Validate a workspace variable name.

    :param name: Candidate name.
    :returns: The name.
    :raises InvalidArgumentError: If ``name`` is not a valid identifier.
    """
    if is_valid_name(name) is False:
        raise InvalidArgumentError(f"Invalid variable name: {name!r}")
    return name


class Session:
    """Manage one engine process and the workspace it holds.

    Requests are serialized through a per-session re-entrant lock. A request
    issued while another request of the same thread is in flight (for
    example from a converter callback) raises :class:`SessionStateError`.
    Any channel failure moves the session to ``BROKEN``; from then on every
    operation except :meth:`close` raises :class:`SessionBrokenError`.
    """

    _name: str
    _config: SessionConfig
    _state: SessionState
    _connection: Connection | None
    _process: BaseProcess | None
    _next_request_id: int
    _lock: threading.RLock
    _close_callback: Callable[[], None] | None
    _temporary_prefix: str
    _temporary_counter: "itertools.count[int]"

    def __init__(
        self,
        config: SessionConfig | None = None,
        name: str | None = None,
        close_callback: Callable[[], None] | None = None,
    ) -> None:
        """Initialize a closed session.

        :param config: Session settings; defaults to :meth:`SessionConfig.from_env`.
        :param name: Label used in logs and error messages.
        :param close_callback: Optional callback invoked once when the session closes.
        """
        self._config = SessionConfig.from_env() if config is None else config
        self._name = f"session-{next(_SESSION_COUNTER)}" if name is None else name
        self._state = SessionState.CLOSED
        self._connection = None
        self._process = None
        self._next_request_id = 1
        self._lock = threading.RLock()
        self._close_callback = close_callback
        self._temporary_prefix = f"{TEMPORARY_PREFIX}{uuid.uuid4().hex[:8]}_"
        self._temporary_counter = itertools.count(1)

    def __repr__(self) -> str:
        return f"<Session {self._name!r} {self._state.value}>"

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def state(self) -> SessionState:
        """Current lifecycle state."""
        with self._lock:
            return self._state

    @property
    def is_open(self) -> bool:
        """Whether the session can accept requests."""
        with self._lock:
            return self._state is SessionState.READY

    @property
    def pid(self) -> int | None:
        """Process id of the running engine, or ``None`` when none is running."""
        with self._lock:
            if self._process is None:
                return None
            return self._process.pid

    @property
    def is_broken(self) -> bool:
        with self._lock:
            return self._state is SessionState.BROKEN

    # -- lifecycle ----------------------------------------------------------

    def open(self) -> "Session":
        """Start the engine process and wait for its ready handshake.

        Opening a ready session does nothing.

        :returns: This session.
        :raises SessionStartError: If the engine cannot start or never becomes ready.
        :raises SessionBrokenError: If the session is broken.
        :raises SessionStateError: If called while the session is busy.
        """
        with self._lock:
            if self._state is SessionState.READY:
                return self
            if self._state is SessionState.BROKEN:
                raise SessionBrokenError(f"Session {self._name!r} is broken; close it and open a new one")
            if self._state is not SessionState.CLOSED:
                raise SessionStateError(f"Session {self._name!r} cannot open while {self._state.value}")

            self._state = SessionState.STARTING
            logger.debug("Starting engine for session %r", self._name)
            try:
                context = multiprocessing.get_context(self._config.start_method)
                parent_connection, child_connection = context.Pipe(duplex=True)
                process: BaseProcess = context.Process(
                    target=worker_entry,
                    args=(child_connection,),
                    name=f"matbridge-engine-{self._name}",
                )
                process.daemon = True
                process.start()
            except (OSError, RuntimeError, ValueError) as exc:
                self._state = SessionState.CLOSED
                raise SessionStartError(f"Failed to start engine process for session {self._name!r}") from exc
            child_connection.close()

            self._connection = parent_connection
            self._process = process
            self._next_request_id = 1
            try:
                self._await_ready(parent_connection)
            except SessionStartError:
                self._teardown()
                self._state = SessionState.CLOSED
                raise

            self._state = SessionState.READY
            atexit.register(self.close)
            logger.debug("Session %r ready (pid %s)", self._name, process.pid)
            return self

    def _await_ready(self, connection: Connection) -> None:
        """Wait for the engine's ready message.

        :param connection: Host end of the channel.
        :raises SessionStartError: If the message is late, missing or malformed.
        """
        timeout: float = self._config.startup_timeout
        try:
            has_message: bool = connection.poll(timeout)
            if has_message is False:
                raise SessionStartError(
                    f"Engine for session {self._name!r} did not become ready within {timeout} seconds"
                )
            incoming: object = connection.recv()
        except (EOFError, BrokenPipeError, OSError) as exc:
            raise SessionStartError(f"Engine for session {self._name!r} exited during startup") from exc

        if isinstance(incoming, dict) is False:
            raise SessionStartError("Startup message must be a dict")
        if incoming.get("request_id") != protocol.READY_REQUEST_ID:
            raise SessionStartError("Startup message has an unexpected request_id")
        if incoming.get("status") != protocol.STATUS_OK:
            payload_obj: object = incoming.get("payload")
            detail: object = payload_obj.get("error_message") if isinstance(payload_obj, dict) is True else None
            raise SessionStartError(f"Engine failed to start: {detail}")
        payload: object = incoming.get("payload")
        if isinstance(payload, dict) is False or payload.get("ready") is not True:
            raise SessionStartError("Startup payload missing ready marker")

    def _teardown(self) -> None:
        """Close the channel and stop the engine process without a shutdown request."""
        connection: Connection | None = self._connection
        process: BaseProcess | None = self._process
        self._connection = None
        self._process = None
        if connection is not None:
            try:
                connection.close()
            except OSError:
                pass
        if process is not None:
            if process.is_alive() is True:
                process.terminate()
            process.join(timeout=self._config.shutdown_timeout)

    def _mark_broken(self, reason: str) -> None:
        """Move to ``BROKEN`` and terminate the engine.

        :param reason: Description for the log.
        """
        logger.warning("Session %r is broken: %s", self._name, reason)
        self._state = SessionState.BROKEN
        self._teardown()

    def close(self) -> None:
        """Shut down the engine process and move to ``CLOSED``.

        Closing a closed session does nothing. Never raises for channel
        problems.
        """
        close_callback: Callable[[], None] | None = None
        with self._lock:
            if self._state is SessionState.CLOSED:
                return

            connection: Connection | None = self._connection
            process: BaseProcess | None = self._process
            if connection is not None:
                try:
                    connection.send({"request_id": self._next_request_id, "action": protocol.ACTION_SHUTDOWN})
                    self._next_request_id += 1
                except (BrokenPipeError, EOFError, OSError):
                    pass
                try:
                    connection.close()
                except OSError:
                    pass

            if process is not None:
                process.join(timeout=self._config.shutdown_timeout)
                if process.is_alive() is True:
                    logger.warning("Engine for session %r did not exit; terminating", self._name)
                    process.terminate()
                    process.join(timeout=self._config.shutdown_timeout)

            self._connection = None
            self._process = None
            self._state = SessionState.CLOSED
            atexit.unregister(self.close)
            logger.debug("Session %r closed", self._name)
            close_callback = self._close_callback
            self._close_callback = None

        if close_callback is not None:
            close_callback()

    def __enter__(self) -> "Session":
        """Open the session for use in a ``with`` block.

        :returns: This session.
        """
        return self.open()

    def __exit__(self, exc_type: object, exc_value: object, traceback: object) -> None:
        self.close()

    # -- channel ------------------------------------------------------------

    def _require_ready(self) -> None:
        """Reject requests unless the session is ready.

        :raises SessionBrokenError: If the session is broken.
        :raises SessionStateError: If the session is closed, starting or busy.
        """
        if self._state is SessionState.READY:
            return
        if self._state is SessionState.BROKEN:
            raise SessionBrokenError(f"Session {self._name!r} is broken; close it and open a new one")
        if self._state is SessionState.EVALUATING:
            raise SessionStateError(f"Session {self._name!r} is busy with another request")
        raise SessionStateError(f"Session {self._name!r} is {self._state.value}")

    def _request(self, action: str, fields: dict[str, object]) -> dict[str, object]:
        """Send one request and return the payload of its ``ok`` response.

        :param action: Protocol action.
        :param fields: Request fields besides ``request_id`` and ``action``.
        :returns: Response payload.
        :raises ChannelError: If the channel fails; the session becomes broken.
        :raises EvaluationError: If the engine reports an evaluation error.
        :raises UndefinedVariableError: If the engine reports a missing variable.
        """
        with self._lock:
            self._require_ready()
            self._state = SessionState.EVALUATING
            try:
                return self._exchange(action, fields)
            finally:
                if self._state is SessionState.EVALUATING:
                    self._state = SessionState.READY

    def _exchange(self, action: str, fields: dict[str, object]) -> dict[str, object]:
        connection: Connection | None = self._connection
        if connection is None:
            raise SessionStateError(f"Session {self._name!r} has no channel")

        request_id: int = self._next_request_id
        self._next_request_id += 1
        request: dict[str, object] = {"request_id": request_id, "action": action}
        request.update(fields)
        logger.debug("Session %r request %d: %s", self._name, request_id, action)

        try:
            connection.send(request)
            timeout: float | None = self._config.eval_timeout
            if timeout is not None and connection.poll(timeout) is False:
                self._mark_broken(f"no response to {action!r} within {timeout} seconds")
                raise ChannelError(f"Engine did not answer {action!r} within {timeout} seconds")
            incoming: object = connection.recv()
        except (EOFError, BrokenPipeError, OSError) as exc:
            self._mark_broken(f"channel failed during {action!r}: {exc!r}")
            raise ChannelError(f"Lost connection to the engine of session {self._name!r}") from exc

        try:
            return self._unpack_response(incoming, request_id, action)
        except ProtocolError as exc:
            self._mark_broken(str(exc))
            raise

    def _unpack_response(self, incoming: object, request_id: int, action: str) -> dict[str, object]:
        """Validate a response and raise the error it reports, if any.

        :param incoming: Received message.
        :param request_id: Id of the request being answered.
        :param action: Request action, for messages.
        :returns: Payload of an ``ok`` response.
        :raises ProtocolError: If the response is malformed or mismatched.
        """
        if isinstance(incoming, dict) is False:
            raise ProtocolError("Engine message must be a dict")
        message: dict[str, object] = incoming
        request_id_obj: object = message.get("request_id")
        if request_id_obj != request_id:
            raise ProtocolError(f"Unexpected response request_id {request_id_obj!r}; expected {request_id}")
        payload: dict[str, object] = protocol.require_payload(message, action)
        status: object = message.get("status")
        if status == protocol.STATUS_OK:
            return payload
        if status != protocol.STATUS_ERROR:
            raise ProtocolError(f"Unknown engine response status: {status!r}")
        self._raise_engine_error(payload)
        raise ProtocolError("Unreachable engine error state")

    def _raise_engine_error(self, payload: dict[str, object]) -> None:
        """Raise the host exception matching an engine error payload.

        :param payload: Error payload dictionary.
        :raises EvaluationError: For evaluation errors.
        :raises UndefinedVariableError: For missing workspace variables.
        :raises ProtocolError: For anything else.
        """
        error_type_obj: object = payload.get("error_type", "")
        identifier_obj: object = payload.get("identifier", "")
        message_obj: object = payload.get("error_message", "")
        stacktrace_obj: object = payload.get("stacktrace", "")
        error_type: str = error_type_obj if isinstance(error_type_obj, str) is True else ""
        identifier: str = identifier_obj if isinstance(identifier_obj, str) is True else ""
        error_message: str = message_obj if isinstance(message_obj, str) is True else ""
        stacktrace: str = stacktrace_obj if isinstance(stacktrace_obj, str) is True else ""

        if error_type == protocol.ERROR_EVALUATION:
            raise EvaluationError(identifier, error_message, stacktrace)
        if error_type == protocol.ERROR_UNDEFINED_VARIABLE:
            raise UndefinedVariableError(identifier, error_message)
        raise ProtocolError(f"Engine raised {error_type}: {error_message}\nEngine traceback:\n{stacktrace}")

    # -- workspace ----------------------------------------------------------

    def put_variable(self, name: str, value: object) -> None:
        """Store a value in the engine workspace under ``name``.

        A :class:`ForeignValue` must be host-owned and not borrowed; on
        success it becomes session-owned and its host memory is returned.
        Any other value is converted with :func:`to_foreign` first and the
        temporary is released.

        :param name: Variable name.
        :param value: Foreign value or host value.
        :raises InvalidArgumentError: If ``name`` is not a valid identifier.
        :raises OwnershipError: If a foreign value cannot be handed off.
        """
        _require_name(name)
        with self._lock:
            self._require_ready()
            if isinstance(value, ForeignValue) is True:
                value.check_transferable()
                self._request(protocol.ACTION_PUT, {"name": name, "value": value.to_wire()})
                value.mark_transferred(self._name)
                return
            self._send_copy(name, value)

    def _send_copy(self, name: str, value: object) -> None:
        """Store a copy of ``value``; foreign values keep their ownership."""
        if isinstance(value, ForeignValue) is True:
            self._request(protocol.ACTION_PUT, {"name": name, "value": value.to_wire()})
            return
        temporary: ForeignValue = to_foreign(value)
        try:
            wire: dict[str, object] = temporary.to_wire()
        finally:
            temporary.release()
        self._request(protocol.ACTION_PUT, {"name": name, "value": wire})

    def get_variable(self, name: str) -> ForeignValue:
        """Fetch a host-owned copy of a workspace variable.

        :param name: Variable name.
        :returns: New foreign value owned by the caller.
        :raises UndefinedVariableError: If the variable does not exist.
        """
        _require_name(name)
        with self._lock:
            payload: dict[str, object] = self._request(protocol.ACTION_GET, {"name": name})
            try:
                return ForeignValue.from_wire(payload.get("value"))
            except ProtocolError as exc:
                self._mark_broken(str(exc))
                raise

    def get_value(self, name: str, converter: Callable[[ForeignValue], object] = to_default) -> object:
        """Fetch a workspace variable and convert it to a host value.

        :param name: Variable name.
        :param converter: Conversion applied to the fetched value.
        :returns: Converted value.
        """
        value: ForeignValue = self.get_variable(name)
        try:
            return converter(value)
        finally:
            if value.is_released is False:
                value.release()

    def evaluate(self, source: str) -> str | None:
        """Run source text in the engine workspace.

        :param source: Statements in the engine language.
        :returns: Printed output when ``capture_output`` is set, else ``None``.
        :raises EvaluationError: If the engine reports an error; the session stays ready.
        """
        if isinstance(source, str) is False:
            raise InvalidArgumentError("source must be a string")
        capture: bool = self._config.capture_output
        with self._lock:
            payload: dict[str, object] = self._request(protocol.ACTION_EVAL, {"source": source, "capture": capture})
            if capture is False:
                return None
            output: object = payload.get("output", "")
            if isinstance(output, str) is False:
                self._mark_broken("eval output must be a string")
                raise ProtocolError("eval output must be a string")
            return output

    def _temporary_name(self) -> str:
        return f"{self._temporary_prefix}{next(self._temporary_counter)}"

    def call_function(self, name: str, num_outputs: int, *args: object) -> object:
        """Call an engine function with host arguments.

        Arguments are stored under synthesized names, the call assigns
        ``num_outputs`` synthesized result names, and every synthesized name
        is cleared afterwards unless the channel failed. Foreign-value
        arguments are copied and keep their ownership. A zero-output call
        leaves ``ans`` as it was before the call.

        :param name: Function name.
        :param num_outputs: Number of outputs to request.
        :param args: Arguments, host values or foreign values.
        :returns: ``None`` for zero outputs, the converted value for one,
            otherwise a tuple of converted values.
        :raises InvalidArgumentError: If ``name`` or ``num_outputs`` is invalid.
        """
        if is_valid_name(name) is False:
            raise InvalidArgumentError(f"Invalid function name: {name!r}")
        if isinstance(num_outputs, int) is False or isinstance(num_outputs, bool) is True or num_outputs < 0:
            raise InvalidArgumentError("num_outputs must be a non-negative integer")

        with self._lock:
            self._require_ready()
            synthesized: list[str] = []
            saved_ans: str | None = None
            had_ans: bool = False
            try:
                if num_outputs == 0:
                    had_ans = self._request(protocol.ACTION_EXISTS, {"name": "ans"}).get("exists") is True
                    saved_ans = self._temporary_name()
                    if had_ans is True:
                        synthesized.append(saved_ans)
                        self._request(protocol.ACTION_EVAL, {"source": f"{saved_ans} = ans;", "capture": False})

                argument_names: list[str] = []
                for arg in args:
                    argument_name: str = self._temporary_name()
                    synthesized.append(argument_name)
                    self._send_copy(argument_name, arg)
                    argument_names.append(argument_name)
                output_names: list[str] = [self._temporary_name() for _ in range(num_outputs)]
                synthesized.extend(output_names)

                call_text: str = f"{name}({', '.join(argument_names)})"
                if len(output_names) > 0:
                    call_text = f"[{', '.join(output_names)}] = {call_text}"
                self._request(protocol.ACTION_EVAL, {"source": call_text + ";", "capture": False})

                results: list[object] = [self.get_value(output_name) for output_name in output_names]
            finally:
                try:
                    if saved_ans is not None:
                        self._restore_ans(saved_ans, had_ans)
                finally:
                    self._clear_temporaries(synthesized)

        if num_outputs == 0:
            return None
        if num_outputs == 1:
            return results[0]
        return tuple(results)

    def _restore_ans(self, saved_name: str, had_ans: bool) -> None:
        """Put ``ans`` back to its state before a zero-output call."""
        if self._state is not SessionState.READY:
            return
        if had_ans is True:
            self._request(protocol.ACTION_EVAL, {"source": f"ans = {saved_name};", "capture": False})
            return
        self._request(protocol.ACTION_CLEAR, {"names": ["ans"]})

    def _clear_temporaries(self, names: list[str]) -> None:
        """Remove synthesized variables while the session is still usable."""
        if len(names) == 0 or self._state is not SessionState.READY:
            return
        logger.debug("Session %r clearing %d synthesized variable(s)", self._name, len(names))
        self._request(protocol.ACTION_CLEAR, {"names": names})

    def list_variables(self) -> list[str]:
        """Return the sorted names of all workspace variables."""
        with self._lock:
            payload: dict[str, object] = self._request(protocol.ACTION_WHO, {})
            names: object = payload.get("names")
            if isinstance(names, list) is False:
                self._mark_broken("who payload must carry a list of names")
                raise ProtocolError("who payload must carry a list of names")
            return list(names)

    def has_variable(self, name: str) -> bool:
        _require_name(name)
        payload: dict[str, object] = self._request(protocol.ACTION_EXISTS, {"name": name})
        return payload.get("exists") is True

    def clear_variables(self, *names: str) -> None:
        """Remove variables from the workspace; no names clears everything.

        :param names: Variable names.
        """
        for name in names:
            _require_name(name)
        self._request(protocol.ACTION_CLEAR, {"names": list(names)})
