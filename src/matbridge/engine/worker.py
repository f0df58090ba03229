"""Engine process: message loop serving one host session."""

import io
import logging
import re
import sys
import traceback
from multiprocessing.connection import Connection

from matbridge import protocol
from matbridge.engine.errors import EngineError
from matbridge.engine.interpreter import Interpreter
from matbridge.engine.values import from_wire
from matbridge.engine.values import to_wire
from matbridge.errors import ProtocolError
from matbridge.errors import UndefinedVariableError

logger: logging.Logger = logging.getLogger(__name__)

_VARIABLE_NAME: re.Pattern[str] = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def _require_variable_name(message: dict[str, object]) -> str:
    """Extract a workspace variable name.

    :param message: Incoming request.
    :returns: Variable name.
    :raises ProtocolError: If the name is missing or not a valid identifier.
    """
    name: str = protocol.require_str_field(message, "name")
    if _VARIABLE_NAME.match(name) is None:
        raise ProtocolError(f"Invalid variable name: {name!r}")
    return name


def _request_id_fallback(message: dict[str, object]) -> int:
    request_id_obj: object = message.get("request_id")
    if isinstance(request_id_obj, int) is True:
        return request_id_obj
    return -1


class EngineWorker:
    """Own the engine-side protocol handling and the interpreter."""

    _connection: Connection
    _interpreter: Interpreter

    def __init__(self, connection: Connection) -> None:
        """Initialize worker state.

        :param connection: Bidirectional IPC connection to the host process.
        """
        self._connection = connection
        self._interpreter = Interpreter()

    def run(self) -> None:
        """Run the engine message loop until shutdown or channel close."""
        try:
            protocol.send_ok(self._connection, protocol.READY_REQUEST_ID, {"ready": True})
        except Exception as exc:
            protocol.send_error(
                self._connection,
                protocol.READY_REQUEST_ID,
                type(exc).__name__,
                str(exc),
                stacktrace=traceback.format_exc(),
            )
            self._connection.close()
            return

        should_exit: bool = False
        while should_exit is False:
            try:
                incoming: object = self._connection.recv()
            except EOFError:
                break

            if isinstance(incoming, dict) is False:
                protocol.send_error(
                    self._connection,
                    -1,
                    protocol.ERROR_PROTOCOL,
                    "Incoming message must be a dict",
                )
                continue

            request_message: dict[str, object] = incoming
            shutdown_requested: bool = self._handle_incoming_request(request_message)
            if shutdown_requested is True:
                should_exit = True

        self._interpreter.workspace.clear()
        self._connection.close()

    def _handle_incoming_request(self, request_message: dict[str, object]) -> bool:
        """Handle one request and emit a correlated response.

        :param request_message: Request dictionary.
        :returns: ``True`` when loop shutdown is requested.
        """
        request_id: int
        try:
            request_id = protocol.require_request_id(request_message)
            payload: dict[str, object] = self._execute_request(request_message)
            protocol.send_ok(self._connection, request_id, payload)
            shutdown_obj: object = payload.get("shutdown")
            return shutdown_obj is True
        except EngineError as exc:
            protocol.send_error(
                self._connection,
                _request_id_fallback(request_message),
                protocol.ERROR_EVALUATION,
                exc.message,
                identifier=exc.identifier,
            )
            return False
        except UndefinedVariableError as exc:
            protocol.send_error(
                self._connection,
                _request_id_fallback(request_message),
                protocol.ERROR_UNDEFINED_VARIABLE,
                str(exc),
                identifier=exc.variable_name,
            )
            return False
        except ProtocolError as exc:
            protocol.send_error(
                self._connection,
                _request_id_fallback(request_message),
                protocol.ERROR_PROTOCOL,
                str(exc),
                stacktrace=traceback.format_exc(),
            )
            return False
        except Exception as exc:
            logger.debug("Internal engine failure", exc_info=True)
            protocol.send_error(
                self._connection,
                _request_id_fallback(request_message),
                protocol.ERROR_EVALUATION,
                f"Internal engine error: {type(exc).__name__}: {exc}",
                identifier="matbridge:internal",
                stacktrace=traceback.format_exc(),
            )
            return False

    def _evaluate(self, source: str, capture: bool) -> dict[str, object]:
        """Run source text, collecting printed output when ``capture`` is set.

        :param source: Program text.
        :param capture: Return printed output instead of writing it to stdout.
        :returns: Response payload.
        """
        if capture is False:
            self._interpreter.set_writer(sys.stdout.write)
            try:
                self._interpreter.execute(source)
            finally:
                sys.stdout.flush()
            return {"output": ""}
        buffer: io.StringIO = io.StringIO()
        self._interpreter.set_writer(buffer.write)
        try:
            self._interpreter.execute(source)
        finally:
            self._interpreter.set_writer(sys.stdout.write)
        return {"output": buffer.getvalue()}

    def _execute_request(self, message: dict[str, object]) -> dict[str, object]:
        """Execute one request from the host.

        :param message: Request message.
        :returns: Response payload.
        :raises ProtocolError: If request fields are invalid.
        """
        action: str = protocol.require_action(message)
        logger.debug("Engine request %s", action)

        if action == protocol.ACTION_PUT:
            name: str = _require_variable_name(message)
            wire: dict[str, object] = protocol.validate_wire_value(message.get("value"))
            self._interpreter.put(name, from_wire(wire))
            return {}

        if action == protocol.ACTION_GET:
            name = _require_variable_name(message)
            if name not in self._interpreter.workspace:
                raise UndefinedVariableError(name, f"Undefined variable '{name}' in engine workspace")
            return {"value": to_wire(self._interpreter.workspace[name])}

        if action == protocol.ACTION_EVAL:
            source: str = protocol.require_str_field(message, "source")
            capture_obj: object = message.get("capture", False)
            if isinstance(capture_obj, bool) is False:
                raise ProtocolError("Field 'capture' must be a bool")
            return self._evaluate(source, capture_obj)

        if action == protocol.ACTION_CLEAR:
            names: list[str] = protocol.require_str_list_field(message, "names")
            self._interpreter.clear(names)
            return {}

        if action == protocol.ACTION_WHO:
            return {"names": self._interpreter.variable_names()}

        if action == protocol.ACTION_EXISTS:
            name = _require_variable_name(message)
            return {"exists": name in self._interpreter.workspace}

        if action == protocol.ACTION_SHUTDOWN:
            return {"shutdown": True}

        raise ProtocolError("Unsupported action")


def worker_entry(connection: Connection) -> None:
    """Run the engine message loop.

    :param connection: IPC connection from the host process.
    """
    worker: EngineWorker = EngineWorker(connection)
    worker.run()
