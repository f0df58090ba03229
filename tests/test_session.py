"""Integration tests for sessions backed by an engine worker process."""

import multiprocessing
import os
import signal
import sys
from collections.abc import Iterator
from multiprocessing.connection import Connection

import numpy as np
import pytest
import scipy.sparse

from matbridge import ChannelError
from matbridge import ElementType
from matbridge import EvaluationError
from matbridge import ForeignValue
from matbridge import InvalidArgumentError
from matbridge import Ownership
from matbridge import OwnershipError
from matbridge import ProtocolError
from matbridge import Session
from matbridge import SessionBrokenError
from matbridge import SessionConfig
from matbridge import SessionStartError
from matbridge import SessionState
from matbridge import SessionStateError
from matbridge import UndefinedVariableError
from matbridge import open_session
from matbridge import to_array
from matbridge import to_foreign
from matbridge import to_triplets
from matbridge.session import TEMPORARY_PREFIX


@pytest.fixture(scope="module")
def session() -> Iterator[Session]:
    """Provide one session shared by the tests of this module.

    :yields: Ready session with output capture enabled.
    """
    shared: Session = Session(config=SessionConfig(capture_output=True), name="test-session").open()
    try:
        yield shared
    finally:
        shared.close()


@pytest.fixture(autouse=True)
def _empty_workspace(session: Session) -> Iterator[None]:
    """Start each test from an empty workspace.

    :yields: Control to the active test.
    """
    session.clear_variables()
    yield


def test_open_session_reaches_ready(session: Session) -> None:
    """A freshly opened session is ready and has an empty workspace."""
    assert session.state is SessionState.READY
    assert session.is_open is True
    assert session.list_variables() == []


def test_layout_independent_round_trip(session: Session) -> None:
    """Arrays of any memory order reach the engine with the same logical elements."""
    c_order: np.ndarray = np.arange(12, dtype=np.float64).reshape(3, 4)
    session.put_variable("a", c_order)
    session.put_variable("b", np.asfortranarray(c_order))
    session.evaluate("same = isequal(a, b); corner = a(3, 4); col = a(:, 2);")

    assert session.get_value("same") is True
    assert session.get_value("corner") == 11.0
    assert session.get_value("col").tolist() == [1.0, 5.0, 9.0]
    back: ForeignValue = session.get_variable("a")
    try:
        assert np.array_equal(to_array(back), c_order) is True
    finally:
        back.release()


def test_put_foreign_value_transfers_ownership(session: Session) -> None:
    """Putting a foreign value hands it to the session; the host handle goes inert."""
    value: ForeignValue = ForeignValue.create(ElementType.INT32, (1, 3))
    with value.data() as view:
        view[...] = [[1, 2, 3]]
    session.put_variable("ints", value)

    assert value.ownership is Ownership.SESSION_OWNED
    assert value.shape == (1, 3)
    with pytest.raises(OwnershipError):
        with value.data():
            pass
    with pytest.raises(OwnershipError):
        session.put_variable("again", value)
    assert session.has_variable("again") is False

    fetched: object = session.get_value("ints")
    assert fetched.dtype == np.int32
    assert fetched.tolist() == [1, 2, 3]


def test_released_value_cannot_be_put(session: Session) -> None:
    """Using a released value fails on the host without touching the session."""
    value: ForeignValue = to_foreign(1.0)
    value.release()
    with pytest.raises(OwnershipError):
        session.put_variable("x", value)
    assert session.state is SessionState.READY
    assert session.has_variable("x") is False


def test_struct_round_trip(session: Session) -> None:
    """Mappings arrive as structs and come back as dicts in field order."""
    session.put_variable("s", {"name": "probe", "count": 3.0, "tags": ["a", "b"]})
    session.evaluate("s.total = s.count * 2;")
    result: object = session.get_value("s")
    assert list(result.keys()) == ["name", "count", "tags", "total"]
    assert result["name"] == "probe"
    assert result["total"] == 6.0
    assert result["tags"] == ["a", "b"]


def test_sparse_round_trip(session: Session) -> None:
    """Sparse matrices keep their stored pattern across the channel."""
    matrix: scipy.sparse.csc_matrix = scipy.sparse.csc_matrix(
        (np.array([4.0, 5.0]), (np.array([0, 2]), np.array([1, 1]))),
        shape=(3, 2),
    )
    session.put_variable("S", matrix)
    session.evaluate("n = nnz(S); T = S * 2;")
    assert session.get_value("n") == 2.0

    doubled: ForeignValue = session.get_variable("T")
    try:
        assert doubled.is_sparse is True
        assert doubled.nnz == 2
        rows, cols, values = to_triplets(doubled)
        assert rows.tolist() == [0, 2]
        assert cols.tolist() == [1, 1]
        assert values.tolist() == [8.0, 10.0]
    finally:
        doubled.release()


def test_evaluation_error_leaves_session_ready(session: Session) -> None:
    """Engine errors surface with identifier and message; the session stays usable."""
    with pytest.raises(EvaluationError) as excinfo:
        session.evaluate("y = no_such_function(1);")
    error: EvaluationError = excinfo.value
    assert error.identifier == "matbridge:undefinedFunction"
    assert "no_such_function" in error.engine_message
    assert session.state is SessionState.READY

    session.evaluate("z = 2 + 2;")
    assert session.get_value("z") == 4.0


def test_error_identifier_from_engine_code(session: Session) -> None:
    """Identifiers passed to ``error`` reach the host unchanged."""
    with pytest.raises(EvaluationError) as excinfo:
        session.evaluate("error('probe:failure', 'value was %d', 7);")
    assert excinfo.value.identifier == "probe:failure"
    assert excinfo.value.engine_message == "value was 7"


def test_undefined_variable(session: Session) -> None:
    """Fetching a missing variable raises and keeps the session ready."""
    with pytest.raises(UndefinedVariableError):
        session.get_variable("missing")
    assert session.state is SessionState.READY
    with pytest.raises(InvalidArgumentError):
        session.put_variable("1bad", 1.0)


def test_call_function_with_multiple_outputs(session: Session) -> None:
    """Multi-output calls return a tuple and leave no synthesized variables behind."""
    grid_x, grid_y = session.call_function("meshgrid", 2, np.array([1.0, 2.0, 3.0]), np.array([10.0, 20.0]))
    assert grid_x.shape == (2, 3)
    assert grid_y.shape == (2, 3)
    assert grid_x.tolist() == [[1.0, 2.0, 3.0], [1.0, 2.0, 3.0]]
    assert grid_y.tolist() == [[10.0, 10.0, 10.0], [20.0, 20.0, 20.0]]

    leftovers: list[str] = [name for name in session.list_variables() if name.startswith(TEMPORARY_PREFIX)]
    assert leftovers == []


def test_call_function_output_counts(session: Session) -> None:
    """Zero outputs give ``None`` and one output gives the converted value."""
    assert session.call_function("disp", 0, "hello") is None
    assert session.call_function("numel", 1, np.zeros((2, 3))) == 6.0


def test_zero_output_call_leaves_ans_alone(session: Session) -> None:
    """Calls without outputs neither create nor overwrite ``ans``."""
    session.call_function("disp", 0, "quiet")
    assert session.has_variable("ans") is False

    session.evaluate("3 + 4;")
    session.call_function("numel", 0, np.zeros((2, 2)))
    assert session.get_value("ans") == 7.0
    assert [name for name in session.list_variables() if name.startswith(TEMPORARY_PREFIX)] == []


def test_call_function_copies_foreign_arguments(session: Session) -> None:
    """Foreign-value arguments are copied; the caller keeps ownership."""
    argument: ForeignValue = to_foreign(np.array([[3.0, 1.0, 2.0]]))
    try:
        result: object = session.call_function("sort", 1, argument)
        assert result.tolist() == [1.0, 2.0, 3.0]
        assert argument.ownership is Ownership.HOST_OWNED
    finally:
        argument.release()


def test_call_function_error_cleans_up(session: Session) -> None:
    """A failing call still clears its synthesized arguments."""
    with pytest.raises(EvaluationError):
        session.call_function("no_such_function", 1, 1.0)
    assert session.state is SessionState.READY
    assert [name for name in session.list_variables() if name.startswith(TEMPORARY_PREFIX)] == []


def test_captured_output(session: Session) -> None:
    """With capture enabled, evaluate returns what the engine printed."""
    output: str | None = session.evaluate("x = 5\ndisp('hi')")
    assert output == "x = 5\nhi\n"
    assert session.evaluate("x = 6;") == ""


def test_workspace_queries_and_clear(session: Session) -> None:
    """Variables can be listed, tested and cleared selectively."""
    session.evaluate("alpha = 1; beta = 2; gamma = 3;")
    assert session.list_variables() == ["alpha", "beta", "gamma"]
    assert session.has_variable("beta") is True
    session.clear_variables("beta")
    assert session.list_variables() == ["alpha", "gamma"]
    session.clear_variables()
    assert session.list_variables() == []


def test_sessions_are_isolated(session: Session) -> None:
    """Two sessions never see each other's workspaces."""
    session.put_variable("shared_name", 1.0)
    other: Session = open_session(name="isolated")
    try:
        assert other.has_variable("shared_name") is False
        other.put_variable("shared_name", 2.0)
        assert session.get_value("shared_name") == 1.0
        assert other.get_value("shared_name") == 2.0
    finally:
        other.close()


def test_closed_session_rejects_requests() -> None:
    """Requests after close raise; closing twice is harmless."""
    with Session(name="short-lived") as short_lived:
        short_lived.put_variable("x", 1.0)
    assert short_lived.state is SessionState.CLOSED
    with pytest.raises(SessionStateError):
        short_lived.evaluate("x = 2;")
    short_lived.close()


def test_open_session_rejects_unknown_options() -> None:
    """Unknown session options are reported before any process starts."""
    with pytest.raises(InvalidArgumentError):
        open_session(no_such_option=True)


def test_killed_engine_breaks_the_session() -> None:
    """Losing the engine process raises ChannelError once, then SessionBrokenError."""
    doomed: Session = Session(name="killed").open()
    try:
        pid: int | None = doomed.pid
        assert pid is not None
        os.kill(pid, signal.SIGKILL)

        with pytest.raises(ChannelError):
            doomed.evaluate("x = 1;")
        assert doomed.state is SessionState.BROKEN
        assert doomed.is_broken is True
        assert doomed.pid is None

        with pytest.raises(SessionBrokenError):
            doomed.evaluate("x = 1;")
        with pytest.raises(SessionBrokenError):
            doomed.list_variables()
        with pytest.raises(SessionBrokenError):
            doomed.put_variable("x", 1.0)
        with pytest.raises(SessionBrokenError):
            doomed.open()
    finally:
        doomed.close()
    assert doomed.state is SessionState.CLOSED


def test_evaluation_timeout_breaks_the_session() -> None:
    """A response slower than eval_timeout is treated as a channel failure."""
    slow: Session = Session(config=SessionConfig(eval_timeout=0.001), name="slow").open()
    try:
        with pytest.raises(ChannelError):
            slow.evaluate("a = ones(1500, 1500); b = a * a; c = b * a;")
        assert slow.state is SessionState.BROKEN
        with pytest.raises(SessionBrokenError):
            slow.evaluate("x = 1;")
    finally:
        slow.close()
    assert slow.state is SessionState.CLOSED


def test_engine_exiting_before_ready_fails_to_start(monkeypatch: pytest.MonkeyPatch) -> None:
    """An engine that exits before its handshake leaves the session closed."""
    monkeypatch.setattr("matbridge.session.worker_entry", sys.exit)
    failing: Session = Session(name="exits-early")
    with pytest.raises(SessionStartError):
        failing.open()
    assert failing.state is SessionState.CLOSED
    assert failing.pid is None


def test_startup_timeout_fails_to_start() -> None:
    """An engine that misses the startup deadline leaves the session closed."""
    late: Session = Session(config=SessionConfig(startup_timeout=0.001), name="late")
    with pytest.raises(SessionStartError):
        late.open()
    assert late.state is SessionState.CLOSED


def _session_with_scripted_reply(payload: dict[str, object]) -> tuple[Session, Connection]:
    """Build a ready session whose channel already holds one canned reply.

    :param payload: Payload of the ``ok`` response to request 1.
    :returns: The session and the engine end of its pipe.
    """
    host_end: Connection
    engine_end: Connection
    host_end, engine_end = multiprocessing.Pipe(duplex=True)
    scripted: Session = Session(config=SessionConfig(capture_output=True), name="scripted")
    scripted._connection = host_end
    scripted._state = SessionState.READY
    engine_end.send({"request_id": 1, "status": "ok", "payload": payload})
    return scripted, engine_end


def test_malformed_payloads_break_the_session() -> None:
    """Replies of the wrong shape break the session under its lock."""
    evaluating, evaluating_engine = _session_with_scripted_reply({"output": 5})
    try:
        with pytest.raises(ProtocolError):
            evaluating.evaluate("x = 1")
        assert evaluating.state is SessionState.BROKEN
        with pytest.raises(SessionBrokenError):
            evaluating.evaluate("x = 1")
    finally:
        evaluating.close()
        evaluating_engine.close()

    listing, listing_engine = _session_with_scripted_reply({"names": "x"})
    try:
        with pytest.raises(ProtocolError):
            listing.list_variables()
        assert listing.state is SessionState.BROKEN
    finally:
        listing.close()
        listing_engine.close()
