"""Protocol-level tests that drive the engine worker loop over a pipe in a thread."""

import multiprocessing
import threading
from collections.abc import Iterator
from multiprocessing.connection import Connection

import numpy as np
import pytest

from matbridge import protocol
from matbridge.engine.values import from_wire
from matbridge.engine.values import to_wire
from matbridge.engine.worker import worker_entry


class WorkerHarness:
    """Host end of a pipe whose other end is served by :func:`worker_entry`."""

    connection: Connection
    thread: threading.Thread
    _next_request_id: int

    def __init__(self) -> None:
        """Start the worker loop on a background thread."""
        host_end: Connection
        worker_end: Connection
        host_end, worker_end = multiprocessing.Pipe(duplex=True)
        self.connection = host_end
        self.thread = threading.Thread(target=worker_entry, args=(worker_end,), daemon=True)
        self.thread.start()
        self._next_request_id = 1

    def request(self, action: str, **fields: object) -> dict[str, object]:
        """Send one request and return the raw response.

        :param action: Protocol action.
        :param fields: Extra request fields.
        :returns: Response message.
        """
        request_id: int = self._next_request_id
        self._next_request_id += 1
        message: dict[str, object] = {"request_id": request_id, "action": action}
        message.update(fields)
        self.connection.send(message)
        assert self.connection.poll(10) is True
        response: dict[str, object] = self.connection.recv()
        assert response["request_id"] == request_id
        return response


@pytest.fixture()
def harness() -> Iterator[WorkerHarness]:
    """Provide a running worker and shut it down afterwards.

    :yields: Harness whose ready handshake was already consumed.
    """
    running: WorkerHarness = WorkerHarness()
    assert running.connection.poll(10) is True
    ready: dict[str, object] = running.connection.recv()
    assert ready == {"request_id": protocol.READY_REQUEST_ID, "status": protocol.STATUS_OK, "payload": {"ready": True}}
    try:
        yield running
    finally:
        running.request(protocol.ACTION_SHUTDOWN)
        running.thread.join(timeout=5)
        running.connection.close()


def test_put_eval_get(harness: WorkerHarness) -> None:
    """Values put into the workspace are visible to evaluated code and readable back."""
    put: dict[str, object] = harness.request(
        protocol.ACTION_PUT, name="x", value=to_wire(np.array([[1.0, 2.0, 3.0]]))
    )
    assert put["status"] == protocol.STATUS_OK

    evaluated: dict[str, object] = harness.request(protocol.ACTION_EVAL, source="y = x * 2", capture=True)
    assert evaluated["status"] == protocol.STATUS_OK
    assert evaluated["payload"]["output"].startswith("y =")

    fetched: dict[str, object] = harness.request(protocol.ACTION_GET, name="y")
    assert from_wire(fetched["payload"]["value"]).tolist() == [[2.0, 4.0, 6.0]]

    listed: dict[str, object] = harness.request(protocol.ACTION_WHO)
    assert listed["payload"]["names"] == ["x", "y"]
    exists: dict[str, object] = harness.request(protocol.ACTION_EXISTS, name="z")
    assert exists["payload"]["exists"] is False


def test_error_responses_are_typed(harness: WorkerHarness) -> None:
    """Evaluation, lookup and protocol failures map to distinct error types."""
    evaluation: dict[str, object] = harness.request(protocol.ACTION_EVAL, source="nosuch(1)", capture=False)
    assert evaluation["status"] == protocol.STATUS_ERROR
    assert evaluation["payload"]["error_type"] == protocol.ERROR_EVALUATION
    assert evaluation["payload"]["identifier"] == "matbridge:undefinedFunction"

    missing: dict[str, object] = harness.request(protocol.ACTION_GET, name="absent")
    assert missing["payload"]["error_type"] == protocol.ERROR_UNDEFINED_VARIABLE
    assert missing["payload"]["identifier"] == "absent"

    unknown: dict[str, object] = harness.request("launch")
    assert unknown["payload"]["error_type"] == protocol.ERROR_PROTOCOL

    bad_name: dict[str, object] = harness.request(protocol.ACTION_GET, name="1x")
    assert bad_name["payload"]["error_type"] == protocol.ERROR_PROTOCOL

    still_alive: dict[str, object] = harness.request(protocol.ACTION_WHO)
    assert still_alive["status"] == protocol.STATUS_OK


def test_clear_names(harness: WorkerHarness) -> None:
    """Clearing removes the listed names; an empty list removes everything."""
    harness.request(protocol.ACTION_EVAL, source="a = 1; b = 2; c = 3;", capture=False)
    harness.request(protocol.ACTION_CLEAR, names=["a"])
    assert harness.request(protocol.ACTION_WHO)["payload"]["names"] == ["b", "c"]
    harness.request(protocol.ACTION_CLEAR, names=[])
    assert harness.request(protocol.ACTION_WHO)["payload"]["names"] == []
