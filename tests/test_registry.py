"""Tests for keyed sessions and the lazily started default session."""

from collections.abc import Iterator

import pytest

import matbridge
from matbridge import InvalidArgumentError
from matbridge import Session
from matbridge import SessionState
from matbridge import close_all_sessions
from matbridge import close_default_session
from matbridge import close_session
from matbridge import default_session
from matbridge import get_session
from matbridge import restart_default_session
from matbridge.registry import DEFAULT_SESSION_KEY
from matbridge.registry import peek_session


@pytest.fixture(autouse=True)
def _no_registered_sessions() -> Iterator[None]:
    """Close every registered session around each test.

    :yields: Control to the active test.
    """
    close_all_sessions()
    yield
    close_all_sessions()


def test_default_session_starts_lazily_and_is_reused() -> None:
    """The default session starts on first use and is shared afterwards."""
    assert peek_session(DEFAULT_SESSION_KEY) is None
    first: Session = default_session()
    second: Session = default_session()
    assert first is second
    assert first.state is SessionState.READY
    assert first.name == DEFAULT_SESSION_KEY


def test_shortcuts_use_the_default_session() -> None:
    """Module-level helpers operate on the default session."""
    matbridge.put_variable("x", [1.0, 2.0, 3.0])
    matbridge.evaluate("y = sum(x);")
    assert matbridge.get_value("y") == 6.0
    fetched: matbridge.ForeignValue = matbridge.get_variable("x")
    try:
        assert fetched.shape == (3, 1)
    finally:
        fetched.release()
    assert matbridge.call_function("max", 1, [4.0, 9.0, 2.0]) == 9.0
    assert default_session().has_variable("y") is True


def test_restart_gives_an_empty_workspace() -> None:
    """Restarting replaces the default session with a fresh engine."""
    old: Session = default_session()
    old.put_variable("kept", 1.0)

    new: Session = restart_default_session()
    assert new is not old
    assert old.state is SessionState.CLOSED
    assert new.list_variables() == []
    assert default_session() is new


def test_closed_entries_are_replaced() -> None:
    """Closing a registered session removes it; the next lookup starts a new one."""
    keyed: Session = get_session("worker-a")
    keyed.close()
    assert peek_session("worker-a") is None

    replacement: Session = get_session("worker-a")
    assert replacement is not keyed
    assert replacement.state is SessionState.READY


def test_keys_are_independent() -> None:
    """Different keys hold different sessions and close separately."""
    first: Session = get_session("worker-a")
    second: Session = get_session("worker-b")
    assert first is not second
    first.put_variable("only_here", 1.0)
    assert second.has_variable("only_here") is False

    assert close_session("worker-a") is True
    assert close_session("worker-a") is False
    assert first.state is SessionState.CLOSED
    assert second.state is SessionState.READY


def test_close_default_session() -> None:
    """Closing the default session reports whether one existed."""
    assert close_default_session() is False
    session: Session = default_session()
    assert close_default_session() is True
    assert session.state is SessionState.CLOSED


def test_invalid_keys_are_rejected() -> None:
    """Registry keys must be non-empty strings."""
    with pytest.raises(InvalidArgumentError):
        get_session("")
