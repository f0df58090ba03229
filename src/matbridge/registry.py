"""Process-wide registry of keyed sessions, including the lazy default session."""

import atexit
import logging
import threading

from matbridge.config import SessionConfig
from matbridge.errors import InvalidArgumentError
from matbridge.session import Session
from matbridge.session import SessionState

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_SESSION_KEY: str = "default"

_SESSION_LOCK: threading.RLock = threading.RLock()
_SESSIONS_BY_KEY: dict[str, Session] = {}


def _remove_session_if_current(key: str, session: Session) -> None:
    """Remove a session only when it is still the registry entry for ``key``.

    :param key: Registry key.
    :param session: Candidate session to remove.
    """
    with _SESSION_LOCK:
        current_session: Session | None = _SESSIONS_BY_KEY.get(key)
        if current_session is session:
            _SESSIONS_BY_KEY.pop(key, None)


def _require_key(key: object) -> str:
    if isinstance(key, str) is False or key == "":
        raise InvalidArgumentError("Session key must be a non-empty string")
    return key


def get_session(key: str, config: SessionConfig | None = None) -> Session:
    """Return the open session registered under ``key``, starting one if needed.

    Closed or broken entries are replaced by a fresh session. ``config`` only
    applies when a new session is created.

    :param key: Registry key.
    :param config: Settings for a newly created session.
    :returns: Ready session.
    :raises SessionStartError: If a new engine cannot be started.
    """
    _require_key(key)
    with _SESSION_LOCK:
        existing: Session | None = _SESSIONS_BY_KEY.get(key)
        if existing is not None:
            if existing.state is SessionState.READY:
                return existing
            logger.debug("Replacing %s session registered under %r", existing.state.value, key)
            _SESSIONS_BY_KEY.pop(key, None)
            existing.close()

        session: Session = Session(
            config=config,
            name=key,
            close_callback=lambda: _remove_session_if_current(key, session),
        )
        _SESSIONS_BY_KEY[key] = session
        try:
            session.open()
        except Exception:
            _remove_session_if_current(key, session)
            raise
        return session


def peek_session(key: str) -> Session | None:
    """Return the session registered under ``key`` without starting one."""
    with _SESSION_LOCK:
        return _SESSIONS_BY_KEY.get(key)


def close_session(key: str) -> bool:
    """Close one registered session.

    :param key: Registry key.
    :returns: ``True`` when a session was registered under ``key``.
    """
    with _SESSION_LOCK:
        session: Session | None = _SESSIONS_BY_KEY.pop(key, None)
    if session is None:
        return False
    session.close()
    return True


def close_all_sessions() -> None:
    """Close every registered session."""
    with _SESSION_LOCK:
        sessions: list[Session] = list(_SESSIONS_BY_KEY.values())
        _SESSIONS_BY_KEY.clear()
    for session in sessions:
        session.close()


def default_session() -> Session:
    """Return the default session, starting it on first use.

    :returns: Ready default session.
    """
    return get_session(DEFAULT_SESSION_KEY)


def restart_default_session(config: SessionConfig | None = None) -> Session:
    """Close the default session, if any, and start a new one.

    :param config: Settings for the new session.
    :returns: New ready default session with an empty workspace.
    """
    with _SESSION_LOCK:
        close_session(DEFAULT_SESSION_KEY)
        return get_session(DEFAULT_SESSION_KEY, config)


def close_default_session() -> bool:
    """Close the default session.

    :returns: ``True`` when a default session existed.
    """
    return close_session(DEFAULT_SESSION_KEY)


atexit.register(close_all_sessions)
