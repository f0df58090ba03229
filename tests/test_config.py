"""Tests for environment-driven configuration."""

import pytest

from matbridge import HeapConfig
from matbridge import InvalidArgumentError
from matbridge import SessionConfig


def test_session_config_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    """Without environment overrides the dataclass defaults apply."""
    for name in ("CAPTURE_OUTPUT", "STARTUP_TIMEOUT", "EVAL_TIMEOUT", "SHUTDOWN_TIMEOUT", "START_METHOD"):
        monkeypatch.delenv(f"MATBRIDGE_{name}", raising=False)
    config: SessionConfig = SessionConfig.from_env()
    assert config == SessionConfig()
    assert config.start_method == "spawn"
    assert config.eval_timeout is None


def test_session_config_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """``MATBRIDGE_*`` variables override the defaults."""
    monkeypatch.setenv("MATBRIDGE_CAPTURE_OUTPUT", "yes")
    monkeypatch.setenv("MATBRIDGE_EVAL_TIMEOUT", "2.5")
    monkeypatch.setenv("MATBRIDGE_START_METHOD", "forkserver")
    config: SessionConfig = SessionConfig.from_env()
    assert config.capture_output is True
    assert config.eval_timeout == 2.5
    assert config.start_method == "forkserver"


def test_invalid_environment_values(monkeypatch: pytest.MonkeyPatch) -> None:
    """Unparseable or out-of-range values raise instead of being ignored."""
    monkeypatch.setenv("MATBRIDGE_CAPTURE_OUTPUT", "maybe")
    with pytest.raises(InvalidArgumentError):
        SessionConfig.from_env()
    monkeypatch.delenv("MATBRIDGE_CAPTURE_OUTPUT")

    monkeypatch.setenv("MATBRIDGE_START_METHOD", "thread")
    with pytest.raises(InvalidArgumentError):
        SessionConfig.from_env()


def test_with_overrides() -> None:
    """Overrides replace known fields and reject unknown ones."""
    config: SessionConfig = SessionConfig().with_overrides(capture_output=True, shutdown_timeout=0.5)
    assert config.capture_output is True
    assert config.shutdown_timeout == 0.5
    with pytest.raises(InvalidArgumentError):
        SessionConfig().with_overrides(verbose=True)
    with pytest.raises(InvalidArgumentError):
        SessionConfig().with_overrides(startup_timeout=0)


def test_heap_config(monkeypatch: pytest.MonkeyPatch) -> None:
    """The heap limit is read from ``MATBRIDGE_HEAP_LIMIT``."""
    monkeypatch.setenv("MATBRIDGE_HEAP_LIMIT", "1024")
    assert HeapConfig.from_env().limit_bytes == 1024
    monkeypatch.setenv("MATBRIDGE_HEAP_LIMIT", "none")
    assert HeapConfig.from_env().limit_bytes is None
    with pytest.raises(InvalidArgumentError):
        HeapConfig(limit_bytes=-1)
