"""Configuration for sessions and the foreign heap.

Values come from explicit keyword arguments, ``MATBRIDGE_*`` environment
variables, or the dataclass defaults, in that order of precedence.
"""

import dataclasses
import os
from dataclasses import dataclass

from matbridge.errors import InvalidArgumentError

_ENV_PREFIX: str = "MATBRIDGE_"
_TRUE_STRINGS: frozenset[str] = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS: frozenset[str] = frozenset({"0", "false", "no", "off", ""})
_START_METHODS: frozenset[str] = frozenset({"spawn", "fork", "forkserver"})


def _env_bool(name: str, default: bool) -> bool:
    """Read one boolean environment variable.

    :param name: Variable name without the ``MATBRIDGE_`` prefix.
    :param default: Value used when the variable is unset.
    :returns: Parsed boolean.
    :raises InvalidArgumentError: If the value is not a recognised boolean.
    """
    raw: str | None = os.getenv(_ENV_PREFIX + name)
    if raw is None:
        return default
    lowered: str = raw.strip().lower()
    if lowered in _TRUE_STRINGS:
        return True
    if lowered in _FALSE_STRINGS:
        return False
    raise InvalidArgumentError(f"{_ENV_PREFIX}{name} must be a boolean, got {raw!r}")


def _env_float(name: str, default: float | None) -> float | None:
    """Read one optional float environment variable.

    ``none`` and the empty string map to ``None``.

    :param name: Variable name without the ``MATBRIDGE_`` prefix.
    :param default: Value used when the variable is unset.
    :returns: Parsed float or ``None``.
    :raises InvalidArgumentError: If the value is not a number.
    """
    raw: str | None = os.getenv(_ENV_PREFIX + name)
    if raw is None:
        return default
    stripped: str = raw.strip()
    if stripped == "" or stripped.lower() == "none":
        return None
    try:
        return float(stripped)
    except ValueError as exc:
        raise InvalidArgumentError(f"{_ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int | None) -> int | None:
    """Read one optional integer environment variable.

    :param name: Variable name without the ``MATBRIDGE_`` prefix.
    :param default: Value used when the variable is unset.
    :returns: Parsed integer or ``None``.
    :raises InvalidArgumentError: If the value is not an integer.
    """
    raw: str | None = os.getenv(_ENV_PREFIX + name)
    if raw is None:
        return default
    stripped: str = raw.strip()
    if stripped == "" or stripped.lower() == "none":
        return None
    try:
        return int(stripped)
    except ValueError as exc:
        raise InvalidArgumentError(f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class SessionConfig:
    """Settings for one engine session."""

    capture_output: bool = False
    startup_timeout: float = 30.0
    eval_timeout: float | None = None
    shutdown_timeout: float = 2.0
    start_method: str = "spawn"

    def __post_init__(self) -> None:
        """Validate field values.

        :raises InvalidArgumentError: If any field is out of range.
        """
        if self.startup_timeout <= 0:
            raise InvalidArgumentError("startup_timeout must be positive")
        if self.eval_timeout is not None and self.eval_timeout <= 0:
            raise InvalidArgumentError("eval_timeout must be positive or None")
        if self.shutdown_timeout < 0:
            raise InvalidArgumentError("shutdown_timeout must not be negative")
        if self.start_method not in _START_METHODS:
            raise InvalidArgumentError(
                "start_method must be one of: " + ", ".join(sorted(_START_METHODS))
            )

    @classmethod
    def from_env(cls) -> "SessionConfig":
        """Load session settings from ``MATBRIDGE_*`` environment variables.

        :returns: Session configuration.
        """
        defaults: SessionConfig = cls()
        startup_timeout: float | None = _env_float("STARTUP_TIMEOUT", defaults.startup_timeout)
        shutdown_timeout: float | None = _env_float("SHUTDOWN_TIMEOUT", defaults.shutdown_timeout)
        return cls(
            capture_output=_env_bool("CAPTURE_OUTPUT", defaults.capture_output),
            startup_timeout=defaults.startup_timeout if startup_timeout is None else startup_timeout,
            eval_timeout=_env_float("EVAL_TIMEOUT", defaults.eval_timeout),
            shutdown_timeout=defaults.shutdown_timeout if shutdown_timeout is None else shutdown_timeout,
            start_method=os.getenv(_ENV_PREFIX + "START_METHOD", defaults.start_method).strip(),
        )

    def with_overrides(self, **overrides: object) -> "SessionConfig":
        """Return a copy with selected fields replaced.

        :param overrides: Field values to replace.
        :returns: Validated configuration copy.
        :raises InvalidArgumentError: If a field name is unknown.
        """
        known: set[str] = {field.name for field in dataclasses.fields(self)}
        unknown: list[str] = sorted(set(overrides) - known)
        if len(unknown) > 0:
            raise InvalidArgumentError("Unknown session option(s): " + ", ".join(unknown))
        return dataclasses.replace(self, **overrides)


@dataclass(frozen=True)
class HeapConfig:
    """Settings for the process-wide foreign heap."""

    limit_bytes: int | None = None

    def __post_init__(self) -> None:
        """Validate field values.

        :raises InvalidArgumentError: If the limit is negative.
        """
        if self.limit_bytes is not None and self.limit_bytes < 0:
            raise InvalidArgumentError("limit_bytes must not be negative")

    @classmethod
    def from_env(cls) -> "HeapConfig":
        """Load heap settings from ``MATBRIDGE_HEAP_LIMIT``.

        :returns: Heap configuration.
        """
        return cls(limit_bytes=_env_int("HEAP_LIMIT", None))
