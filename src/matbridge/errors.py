"""Custom error types for matbridge."""


class MatBridgeError(Exception):
    """Base class for all matbridge errors."""


class AllocationError(MatBridgeError, MemoryError):
    """Raised when the foreign heap cannot satisfy an allocation."""


class OwnershipError(MatBridgeError):
    """Raised when a foreign value is used in the wrong ownership state."""


class InvalidArgumentError(MatBridgeError, ValueError):
    """Raised for malformed shapes, names, field lists, or configuration."""


class ShapeError(MatBridgeError, ValueError):
    """Raised when a conversion requires a shape the value does not have."""


class ConversionTypeError(MatBridgeError, TypeError):
    """Raised when a conversion requires a kind or type the value does not have."""


class UndefinedVariableError(MatBridgeError, LookupError):
    """Raised when a workspace or file lookup misses."""

    variable_name: str

    def __init__(self, variable_name: str, message: str | None = None) -> None:
        """Initialize an undefined-variable error.

        :param variable_name: Name that could not be resolved.
        :param message: Optional message override.
        """
        self.variable_name = variable_name
        if message is None:
            message = f"Undefined variable {variable_name!r}"
        super().__init__(message)


class SessionError(MatBridgeError):
    """Base class for session lifecycle and channel errors."""


class SessionStartError(SessionError):
    """Raised when the engine process cannot be started or never becomes ready."""


class SessionStateError(SessionError):
    """Raised when an operation is attempted in a state that does not allow it."""


class ChannelError(SessionError):
    """Raised when the channel to the engine process fails.

    The session that raised it is broken and must be closed.
    """


class SessionBrokenError(SessionError):
    """Raised for any operation on a session whose channel previously failed."""


class ProtocolError(ChannelError):
    """Raised for unexpected messages on the host/engine channel."""


class EvaluationError(SessionError):
    """Raised when the engine reports an error while evaluating code."""

    identifier: str
    engine_message: str
    engine_traceback: str

    def __init__(
        self,
        identifier: str,
        engine_message: str,
        engine_traceback: str = "",
    ) -> None:
        """Initialize an engine-side evaluation error wrapper.

        :param identifier: Engine error identifier, such as ``matbridge:undefinedFunction``.
        :param engine_message: Message reported by the engine, verbatim.
        :param engine_traceback: Engine-side traceback text, when available.
        """
        self.identifier = identifier
        self.engine_message = engine_message
        self.engine_traceback = engine_traceback
        super().__init__(engine_message)


class MatFileError(MatBridgeError):
    """Raised for persisted-file open, mode, and format failures."""
