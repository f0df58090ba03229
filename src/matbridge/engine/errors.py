"""Error raised by engine code while evaluating user source."""


class EngineError(Exception):
    """Runtime error reported back to the host as an evaluation error."""

    identifier: str
    message: str

    def __init__(self, identifier: str, message: str) -> None:
        """Initialize an engine error.

        :param identifier: Colon-separated error identifier, possibly empty.
        :param message: Human-readable message.
        """
        self.identifier = identifier
        self.message = message
        super().__init__(message)


def undefined_name(name: str) -> EngineError:
    """Build the error for an unknown variable or function name.

    :param name: Unresolved name.
    :returns: Error to raise.
    """
    return EngineError("matbridge:undefinedFunction", f"Undefined function or variable '{name}'.")


def syntax_error(message: str, position: int) -> EngineError:
    """Build a parse error.

    :param message: Description of the problem.
    :param position: Zero-based character offset in the source.
    :returns: Error to raise.
    """
    return EngineError("matbridge:parse", f"Parse error at character {position + 1}: {message}")
