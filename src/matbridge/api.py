"""User-facing entrypoints: explicit sessions and default-session shortcuts."""

from collections.abc import Callable

from matbridge.config import SessionConfig
from matbridge.convert import to_default
from matbridge.registry import default_session
from matbridge.session import Session
from matbridge.value import ForeignValue


def open_session(name: str | None = None, **options: object) -> Session:
    """Start a new, unregistered session.

    :param name: Optional session label.
    :param options: :class:`SessionConfig` fields overriding the environment.
    :returns: Ready session; close it when done.
    :raises InvalidArgumentError: If an option is unknown or invalid.
    """
    config: SessionConfig = SessionConfig.from_env().with_overrides(**options)
    session: Session = Session(config=config, name=name)
    return session.open()


def put_variable(name: str, value: object) -> None:
    """Store a value in the default session.

    :param name: Variable name.
    :param value: Foreign value or host value.
    """
    default_session().put_variable(name, value)


def get_variable(name: str) -> ForeignValue:
    """Fetch a host-owned copy of a default-session variable.

    :param name: Variable name.
    :returns: Foreign value owned by the caller.
    """
    return default_session().get_variable(name)


def get_value(name: str, converter: Callable[[ForeignValue], object] = to_default) -> object:
    """Fetch and convert a default-session variable.

    :param name: Variable name.
    :param converter: Conversion applied to the fetched value.
    :returns: Host value.
    """
    return default_session().get_value(name, converter)


def evaluate(source: str) -> str | None:
    """Run source text in the default session.

    :param source: Engine statements.
    :returns: Captured output, or ``None`` when output is not captured.
    """
    return default_session().evaluate(source)


def call_function(name: str, num_outputs: int, *args: object) -> object:
    """Call an engine function in the default session.

    :param name: Function name.
    :param num_outputs: Number of outputs to request.
    :param args: Host or foreign arguments.
    :returns: ``None``, one value, or a tuple of values.
    """
    return default_session().call_function(name, num_outputs, *args)
