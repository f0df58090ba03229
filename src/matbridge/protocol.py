"""Message and value formats shared by the host session and the engine worker.

Every request is a dict ``{"request_id": int, "action": str, ...}`` and every
response a dict ``{"request_id": int, "status": "ok" | "error", "payload":
dict}``. The engine announces readiness with an ``ok`` response for request
id ``0`` whose payload is ``{"ready": True}``.

Values cross the channel as plain dicts (see :func:`validate_wire_value`):
dense data travels as column-major little-endian bytes so neither side needs
to agree on anything beyond the element class and the shape.
"""

from multiprocessing.connection import Connection

from matbridge.errors import ProtocolError

ACTION_PUT: str = "put"
ACTION_GET: str = "get"
ACTION_EVAL: str = "eval"
ACTION_CLEAR: str = "clear"
ACTION_WHO: str = "who"
ACTION_EXISTS: str = "exists"
ACTION_SHUTDOWN: str = "shutdown"
ACTIONS: frozenset[str] = frozenset(
    {
        ACTION_PUT,
        ACTION_GET,
        ACTION_EVAL,
        ACTION_CLEAR,
        ACTION_WHO,
        ACTION_EXISTS,
        ACTION_SHUTDOWN,
    }
)

STATUS_OK: str = "ok"
STATUS_ERROR: str = "error"
READY_REQUEST_ID: int = 0

ERROR_EVALUATION: str = "EvaluationError"
ERROR_UNDEFINED_VARIABLE: str = "UndefinedVariableError"
ERROR_PROTOCOL: str = "ProtocolError"

WIRE_KIND: str = "kind"
WIRE_CLASS: str = "class"
WIRE_SHAPE: str = "shape"
WIRE_COMPLEX: str = "complex"
WIRE_REAL: str = "real"
WIRE_IMAG: str = "imag"
WIRE_CELLS: str = "cells"
WIRE_FIELDS: str = "fields"
WIRE_ELEMENTS: str = "elements"
WIRE_ROW_INDICES: str = "ir"
WIRE_COLUMN_STARTS: str = "jc"
WIRE_INDEX_DTYPE: str = "<i8"

WIRE_KINDS: frozenset[str] = frozenset({"numeric", "logical", "char", "cell", "struct", "sparse"})


def send_ok(connection: Connection, request_id: int, payload: dict[str, object]) -> None:
    """Send a success response.

    :param connection: IPC connection.
    :param request_id: Request identifier.
    :param payload: Response payload.
    """
    message: dict[str, object] = {
        "request_id": request_id,
        "status": STATUS_OK,
        "payload": payload,
    }
    try:
        connection.send(message)
    except (BrokenPipeError, EOFError, OSError):
        return


def send_error(
    connection: Connection,
    request_id: int,
    error_type: str,
    error_message: str,
    identifier: str = "",
    stacktrace: str = "",
) -> None:
    """Send an error response.

    :param connection: IPC connection.
    :param request_id: Request identifier.
    :param error_type: Error category understood by the host.
    :param error_message: Error message, passed to the host verbatim.
    :param identifier: Engine error identifier.
    :param stacktrace: Formatted stacktrace.
    """
    message: dict[str, object] = {
        "request_id": request_id,
        "status": STATUS_ERROR,
        "payload": {
            "error_type": error_type,
            "identifier": identifier,
            "error_message": error_message,
            "stacktrace": stacktrace,
        },
    }
    try:
        connection.send(message)
    except (BrokenPipeError, EOFError, OSError):
        return


def require_request_id(message: dict[str, object]) -> int:
    """Extract and validate the request identifier.

    :param message: Incoming message.
    :returns: Request id.
    :raises ProtocolError: If the id is missing or not an integer.
    """
    request_id: object = message.get("request_id")
    if isinstance(request_id, int) is False or isinstance(request_id, bool) is True:
        raise ProtocolError("Message request_id must be an int")
    return request_id


def require_action(message: dict[str, object]) -> str:
    """Extract and validate the action name.

    :param message: Incoming request.
    :returns: Action name.
    :raises ProtocolError: If the action is missing or unknown.
    """
    action: object = message.get("action")
    if isinstance(action, str) is False:
        raise ProtocolError("Request action must be a string")
    if action not in ACTIONS:
        raise ProtocolError(f"Unknown request action: {action!r}")
    return action


def require_str_field(message: dict[str, object], field_name: str) -> str:
    """Extract one string field.

    :param message: Incoming message.
    :param field_name: Field to read.
    :returns: Field value.
    :raises ProtocolError: If the field is missing or not a string.
    """
    value: object = message.get(field_name)
    if isinstance(value, str) is False:
        raise ProtocolError(f"Field {field_name!r} must be a string")
    return value


def require_str_list_field(message: dict[str, object], field_name: str) -> list[str]:
    """Extract one list-of-strings field.

    :param message: Incoming message.
    :param field_name: Field to read.
    :returns: Field value.
    :raises ProtocolError: If the field is missing or malformed.
    """
    value: object = message.get(field_name)
    if isinstance(value, list) is False:
        raise ProtocolError(f"Field {field_name!r} must be a list")
    for item in value:
        if isinstance(item, str) is False:
            raise ProtocolError(f"Field {field_name!r} must contain only strings")
    return list(value)


def require_payload(response: dict[str, object], action: str) -> dict[str, object]:
    """Extract the payload of a successful response.

    :param response: Response message.
    :param action: Action the response answers, used in error messages.
    :returns: Payload dictionary.
    :raises ProtocolError: If the payload is not a dict.
    """
    payload: object = response.get("payload")
    if isinstance(payload, dict) is False:
        raise ProtocolError(f"{action} payload must be a dict")
    return payload


def validate_wire_value(value: object) -> dict[str, object]:
    """Check the envelope of one wire-encoded value.

    Only the fields every kind carries are checked here; per-kind payloads
    are validated by the decoder on each side.

    :param value: Candidate wire value.
    :returns: The value as a dict.
    :raises ProtocolError: If the envelope is malformed.
    """
    if isinstance(value, dict) is False:
        raise ProtocolError("Wire value must be a dict")
    kind: object = value.get(WIRE_KIND)
    if kind not in WIRE_KINDS:
        raise ProtocolError(f"Unknown wire value kind: {kind!r}")
    shape: object = value.get(WIRE_SHAPE)
    if isinstance(shape, (list, tuple)) is False or len(shape) < 2:
        raise ProtocolError("Wire value shape must be a sequence of at least two dimensions")
    for dim in shape:
        if isinstance(dim, int) is False or dim < 0:
            raise ProtocolError(f"Wire value shape is invalid: {shape!r}")
    return value
