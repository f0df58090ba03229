"""Public package API for matbridge."""

from matbridge.api import call_function
from matbridge.api import evaluate
from matbridge.api import get_value
from matbridge.api import get_variable
from matbridge.api import open_session
from matbridge.api import put_variable
from matbridge.config import HeapConfig
from matbridge.config import SessionConfig
from matbridge.convert import to_array
from matbridge.convert import to_default
from matbridge.convert import to_foreign
from matbridge.convert import to_foreign_records
from matbridge.convert import to_foreign_sparse
from matbridge.convert import to_list
from matbridge.convert import to_mapping
from matbridge.convert import to_mappings
from matbridge.convert import to_scalar
from matbridge.convert import to_sparse
from matbridge.convert import to_string
from matbridge.convert import to_triplets
from matbridge.convert import to_vector
from matbridge.errors import AllocationError
from matbridge.errors import ChannelError
from matbridge.errors import ConversionTypeError
from matbridge.errors import EvaluationError
from matbridge.errors import InvalidArgumentError
from matbridge.errors import MatBridgeError
from matbridge.errors import MatFileError
from matbridge.errors import OwnershipError
from matbridge.errors import ProtocolError
from matbridge.errors import SessionBrokenError
from matbridge.errors import SessionError
from matbridge.errors import SessionStartError
from matbridge.errors import SessionStateError
from matbridge.errors import ShapeError
from matbridge.errors import UndefinedVariableError
from matbridge.matfile import MatFile
from matbridge.matfile import open_matfile
from matbridge.registry import close_all_sessions
from matbridge.registry import close_default_session
from matbridge.registry import close_session
from matbridge.registry import default_session
from matbridge.registry import get_session
from matbridge.registry import restart_default_session
from matbridge.session import Session
from matbridge.session import SessionState
from matbridge.types import ElementType
from matbridge.types import Ownership
from matbridge.types import ValueKind
from matbridge.value import ForeignValue

__all__: list[str] = [
    "call_function",
    "evaluate",
    "get_value",
    "get_variable",
    "open_session",
    "put_variable",
    "HeapConfig",
    "SessionConfig",
    "to_array",
    "to_default",
    "to_foreign",
    "to_foreign_records",
    "to_foreign_sparse",
    "to_list",
    "to_mapping",
    "to_mappings",
    "to_scalar",
    "to_sparse",
    "to_string",
    "to_triplets",
    "to_vector",
    "AllocationError",
    "ChannelError",
    "ConversionTypeError",
    "EvaluationError",
    "InvalidArgumentError",
    "MatBridgeError",
    "MatFileError",
    "OwnershipError",
    "ProtocolError",
    "SessionBrokenError",
    "SessionError",
    "SessionStartError",
    "SessionStateError",
    "ShapeError",
    "UndefinedVariableError",
    "MatFile",
    "open_matfile",
    "close_all_sessions",
    "close_default_session",
    "close_session",
    "default_session",
    "get_session",
    "restart_default_session",
    "Session",
    "SessionState",
    "ElementType",
    "Ownership",
    "ValueKind",
    "ForeignValue",
]
