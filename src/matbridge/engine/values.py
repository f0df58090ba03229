"""Engine-side value model and its wire encoding.

Workspace values are one of:

- ``numpy.ndarray`` with two or more dimensions (numeric or ``bool``)
- :class:`CharArray` (UTF-16 code units)
- :class:`CellArray` (object array of values)
- :class:`StructArray` (object array of field dicts, shared field order)
- ``scipy.sparse.csc_matrix`` (``float64``, ``complex128`` or ``bool``)
"""

import numpy as np
import scipy.sparse

from matbridge import protocol
from matbridge.engine.errors import EngineError
from matbridge.errors import ProtocolError
from matbridge.types import ElementType
from matbridge.types import format_shape

_INDEX_DTYPE: np.dtype = np.dtype(protocol.WIRE_INDEX_DTYPE)
_COMPLEX_DTYPES: dict[ElementType, np.dtype] = {
    ElementType.SINGLE: np.dtype(np.complex64),
    ElementType.DOUBLE: np.dtype(np.complex128),
}


class CharArray:
    """Character array stored as UTF-16 code units."""

    codes: np.ndarray

    def __init__(self, codes: np.ndarray) -> None:
        """Initialize from a code-unit array.

        :param codes: Array of code units with two or more dimensions.
        """
        self.codes = ensure_2d(np.asarray(codes, dtype=np.uint16))

    @classmethod
    def from_text(cls, text: str) -> "CharArray":
        """Build a 1-by-N row, or 0-by-0 for the empty string.

        :param text: Source text.
        :returns: Char array.
        """
        codes: np.ndarray = np.frombuffer(text.encode("utf-16-le", errors="surrogatepass"), dtype="<u2")
        if codes.shape[0] == 0:
            return cls(np.zeros((0, 0), dtype=np.uint16))
        return cls(codes.astype(np.uint16).reshape(1, -1))

    @classmethod
    def from_rows(cls, rows: list[str]) -> "CharArray":
        """Build a char matrix, padding shorter rows with spaces.

        :param rows: One string per row.
        :returns: Char array.
        """
        if len(rows) == 0:
            return cls(np.zeros((0, 0), dtype=np.uint16))
        width: int = max(len(row) for row in rows)
        padded: list[list[int]] = [[ord(char) for char in row.ljust(width)] for row in rows]
        return cls(np.array(padded, dtype=np.uint16).reshape(len(rows), width))

    @property
    def shape(self) -> tuple[int, ...]:
        """Dimension sizes."""
        return tuple(self.codes.shape)

    def rows(self) -> list[str]:
        """Return each row of a two-dimensional char array as text."""
        matrix: np.ndarray = self.codes.reshape(self.codes.shape[0], -1, order="F")
        return [
            matrix[row].astype("<u2").tobytes().decode("utf-16-le", errors="surrogatepass")
            for row in range(matrix.shape[0])
        ]

    def text(self) -> str:
        """Return the characters in column-major order as one string."""
        flat: np.ndarray = self.codes.reshape(-1, order="F").astype("<u2")
        return flat.tobytes().decode("utf-16-le", errors="surrogatepass")


class CellArray:
    """Cell array: an object array whose elements are engine values."""

    items: np.ndarray

    def __init__(self, items: np.ndarray) -> None:
        """Initialize from an object array.

        :param items: Object array with two or more dimensions.
        """
        self.items = ensure_2d(items)

    @classmethod
    def empty(cls, shape: tuple[int, ...]) -> "CellArray":
        """Build a cell whose elements are all ``[]``.

        :param shape: Dimension sizes.
        :returns: Cell array.
        """
        items: np.ndarray = np.empty(shape, dtype=object)
        for index in np.ndindex(*shape):
            items[index] = empty_double()
        return cls(items)

    @classmethod
    def from_list(cls, values: list[object], shape: tuple[int, ...] | None = None) -> "CellArray":
        """Build a cell from values in column-major order.

        :param values: Engine values.
        :param shape: Dimension sizes; defaults to a 1-by-N row.
        :returns: Cell array.
        """
        target: tuple[int, ...] = (1, len(values)) if shape is None else shape
        flat: np.ndarray = np.empty(len(values), dtype=object)
        for position, value in enumerate(values):
            flat[position] = value
        return cls(flat.reshape(target, order="F"))

    @property
    def shape(self) -> tuple[int, ...]:
        """Dimension sizes."""
        return tuple(self.items.shape)

    def flat(self) -> list[object]:
        """Return the elements in column-major order."""
        return list(self.items.reshape(-1, order="F"))


class StructArray:
    """Struct array: an object array of field dicts with a shared field order."""

    field_names: list[str]
    items: np.ndarray

    def __init__(self, field_names: list[str], items: np.ndarray) -> None:
        """Initialize from field names and an object array of dicts.

        :param field_names: Ordered field names.
        :param items: Object array of ``dict[str, value]``.
        """
        self.field_names = list(field_names)
        self.items = ensure_2d(items)

    @classmethod
    def scalar(cls, fields: dict[str, object]) -> "StructArray":
        """Build a 1-by-1 struct.

        :param fields: Field values in order.
        :returns: Struct array with one element.
        """
        items: np.ndarray = np.empty((1, 1), dtype=object)
        items[0, 0] = dict(fields)
        return cls(list(fields.keys()), items)

    @classmethod
    def from_list(cls, field_names: list[str], elements: list[dict[str, object]]) -> "StructArray":
        """Build a 1-by-N struct array.

        :param field_names: Ordered field names.
        :param elements: One field dict per element.
        :returns: Struct array.
        """
        items: np.ndarray = np.empty((1, len(elements)), dtype=object)
        for position, element in enumerate(elements):
            items[0, position] = dict(element)
        return cls(field_names, items)

    @property
    def shape(self) -> tuple[int, ...]:
        """Dimension sizes."""
        return tuple(self.items.shape)

    def flat(self) -> list[dict[str, object]]:
        """Return the elements in column-major order."""
        return list(self.items.reshape(-1, order="F"))


def ensure_2d(array: np.ndarray) -> np.ndarray:
    """Pad scalars to 1-by-1 and vectors to 1-by-N.

    :param array: Any numpy array.
    :returns: Array with at least two dimensions.
    """
    if array.ndim == 0:
        return array.reshape(1, 1)
    if array.ndim == 1:
        return array.reshape(1, -1)
    return array


def empty_double() -> np.ndarray:
    """Return ``[]``."""
    return np.zeros((0, 0))


def as_value(value: object) -> object:
    """Normalize Python and numpy results into engine values.

    :param value: Result of a numpy or builtin computation.
    :returns: Engine value.
    """
    if isinstance(value, (CharArray, CellArray, StructArray)) is True:
        return value
    if scipy.sparse.issparse(value) is True:
        return scipy.sparse.csc_matrix(value)
    if isinstance(value, str) is True:
        return CharArray.from_text(value)
    array: np.ndarray = np.asarray(value)
    if array.dtype.kind == "c" and bool(np.all(array.imag == 0)) is True:
        array = array.real.copy()
    return ensure_2d(array)


def shape_of(value: object) -> tuple[int, ...]:
    """Return the dimension sizes of an engine value."""
    if isinstance(value, (CharArray, CellArray, StructArray)) is True:
        return value.shape
    return tuple(value.shape)


def numel(value: object) -> int:
    """Return the element count of an engine value."""
    count: int = 1
    for dim in shape_of(value):
        count *= dim
    return count


def element_type_of(value: object) -> ElementType | None:
    """Return the element type of a numeric, logical, char or sparse value.

    :param value: Engine value.
    :returns: Element type, or ``None`` for cells and structs.
    """
    if isinstance(value, CharArray) is True:
        return ElementType.CHAR
    if isinstance(value, (CellArray, StructArray)) is True:
        return None
    return ElementType.from_dtype(value.dtype)


def class_name(value: object) -> str:
    """Return the engine class name of ``value``."""
    if isinstance(value, CellArray) is True:
        return "cell"
    if isinstance(value, StructArray) is True:
        return "struct"
    element_type: ElementType | None = element_type_of(value)
    if element_type is None:
        return "unknown"
    return element_type.class_name


def describe(value: object) -> str:
    """Return ``2x3 double`` style descriptions used in messages and displays."""
    return f"{format_shape(shape_of(value))} {class_name(value)}"


def is_sparse(value: object) -> bool:
    """Report whether ``value`` is a sparse matrix."""
    return scipy.sparse.issparse(value)


def is_numeric_like(value: object) -> bool:
    """Report whether ``value`` takes part in arithmetic (numeric, logical, char, sparse)."""
    return isinstance(value, (CellArray, StructArray)) is False


# -- wire encoding ------------------------------------------------------------


def _split_complex(array: np.ndarray, element_type: ElementType) -> tuple[bytes, bytes | None]:
    """Return column-major real and imaginary bytes of ``array``.

    :param array: Numeric array.
    :param element_type: Target element type.
    :returns: Tuple of real bytes and optional imaginary bytes.
    """
    if array.dtype.kind == "c":
        real: bytes = np.asarray(array.real, dtype=element_type.dtype).tobytes(order="F")
        imag: bytes = np.asarray(array.imag, dtype=element_type.dtype).tobytes(order="F")
        return real, imag
    return np.asarray(array, dtype=element_type.dtype).tobytes(order="F"), None


def to_wire(value: object) -> dict[str, object]:
    """Encode an engine value for the channel.

    :param value: Engine value.
    :returns: Wire dictionary.
    """
    if isinstance(value, CellArray) is True:
        return {
            protocol.WIRE_KIND: "cell",
            protocol.WIRE_SHAPE: list(value.shape),
            protocol.WIRE_COMPLEX: False,
            protocol.WIRE_CELLS: [to_wire(item) for item in value.flat()],
        }
    if isinstance(value, StructArray) is True:
        return {
            protocol.WIRE_KIND: "struct",
            protocol.WIRE_SHAPE: list(value.shape),
            protocol.WIRE_COMPLEX: False,
            protocol.WIRE_FIELDS: list(value.field_names),
            protocol.WIRE_ELEMENTS: [
                [to_wire(element[name]) for name in value.field_names] for element in value.flat()
            ],
        }
    if isinstance(value, CharArray) is True:
        return {
            protocol.WIRE_KIND: "char",
            protocol.WIRE_CLASS: ElementType.CHAR.class_name,
            protocol.WIRE_SHAPE: list(value.shape),
            protocol.WIRE_COMPLEX: False,
            protocol.WIRE_REAL: value.codes.astype("<u2").tobytes(order="F"),
        }
    if is_sparse(value) is True:
        csc: scipy.sparse.csc_matrix = scipy.sparse.csc_matrix(value)
        csc.sort_indices()
        element_type: ElementType = ElementType.LOGICAL if csc.dtype.kind == "b" else ElementType.DOUBLE
        real_bytes: bytes
        imag_bytes: bytes | None
        real_bytes, imag_bytes = _split_complex(csc.data, element_type)
        wire: dict[str, object] = {
            protocol.WIRE_KIND: "sparse",
            protocol.WIRE_CLASS: element_type.class_name,
            protocol.WIRE_SHAPE: list(csc.shape),
            protocol.WIRE_COMPLEX: imag_bytes is not None,
            protocol.WIRE_REAL: real_bytes,
            protocol.WIRE_ROW_INDICES: csc.indices.astype(_INDEX_DTYPE).tobytes(),
            protocol.WIRE_COLUMN_STARTS: csc.indptr.astype(_INDEX_DTYPE).tobytes(),
        }
        if imag_bytes is not None:
            wire[protocol.WIRE_IMAG] = imag_bytes
        return wire

    array: np.ndarray = ensure_2d(np.asarray(value))
    dense_type: ElementType = ElementType.from_dtype(array.dtype)
    real_part: bytes
    imag_part: bytes | None
    real_part, imag_part = _split_complex(array, dense_type)
    dense_wire: dict[str, object] = {
        protocol.WIRE_KIND: "logical" if dense_type is ElementType.LOGICAL else "numeric",
        protocol.WIRE_CLASS: dense_type.class_name,
        protocol.WIRE_SHAPE: list(array.shape),
        protocol.WIRE_COMPLEX: imag_part is not None,
        protocol.WIRE_REAL: real_part,
    }
    if imag_part is not None:
        dense_wire[protocol.WIRE_IMAG] = imag_part
    return dense_wire


def _wire_bytes(wire: dict[str, object], field_name: str) -> bytes:
    """Extract one bytes field.

    :param wire: Wire value.
    :param field_name: Field to read.
    :returns: Field bytes.
    :raises ProtocolError: If the field is missing.
    """
    value: object = wire.get(field_name)
    if isinstance(value, (bytes, bytearray)) is False:
        raise ProtocolError(f"Wire value field {field_name!r} must be bytes")
    return bytes(value)


def from_wire(wire: object) -> object:
    """Decode a wire value into an engine value.

    :param wire: Wire dictionary.
    :returns: Engine value.
    :raises ProtocolError: If the payload is malformed.
    """
    payload: dict[str, object] = protocol.validate_wire_value(wire)
    kind: object = payload[protocol.WIRE_KIND]
    shape: tuple[int, ...] = tuple(payload[protocol.WIRE_SHAPE])
    count: int = 1
    for dim in shape:
        count *= dim

    if kind == "cell":
        cells: object = payload.get(protocol.WIRE_CELLS)
        if isinstance(cells, list) is False or len(cells) != count:
            raise ProtocolError("Cell wire value must carry one entry per element")
        decoded: list[object] = [empty_double() if item is None else from_wire(item) for item in cells]
        return CellArray.from_list(decoded, shape)

    if kind == "struct":
        fields: object = payload.get(protocol.WIRE_FIELDS)
        elements: object = payload.get(protocol.WIRE_ELEMENTS)
        if isinstance(fields, list) is False or isinstance(elements, list) is False or len(elements) != count:
            raise ProtocolError("Struct wire value must carry fields and one entry per element")
        flat: np.ndarray = np.empty(count, dtype=object)
        for position, element in enumerate(elements):
            if isinstance(element, list) is False or len(element) != len(fields):
                raise ProtocolError("Struct wire element must carry one entry per field")
            flat[position] = {
                name: empty_double() if item is None else from_wire(item)
                for name, item in zip(fields, element)
            }
        return StructArray(list(fields), flat.reshape(shape, order="F"))

    class_obj: object = payload.get(protocol.WIRE_CLASS)
    if isinstance(class_obj, str) is False:
        raise ProtocolError("Wire value is missing its element class")
    element_type: ElementType = ElementType.from_class_name(class_obj)
    real: np.ndarray = np.frombuffer(_wire_bytes(payload, protocol.WIRE_REAL), dtype=element_type.dtype)
    imag: np.ndarray | None = None
    if payload.get(protocol.WIRE_COMPLEX) is True:
        imag = np.frombuffer(_wire_bytes(payload, protocol.WIRE_IMAG), dtype=element_type.dtype)

    if kind == "sparse":
        rows: np.ndarray = np.frombuffer(_wire_bytes(payload, protocol.WIRE_ROW_INDICES), dtype=_INDEX_DTYPE)
        starts: np.ndarray = np.frombuffer(_wire_bytes(payload, protocol.WIRE_COLUMN_STARTS), dtype=_INDEX_DTYPE)
        data: np.ndarray = real.copy() if imag is None else real + 1j * imag
        try:
            return scipy.sparse.csc_matrix((data, rows.copy(), starts.copy()), shape=shape)
        except ValueError as exc:
            raise ProtocolError(f"Malformed sparse wire value: {exc}") from exc

    if real.shape[0] != count or (imag is not None and imag.shape[0] != count):
        raise ProtocolError(f"Wire value data size does not match shape {format_shape(shape)}")
    if kind == "char":
        return CharArray(real.reshape(shape, order="F").astype(np.uint16))

    result: np.ndarray = real.reshape(shape, order="F").astype(element_type.dtype.newbyteorder("="))
    if imag is not None:
        complex_dtype: np.dtype = _COMPLEX_DTYPES.get(element_type, np.dtype(np.complex128))
        combined: np.ndarray = np.empty(shape, dtype=complex_dtype, order="F")
        combined.real = result
        combined.imag = imag.reshape(shape, order="F")
        return combined
    return result


def raise_type_error(operation: str, value: object) -> None:
    """Raise the standard error for an unsupported operand type.

    :param operation: Operator or function name.
    :param value: Offending value.
    :raises EngineError: Always.
    """
    raise EngineError(
        "matbridge:undefinedFunction",
        f"Operator or function '{operation}' is not supported for operands of type '{class_name(value)}'.",
    )
