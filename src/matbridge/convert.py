"""Conversion between host-native values and foreign values.

Every conversion copies: no foreign value ever aliases host memory, and no
host value returned from here aliases foreign storage.

Arrays are converted over logical multi-indices. Host arrays may be in any
memory order; foreign storage is column-major. Element ``(i1, ..., iN)`` on
one side is element ``(i1, ..., iN)`` on the other.

Host to foreign goes through :func:`to_foreign`, which infers the foreign
kind from the host type. Foreign to host is explicit because a 1-by-1
numeric value could mean a scalar or a matrix; :func:`to_default` exists as
a convenience with documented precedence.
"""

import dataclasses
import numbers
from collections.abc import Iterable
from collections.abc import Mapping
from collections.abc import Sequence
from typing import Literal

import numpy as np
import scipy.sparse

from matbridge.errors import ConversionTypeError
from matbridge.errors import InvalidArgumentError
from matbridge.errors import ShapeError
from matbridge.types import ElementType
from matbridge.types import ValueKind
from matbridge.types import format_shape
from matbridge.types import normalize_shape
from matbridge.value import ForeignValue

RecordLayout = Literal["cell", "struct_array"]
_RECORD_LAYOUTS: frozenset[str] = frozenset({"cell", "struct_array"})
_COMPLEX_DTYPES: dict[ElementType, np.dtype] = {
    ElementType.SINGLE: np.dtype(np.complex64),
    ElementType.DOUBLE: np.dtype(np.complex128),
}


# -- host to foreign ----------------------------------------------------------


def _is_plain_number(value: object) -> bool:
    """Report whether ``value`` is a number but not a boolean.

    :param value: Candidate value.
    :returns: ``True`` for ints, floats, complex numbers and numpy numbers.
    """
    if isinstance(value, (bool, np.bool_)) is True:
        return False
    return isinstance(value, (numbers.Number, np.number))


def _is_record(value: object) -> bool:
    """Report whether ``value`` is a dataclass instance or a namedtuple.

    :param value: Candidate value.
    :returns: ``True`` for record-like values.
    """
    if dataclasses.is_dataclass(value) is True and isinstance(value, type) is False:
        return True
    return isinstance(value, tuple) is True and hasattr(value, "_fields") is True


def _record_fields(value: object) -> dict[str, object]:
    """Return the named fields of a record or mapping, in declaration order.

    :param value: Mapping, dataclass instance or namedtuple.
    :returns: Ordered field mapping.
    :raises ConversionTypeError: If ``value`` has no named fields.
    """
    if isinstance(value, Mapping) is True:
        fields: dict[str, object] = {}
        for key, item in value.items():
            if isinstance(key, str) is False:
                raise ConversionTypeError(f"Struct field names must be strings, got {key!r}")
            fields[key] = item
        return fields
    if dataclasses.is_dataclass(value) is True and isinstance(value, type) is False:
        return {field.name: getattr(value, field.name) for field in dataclasses.fields(value)}
    if isinstance(value, tuple) is True and hasattr(value, "_fields") is True:
        return dict(value._asdict())
    raise ConversionTypeError(f"Cannot convert {type(value).__name__} to a struct")


def _from_ndarray(array: np.ndarray) -> ForeignValue:
    """Convert a numeric or boolean numpy array.

    :param array: Host array of any memory order.
    :returns: Dense foreign value with the same logical shape.
    """
    element_type: ElementType = ElementType.from_dtype(array.dtype)
    is_complex: bool = array.dtype.kind == "c"
    shape: tuple[int, ...] = normalize_shape(array.shape)
    logical: np.ndarray = array.reshape(shape)

    value: ForeignValue = ForeignValue.create(element_type, shape, complex=is_complex)
    try:
        with value.data() as view:
            view[...] = logical.real if is_complex is True else logical
        if is_complex is True:
            with value.data(imag=True) as imag_view:
                imag_view[...] = logical.imag
    except Exception:
        value.release()
        raise
    return value


def _from_object_array(array: np.ndarray) -> ForeignValue:
    """Convert a string or object numpy array to a cell of the same shape.

    :param array: Host array.
    :returns: Cell value.
    """
    shape: tuple[int, ...] = normalize_shape(array.shape)
    logical: np.ndarray = array.reshape(shape)
    cell: ForeignValue = ForeignValue.create_cell(shape)
    try:
        for position, item in enumerate(logical.ravel(order="F")):
            if isinstance(item, np.str_) is True:
                item = str(item)
            elif isinstance(item, np.bytes_) is True:
                item = bytes(item).decode("utf-8")
            cell.set_cell(position, to_foreign(item))
    except Exception:
        cell.release()
        raise
    return cell


def _from_text(text: str) -> ForeignValue:
    """Convert a string to a 1-by-N char value of UTF-16 code units.

    :param text: Host string.
    :returns: Char value.
    """
    codes: np.ndarray = np.frombuffer(text.encode("utf-16-le", errors="surrogatepass"), dtype="<u2")
    value: ForeignValue = ForeignValue.create_char((1, int(codes.shape[0])))
    with value.data() as view:
        view[0, :] = codes
    return value


def _from_fields(fields: dict[str, object]) -> ForeignValue:
    """Convert an ordered field mapping to a 1-by-1 struct.

    :param fields: Field values keyed by name.
    :returns: Struct value.
    """
    struct: ForeignValue = ForeignValue.create_struct(list(fields.keys()))
    try:
        for name, item in fields.items():
            struct.set_field(name, to_foreign(item))
    except Exception:
        struct.release()
        raise
    return struct


def _from_sequence(items: Sequence[object]) -> ForeignValue:
    """Convert a list or tuple.

    Non-empty sequences of plain numbers become a numeric column; anything
    else becomes a 1-by-N cell.

    :param items: Host sequence.
    :returns: Numeric or cell value.
    """
    if len(items) > 0 and all(_is_plain_number(item) for item in items) is True:
        return _from_ndarray(np.asarray(items))

    cell: ForeignValue = ForeignValue.create_cell((1, len(items)))
    try:
        for position, item in enumerate(items):
            cell.set_cell(position, to_foreign(item))
    except Exception:
        cell.release()
        raise
    return cell


def _from_scipy_sparse(matrix: object) -> ForeignValue:
    """Convert a scipy sparse matrix or array.

    Duplicate entries are summed and explicit zeros dropped, so the stored
    pattern is exactly the non-zero pattern.

    :param matrix: Two-dimensional scipy sparse matrix.
    :returns: Sparse value.
    """
    csc: scipy.sparse.csc_matrix = scipy.sparse.csc_matrix(matrix, copy=True)
    csc.sum_duplicates()
    csc.eliminate_zeros()
    csc.sort_indices()

    dtype: np.dtype = csc.dtype
    element_type: ElementType = ElementType.LOGICAL if dtype.kind == "b" else ElementType.DOUBLE
    if dtype.kind not in ("b", "i", "u", "f", "c"):
        raise ConversionTypeError(f"Cannot convert sparse matrix of dtype {dtype}")
    values: np.ndarray = csc.data
    imag_values: np.ndarray | None = None
    if dtype.kind == "c":
        imag_values = values.imag.astype(np.float64)
        values = values.real
    return ForeignValue.create_sparse(
        csc.shape,
        csc.indices,
        csc.indptr,
        values.astype(element_type.dtype),
        element_type=element_type,
        imag_values=imag_values,
    )


def to_foreign(value: object) -> ForeignValue:
    """Convert a host value to a new host-owned foreign value.

    :param value: Host value.
    :returns: Foreign value owning a deep copy of ``value``.
    :raises ConversionTypeError: If the host type has no foreign counterpart.
    """
    if isinstance(value, ForeignValue) is True:
        return value.duplicate()
    if value is None:
        return ForeignValue.create(ElementType.DOUBLE, (0, 0))
    if isinstance(value, (bool, np.bool_)) is True:
        return _from_ndarray(np.asarray(bool(value)))
    if isinstance(value, np.generic) is True and isinstance(value, (np.str_, np.bytes_)) is False:
        return _from_ndarray(np.asarray(value))
    if isinstance(value, int) is True:
        try:
            return _from_ndarray(np.asarray(value, dtype=np.int64))
        except OverflowError as exc:
            raise ConversionTypeError(f"Integer {value} does not fit in int64") from exc
    if isinstance(value, float) is True:
        return _from_ndarray(np.asarray(value, dtype=np.float64))
    if isinstance(value, complex) is True:
        return _from_ndarray(np.asarray(value, dtype=np.complex128))
    if isinstance(value, str) is True:
        return _from_text(value)
    if isinstance(value, np.ndarray) is True:
        if value.dtype.kind in ("b", "i", "u", "f", "c"):
            return _from_ndarray(value)
        if value.dtype.kind in ("U", "S", "O"):
            return _from_object_array(value)
        raise ConversionTypeError(f"Cannot convert numpy array of dtype {value.dtype}")
    if scipy.sparse.issparse(value) is True:
        return _from_scipy_sparse(value)
    if isinstance(value, Mapping) is True or _is_record(value) is True:
        return _from_fields(_record_fields(value))
    if isinstance(value, (list, tuple)) is True:
        return _from_sequence(value)
    raise ConversionTypeError(f"Cannot convert {type(value).__name__} to a foreign value")


def to_foreign_records(records: Iterable[object], layout: RecordLayout = "cell") -> ForeignValue:
    """Convert a sequence of records to a cell of structs or a struct array.

    :param records: Mappings, dataclass instances or namedtuples.
    :param layout: ``"cell"`` for a 1-by-N cell of 1-by-1 structs,
        ``"struct_array"`` for one 1-by-N struct whose elements share fields.
    :returns: Cell or struct value.
    :raises InvalidArgumentError: If the layout is unknown or struct-array
        records have different field sets.
    """
    if layout not in _RECORD_LAYOUTS:
        raise InvalidArgumentError("layout must be one of: " + ", ".join(sorted(_RECORD_LAYOUTS)))
    field_maps: list[dict[str, object]] = [_record_fields(record) for record in records]

    if layout == "cell":
        cell: ForeignValue = ForeignValue.create_cell((1, len(field_maps)))
        try:
            for position, fields in enumerate(field_maps):
                cell.set_cell(position, _from_fields(fields))
        except Exception:
            cell.release()
            raise
        return cell

    names: list[str] = list(field_maps[0].keys()) if len(field_maps) > 0 else []
    for fields in field_maps:
        if set(fields.keys()) != set(names):
            raise InvalidArgumentError("All records in a struct array must have the same fields")
    struct: ForeignValue = ForeignValue.create_struct(names, (1, len(field_maps)))
    try:
        for position, fields in enumerate(field_maps):
            for name in names:
                struct.set_field(name, to_foreign(fields[name]), position)
    except Exception:
        struct.release()
        raise
    return struct


def to_foreign_sparse(
    rows: Sequence[int] | np.ndarray,
    cols: Sequence[int] | np.ndarray,
    values: Sequence[object] | np.ndarray,
    shape: tuple[int, int] | None = None,
) -> ForeignValue:
    """Build a sparse value from zero-based ``(row, col, value)`` triplets.

    :param rows: Row index of each triplet.
    :param cols: Column index of each triplet.
    :param values: Value of each triplet.
    :param shape: Matrix shape; inferred from the largest indices when omitted.
    :returns: Sparse value with duplicates summed and zeros dropped.
    :raises InvalidArgumentError: If the triplet arrays differ in length.
    """
    row_array: np.ndarray = np.asarray(rows, dtype=np.int64).reshape(-1)
    col_array: np.ndarray = np.asarray(cols, dtype=np.int64).reshape(-1)
    value_array: np.ndarray = np.asarray(values).reshape(-1)
    if row_array.shape != col_array.shape or row_array.shape != value_array.shape:
        raise InvalidArgumentError("rows, cols and values must have the same length")
    try:
        coo: scipy.sparse.coo_matrix = scipy.sparse.coo_matrix(
            (value_array, (row_array, col_array)),
            shape=shape,
        )
    except ValueError as exc:
        raise InvalidArgumentError(f"Invalid sparse triplets: {exc}") from exc
    return _from_scipy_sparse(coo)


# -- foreign to host ----------------------------------------------------------


def _non_singleton_count(shape: tuple[int, ...]) -> int:
    """Count dimensions whose size is not one."""
    return sum(1 for dim in shape if dim != 1)


def _dense_array(value: ForeignValue) -> np.ndarray:
    """Copy a dense value into a C-ordered numpy array.

    Char values become ``<U1`` arrays; complex values combine both parts.

    :param value: Numeric, logical or char value.
    :returns: Independent host array.
    """
    with value.data() as view:
        real: np.ndarray = np.array(view, order="C", copy=True)
    if value.kind is ValueKind.CHAR:
        chars: list[str] = [chr(int(code)) for code in real.reshape(-1)]
        return np.array(chars, dtype="<U1").reshape(real.shape)
    if value.is_complex is False:
        return real

    with value.data(imag=True) as imag_view:
        imag: np.ndarray = np.array(imag_view, order="C", copy=True)
    element_type: ElementType | None = value.element_type
    complex_dtype: np.dtype = _COMPLEX_DTYPES.get(element_type, np.dtype(np.complex128))
    combined: np.ndarray = np.empty(real.shape, dtype=complex_dtype)
    combined.real = real
    combined.imag = imag
    return combined


def _default_or_empty(child: ForeignValue | None) -> object:
    """Convert a container element, treating an empty slot as ``[]``.

    :param child: Element or ``None``.
    :returns: Host value.
    """
    if child is None:
        return np.zeros((0, 0))
    return to_default(child)


def _require_kind(value: ForeignValue, kinds: tuple[ValueKind, ...], operation: str) -> None:
    """Check the value kind for one conversion.

    :param value: Foreign value.
    :param kinds: Accepted kinds.
    :param operation: Conversion name for the error message.
    :raises ConversionTypeError: If the kind is not accepted.
    """
    if value.kind not in kinds:
        raise ConversionTypeError(f"{operation} does not accept {value.class_name} values")


def to_scalar(value: ForeignValue) -> bool | int | float | complex | str:
    """Convert a one-element value to a Python scalar.

    :param value: Numeric, logical, char or sparse value.
    :returns: ``bool``, ``int``, ``float``, ``complex`` or a one-character ``str``.
    :raises ShapeError: If the value does not have exactly one element.
    :raises ConversionTypeError: If the value is a cell or struct.
    """
    _require_kind(
        value,
        (ValueKind.NUMERIC, ValueKind.LOGICAL, ValueKind.CHAR, ValueKind.SPARSE),
        "to_scalar",
    )
    if value.numel != 1:
        raise ShapeError(f"to_scalar requires exactly one element, got {format_shape(value.shape)}")
    array: np.ndarray = to_array(value)
    item: object = array.reshape(-1)[0]
    if value.kind is ValueKind.CHAR:
        return str(item)
    if value.kind is ValueKind.LOGICAL:
        return bool(item)
    return item.item()


def to_vector(value: ForeignValue) -> np.ndarray:
    """Convert a value with at most one non-singleton dimension to a 1-D array.

    :param value: Numeric, logical, char or sparse value.
    :returns: One-dimensional host array.
    :raises ShapeError: If more than one dimension is not singleton.
    :raises ConversionTypeError: If the value is a cell or struct.
    """
    _require_kind(
        value,
        (ValueKind.NUMERIC, ValueKind.LOGICAL, ValueKind.CHAR, ValueKind.SPARSE),
        "to_vector",
    )
    if _non_singleton_count(value.shape) > 1:
        raise ShapeError(f"to_vector requires a vector, got {format_shape(value.shape)}")
    return to_array(value).reshape(-1)


def to_array(value: ForeignValue) -> np.ndarray:
    """Convert any value to a full-shape numpy array.

    Cells and structs become object arrays whose elements are converted with
    :func:`to_default` and :func:`to_mapping` respectively.

    :param value: Foreign value.
    :returns: Host array with the value's shape.
    """
    kind: ValueKind = value.kind
    if kind is ValueKind.SPARSE:
        return to_sparse(value).toarray()
    if kind is ValueKind.CELL or kind is ValueKind.STRUCT:
        shape: tuple[int, ...] = value.shape
        result: np.ndarray = np.empty(shape, dtype=object)
        for position in range(value.numel):
            index: tuple[int, ...] = tuple(int(i) for i in np.unravel_index(position, shape, order="F"))
            if kind is ValueKind.CELL:
                result[index] = _default_or_empty(value.get_cell(position))
            else:
                result[index] = _element_mapping(value, position)
        return result
    return _dense_array(value)


def to_string(value: ForeignValue) -> str:
    """Convert a char row (or an empty char value) to ``str``.

    :param value: Char value.
    :returns: Decoded text.
    :raises ConversionTypeError: If the value is not char.
    :raises ShapeError: If the value has more than one row.
    """
    _require_kind(value, (ValueKind.CHAR,), "to_string")
    shape: tuple[int, ...] = value.shape
    if value.numel == 0:
        return ""
    if shape[0] != 1 or _non_singleton_count(shape) > 1:
        raise ShapeError(f"to_string requires a single row of characters, got {format_shape(shape)}")
    with value.data() as view:
        codes: np.ndarray = np.array(view, dtype="<u2").reshape(-1)
    return codes.tobytes().decode("utf-16-le", errors="surrogatepass")


def _element_mapping(value: ForeignValue, position: int) -> dict[str, object]:
    """Convert one struct element to a ``dict``.

    :param value: Struct value.
    :param position: Zero-based element index.
    :returns: Field values in field order.
    """
    return {name: _default_or_empty(value.get_field(name, position)) for name in value.field_names}


def to_mapping(value: ForeignValue) -> dict[str, object]:
    """Convert a 1-by-1 struct to a ``dict`` in field order.

    :param value: Struct value with one element.
    :returns: Field values converted with :func:`to_default`.
    :raises ConversionTypeError: If the value is not a struct.
    :raises ShapeError: If the struct is a struct array; use :func:`to_mappings`.
    """
    _require_kind(value, (ValueKind.STRUCT,), "to_mapping")
    if value.numel != 1:
        raise ShapeError(
            f"to_mapping requires a single struct, got {format_shape(value.shape)}; use to_mappings"
        )
    return _element_mapping(value, 0)


def to_mappings(value: ForeignValue) -> list[dict[str, object]]:
    """Convert a struct array to a list of ``dict``, in column-major order.

    :param value: Struct value of any shape.
    :returns: One mapping per element.
    :raises ConversionTypeError: If the value is not a struct.
    """
    _require_kind(value, (ValueKind.STRUCT,), "to_mappings")
    return [_element_mapping(value, position) for position in range(value.numel)]


def to_list(value: ForeignValue) -> list[object]:
    """Convert a cell vector to a ``list``.

    :param value: Cell value with at most one non-singleton dimension.
    :returns: Elements converted with :func:`to_default`.
    :raises ConversionTypeError: If the value is not a cell.
    :raises ShapeError: If the cell is not a vector.
    """
    _require_kind(value, (ValueKind.CELL,), "to_list")
    if _non_singleton_count(value.shape) > 1 and value.numel > 0:
        raise ShapeError(f"to_list requires a cell vector, got {format_shape(value.shape)}")
    return [_default_or_empty(value.get_cell(position)) for position in range(value.numel)]


def to_sparse(value: ForeignValue) -> scipy.sparse.csc_matrix:
    """Convert a sparse value to ``scipy.sparse.csc_matrix``.

    :param value: Sparse value.
    :returns: Independent compressed-column matrix.
    :raises ConversionTypeError: If the value is not sparse.
    """
    _require_kind(value, (ValueKind.SPARSE,), "to_sparse")
    rows: np.ndarray
    starts: np.ndarray
    rows, starts = value.sparse_indices()
    with value.data() as view:
        data: np.ndarray = np.array(view, copy=True)
    if value.is_complex is True:
        with value.data(imag=True) as imag_view:
            data = data + 1j * np.array(imag_view, copy=True)
    return scipy.sparse.csc_matrix((data, rows, starts), shape=value.shape)


def to_triplets(value: ForeignValue) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return zero-based ``(rows, cols, values)`` of the stored elements.

    :param value: Sparse value.
    :returns: Triplet arrays in column-major order.
    """
    coo: scipy.sparse.coo_matrix = to_sparse(value).tocoo()
    return coo.row.astype(np.int64), coo.col.astype(np.int64), coo.data


def to_default(value: ForeignValue) -> object:
    """Convert using the documented default precedence.

    1. char row or empty char -> ``str``; other char -> ``<U1`` array
    2. numeric/logical with one element -> Python scalar
    3. numeric/logical vector -> 1-D array; otherwise full array
    4. struct with one element -> ``dict``; struct array -> ``list[dict]``
    5. empty cell -> ``[]``; cell vector -> ``list``; otherwise object array
    6. sparse -> ``scipy.sparse.csc_matrix``

    Rule 2 means a 1-by-1 matrix comes back as a scalar. Callers that need
    the array form must use :func:`to_array`.

    :param value: Foreign value.
    :returns: Host value.
    """
    kind: ValueKind = value.kind
    shape: tuple[int, ...] = value.shape
    count: int = value.numel
    if kind is ValueKind.CHAR:
        if count == 0 or (shape[0] == 1 and _non_singleton_count(shape) <= 1):
            return to_string(value)
        return to_array(value)
    if kind is ValueKind.NUMERIC or kind is ValueKind.LOGICAL:
        if count == 1:
            return to_scalar(value)
        if count > 0 and _non_singleton_count(shape) <= 1:
            return to_vector(value)
        return to_array(value)
    if kind is ValueKind.STRUCT:
        if count == 1:
            return to_mapping(value)
        return to_mappings(value)
    if kind is ValueKind.CELL:
        if count == 0:
            return []
        if _non_singleton_count(shape) <= 1:
            return to_list(value)
        return to_array(value)
    return to_sparse(value)
