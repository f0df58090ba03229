"""Ownership-tracked handles to values stored on the foreign heap."""

import contextlib
import logging
import re
import weakref
from collections.abc import Iterable
from collections.abc import Iterator
from collections.abc import Sequence

import numpy as np

from matbridge import protocol
from matbridge.errors import ConversionTypeError
from matbridge.errors import InvalidArgumentError
from matbridge.errors import OwnershipError
from matbridge.errors import ProtocolError
from matbridge.heap import ForeignHeap
from matbridge.heap import HeapBlock
from matbridge.heap import get_heap
from matbridge.types import ElementType
from matbridge.types import Ownership
from matbridge.types import ValueKind
from matbridge.types import format_shape
from matbridge.types import kind_for_element_type
from matbridge.types import normalize_shape
from matbridge.types import shape_numel

logger = logging.getLogger(__name__)

_DENSE_KINDS: frozenset[ValueKind] = frozenset({ValueKind.NUMERIC, ValueKind.LOGICAL, ValueKind.CHAR})
_INDEX_DTYPE: np.dtype = np.dtype(protocol.WIRE_INDEX_DTYPE)
_IDENTIFIER_PATTERN: re.Pattern[str] = re.compile(r"[A-Za-z][A-Za-z0-9_]*")
MAX_NAME_LENGTH: int = 63

Index = int | tuple[int, ...]


def is_valid_name(name: object) -> bool:
    """Report whether ``name`` is a valid variable or field name.

    :param name: Candidate name.
    :returns: ``True`` for identifiers of at most 63 characters starting with a letter.
    """
    if isinstance(name, str) is False:
        return False
    if len(name) > MAX_NAME_LENGTH:
        return False
    return _IDENTIFIER_PATTERN.fullmatch(name) is not None


def _validate_field_names(field_names: Iterable[str]) -> list[str]:
    """Validate a struct field list.

    :param field_names: Candidate field names.
    :returns: Field names as a list.
    :raises InvalidArgumentError: If a name is invalid or repeated.
    """
    if isinstance(field_names, str) is True:
        raise InvalidArgumentError("field_names must be a sequence of strings, not a string")
    names: list[str] = list(field_names)
    seen: set[str] = set()
    for name in names:
        if is_valid_name(name) is False:
            raise InvalidArgumentError(f"Invalid struct field name: {name!r}")
        if name in seen:
            raise InvalidArgumentError(f"Duplicate struct field name: {name!r}")
        seen.add(name)
    return names


def _reclaim_blocks(heap: ForeignHeap, blocks: list[HeapBlock], description: str) -> None:
    """Return the blocks of a value that was garbage-collected without ``release``.

    :param heap: Heap the blocks came from.
    :param blocks: Blocks still owned by the value.
    :param description: Value description for the log message.
    """
    if len(blocks) == 0:
        return
    logger.warning("Reclaiming foreign value that was never released: %s", description)
    for block in blocks:
        if heap.owns(block) is True:
            heap.free(block)
    blocks.clear()


class ForeignValue:
    """Handle to one value stored on the foreign heap.

    Kind, element type, shape and complexity are fixed at creation. Only the
    ownership tag changes: ``HostOwned`` values may be read, mutated and
    released; ``SessionOwned`` values were handed to a session workspace and
    only answer metadata queries; ``Released`` values reject every operation.
    """

    _kind: ValueKind
    _element_type: ElementType | None
    _shape: tuple[int, ...]
    _is_complex: bool
    _ownership: Ownership
    _heap: ForeignHeap
    _real: HeapBlock | None
    _imag: HeapBlock | None
    _row_indices: HeapBlock | None
    _column_starts: HeapBlock | None
    _cells: list["ForeignValue | None"] | None
    _field_names: list[str] | None
    _elements: list[dict[str, "ForeignValue | None"]] | None
    _blocks: list[HeapBlock]
    _parent: "ForeignValue | None"
    _open_views: int
    _session_label: str | None
    _finalizer: weakref.finalize

    def __init__(
        self,
        kind: ValueKind,
        shape: tuple[int, ...],
        element_type: ElementType | None = None,
        is_complex: bool = False,
        heap: ForeignHeap | None = None,
    ) -> None:
        """Initialize an empty handle; use the ``create*`` constructors instead.

        :param kind: Value kind.
        :param shape: Normalized shape.
        :param element_type: Element type for dense and sparse kinds.
        :param is_complex: Whether storage carries an imaginary part.
        :param heap: Heap to allocate from; defaults to the process-wide heap.
        """
        self._kind = kind
        self._element_type = element_type
        self._shape = shape
        self._is_complex = is_complex
        self._ownership = Ownership.HOST_OWNED
        self._heap = get_heap() if heap is None else heap
        self._real = None
        self._imag = None
        self._row_indices = None
        self._column_starts = None
        self._cells = None
        self._field_names = None
        self._elements = None
        self._blocks = []
        self._parent = None
        self._open_views = 0
        self._session_label = None
        description: str = f"{self._type_label()} {format_shape(shape)}"
        self._finalizer = weakref.finalize(self, _reclaim_blocks, self._heap, self._blocks, description)
        self._finalizer.atexit = False

    # -- construction -----------------------------------------------------

    def _allocate(self, nbytes: int) -> HeapBlock:
        """Allocate one block and record it for release.

        :param nbytes: Block size in bytes.
        :returns: New block.
        """
        block: HeapBlock = self._heap.allocate(nbytes)
        self._blocks.append(block)
        return block

    @classmethod
    def create(
        cls,
        element_type: ElementType,
        shape: Iterable[int] | int,
        complex: bool = False,
        heap: ForeignHeap | None = None,
    ) -> "ForeignValue":
        """Create a zero-filled dense value.

        :param element_type: Element type; ``CHAR`` yields a char value.
        :param shape: Dimension sizes.
        :param complex: Whether to allocate an imaginary part (numeric only).
        :param heap: Heap override, mainly for tests.
        :returns: New ``HostOwned`` value.
        :raises AllocationError: If the heap cannot satisfy the request.
        :raises InvalidArgumentError: If a non-numeric type is requested as complex.
        """
        if isinstance(element_type, ElementType) is False:
            raise InvalidArgumentError(f"element_type must be an ElementType, got {element_type!r}")
        normalized: tuple[int, ...] = normalize_shape(shape)
        if complex is True and element_type.is_numeric is False:
            raise InvalidArgumentError(f"{element_type.class_name} values cannot be complex")

        kind: ValueKind = kind_for_element_type(element_type)
        value: ForeignValue = cls(kind, normalized, element_type=element_type, is_complex=complex, heap=heap)
        nbytes: int = shape_numel(normalized) * element_type.element_size
        try:
            value._real = value._allocate(nbytes)
            if complex is True:
                value._imag = value._allocate(nbytes)
        except Exception:
            value._free_blocks()
            value._ownership = Ownership.RELEASED
            raise
        return value

    @classmethod
    def create_char(cls, shape: Iterable[int] | int, heap: ForeignHeap | None = None) -> "ForeignValue":
        """Create a char value filled with code unit zero.

        :param shape: Dimension sizes.
        :param heap: Heap override.
        :returns: New ``HostOwned`` char value.
        """
        return cls.create(ElementType.CHAR, shape, heap=heap)

    @classmethod
    def create_cell(cls, shape: Iterable[int] | int, heap: ForeignHeap | None = None) -> "ForeignValue":
        """Create a cell value with every slot empty.

        :param shape: Dimension sizes.
        :param heap: Heap override.
        :returns: New ``HostOwned`` cell value.
        """
        normalized: tuple[int, ...] = normalize_shape(shape)
        value: ForeignValue = cls(ValueKind.CELL, normalized, heap=heap)
        value._cells = [None] * shape_numel(normalized)
        return value

    @classmethod
    def create_struct(
        cls,
        field_names: Iterable[str],
        shape: Iterable[int] | int = (1, 1),
        heap: ForeignHeap | None = None,
    ) -> "ForeignValue":
        """Create a struct value with every field of every element empty.

        :param field_names: Ordered field names.
        :param shape: Dimension sizes; more than one element makes a struct array.
        :param heap: Heap override.
        :returns: New ``HostOwned`` struct value.
        :raises InvalidArgumentError: If field names are invalid or repeated.
        """
        names: list[str] = _validate_field_names(field_names)
        normalized: tuple[int, ...] = normalize_shape(shape)
        value: ForeignValue = cls(ValueKind.STRUCT, normalized, heap=heap)
        value._field_names = names
        value._elements = [{name: None for name in names} for _ in range(shape_numel(normalized))]
        return value

    @classmethod
    def create_sparse(
        cls,
        shape: Iterable[int],
        row_indices: Sequence[int] | np.ndarray,
        column_starts: Sequence[int] | np.ndarray,
        values: Sequence[object] | np.ndarray,
        element_type: ElementType = ElementType.DOUBLE,
        imag_values: Sequence[float] | np.ndarray | None = None,
        heap: ForeignHeap | None = None,
    ) -> "ForeignValue":
        """Create a sparse matrix from compressed-column arrays.

        Row indices are zero-based and strictly increasing within each column.

        :param shape: Two dimension sizes.
        :param row_indices: Row index of each stored element.
        :param column_starts: Offset of each column's first element, plus the total count.
        :param values: Stored values.
        :param element_type: ``DOUBLE`` or ``LOGICAL``.
        :param imag_values: Imaginary parts for complex ``DOUBLE`` matrices.
        :param heap: Heap override.
        :returns: New ``HostOwned`` sparse value.
        :raises InvalidArgumentError: If the arrays do not describe a valid matrix.
        """
        normalized: tuple[int, ...] = normalize_shape(shape)
        if len(normalized) != 2:
            raise InvalidArgumentError("Sparse values must be two-dimensional")
        if element_type not in (ElementType.DOUBLE, ElementType.LOGICAL):
            raise InvalidArgumentError("Sparse values must be double or logical")
        if imag_values is not None and element_type is not ElementType.DOUBLE:
            raise InvalidArgumentError("Only double sparse values can be complex")

        rows: np.ndarray = np.asarray(row_indices, dtype=_INDEX_DTYPE).reshape(-1)
        starts: np.ndarray = np.asarray(column_starts, dtype=_INDEX_DTYPE).reshape(-1)
        real: np.ndarray = np.asarray(values).reshape(-1).astype(element_type.dtype)
        imag: np.ndarray | None = None
        if imag_values is not None:
            imag = np.asarray(imag_values, dtype=element_type.dtype).reshape(-1)
        _check_compressed_columns(normalized, rows, starts, real, imag)

        value: ForeignValue = cls(
            ValueKind.SPARSE,
            normalized,
            element_type=element_type,
            is_complex=imag is not None,
            heap=heap,
        )
        nnz: int = int(rows.shape[0])
        try:
            value._row_indices = value._allocate(nnz * _INDEX_DTYPE.itemsize)
            value._column_starts = value._allocate(int(starts.shape[0]) * _INDEX_DTYPE.itemsize)
            value._real = value._allocate(nnz * element_type.element_size)
            if imag is not None:
                value._imag = value._allocate(nnz * element_type.element_size)
        except Exception:
            value._free_blocks()
            value._ownership = Ownership.RELEASED
            raise
        _block_view(value._row_indices, _INDEX_DTYPE)[:] = rows
        _block_view(value._column_starts, _INDEX_DTYPE)[:] = starts
        _block_view(value._real, element_type.dtype)[:] = real
        if imag is not None and value._imag is not None:
            _block_view(value._imag, element_type.dtype)[:] = imag
        return value

    # -- ownership ----------------------------------------------------------

    def _type_label(self) -> str:
        """Return ``double``, ``cell`` and so on for messages."""
        if self._element_type is not None:
            return self._element_type.class_name
        return self._kind.value

    def _require_not_released(self) -> None:
        """Reject use after release.

        :raises OwnershipError: If the value is released.
        """
        if self._ownership is Ownership.RELEASED:
            raise OwnershipError("Foreign value has been released")

    def _require_host_owned(self) -> None:
        """Reject data access unless the host owns the value.

        :raises OwnershipError: If the value is released or session-owned.
        """
        self._require_not_released()
        if self._ownership is Ownership.SESSION_OWNED:
            raise OwnershipError(
                f"Foreign value was transferred to session {self._session_label!r} "
                + "and is no longer accessible from the host"
            )

    def _require_transferable(self) -> None:
        """Reject release or transfer of values the host cannot hand off.

        :raises OwnershipError: If the value is not host-owned, is borrowed, or has open views.
        """
        self._require_host_owned()
        if self._parent is not None:
            raise OwnershipError("Foreign value is owned by a container value")
        if self._open_views > 0:
            raise OwnershipError("Foreign value has open data views")

    def _children(self) -> list["ForeignValue"]:
        """Return the directly contained values."""
        children: list[ForeignValue] = []
        if self._cells is not None:
            children.extend(child for child in self._cells if child is not None)
        if self._elements is not None:
            for element in self._elements:
                children.extend(child for child in element.values() if child is not None)
        return children

    def _free_blocks(self) -> None:
        """Return this value's own blocks to the heap."""
        self._finalizer.detach()
        blocks: list[HeapBlock] = list(self._blocks)
        self._blocks.clear()
        for block in blocks:
            if self._heap.owns(block) is True:
                self._heap.free(block)
        self._real = None
        self._imag = None
        self._row_indices = None
        self._column_starts = None

    def _retire(self, ownership: Ownership) -> None:
        """Free this value and its children and move them to ``ownership``.

        :param ownership: ``RELEASED`` or ``SESSION_OWNED``.
        """
        for child in self._children():
            child._retire(ownership)
        self._free_blocks()
        if self._cells is not None:
            self._cells = [None] * len(self._cells)
        if self._elements is not None:
            self._elements = [{name: None for name in element} for element in self._elements]
        self._ownership = ownership

    def release(self) -> None:
        """Return this value's memory to the foreign heap.

        Contained values are released with it.

        :raises OwnershipError: If the value is released, session-owned,
            borrowed by a container, or has an open data view.
        """
        self._require_transferable()
        self._retire(Ownership.RELEASED)

    def mark_transferred(self, session_label: str) -> None:
        """Record that a session workspace took over this value.

        Host memory is returned immediately; the workspace holds its own copy.

        :param session_label: Session name, used in later error messages.
        :raises OwnershipError: If the value cannot be handed off.
        """
        self._require_transferable()
        self._session_label = session_label
        self._retire(Ownership.SESSION_OWNED)

    def check_transferable(self) -> None:
        """Raise unless :meth:`mark_transferred` would succeed.

        :raises OwnershipError: If the value cannot be handed off.
        """
        self._require_transferable()

    def __enter__(self) -> "ForeignValue":
        """Return this value for use in a ``with`` block.

        :returns: This value.
        """
        return self

    def __exit__(self, exc_type: object, exc_value: object, traceback: object) -> None:
        """Release the value if the host still owns it.

        :param exc_type: Exception type, if any.
        :param exc_value: Exception value, if any.
        :param traceback: Traceback, if any.
        """
        if self._ownership is Ownership.HOST_OWNED and self._parent is None:
            self.release()

    # -- metadata -----------------------------------------------------------

    @property
    def ownership(self) -> Ownership:
        """Current ownership tag. Always readable."""
        return self._ownership

    @property
    def is_released(self) -> bool:
        """Whether :meth:`release` has run."""
        return self._ownership is Ownership.RELEASED

    @property
    def is_borrowed(self) -> bool:
        """Whether a container value owns this value."""
        self._require_not_released()
        return self._parent is not None

    @property
    def kind(self) -> ValueKind:
        """Value kind."""
        self._require_not_released()
        return self._kind

    @property
    def element_type(self) -> ElementType | None:
        """Element type; ``None`` for cells and structs."""
        self._require_not_released()
        return self._element_type

    @property
    def class_name(self) -> str:
        """Engine class name: ``double``, ``char``, ``cell``, ``struct`` and so on."""
        self._require_not_released()
        return self._type_label()

    @property
    def shape(self) -> tuple[int, ...]:
        """Dimension sizes, rank two or more."""
        self._require_not_released()
        return self._shape

    @property
    def ndims(self) -> int:
        """Number of dimensions."""
        self._require_not_released()
        return len(self._shape)

    @property
    def numel(self) -> int:
        """Number of elements."""
        self._require_not_released()
        return shape_numel(self._shape)

    @property
    def is_complex(self) -> bool:
        """Whether storage carries imaginary parts."""
        self._require_not_released()
        return self._is_complex

    @property
    def is_sparse(self) -> bool:
        """Whether the value is a sparse matrix."""
        self._require_not_released()
        return self._kind is ValueKind.SPARSE

    @property
    def is_empty(self) -> bool:
        """Whether any dimension is zero."""
        self._require_not_released()
        return shape_numel(self._shape) == 0

    @property
    def element_size(self) -> int:
        """Bytes per stored element; container kinds report a handle size of 8."""
        self._require_not_released()
        if self._element_type is None:
            return 8
        return self._element_type.element_size

    @property
    def nnz(self) -> int:
        """Number of stored elements of a sparse value.

        :raises ConversionTypeError: If the value is not sparse.
        """
        self._require_host_owned()
        if self._kind is not ValueKind.SPARSE or self._row_indices is None:
            raise ConversionTypeError("nnz is only defined for sparse values")
        return self._row_indices.nbytes // _INDEX_DTYPE.itemsize

    @property
    def field_names(self) -> tuple[str, ...]:
        """Ordered struct field names.

        :raises ConversionTypeError: If the value is not a struct.
        """
        self._require_not_released()
        if self._field_names is None:
            raise ConversionTypeError(f"{self._type_label()} values have no fields")
        return tuple(self._field_names)

    def __repr__(self) -> str:
        """Return a short description that never touches released storage.

        :returns: Representation string.
        """
        sparse_label: str = "sparse " if self._kind is ValueKind.SPARSE else ""
        complex_label: str = " complex" if self._is_complex is True else ""
        return (
            f"<ForeignValue {sparse_label}{self._type_label()} {format_shape(self._shape)}"
            + f"{complex_label} {self._ownership.value}>"
        )

    # -- data access --------------------------------------------------------

    @contextlib.contextmanager
    def data(self, imag: bool = False) -> Iterator[np.ndarray]:
        """Open a writable numpy view over the value's storage.

        Dense values yield an array with the value's shape in column-major
        order; sparse values yield the one-dimensional stored values. The view
        becomes read-only when the ``with`` block ends, and released storage
        is zeroed.

        :param imag: Yield the imaginary part instead of the real part.
        :yields: Array aliasing the foreign block.
        :raises ConversionTypeError: If the value has no element storage.
        :raises OwnershipError: If the value is not host-owned.
        """
        self._require_host_owned()
        if self._kind not in _DENSE_KINDS and self._kind is not ValueKind.SPARSE:
            raise ConversionTypeError(f"{self._kind.value} values have no element storage")
        if imag is True and self._is_complex is False:
            raise ConversionTypeError("Value has no imaginary part")
        element_type: ElementType | None = self._element_type
        block: HeapBlock | None = self._imag if imag is True else self._real
        if element_type is None or block is None:
            raise OwnershipError("Foreign value has no live storage")

        view: np.ndarray = _block_view(block, element_type.dtype)
        if self._kind is not ValueKind.SPARSE:
            view = view.reshape(self._shape, order="F")
        self._open_views += 1
        try:
            yield view
        finally:
            view.flags.writeable = False
            self._open_views -= 1

    def sparse_indices(self) -> tuple[np.ndarray, np.ndarray]:
        """Return copies of the compressed-column index arrays.

        :returns: Tuple of ``(row_indices, column_starts)``.
        :raises ConversionTypeError: If the value is not sparse.
        """
        self._require_host_owned()
        if self._row_indices is None or self._column_starts is None:
            raise ConversionTypeError("Only sparse values have index arrays")
        rows: np.ndarray = _block_view(self._row_indices, _INDEX_DTYPE).copy()
        starts: np.ndarray = _block_view(self._column_starts, _INDEX_DTYPE).copy()
        return rows, starts

    # -- containers ---------------------------------------------------------

    def _linear_index(self, index: Index) -> int:
        """Convert a zero-based index to a column-major linear index.

        :param index: Linear index or subscript tuple.
        :returns: Linear index.
        :raises InvalidArgumentError: If the index is out of range.
        """
        count: int = shape_numel(self._shape)
        if isinstance(index, tuple) is True:
            if len(index) > len(self._shape):
                raise InvalidArgumentError(f"Too many subscripts for shape {format_shape(self._shape)}")
            padded: tuple[int, ...] = tuple(index) + (0,) * (len(self._shape) - len(index))
            try:
                return int(np.ravel_multi_index(padded, self._shape, order="F"))
            except ValueError as exc:
                raise InvalidArgumentError(
                    f"Subscript {index} out of range for shape {format_shape(self._shape)}"
                ) from exc
        if isinstance(index, (int, np.integer)) is False or isinstance(index, bool) is True:
            raise InvalidArgumentError(f"Index must be an int or a tuple of ints, got {index!r}")
        linear: int = int(index)
        if linear < 0 or linear >= count:
            raise InvalidArgumentError(f"Index {linear} out of range for {count} elements")
        return linear

    def _adopt(self, child: "ForeignValue") -> None:
        """Take ownership of ``child``.

        :param child: Value to move into this container.
        :raises OwnershipError: If the child cannot be handed off.
        :raises InvalidArgumentError: If adopting would create a cycle.
        """
        if isinstance(child, ForeignValue) is False:
            raise InvalidArgumentError(f"Container elements must be ForeignValue, got {type(child).__name__}")
        child._require_transferable()
        ancestor: ForeignValue | None = self
        while ancestor is not None:
            if ancestor is child:
                raise InvalidArgumentError("A value cannot contain itself")
            ancestor = ancestor._parent
        if child._heap is not self._heap:
            raise InvalidArgumentError("Container and element must live on the same heap")
        child._parent = self

    def _disown(self, child: "ForeignValue | None") -> None:
        """Release a child that is being replaced.

        :param child: Previous occupant of a slot.
        """
        if child is None:
            return
        child._parent = None
        child.release()

    def get_cell(self, index: Index) -> "ForeignValue | None":
        """Return the value stored in one cell slot.

        The result is borrowed: it stays owned by this cell.

        :param index: Zero-based linear index or subscript tuple.
        :returns: Stored value, or ``None`` for an empty slot.
        :raises ConversionTypeError: If this is not a cell.
        """
        self._require_host_owned()
        if self._cells is None:
            raise ConversionTypeError(f"{self._type_label()} values have no cells")
        return self._cells[self._linear_index(index)]

    def set_cell(self, index: Index, value: "ForeignValue | None") -> None:
        """Move ``value`` into one cell slot, releasing the previous occupant.

        :param index: Zero-based linear index or subscript tuple.
        :param value: Host-owned, unborrowed value, or ``None`` to empty the slot.
        :raises ConversionTypeError: If this is not a cell.
        """
        self._require_host_owned()
        if self._cells is None:
            raise ConversionTypeError(f"{self._type_label()} values have no cells")
        linear: int = self._linear_index(index)
        if value is not None:
            self._adopt(value)
        previous: ForeignValue | None = self._cells[linear]
        self._cells[linear] = value
        if previous is not value:
            self._disown(previous)

    def get_field(self, name: str, index: Index = 0) -> "ForeignValue | None":
        """Return the value of one field of one struct element.

        The result is borrowed: it stays owned by this struct.

        :param name: Field name.
        :param index: Zero-based element index.
        :returns: Stored value, or ``None`` when unset.
        :raises ConversionTypeError: If this is not a struct.
        :raises InvalidArgumentError: If the field does not exist.
        """
        self._require_host_owned()
        if self._elements is None or self._field_names is None:
            raise ConversionTypeError(f"{self._type_label()} values have no fields")
        if name not in self._field_names:
            raise InvalidArgumentError(f"Struct has no field {name!r}")
        return self._elements[self._linear_index(index)][name]

    def set_field(self, name: str, value: "ForeignValue | None", index: Index = 0) -> None:
        """Move ``value`` into one field of one struct element.

        :param name: Existing field name.
        :param value: Host-owned, unborrowed value, or ``None`` to clear the field.
        :param index: Zero-based element index.
        :raises ConversionTypeError: If this is not a struct.
        :raises InvalidArgumentError: If the field does not exist.
        """
        self._require_host_owned()
        if self._elements is None or self._field_names is None:
            raise ConversionTypeError(f"{self._type_label()} values have no fields")
        if name not in self._field_names:
            raise InvalidArgumentError(f"Struct has no field {name!r}")
        element: dict[str, ForeignValue | None] = self._elements[self._linear_index(index)]
        if value is not None:
            self._adopt(value)
        previous: ForeignValue | None = element[name]
        element[name] = value
        if previous is not value:
            self._disown(previous)

    def add_field(self, name: str) -> int:
        """Append a field to every element of this struct.

        :param name: New field name.
        :returns: Position of the new field.
        :raises InvalidArgumentError: If the name is invalid or already present.
        """
        self._require_host_owned()
        if self._elements is None or self._field_names is None:
            raise ConversionTypeError(f"{self._type_label()} values have no fields")
        _validate_field_names([*self._field_names, name])
        self._field_names.append(name)
        for element in self._elements:
            element[name] = None
        return len(self._field_names) - 1

    # -- copying and comparison ---------------------------------------------

    def duplicate(self) -> "ForeignValue":
        """Return a deep, host-owned copy.

        :returns: Independent value with identical contents.
        """
        return ForeignValue.from_wire(self.to_wire(), heap=self._heap)

    def __eq__(self, other: object) -> bool:
        """Compare kind, type, shape and contents.

        Struct field order is ignored; float contents are compared bitwise.

        :param other: Comparator value.
        :returns: Equality result.
        """
        if isinstance(other, ForeignValue) is False:
            return NotImplemented
        self._require_host_owned()
        other._require_host_owned()
        return _wire_equal(self.to_wire(), other.to_wire())

    __hash__ = None  # type: ignore[assignment]

    # -- wire format --------------------------------------------------------

    def to_wire(self) -> dict[str, object]:
        """Encode this value for the session channel.

        :returns: Wire dictionary (see :mod:`matbridge.protocol`).
        """
        self._require_host_owned()
        wire: dict[str, object] = {
            protocol.WIRE_KIND: self._kind.value,
            protocol.WIRE_SHAPE: list(self._shape),
            protocol.WIRE_COMPLEX: self._is_complex,
        }
        if self._element_type is not None:
            wire[protocol.WIRE_CLASS] = self._element_type.class_name
        if self._real is not None:
            wire[protocol.WIRE_REAL] = bytes(self._real.buffer)
        if self._imag is not None:
            wire[protocol.WIRE_IMAG] = bytes(self._imag.buffer)
        if self._row_indices is not None and self._column_starts is not None:
            wire[protocol.WIRE_ROW_INDICES] = bytes(self._row_indices.buffer)
            wire[protocol.WIRE_COLUMN_STARTS] = bytes(self._column_starts.buffer)
        if self._cells is not None:
            wire[protocol.WIRE_CELLS] = [None if cell is None else cell.to_wire() for cell in self._cells]
        if self._elements is not None and self._field_names is not None:
            wire[protocol.WIRE_FIELDS] = list(self._field_names)
            wire[protocol.WIRE_ELEMENTS] = [
                [None if element[name] is None else element[name].to_wire() for name in self._field_names]
                for element in self._elements
            ]
        return wire

    @classmethod
    def from_wire(cls, wire: object, heap: ForeignHeap | None = None) -> "ForeignValue":
        """Decode a wire dictionary into a new host-owned value.

        :param wire: Wire dictionary.
        :param heap: Heap override.
        :returns: New value.
        :raises ProtocolError: If the payload is malformed.
        """
        payload: dict[str, object] = protocol.validate_wire_value(wire)
        kind: ValueKind = ValueKind(payload[protocol.WIRE_KIND])
        shape: tuple[int, ...] = tuple(payload[protocol.WIRE_SHAPE])
        count: int = shape_numel(shape)

        if kind is ValueKind.CELL:
            cells_obj: object = payload.get(protocol.WIRE_CELLS)
            if isinstance(cells_obj, list) is False or len(cells_obj) != count:
                raise ProtocolError("Cell wire value must carry one entry per element")
            cell: ForeignValue = cls.create_cell(shape, heap=heap)
            try:
                for position, item in enumerate(cells_obj):
                    if item is not None:
                        cell.set_cell(position, cls.from_wire(item, heap=heap))
            except Exception:
                cell.release()
                raise
            return cell

        if kind is ValueKind.STRUCT:
            fields_obj: object = payload.get(protocol.WIRE_FIELDS)
            elements_obj: object = payload.get(protocol.WIRE_ELEMENTS)
            if isinstance(fields_obj, list) is False or isinstance(elements_obj, list) is False:
                raise ProtocolError("Struct wire value must carry fields and elements")
            if len(elements_obj) != count:
                raise ProtocolError("Struct wire value must carry one entry per element")
            struct: ForeignValue = cls.create_struct(fields_obj, shape, heap=heap)
            try:
                for position, element_obj in enumerate(elements_obj):
                    if isinstance(element_obj, list) is False or len(element_obj) != len(fields_obj):
                        raise ProtocolError("Struct wire element must carry one entry per field")
                    for name, item in zip(fields_obj, element_obj):
                        if item is not None:
                            struct.set_field(name, cls.from_wire(item, heap=heap), position)
            except Exception:
                struct.release()
                raise
            return struct

        class_obj: object = payload.get(protocol.WIRE_CLASS)
        if isinstance(class_obj, str) is False:
            raise ProtocolError("Wire value is missing its element class")
        element_type: ElementType = ElementType.from_class_name(class_obj)
        is_complex: bool = payload.get(protocol.WIRE_COMPLEX) is True
        real_bytes: bytes = _require_bytes(payload, protocol.WIRE_REAL)
        imag_bytes: bytes | None = None
        if is_complex is True:
            imag_bytes = _require_bytes(payload, protocol.WIRE_IMAG)

        if kind is ValueKind.SPARSE:
            rows: np.ndarray = np.frombuffer(_require_bytes(payload, protocol.WIRE_ROW_INDICES), dtype=_INDEX_DTYPE)
            starts: np.ndarray = np.frombuffer(
                _require_bytes(payload, protocol.WIRE_COLUMN_STARTS), dtype=_INDEX_DTYPE
            )
            values: np.ndarray = np.frombuffer(real_bytes, dtype=element_type.dtype)
            imag_values: np.ndarray | None = None
            if imag_bytes is not None:
                imag_values = np.frombuffer(imag_bytes, dtype=element_type.dtype)
            try:
                return cls.create_sparse(
                    shape, rows, starts, values,
                    element_type=element_type, imag_values=imag_values, heap=heap,
                )
            except InvalidArgumentError as exc:
                raise ProtocolError(f"Malformed sparse wire value: {exc}") from exc

        if kind_for_element_type(element_type) is not kind:
            raise ProtocolError(f"Wire kind {kind.value} does not match class {element_type.class_name}")
        expected: int = count * element_type.element_size
        if len(real_bytes) != expected or (imag_bytes is not None and len(imag_bytes) != expected):
            raise ProtocolError(f"Wire value data size does not match shape {format_shape(shape)}")
        dense: ForeignValue = cls.create(element_type, shape, complex=is_complex, heap=heap)
        if dense._real is not None:
            dense._real.buffer[:] = real_bytes
        if imag_bytes is not None and dense._imag is not None:
            dense._imag.buffer[:] = imag_bytes
        return dense


def _block_view(block: HeapBlock, dtype: np.dtype) -> np.ndarray:
    """Return a one-dimensional writable array over ``block``.

    :param block: Heap block.
    :param dtype: Element dtype.
    :returns: Array aliasing the block (a fresh empty array for empty blocks).
    """
    if block.nbytes == 0:
        return np.zeros(0, dtype=dtype)
    return np.frombuffer(block.buffer, dtype=dtype)


def _require_bytes(payload: dict[str, object], field_name: str) -> bytes:
    """Extract one bytes field from a wire value.

    :param payload: Wire value.
    :param field_name: Field to read.
    :returns: Field value.
    :raises ProtocolError: If the field is missing or not bytes.
    """
    value: object = payload.get(field_name)
    if isinstance(value, (bytes, bytearray)) is False:
        raise ProtocolError(f"Wire value field {field_name!r} must be bytes")
    return bytes(value)


def _check_compressed_columns(
    shape: tuple[int, ...],
    rows: np.ndarray,
    starts: np.ndarray,
    values: np.ndarray,
    imag: np.ndarray | None,
) -> None:
    """Validate compressed-column sparse arrays.

    :param shape: Matrix shape.
    :param rows: Row indices.
    :param starts: Column start offsets.
    :param values: Stored values.
    :param imag: Optional imaginary parts.
    :raises InvalidArgumentError: If the arrays are inconsistent.
    """
    row_count: int = shape[0]
    column_count: int = shape[1]
    nnz: int = int(rows.shape[0])
    if int(starts.shape[0]) != column_count + 1:
        raise InvalidArgumentError("column_starts must have one entry per column plus one")
    if int(starts[0]) != 0 or int(starts[-1]) != nnz:
        raise InvalidArgumentError("column_starts must begin at 0 and end at the stored count")
    if bool(np.any(np.diff(starts) < 0)) is True:
        raise InvalidArgumentError("column_starts must be non-decreasing")
    if int(values.shape[0]) != nnz or (imag is not None and int(imag.shape[0]) != nnz):
        raise InvalidArgumentError("values must have one entry per row index")
    if nnz > 0 and (int(rows.min()) < 0 or int(rows.max()) >= row_count):
        raise InvalidArgumentError("row_indices out of range")
    for column in range(column_count):
        column_rows: np.ndarray = rows[int(starts[column]):int(starts[column + 1])]
        if bool(np.any(np.diff(column_rows) <= 0)) is True:
            raise InvalidArgumentError("row_indices must be strictly increasing within each column")


def _wire_equal(left: object, right: object) -> bool:
    """Compare two wire values, ignoring struct field order.

    :param left: First wire value or ``None``.
    :param right: Second wire value or ``None``.
    :returns: ``True`` when both describe the same value.
    """
    if left is None or right is None:
        return left is right
    if isinstance(left, dict) is False or isinstance(right, dict) is False:
        return False
    if left.get(protocol.WIRE_KIND) != right.get(protocol.WIRE_KIND):
        return False
    if list(left.get(protocol.WIRE_SHAPE, [])) != list(right.get(protocol.WIRE_SHAPE, [])):
        return False

    kind: object = left.get(protocol.WIRE_KIND)
    if kind == ValueKind.CELL.value:
        left_cells: list[object] = left.get(protocol.WIRE_CELLS, [])
        right_cells: list[object] = right.get(protocol.WIRE_CELLS, [])
        return all(_wire_equal(a, b) for a, b in zip(left_cells, right_cells))

    if kind == ValueKind.STRUCT.value:
        left_fields: list[str] = left.get(protocol.WIRE_FIELDS, [])
        right_fields: list[str] = right.get(protocol.WIRE_FIELDS, [])
        if set(left_fields) != set(right_fields):
            return False
        left_elements: list[list[object]] = left.get(protocol.WIRE_ELEMENTS, [])
        right_elements: list[list[object]] = right.get(protocol.WIRE_ELEMENTS, [])
        for left_element, right_element in zip(left_elements, right_elements):
            right_by_name: dict[str, object] = dict(zip(right_fields, right_element))
            for name, item in zip(left_fields, left_element):
                if _wire_equal(item, right_by_name[name]) is False:
                    return False
        return True

    compared_fields: tuple[str, ...] = (
        protocol.WIRE_CLASS,
        protocol.WIRE_COMPLEX,
        protocol.WIRE_REAL,
        protocol.WIRE_IMAG,
        protocol.WIRE_ROW_INDICES,
        protocol.WIRE_COLUMN_STARTS,
    )
    for field_name in compared_fields:
        if left.get(field_name) != right.get(field_name):
            return False
    return True
