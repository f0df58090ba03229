"""Tests for the foreign heap and foreign-value ownership rules."""

import numpy as np
import pytest

from matbridge import AllocationError
from matbridge import ElementType
from matbridge import ForeignValue
from matbridge import InvalidArgumentError
from matbridge import Ownership
from matbridge import OwnershipError
from matbridge import ValueKind
from matbridge.heap import ForeignHeap
from matbridge.types import normalize_shape
from matbridge.value import is_valid_name


@pytest.fixture()
def heap() -> ForeignHeap:
    """Provide a private heap so block accounting is isolated per test.

    :returns: Empty heap.
    """
    return ForeignHeap()


def test_normalize_shape_pads_to_two_dimensions() -> None:
    """Scalars, bare integers and one-element shapes gain a second dimension."""
    assert normalize_shape(()) == (1, 1)
    assert normalize_shape(3) == (3, 3)
    assert normalize_shape((4,)) == (4, 1)
    assert normalize_shape((2, 3, 1)) == (2, 3, 1)
    with pytest.raises(InvalidArgumentError):
        normalize_shape((2, -1))


def test_name_validation() -> None:
    """Names start with a letter, use word characters and stay under the length limit."""
    assert is_valid_name("x1_y") is True
    assert is_valid_name("_x") is False
    assert is_valid_name("1x") is False
    assert is_valid_name("a" * 63) is True
    assert is_valid_name("a" * 64) is False
    assert is_valid_name(None) is False


def test_create_allocates_zeroed_column_major_storage(heap: ForeignHeap) -> None:
    """Dense values are zero-filled and laid out column-major."""
    value: ForeignValue = ForeignValue.create(ElementType.DOUBLE, (2, 3), heap=heap)
    assert value.kind is ValueKind.NUMERIC
    assert value.shape == (2, 3)
    assert value.numel == 6
    assert heap.live_blocks == 1
    assert heap.live_bytes == 48

    with value.data() as view:
        assert view.shape == (2, 3)
        assert bool(np.all(view == 0)) is True
        view[1, 0] = 5.0
    with value.data() as view:
        assert view.flags["F_CONTIGUOUS"] is True
        assert float(view[1, 0]) == 5.0

    value.release()
    assert heap.live_blocks == 0
    assert value.is_released is True


def test_complex_requires_numeric_type(heap: ForeignHeap) -> None:
    """Only numeric element types can carry an imaginary part."""
    with pytest.raises(InvalidArgumentError):
        ForeignValue.create(ElementType.LOGICAL, (1, 1), complex=True, heap=heap)
    value: ForeignValue = ForeignValue.create(ElementType.SINGLE, (1, 2), complex=True, heap=heap)
    assert heap.live_blocks == 2
    with value.data(imag=True) as imag_view:
        imag_view[0, 1] = 2.5
    value.release()
    assert heap.live_blocks == 0


def test_heap_limit_raises_allocation_error() -> None:
    """Allocations beyond the configured limit fail without leaking blocks."""
    limited: ForeignHeap = ForeignHeap(limit_bytes=64)
    with pytest.raises(AllocationError):
        ForeignValue.create(ElementType.DOUBLE, (3, 3), heap=limited)
    assert limited.live_blocks == 0

    small: ForeignValue = ForeignValue.create(ElementType.DOUBLE, (2, 2), heap=limited)
    assert limited.live_bytes == 32
    small.release()


def test_released_value_rejects_every_operation(heap: ForeignHeap) -> None:
    """After release only the ownership tag and repr stay available."""
    value: ForeignValue = ForeignValue.create(ElementType.INT32, (1, 4), heap=heap)
    value.release()

    assert value.ownership is Ownership.RELEASED
    assert "Released" in repr(value)
    with pytest.raises(OwnershipError):
        value.release()
    with pytest.raises(OwnershipError):
        _ = value.shape
    with pytest.raises(OwnershipError):
        with value.data():
            pass


def test_release_is_blocked_while_a_view_is_open(heap: ForeignHeap) -> None:
    """Storage cannot be returned while a data view aliases it."""
    value: ForeignValue = ForeignValue.create(ElementType.UINT8, (2, 2), heap=heap)
    with value.data():
        with pytest.raises(OwnershipError):
            value.release()
    value.release()


def test_escaped_view_cannot_touch_released_storage(heap: ForeignHeap) -> None:
    """A view kept past its ``with`` block is read-only and sees zeroed storage after release."""
    value: ForeignValue = ForeignValue.create(ElementType.DOUBLE, (2, 2), heap=heap)
    with value.data() as view:
        view[...] = 7.0
        escaped: np.ndarray = view
    assert escaped.flags.writeable is False
    value.release()

    with pytest.raises(ValueError):
        escaped[0, 0] = 42.0
    assert bool(np.all(escaped == 0)) is True
    assert heap.live_bytes == 0


def test_repr_labels_sparse_values(heap: ForeignHeap) -> None:
    """Sparse and dense values of the same class and shape print differently."""
    sparse: ForeignValue = ForeignValue.create_sparse((2, 2), [0], [0, 1, 1], [1.0], heap=heap)
    dense: ForeignValue = ForeignValue.create(ElementType.DOUBLE, (2, 2), heap=heap)
    try:
        assert repr(sparse).startswith("<ForeignValue sparse double 2x2")
        assert repr(dense).startswith("<ForeignValue double 2x2")
    finally:
        sparse.release()
        dense.release()


def test_transferred_value_only_answers_metadata(heap: ForeignHeap) -> None:
    """A session-owned value keeps metadata but refuses data access and release."""
    value: ForeignValue = ForeignValue.create(ElementType.DOUBLE, (3, 1), heap=heap)
    value.mark_transferred("engine-1")

    assert value.ownership is Ownership.SESSION_OWNED
    assert value.shape == (3, 1)
    assert heap.live_blocks == 0
    with pytest.raises(OwnershipError, match="engine-1"):
        with value.data():
            pass
    with pytest.raises(OwnershipError):
        value.release()


def test_cell_moves_children_and_releases_them_together(heap: ForeignHeap) -> None:
    """Cell slots own their children; releasing the cell frees the whole tree."""
    cell: ForeignValue = ForeignValue.create_cell((1, 2), heap=heap)
    child: ForeignValue = ForeignValue.create(ElementType.DOUBLE, (1, 1), heap=heap)
    cell.set_cell(1, child)

    assert cell.get_cell(0) is None
    assert cell.get_cell(1) is child
    assert child.is_borrowed is True
    with pytest.raises(OwnershipError):
        child.release()
    with pytest.raises(InvalidArgumentError):
        cell.get_cell(2)

    cell.release()
    assert child.is_released is True
    assert heap.live_blocks == 0


def test_replacing_a_cell_slot_releases_the_previous_child(heap: ForeignHeap) -> None:
    """Overwriting a slot frees whatever was stored there."""
    cell: ForeignValue = ForeignValue.create_cell((1, 1), heap=heap)
    first: ForeignValue = ForeignValue.create(ElementType.DOUBLE, (1, 1), heap=heap)
    second: ForeignValue = ForeignValue.create(ElementType.DOUBLE, (1, 1), heap=heap)
    cell.set_cell(0, first)
    cell.set_cell(0, second)
    assert first.is_released is True
    assert heap.live_blocks == 1
    cell.release()


def test_container_cannot_contain_itself(heap: ForeignHeap) -> None:
    """Adopting an ancestor is rejected."""
    outer: ForeignValue = ForeignValue.create_cell((1, 1), heap=heap)
    inner: ForeignValue = ForeignValue.create_cell((1, 1), heap=heap)
    outer.set_cell(0, inner)
    with pytest.raises(InvalidArgumentError):
        inner.set_cell(0, outer)
    outer.release()


def test_struct_fields(heap: ForeignHeap) -> None:
    """Struct arrays share one field list across elements."""
    struct: ForeignValue = ForeignValue.create_struct(["a", "b"], (1, 2), heap=heap)
    assert struct.field_names == ("a", "b")
    struct.set_field("b", ForeignValue.create(ElementType.DOUBLE, (1, 1), heap=heap), 1)
    assert struct.get_field("b", 0) is None
    assert struct.get_field("b", 1) is not None

    position: int = struct.add_field("c")
    assert position == 2
    assert struct.get_field("c", 1) is None
    with pytest.raises(InvalidArgumentError):
        struct.add_field("a")
    with pytest.raises(InvalidArgumentError):
        struct.get_field("missing")
    with pytest.raises(InvalidArgumentError):
        ForeignValue.create_struct(["x", "x"], heap=heap)
    struct.release()
    assert heap.live_blocks == 0


def test_sparse_construction_validates_compressed_columns(heap: ForeignHeap) -> None:
    """Row indices must be in range and increase within each column."""
    sparse: ForeignValue = ForeignValue.create_sparse((3, 2), [0, 2, 1], [0, 2, 3], [1.0, 2.0, 3.0], heap=heap)
    assert sparse.nnz == 3
    rows, starts = sparse.sparse_indices()
    assert rows.tolist() == [0, 2, 1]
    assert starts.tolist() == [0, 2, 3]
    sparse.release()

    with pytest.raises(InvalidArgumentError):
        ForeignValue.create_sparse((3, 2), [2, 0, 1], [0, 2, 3], [1.0, 2.0, 3.0], heap=heap)
    with pytest.raises(InvalidArgumentError):
        ForeignValue.create_sparse((3, 2), [0, 5], [0, 1, 2], [1.0, 2.0], heap=heap)
    with pytest.raises(InvalidArgumentError):
        ForeignValue.create_sparse((3, 2, 1), [], [0, 0, 0], [], heap=heap)
    assert heap.live_blocks == 0


def test_duplicate_and_equality(heap: ForeignHeap) -> None:
    """Copies are deep and compare equal; struct field order is ignored."""
    left: ForeignValue = ForeignValue.create_struct(["a", "b"], heap=heap)
    right: ForeignValue = ForeignValue.create_struct(["b", "a"], heap=heap)
    assert left == right

    copy: ForeignValue = left.duplicate()
    copy.set_field("a", ForeignValue.create(ElementType.DOUBLE, (1, 1), heap=heap))
    assert copy != left

    for value in (left, right, copy):
        value.release()
    assert heap.live_blocks == 0


def test_context_manager_releases_host_owned_values(heap: ForeignHeap) -> None:
    """Leaving a ``with`` block releases the value unless it was handed off."""
    with ForeignValue.create(ElementType.DOUBLE, (2, 2), heap=heap) as value:
        assert heap.live_blocks == 1
    assert value.is_released is True

    with ForeignValue.create(ElementType.DOUBLE, (2, 2), heap=heap) as moved:
        moved.mark_transferred("engine-2")
    assert moved.ownership is Ownership.SESSION_OWNED
