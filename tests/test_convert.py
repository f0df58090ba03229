"""Tests for host/foreign conversion."""

import dataclasses
from collections import namedtuple

import numpy as np
import pytest
import scipy.sparse

from matbridge import ConversionTypeError
from matbridge import ElementType
from matbridge import ForeignValue
from matbridge import InvalidArgumentError
from matbridge import ShapeError
from matbridge import ValueKind
from matbridge import to_array
from matbridge import to_default
from matbridge import to_foreign
from matbridge import to_foreign_records
from matbridge import to_foreign_sparse
from matbridge import to_list
from matbridge import to_mapping
from matbridge import to_mappings
from matbridge import to_scalar
from matbridge import to_sparse
from matbridge import to_string
from matbridge import to_triplets
from matbridge import to_vector


@dataclasses.dataclass
class Sample:
    """Record used for struct conversion tests."""

    label: str
    weight: float


Point = namedtuple("Point", ["x", "y"])


def test_array_layout_is_preserved_for_any_memory_order() -> None:
    """C-ordered and Fortran-ordered host arrays give identical foreign values."""
    c_order: np.ndarray = np.arange(24, dtype=np.float64).reshape(2, 3, 4)
    f_order: np.ndarray = np.asfortranarray(c_order)
    strided: np.ndarray = np.arange(48, dtype=np.float64).reshape(4, 3, 4)[::2]

    from_c: ForeignValue = to_foreign(c_order)
    from_f: ForeignValue = to_foreign(f_order)
    from_strided: ForeignValue = to_foreign(strided)
    try:
        assert from_c.shape == (2, 3, 4)
        assert from_c == from_f
        with from_c.data() as view:
            assert float(view[1, 2, 3]) == float(c_order[1, 2, 3])
        back: np.ndarray = to_array(from_strided)
        assert np.array_equal(back, strided) is True
    finally:
        from_c.release()
        from_f.release()
        from_strided.release()


def test_scalars_and_element_types() -> None:
    """Python scalars map to double, int64, logical and complex values."""
    cases: list[tuple[object, ElementType, bool]] = [
        (2.5, ElementType.DOUBLE, False),
        (7, ElementType.INT64, False),
        (True, ElementType.LOGICAL, False),
        (1 + 2j, ElementType.DOUBLE, True),
        (np.float32(1.5), ElementType.SINGLE, False),
        (np.uint16(3), ElementType.UINT16, False),
    ]
    for host, element_type, is_complex in cases:
        value: ForeignValue = to_foreign(host)
        try:
            assert value.shape == (1, 1)
            assert value.element_type is element_type
            assert value.is_complex is is_complex
            assert to_scalar(value) == host
        finally:
            value.release()


def test_none_becomes_empty_double() -> None:
    """``None`` converts to the 0-by-0 double."""
    value: ForeignValue = to_foreign(None)
    assert value.shape == (0, 0)
    assert value.element_type is ElementType.DOUBLE
    value.release()


def test_one_dimensional_arrays_become_columns() -> None:
    """A rank-1 host array converts to an n-by-1 column and back to a vector."""
    value: ForeignValue = to_foreign(np.array([1.0, 2.0, 3.0]))
    try:
        assert value.shape == (3, 1)
        assert to_vector(value).tolist() == [1.0, 2.0, 3.0]
        assert to_default(value).tolist() == [1.0, 2.0, 3.0]
    finally:
        value.release()


def test_strings_round_trip_as_char_rows() -> None:
    """Text becomes a 1-by-N char row of UTF-16 code units."""
    value: ForeignValue = to_foreign("héllo 🙂")
    try:
        assert value.kind is ValueKind.CHAR
        assert value.shape == (1, 8)
        assert to_string(value) == "héllo 🙂"
        assert to_default(value) == "héllo 🙂"
    finally:
        value.release()

    empty: ForeignValue = to_foreign("")
    assert empty.shape == (1, 0)
    assert to_string(empty) == ""
    empty.release()


def test_char_matrix_is_not_a_string() -> None:
    """Multi-row char values refuse ``to_string`` and default to a char array."""
    value: ForeignValue = ForeignValue.create_char((2, 2))
    try:
        with value.data() as view:
            view[...] = np.array([[ord("a"), ord("b")], [ord("c"), ord("d")]])
        with pytest.raises(ShapeError):
            to_string(value)
        chars: object = to_default(value)
        assert isinstance(chars, np.ndarray) is True
        assert chars.tolist() == [["a", "b"], ["c", "d"]]
    finally:
        value.release()


def test_lists_become_numeric_columns_or_cells() -> None:
    """Number-only lists become numeric columns; mixed lists become cell rows."""
    numbers: ForeignValue = to_foreign([1.0, 2.0])
    mixed: ForeignValue = to_foreign([1.0, "two", [3.0, 4.0]])
    empty: ForeignValue = to_foreign([])
    try:
        assert numbers.kind is ValueKind.NUMERIC
        assert numbers.shape == (2, 1)
        assert mixed.kind is ValueKind.CELL
        assert mixed.shape == (1, 3)
        assert empty.kind is ValueKind.CELL
        assert empty.shape == (1, 0)

        items: list[object] = to_list(mixed)
        assert items[0] == 1.0
        assert items[1] == "two"
        assert items[2].tolist() == [3.0, 4.0]
        assert to_default(empty) == []
    finally:
        numbers.release()
        mixed.release()
        empty.release()


def test_mappings_and_records_become_structs() -> None:
    """Mappings, dataclasses and namedtuples convert to 1-by-1 structs in field order."""
    from_dict: ForeignValue = to_foreign({"b": 1.0, "a": "x"})
    from_dataclass: ForeignValue = to_foreign(Sample("s", 2.0))
    from_namedtuple: ForeignValue = to_foreign(Point(1, 2))
    try:
        assert from_dict.field_names == ("b", "a")
        assert to_mapping(from_dict) == {"b": 1.0, "a": "x"}
        assert to_mapping(from_dataclass) == {"label": "s", "weight": 2.0}
        assert to_default(from_namedtuple) == {"x": 1, "y": 2}
    finally:
        from_dict.release()
        from_dataclass.release()
        from_namedtuple.release()

    with pytest.raises(ConversionTypeError):
        to_foreign({1: "bad"})


def test_records_layouts() -> None:
    """Records convert to a cell of structs or to a struct array."""
    records: list[dict[str, object]] = [{"a": 1.0, "b": 2.0}, {"b": 4.0, "a": 3.0}]
    cell: ForeignValue = to_foreign_records(records)
    struct_array: ForeignValue = to_foreign_records(records, layout="struct_array")
    try:
        assert cell.kind is ValueKind.CELL
        assert cell.shape == (1, 2)
        assert struct_array.kind is ValueKind.STRUCT
        assert struct_array.shape == (1, 2)
        assert to_mappings(struct_array) == [{"a": 1.0, "b": 2.0}, {"a": 3.0, "b": 4.0}]
        with pytest.raises(ShapeError):
            to_mapping(struct_array)
    finally:
        cell.release()
        struct_array.release()

    with pytest.raises(InvalidArgumentError):
        to_foreign_records([{"a": 1}, {"b": 2}], layout="struct_array")
    with pytest.raises(InvalidArgumentError):
        to_foreign_records(records, layout="table")


def test_unset_container_slots_read_as_empty() -> None:
    """Empty cell slots and unset struct fields convert to ``[]``."""
    cell: ForeignValue = ForeignValue.create_cell((1, 2))
    struct: ForeignValue = ForeignValue.create_struct(["a"])
    try:
        items: list[object] = to_list(cell)
        assert all(item.shape == (0, 0) for item in items) is True
        assert to_mapping(struct)["a"].shape == (0, 0)
    finally:
        cell.release()
        struct.release()


def test_sparse_from_scipy_and_triplets() -> None:
    """Sparse inputs drop explicit zeros and sum duplicates."""
    matrix: scipy.sparse.csr_matrix = scipy.sparse.csr_matrix(np.array([[0.0, 2.0], [3.0, 0.0], [0.0, 0.0]]))
    from_scipy: ForeignValue = to_foreign(matrix)
    from_triplets: ForeignValue = to_foreign_sparse([0, 1, 1, 2], [1, 0, 0, 1], [2.0, 1.0, 2.0, 0.0], shape=(3, 2))
    try:
        assert from_scipy.is_sparse is True
        assert from_scipy.nnz == 2
        assert from_triplets.nnz == 2
        assert from_scipy == from_triplets

        rows, cols, values = to_triplets(from_scipy)
        assert rows.tolist() == [1, 0]
        assert cols.tolist() == [0, 1]
        assert values.tolist() == [3.0, 2.0]

        dense: np.ndarray = to_array(from_scipy)
        assert dense.tolist() == [[0.0, 2.0], [3.0, 0.0], [0.0, 0.0]]
        assert isinstance(to_default(from_scipy), scipy.sparse.csc_matrix) is True
        assert np.array_equal(to_sparse(from_scipy).toarray(), matrix.toarray()) is True
    finally:
        from_scipy.release()
        from_triplets.release()

    with pytest.raises(InvalidArgumentError):
        to_foreign_sparse([0, 1], [0], [1.0, 2.0])


def test_default_conversion_precedence() -> None:
    """One element gives a scalar, vectors give 1-D arrays, matrices stay 2-D."""
    one_by_one: ForeignValue = to_foreign(np.array([[4.0]]))
    matrix: ForeignValue = to_foreign(np.ones((2, 3), dtype=np.int16))
    try:
        assert to_default(one_by_one) == 4.0
        assert to_array(one_by_one).shape == (1, 1)
        converted: object = to_default(matrix)
        assert isinstance(converted, np.ndarray) is True
        assert converted.shape == (2, 3)
        assert converted.dtype == np.int16
    finally:
        one_by_one.release()
        matrix.release()


def test_conversion_errors() -> None:
    """Unsupported host types and mismatched kinds raise typed errors."""
    with pytest.raises(ConversionTypeError):
        to_foreign(object())
    with pytest.raises(ConversionTypeError):
        to_foreign(2**70)

    matrix: ForeignValue = to_foreign(np.zeros((2, 2)))
    try:
        with pytest.raises(ShapeError):
            to_scalar(matrix)
        with pytest.raises(ShapeError):
            to_vector(matrix)
        with pytest.raises(ConversionTypeError):
            to_mapping(matrix)
        with pytest.raises(ConversionTypeError):
            to_sparse(matrix)
    finally:
        matrix.release()


def test_foreign_value_input_is_copied() -> None:
    """Converting a foreign value yields an independent copy."""
    original: ForeignValue = to_foreign(np.array([[1.0, 2.0]]))
    copy: ForeignValue = to_foreign(original)
    try:
        assert copy is not original
        with copy.data() as view:
            view[0, 0] = 9.0
        assert to_array(original).tolist() == [[1.0, 2.0]]
    finally:
        original.release()
        copy.release()
