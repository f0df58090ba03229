"""Tests for MAT-file reading and writing."""

from pathlib import Path

import numpy as np
import pytest
import scipy.io
import scipy.sparse

from matbridge import ForeignValue
from matbridge import InvalidArgumentError
from matbridge import MatFile
from matbridge import MatFileError
from matbridge import Ownership
from matbridge import UndefinedVariableError
from matbridge import ValueKind
from matbridge import open_matfile
from matbridge import to_array
from matbridge import to_foreign


def test_write_then_read_variables(tmp_path: Path) -> None:
    """Values staged in write mode are readable after close."""
    path: Path = tmp_path / "data.mat"
    matrix: np.ndarray = np.arange(6, dtype=np.float64).reshape(2, 3)
    with open_matfile(path, "w") as mat:
        mat.put_many(
            {
                "matrix": matrix,
                "label": "hello",
                "flags": np.array([[True, False]]),
                "counts": np.array([[1, 2, 3]], dtype=np.int16),
            }
        )

    with open_matfile(path) as mat:
        assert sorted(mat.list_variable_names()) == ["counts", "flags", "label", "matrix"]
        assert mat.get_converted("label") == "hello"
        read_matrix: ForeignValue = mat.get_value("matrix")
        try:
            assert read_matrix.shape == (2, 3)
            assert np.array_equal(to_array(read_matrix), matrix) is True
        finally:
            read_matrix.release()
        flags: ForeignValue = mat.get_value("flags")
        try:
            assert flags.kind is ValueKind.LOGICAL
            assert flags.shape == (1, 2)
        finally:
            flags.release()
        assert mat.get_converted("flags").tolist() == [True, False]
        counts: object = mat.get_converted("counts")
        assert counts.dtype == np.int16
        assert counts.tolist() == [1, 2, 3]


def test_containers_round_trip(tmp_path: Path) -> None:
    """Cells and structs keep their shape and contents."""
    path: Path = tmp_path / "containers.mat"
    with MatFile(path, "w") as mat:
        mat.put_value("items", [1.0, "two", np.array([[3.0, 4.0]])])
        mat.put_value("record", {"name": "probe", "size": 3.0})

    with MatFile(path, "r") as mat:
        items: ForeignValue = mat.get_value("items")
        try:
            assert items.kind is ValueKind.CELL
            assert items.shape == (1, 3)
        finally:
            items.release()
        converted_items: object = mat.get_converted("items")
        assert converted_items[0] == 1.0
        assert converted_items[1] == "two"
        assert converted_items[2].tolist() == [3.0, 4.0]
        assert mat.get_converted("record") == {"name": "probe", "size": 3.0}


def test_sparse_round_trip(tmp_path: Path) -> None:
    """Sparse matrices stay sparse on disk and on reload."""
    path: Path = tmp_path / "sparse.mat"
    matrix: scipy.sparse.csc_matrix = scipy.sparse.csc_matrix(np.array([[0.0, 1.5], [2.5, 0.0]]))
    with MatFile(path, "w") as mat:
        mat.put_value("S", matrix)

    with MatFile(path) as mat:
        value: ForeignValue = mat.get_value("S")
        try:
            assert value.is_sparse is True
            assert value.nnz == 2
        finally:
            value.release()


def test_reads_files_written_by_scipy(tmp_path: Path) -> None:
    """Files produced by other writers load with their shapes intact."""
    path: Path = tmp_path / "external.mat"
    scipy.io.savemat(str(path), {"grid": np.ones((2, 4)), "name": "ext"})
    with MatFile(path) as mat:
        grid: ForeignValue = mat.get_value("grid")
        try:
            assert grid.shape == (2, 4)
        finally:
            grid.release()
        assert mat.get_converted("name") == "ext"


def test_foreign_values_are_copied_not_transferred(tmp_path: Path) -> None:
    """Writing a foreign value leaves it owned by the caller."""
    value: ForeignValue = to_foreign(np.array([[1.0, 2.0]]))
    try:
        with MatFile(tmp_path / "copy.mat", "w") as mat:
            mat.put_value("v", value)
        assert value.ownership is Ownership.HOST_OWNED
    finally:
        value.release()


def test_update_mode_keeps_existing_variables(tmp_path: Path) -> None:
    """Update mode rewrites the file with old and new variables."""
    path: Path = tmp_path / "update.mat"
    with MatFile(path, "w") as mat:
        mat.put_value("first", 1.0)
    with MatFile(path, "u") as mat:
        assert mat.get_converted("first") == 1.0
        mat.put_value("second", 2.0)
    with MatFile(path) as mat:
        assert sorted(mat.list_variable_names()) == ["first", "second"]
        assert mat.get_converted("second") == 2.0


def test_mode_violations(tmp_path: Path) -> None:
    """Reading write-only files, writing read-only files and use after close fail."""
    path: Path = tmp_path / "modes.mat"
    with MatFile(path, "w") as mat:
        mat.put_value("x", 1.0)
        with pytest.raises(MatFileError):
            mat.get_value("x")
        with pytest.raises(InvalidArgumentError):
            mat.put_value("not valid", 1.0)

    reader: MatFile = MatFile(path)
    with pytest.raises(MatFileError):
        reader.put_value("y", 2.0)
    with pytest.raises(UndefinedVariableError):
        reader.get_value("missing")
    reader.close()
    assert reader.is_open is False
    with pytest.raises(MatFileError):
        reader.list_variable_names()
    reader.close()

    with pytest.raises(MatFileError):
        MatFile(path, "x")
    with pytest.raises(MatFileError):
        MatFile(tmp_path / "absent.mat")


def test_char_and_logical_keep_class_and_shape(tmp_path: Path) -> None:
    """Char rows stay two-dimensional and logical arrays stay logical on reload."""
    path: Path = tmp_path / "classes.mat"
    with MatFile(path, "w") as mat:
        mat.put_value("text", "héllo wörld")
        mat.put_value("mask", np.array([[True, False], [False, True]]))

    with MatFile(path) as mat:
        text: ForeignValue = mat.get_value("text")
        mask: ForeignValue = mat.get_value("mask")
        try:
            assert text.kind is ValueKind.CHAR
            assert text.shape == (1, 11)
            assert mask.kind is ValueKind.LOGICAL
            assert mask.shape == (2, 2)
        finally:
            text.release()
            mask.release()
        assert mat.get_converted("text") == "héllo wörld"
        assert mat.get_converted("mask").tolist() == [[True, False], [False, True]]
