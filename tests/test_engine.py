"""In-process tests for the bundled engine interpreter."""

import numpy as np
import pytest
import scipy.sparse

from matbridge import ForeignValue
from matbridge import to_default
from matbridge.engine import values
from matbridge.engine.errors import EngineError
from matbridge.engine.interpreter import Interpreter
from matbridge.engine.values import CellArray
from matbridge.engine.values import CharArray
from matbridge.engine.values import StructArray


class CapturingInterpreter(Interpreter):
    """Interpreter whose printed output is collected for assertions."""

    printed: list[str]

    def __init__(self) -> None:
        """Initialize with an in-memory output sink."""
        self.printed = []
        super().__init__(write=self.printed.append)

    @property
    def output(self) -> str:
        """All text printed so far."""
        return "".join(self.printed)


@pytest.fixture()
def interp() -> CapturingInterpreter:
    """Provide a fresh interpreter with an empty workspace.

    :returns: Interpreter instance.
    """
    return CapturingInterpreter()


def _engine_error(interp: Interpreter, source: str) -> EngineError:
    """Run ``source`` and return the engine error it raises.

    :param interp: Interpreter to run in.
    :param source: Failing source text.
    :returns: Raised error.
    """
    with pytest.raises(EngineError) as excinfo:
        interp.execute(source)
    return excinfo.value


def test_arithmetic_and_matrix_products(interp: CapturingInterpreter) -> None:
    """Element-wise and matrix operators follow their array-language meaning."""
    interp.execute("a = [1 2; 3 4]; b = a * 2; c = a * [1; 1]; d = a .* a; e = a';")
    assert interp.get("b").tolist() == [[2.0, 4.0], [6.0, 8.0]]
    assert interp.get("c").tolist() == [[3.0], [7.0]]
    assert interp.get("d").tolist() == [[1.0, 4.0], [9.0, 16.0]]
    assert interp.get("e").tolist() == [[1.0, 3.0], [2.0, 4.0]]
    assert interp.output == ""


def test_ranges_are_row_vectors(interp: CapturingInterpreter) -> None:
    """``start:step:stop`` yields a double row and an empty range yields 1-by-0."""
    interp.execute("r = 1:2:7; empty = 5:1;")
    assert interp.get("r").tolist() == [[1.0, 3.0, 5.0, 7.0]]
    assert interp.get("empty").shape == (1, 0)


def test_indexing_is_one_based_and_column_major(interp: CapturingInterpreter) -> None:
    """Subscripts start at one, linear indices run down columns, ``end`` resolves per dimension."""
    interp.execute("a = [8 1 6; 3 5 7; 4 9 2]; row = a(2, :); corner = a(end, end); second = a(2); col = a(:, 1);")
    assert interp.get("row").tolist() == [[3.0, 5.0, 7.0]]
    assert interp.get("corner").tolist() == [[2.0]]
    assert interp.get("second").tolist() == [[3.0]]
    assert interp.get("col").tolist() == [[8.0], [3.0], [4.0]]

    error: EngineError = _engine_error(interp, "bad = a(4, 1);")
    assert error.identifier == "matbridge:indexOutOfBounds"


def test_assignment_grows_and_deletion_shrinks(interp: CapturingInterpreter) -> None:
    """Assigning past the end zero-fills; assigning ``[]`` removes elements."""
    interp.execute("v = [1 2 3]; v(5) = 9;")
    assert interp.get("v").tolist() == [[1.0, 2.0, 3.0, 0.0, 9.0]]
    interp.execute("v(2) = [];")
    assert interp.get("v").tolist() == [[1.0, 3.0, 0.0, 9.0]]
    interp.execute("m = zeros(2, 2); m(3, 3) = 1;")
    assert interp.get("m").shape == (3, 3)


def test_struct_fields_and_nesting(interp: CapturingInterpreter) -> None:
    """Field assignment creates structs on the fly, including nested ones."""
    interp.execute("s.name = 'abc'; s.value = 3; s.inner.x = 1; n = s.name;")
    structure: object = interp.get("s")
    assert isinstance(structure, StructArray) is True
    assert structure.field_names == ["name", "value", "inner"]
    assert interp.get("n").text() == "abc"
    inner: object = structure.flat()[0]["inner"]
    assert isinstance(inner, StructArray) is True
    assert inner.flat()[0]["x"].tolist() == [[1.0]]

    error: EngineError = _engine_error(interp, "y = s.missing;")
    assert error.identifier == "matbridge:nonExistentField"


def test_cells_and_comma_separated_lists(interp: CapturingInterpreter) -> None:
    """Brace indexing extracts contents and can feed a multi-assignment."""
    interp.execute("c = {1, 'two', [3 4]}; t = c{2}; [p, q] = c{1:2}; c{5} = 'x';")
    assert interp.get("t").text() == "two"
    assert interp.get("p").tolist() == [[1.0]]
    assert interp.get("q").text() == "two"
    grown: object = interp.get("c")
    assert isinstance(grown, CellArray) is True
    assert grown.shape == (1, 5)
    assert grown.flat()[3].shape == (0, 0)


def test_multiple_outputs_from_builtins(interp: CapturingInterpreter) -> None:
    """Builtins return as many outputs as the assignment requests."""
    interp.execute("[X, Y] = meshgrid(1:3, 1:2); [m, n] = size(zeros(2, 5));")
    assert interp.get("X").tolist() == [[1.0, 2.0, 3.0], [1.0, 2.0, 3.0]]
    assert interp.get("Y").tolist() == [[1.0, 1.0, 1.0], [2.0, 2.0, 2.0]]
    assert interp.get("m").tolist() == [[2.0]]
    assert interp.get("n").tolist() == [[5.0]]

    error: EngineError = _engine_error(interp, "[u, w] = numel(1);")
    assert error.identifier != ""


def test_integer_arithmetic_saturates_and_rounds(interp: CapturingInterpreter) -> None:
    """Integer results round half away from zero and clamp to the class range."""
    interp.execute("k = int8(100) + int8(100); h = int32(7) / int32(2); low = uint8(3) - 10;")
    assert interp.get("k").dtype == np.int8
    assert int(interp.get("k")[0, 0]) == 127
    assert int(interp.get("h")[0, 0]) == 4
    assert int(interp.get("low")[0, 0]) == 0

    error: EngineError = _engine_error(interp, "bad = int8(1) + int16(1);")
    assert error.identifier == "matbridge:mixedIntegerClasses"


def test_logical_results_and_short_circuit(interp: CapturingInterpreter) -> None:
    """Comparisons give logical arrays and ``&&`` skips its right operand."""
    interp.execute("t = [1 2 3] > 2; z = false && nosuch; same = strcmp('a', 'a');")
    assert interp.get("t").dtype == np.bool_
    assert interp.get("t").tolist() == [[False, False, True]]
    assert bool(interp.get("z")[0, 0]) is False
    assert bool(interp.get("same")[0, 0]) is True


def test_unsuppressed_statements_echo(interp: CapturingInterpreter) -> None:
    """Statements without a trailing semicolon print ``name = value``."""
    interp.execute("x = 5\ny = 'hi'\n3 + 4")
    assert "x = 5\n" in interp.output
    assert "y = 'hi'\n" in interp.output
    assert "ans = 7\n" in interp.output
    assert interp.get("ans").tolist() == [[7.0]]


def test_formatting_builtins(interp: CapturingInterpreter) -> None:
    """``sprintf`` recycles its template and ``disp`` prints a value."""
    interp.execute("s = sprintf('%d,', [1 2 3]); u = sprintf('%d-%s', 3, 'ab'); p = num2str(pi); disp(42)")
    assert interp.get("s").text() == "1,2,3,"
    assert interp.get("u").text() == "3-ab"
    assert interp.get("p").text() == "3.1416"
    assert interp.output == "42\n"


def test_errors_carry_identifiers(interp: CapturingInterpreter) -> None:
    """Undefined names and ``error`` calls report identifiers and messages."""
    undefined: EngineError = _engine_error(interp, "y = nosuch(1);")
    assert undefined.identifier == "matbridge:undefinedFunction"
    assert "nosuch" in undefined.message

    raised: EngineError = _engine_error(interp, "error('my:id', 'bad %d', 5)")
    assert raised.identifier == "my:id"
    assert raised.message == "bad 5"

    parse: EngineError = _engine_error(interp, "x = (1 + ;")
    assert parse.identifier == "matbridge:parse"


def test_earlier_statements_keep_effects_after_failure(interp: CapturingInterpreter) -> None:
    """A failing statement does not roll back the statements before it."""
    _engine_error(interp, "a1 = 1; a2 = nosuch; a3 = 3;")
    assert interp.variable_names() == ["a1"]


def test_clear_and_who(interp: CapturingInterpreter) -> None:
    """``clear`` removes by name or pattern; an empty list clears everything."""
    interp.execute("tmp_a = 1; tmp_b = 2; keep = 3; other = 4;")
    interp.clear(["tmp_*"])
    assert interp.variable_names() == ["keep", "other"]
    interp.execute("clear other")
    assert interp.variable_names() == ["keep"]
    interp.execute("who")
    assert "keep" in interp.output
    interp.clear([])
    assert interp.variable_names() == []


def test_sparse_values(interp: CapturingInterpreter) -> None:
    """Sparse construction stores only the given entries."""
    interp.execute("S = sparse([1 2], [1 3], [5 6], 3, 3); n = nnz(S); F = full(S);")
    matrix: object = interp.get("S")
    assert scipy.sparse.issparse(matrix) is True
    assert matrix.shape == (3, 3)
    assert interp.get("n").tolist() == [[2.0]]
    assert interp.get("F")[1, 2] == 6.0


def test_engine_values_decode_on_the_host() -> None:
    """Engine-side wire encodings decode into equivalent host foreign values."""
    structure: StructArray = StructArray.scalar(
        {
            "label": CharArray.from_text("abc"),
            "data": np.arange(6, dtype=np.float64).reshape(2, 3),
            "items": CellArray.from_list([np.array([[1.0]]), CharArray.from_text("")]),
        }
    )
    host: ForeignValue = ForeignValue.from_wire(values.to_wire(structure))
    try:
        converted: object = to_default(host)
        assert converted["label"] == "abc"
        assert converted["data"].tolist() == [[0.0, 1.0, 2.0], [3.0, 4.0, 5.0]]
        assert converted["items"] == [1.0, ""]
    finally:
        host.release()
