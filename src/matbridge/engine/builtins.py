"""Builtin functions callable from engine source.

Every builtin takes ``(interp, args, nargout)`` and returns a list of
output values. ``nargout`` is 0 for expression statements, in which case a
builtin may return an empty list (``disp``) or a single value stored in
``ans``.
"""

import math
import re
from collections.abc import Callable
from typing import TYPE_CHECKING

import numpy as np
import scipy.sparse

from matbridge.engine import display
from matbridge.engine import indexing
from matbridge.engine import operators
from matbridge.engine.errors import EngineError
from matbridge.engine.errors import undefined_name
from matbridge.engine.operators import numeric_operand
from matbridge.engine.operators import saturate
from matbridge.engine.values import CellArray
from matbridge.engine.values import CharArray
from matbridge.engine.values import StructArray
from matbridge.engine.values import as_value
from matbridge.engine.values import class_name
from matbridge.engine.values import empty_double
from matbridge.engine.values import is_sparse
from matbridge.engine.values import numel
from matbridge.engine.values import shape_of
from matbridge.types import ElementType

if TYPE_CHECKING:
    from matbridge.engine.interpreter import Interpreter

BuiltinFunction = Callable[["Interpreter", list[object], int], list[object]]

BUILTINS: dict[str, BuiltinFunction] = {}

_IDENTIFIER_PATTERN: re.Pattern[str] = re.compile(r"^[A-Za-z][\w-]*(:[\w-]+)+$")
_NAME_PATTERN: re.Pattern[str] = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
_FORMAT_SPEC: re.Pattern[str] = re.compile(
    r"%(?P<flags>[-+ 0#]*)(?P<width>\*|\d+)?(?:\.(?P<precision>\*|\d+))?(?P<conversion>[diouxXfFeEgGcs%])"
)
_ESCAPES: dict[str, str] = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "\\": "\\",
    "0": "\0",
}
_INTEGER_CLASSES: tuple[str, ...] = ("int8", "int16", "int32", "int64", "uint8", "uint16", "uint32", "uint64")
_NUMERIC_CLASSES: tuple[str, ...] = ("double", "single") + _INTEGER_CLASSES


def builtin(*names: str) -> Callable[[BuiltinFunction], BuiltinFunction]:
    """Register a function under one or more engine names."""

    def register(function: BuiltinFunction) -> BuiltinFunction:
        for name in names:
            BUILTINS[name] = function
        return function

    return register


# -- argument helpers -----------------------------------------------------------


def _check_args(name: str, args: list[object], minimum: int, maximum: int | None = None) -> None:
    if len(args) < minimum:
        raise EngineError("matbridge:minrhs", f"Not enough input arguments for '{name}'.")
    if maximum is not None and len(args) > maximum:
        raise EngineError("matbridge:maxrhs", f"Too many input arguments for '{name}'.")


def _text(value: object, name: str) -> str:
    """Return the text of a char row argument."""
    if isinstance(value, CharArray) is False:
        raise EngineError("matbridge:invalidType", f"Argument to '{name}' must be a character vector.")
    if len(value.shape) == 2 and value.shape[0] > 1:
        return "".join(value.rows())
    return value.text()


def _integer(value: object, name: str) -> int:
    array: np.ndarray = numeric_operand(value, name)
    if array.size != 1:
        raise EngineError("matbridge:invalidArgument", f"Size arguments to '{name}' must be scalars.")
    number: float = float(np.real(array.reshape(-1)[0]))
    if math.isnan(number) or number != math.floor(number):
        raise EngineError("matbridge:invalidArgument", f"Size arguments to '{name}' must be integers.")
    return int(number)


def _scalar(number: float | complex) -> np.ndarray:
    return as_value(np.array([[number]]))


def _logical(flag: bool) -> np.ndarray:
    return np.array([[bool(flag)]])


def _class_dtype(name: str) -> np.dtype:
    if name == "logical":
        return np.dtype(bool)
    if name not in _NUMERIC_CLASSES:
        raise EngineError("matbridge:invalidClass", f"Unsupported class name '{name}'.")
    return ElementType.from_class_name(name).dtype.newbyteorder("=")


def _dims(name: str, args: list[object]) -> tuple[tuple[int, ...], str]:
    """Parse ``f(n)``, ``f(m, n, ...)``, ``f([m n ...])`` with an optional trailing class name."""
    class_text: str = "double"
    numeric_args: list[object] = list(args)
    if len(numeric_args) > 0 and isinstance(numeric_args[-1], CharArray) is True:
        class_text = _text(numeric_args.pop(), name)
    if len(numeric_args) == 0:
        return (1, 1), class_text
    if len(numeric_args) == 1:
        array: np.ndarray = numeric_operand(numeric_args[0], name).reshape(-1, order="F")
        if array.size == 1:
            size: int = max(_integer(numeric_args[0], name), 0)
            return (size, size), class_text
        dims: tuple[int, ...] = tuple(max(int(value), 0) for value in np.real(array))
        return indexing.trim_shape(dims), class_text
    return indexing.trim_shape(tuple(max(_integer(arg, name), 0) for arg in numeric_args)), class_text


def _first_axis(shape: tuple[int, ...]) -> int:
    """Zero-based first non-singleton dimension."""
    for axis, dim in enumerate(shape):
        if dim != 1:
            return axis
    return 0


def _axis(name: str, args: list[object], position: int, shape: tuple[int, ...]) -> int:
    if len(args) > position and numel(args[position]) > 0:
        dim: int = _integer(args[position], name)
        if dim < 1:
            raise EngineError("matbridge:invalidDimension", "Dimension argument must be a positive integer.")
        return dim - 1
    return _first_axis(shape)


def _pad_rank(array: np.ndarray, rank: int) -> np.ndarray:
    if array.ndim >= rank:
        return array
    return array.reshape(tuple(array.shape) + (1,) * (rank - array.ndim))


def _float_result(result: np.ndarray, source: np.dtype) -> object:
    """Cast a double computation back to the class of its input."""
    if source.kind in "iu":
        return as_value(saturate(result, source))
    if source in (np.float32, np.complex64):
        return as_value(result.astype(np.complex64 if result.dtype.kind == "c" else np.float32))
    return as_value(result)


def _widen(array: np.ndarray) -> np.ndarray:
    return array.astype(np.complex128 if array.dtype.kind == "c" else np.float64)


# -- formatting -----------------------------------------------------------------


def _unescape(template: str) -> str:
    return re.sub(r"\\(.)", lambda match: _ESCAPES.get(match.group(1), match.group(0)), template)


def _format_items(args: list[object]) -> list[object]:
    items: list[object] = []
    for arg in args:
        if isinstance(arg, CharArray) is True:
            items.append(arg.text())
            continue
        if isinstance(arg, (CellArray, StructArray)) is True:
            raise EngineError("matbridge:invalidType", "Only numeric and char arguments can be formatted.")
        for element in numeric_operand(arg, "sprintf").reshape(-1, order="F"):
            items.append(element.item())
    return items


def _convert(match: re.Match[str], item: object, width: str, precision: str) -> str:
    flags: str = match.group("flags")
    conversion: str = match.group("conversion")
    if isinstance(item, str) is True:
        text: str = item if precision == "" else item[:int(precision)]
        spec: str = "%" + flags + width + "s"
        return spec % text
    number: float | complex = item
    if isinstance(number, complex) is True:
        number = number.real
    value: float = float(number)
    if math.isnan(value) or math.isinf(value):
        special: str = "NaN" if math.isnan(value) else ("Inf" if value > 0 else "-Inf")
        return ("%" + flags.replace("0", "") + width + "s") % special
    if conversion == "c":
        return ("%" + flags + width + "s") % chr(int(value))
    if conversion == "s":
        if value == math.floor(value):
            return ("%" + flags + width + "s") % chr(int(value))
        return ("%" + flags + width + "e") % value
    if conversion in "diouxX":
        if value != math.floor(value):
            return ("%" + flags + width + "e") % value
        python_conversion: str = "d" if conversion in "diu" else conversion
        return ("%" + flags + width + python_conversion) % int(value)
    precision_text: str = "" if precision == "" else "." + precision
    return ("%" + flags + width + precision_text + conversion) % value


def format_text(template: str, args: list[object]) -> str:
    """Apply a printf-style template to arguments, recycling it until they run out.

    :param template: Format with escapes such as ``\\n`` still unprocessed.
    :param args: Engine values whose elements feed the conversions.
    :returns: Formatted text.
    """
    template = _unescape(template)
    specs: list[re.Match[str]] = list(_FORMAT_SPEC.finditer(template))
    items: list[object] = _format_items(args)
    output: list[str] = []
    consuming: bool = any(spec.group("conversion") != "%" for spec in specs)
    if consuming is False or len(items) == 0:
        cursor: int = 0
        for spec in specs:
            output.append(template[cursor:spec.start()])
            output.append("%" if spec.group("conversion") == "%" else "")
            cursor = spec.end()
        output.append(template[cursor:])
        return "".join(output)

    position: int = 0
    while position < len(items):
        cursor = 0
        for spec in specs:
            output.append(template[cursor:spec.start()])
            cursor = spec.end()
            if spec.group("conversion") == "%":
                output.append("%")
                continue
            width: str = spec.group("width") or ""
            precision: str = spec.group("precision") or ""
            if width == "*" and position < len(items):
                width = str(int(float(items[position])))
                position += 1
            if precision == "*" and position < len(items):
                precision = str(int(float(items[position])))
                position += 1
            if position >= len(items):
                return "".join(output)
            output.append(_convert(spec, items[position], width, precision))
            position += 1
        output.append(template[cursor:])
    return "".join(output)


def _number_text(value: float | complex | bool, precision: int | None = None) -> str:
    if isinstance(value, complex) is True:
        real_text: str = _number_text(value.real, precision)
        imag: float = value.imag
        sign: str = "-" if imag < 0 else "+"
        return f"{real_text}{sign}{_number_text(abs(imag), precision)}i"
    number: float = float(value)
    if math.isnan(number):
        return "NaN"
    if math.isinf(number):
        return "Inf" if number > 0 else "-Inf"
    if precision is not None:
        return f"{number:.{precision}g}"
    if number == math.floor(number) and abs(number) < 1e15:
        return str(int(number))
    digits: int = max(math.ceil(math.log10(abs(number))), 1) + 4
    return f"{number:.{digits}g}"


def num2str(value: object, precision: int | None = None) -> CharArray:
    """Convert a numeric value to its text form, one row per matrix row."""
    if isinstance(value, CharArray) is True:
        return value
    array: np.ndarray = numeric_operand(value, "num2str")
    if array.size == 0:
        return CharArray.from_text("")
    matrix: np.ndarray = array.reshape(array.shape[0], -1, order="F")
    cells: list[list[str]] = [[_number_text(item.item(), precision) for item in row] for row in matrix]
    if matrix.shape[0] == 1 and matrix.shape[1] == 1:
        return CharArray.from_text(cells[0][0])
    width: int = max(len(text) for row in cells for text in row)
    rows: list[str] = ["  ".join(text.rjust(width) for text in row) for row in cells]
    return CharArray.from_rows(rows)


# -- constructors ---------------------------------------------------------------


def _filled(name: str, args: list[object], fill: float) -> list[object]:
    dims: tuple[int, ...]
    class_text: str
    dims, class_text = _dims(name, args)
    return [as_value(np.full(dims, fill, dtype=_class_dtype(class_text)))]


@builtin("zeros")
def _zeros(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    return _filled("zeros", args, 0)


@builtin("ones")
def _ones(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    return _filled("ones", args, 1)


@builtin("true")
def _true(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    dims: tuple[int, ...] = _dims("true", args)[0]
    return [np.ones(dims, dtype=bool)]


@builtin("false")
def _false(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    dims: tuple[int, ...] = _dims("false", args)[0]
    return [np.zeros(dims, dtype=bool)]


@builtin("Inf", "inf")
def _inf(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    return _filled("Inf", args, math.inf)


@builtin("NaN", "nan")
def _nan(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    return _filled("NaN", args, math.nan)


@builtin("pi")
def _pi(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    return _filled("pi", args, math.pi)


@builtin("eps")
def _eps(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    if len(args) == 1 and isinstance(args[0], CharArray) is False:
        array: np.ndarray = np.abs(_widen(numeric_operand(args[0], "eps")).real)
        return [as_value(np.spacing(array))]
    return _filled("eps", args, float(np.finfo(np.float64).eps))


@builtin("i", "j")
def _imaginary_unit(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("i", args, 0, 0)
    return [np.array([[1j]])]


def _limit(name: str) -> BuiltinFunction:
    def limit(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
        _check_args(name, args, 0, 1)
        default_class: str = "int32" if name.startswith("int") else "double"
        target: str = _text(args[0], name) if len(args) == 1 else default_class
        dtype: np.dtype = _class_dtype(target)
        if name.startswith("int"):
            if dtype.kind not in "iu":
                raise EngineError("matbridge:invalidClass", f"'{name}' requires an integer class name.")
            info: np.iinfo = np.iinfo(dtype)
            return [np.full((1, 1), info.max if name == "intmax" else info.min, dtype=dtype)]
        float_info: np.finfo = np.finfo(dtype)
        return [np.full((1, 1), float_info.max if name == "realmax" else float_info.tiny, dtype=dtype)]

    return limit


for _limit_name in ("intmax", "intmin", "realmax", "realmin"):
    BUILTINS[_limit_name] = _limit(_limit_name)


@builtin("eye")
def _eye(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    dims: tuple[int, ...]
    class_text: str
    dims, class_text = _dims("eye", args)
    if len(dims) > 2:
        raise EngineError("matbridge:invalidArgument", "'eye' only supports two dimensions.")
    return [as_value(np.eye(dims[0], dims[1], dtype=_class_dtype(class_text)))]


def magic_square(size: int) -> np.ndarray:
    """Build the magic square of order ``size``."""
    if size < 1:
        return np.zeros((0, 0))
    if size == 2:
        return np.array([[4.0, 3.0], [1.0, 2.0]])
    rows: np.ndarray
    columns: np.ndarray
    rows, columns = np.mgrid[1:size + 1, 1:size + 1]
    if size % 2 == 1:
        shifted: np.ndarray = np.mod(rows + columns - (size + 3) // 2, size)
        offset: np.ndarray = np.mod(rows + 2 * columns - 2, size)
        return (size * shifted + offset + 1).astype(np.float64)
    if size % 4 == 0:
        square: np.ndarray = np.arange(1, size * size + 1, dtype=np.float64).reshape(size, size)
        flipped: np.ndarray = np.fix(np.mod(rows, 4) / 2) == np.fix(np.mod(columns, 4) / 2)
        square[flipped] = size * size + 1 - square[flipped]
        return square
    half: int = size // 2
    quarter: np.ndarray = magic_square(half)
    square = np.block(
        [
            [quarter, quarter + 2 * half * half],
            [quarter + 3 * half * half, quarter + half * half],
        ]
    )
    top: list[int] = list(range(half))
    bottom: list[int] = [row + half for row in top]
    k: int = (size - 2) // 4
    swapped_columns: list[int] = list(range(k)) + list(range(size - k + 1, size))
    if len(swapped_columns) > 0:
        square[np.ix_(top + bottom, swapped_columns)] = square[np.ix_(bottom + top, swapped_columns)]
    square[np.ix_([k, k + half], [0, k])] = square[np.ix_([k + half, k], [0, k])]
    return square


@builtin("magic")
def _magic(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("magic", args, 1, 1)
    return [magic_square(_integer(args[0], "magic"))]


@builtin("linspace")
def _linspace(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("linspace", args, 2, 3)
    start: complex = complex(_widen(numeric_operand(args[0], "linspace")).reshape(-1)[0])
    stop: complex = complex(_widen(numeric_operand(args[1], "linspace")).reshape(-1)[0])
    count: int = 100 if len(args) == 2 else max(_integer(args[2], "linspace"), 0)
    if start.imag == 0 and stop.imag == 0:
        return [np.linspace(start.real, stop.real, count).reshape(1, -1)]
    return [as_value(np.linspace(start, stop, count).reshape(1, -1))]


@builtin("colon")
def _colon(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("colon", args, 2, 3)
    if len(args) == 2:
        return [operators.make_range(args[0], None, args[1])]
    return [operators.make_range(args[0], args[1], args[2])]


@builtin("meshgrid")
def _meshgrid(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("meshgrid", args, 1, 3)
    vectors: list[np.ndarray] = [numeric_operand(arg, "meshgrid").reshape(-1, order="F") for arg in args]
    if len(vectors) == 1:
        vectors = [vectors[0], vectors[0]]
    grids: list[np.ndarray] = np.meshgrid(*vectors, indexing="xy")
    return [as_value(grid.copy()) for grid in grids][:max(nargout, 1)]


@builtin("repmat")
def _repmat(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("repmat", args, 2)
    reps: tuple[int, ...] = _dims("repmat", args[1:])[0]
    storage: np.ndarray
    wrap: Callable[[np.ndarray], object]
    storage, wrap = indexing.unwrap(args[0])
    rank: int = max(storage.ndim, len(reps))
    tiled: np.ndarray = np.tile(_pad_rank(storage, rank), reps + (1,) * (rank - len(reps)))
    return [wrap(tiled.reshape(indexing.trim_shape(tuple(tiled.shape))))]


@builtin("reshape")
def _reshape(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("reshape", args, 2)
    storage: np.ndarray
    wrap: Callable[[np.ndarray], object]
    storage, wrap = indexing.unwrap(args[0])
    requested: list[int | None] = []
    if len(args) == 2:
        requested = [int(value) for value in numeric_operand(args[1], "reshape").reshape(-1)]
    else:
        for arg in args[1:]:
            requested.append(None if numel(arg) == 0 else _integer(arg, "reshape"))
    unknown: list[int] = [position for position, dim in enumerate(requested) if dim is None]
    known: int = 1
    for dim in requested:
        if dim is not None:
            known *= dim
    if len(unknown) > 1:
        raise EngineError("matbridge:reshape:unknownDim", "Size can only have one unknown dimension.")
    if len(unknown) == 1:
        if known == 0 or storage.size % known != 0:
            raise EngineError("matbridge:reshape:notSameNumel", "Number of elements must not change.")
        requested[unknown[0]] = storage.size // known
        known = storage.size
    if known != storage.size:
        raise EngineError("matbridge:reshape:notSameNumel", "Number of elements must not change.")
    shape: tuple[int, ...] = indexing.trim_shape(tuple(int(dim) for dim in requested))
    return [wrap(storage.reshape(shape, order="F"))]


@builtin("cell")
def _cell(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    dims: tuple[int, ...] = _dims("cell", args)[0] if len(args) > 0 else (0, 0)
    return [CellArray.empty(dims)]


@builtin("struct")
def _struct(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    if len(args) == 0:
        return [StructArray.scalar({})]
    if len(args) % 2 == 1:
        raise EngineError("matbridge:struct:invalidArgs", "Field and value input arguments must come in pairs.")
    names: list[str] = []
    for position in range(0, len(args), 2):
        field_name: str = _text(args[position], "struct")
        if _NAME_PATTERN.match(field_name) is None:
            raise EngineError("matbridge:struct:invalidFieldName", f"Invalid field name '{field_name}'.")
        names.append(field_name)
    values: list[object] = list(args[1::2])
    shape: tuple[int, ...] = (1, 1)
    for value in values:
        if isinstance(value, CellArray) is True and numel(value) != 1:
            if shape != (1, 1) and shape != value.shape:
                raise EngineError("matbridge:struct:dimensionMismatch", "Array dimensions of input cells must match.")
            shape = value.shape
    count: int = 1
    for dim in shape:
        count *= dim
    flat: np.ndarray = np.empty(count, dtype=object)
    for position in range(count):
        element: dict[str, object] = {}
        for field_name, value in zip(names, values):
            if isinstance(value, CellArray) is True:
                contents: list[object] = value.flat()
                element[field_name] = contents[0] if len(contents) == 1 else contents[position]
            else:
                element[field_name] = value
        flat[position] = element
    return [StructArray(names, flat.reshape(shape, order="F"))]


@builtin("sparse")
def _sparse(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("sparse", args, 1, 6)
    if len(args) == 1:
        if is_sparse(args[0]) is True:
            return [args[0]]
        array: np.ndarray = numeric_operand(args[0], "sparse")
        if array.ndim > 2:
            raise EngineError("matbridge:sparse:ndArray", "Sparse matrices must be two-dimensional.")
        if array.dtype.kind != "b":
            array = _widen(array)
        return [scipy.sparse.csc_matrix(array)]
    if len(args) == 2:
        return [scipy.sparse.csc_matrix((_integer(args[0], "sparse"), _integer(args[1], "sparse")))]
    rows: np.ndarray = indexing.positions(args[0], 0, allow_grow=True)
    columns: np.ndarray = indexing.positions(args[1], 0, allow_grow=True)
    data: np.ndarray = numeric_operand(args[2], "sparse").reshape(-1, order="F")
    count: int = max(rows.size, columns.size, data.size)
    if rows.size == 1:
        rows = np.repeat(rows, count)
    if columns.size == 1:
        columns = np.repeat(columns, count)
    if data.size == 1:
        data = np.repeat(data, count)
    if not (rows.size == columns.size == data.size):
        raise EngineError("matbridge:sparse:lengthMismatch", "Vectors must be the same length.")
    height: int = int(rows.max()) + 1 if rows.size > 0 else 0
    width: int = int(columns.max()) + 1 if columns.size > 0 else 0
    if len(args) >= 5:
        requested_height: int = _integer(args[3], "sparse")
        requested_width: int = _integer(args[4], "sparse")
        if requested_height < height or requested_width < width:
            raise EngineError("matbridge:sparse:indexExceedsDims", "Index exceeds array dimensions.")
        height, width = requested_height, requested_width
    is_logical: bool = data.dtype.kind == "b"
    values: np.ndarray = data.astype(np.float64) if is_logical is True else _widen(data)
    matrix: scipy.sparse.csc_matrix = scipy.sparse.coo_matrix((values, (rows, columns)), shape=(height, width)).tocsc()
    matrix.sum_duplicates()
    matrix.eliminate_zeros()
    if is_logical is True:
        matrix = scipy.sparse.csc_matrix(matrix != 0)
    return [matrix]


@builtin("full")
def _full(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("full", args, 1, 1)
    if is_sparse(args[0]) is True:
        return [as_value(np.asarray(args[0].toarray()))]
    return [args[0]]


def _random_builtin(name: str) -> BuiltinFunction:
    def generate(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
        dims: tuple[int, ...] = _dims(name, args)[0]
        if name == "rand":
            return [interp.rng.random(dims)]
        return [interp.rng.standard_normal(dims)]

    return generate


for _random_name in ("rand", "randn"):
    BUILTINS[_random_name] = _random_builtin(_random_name)


# -- casts ----------------------------------------------------------------------


def _cast_builtin(target: str) -> BuiltinFunction:
    def cast(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
        _check_args(target, args, 1, 1)
        value: object = args[0]
        if is_sparse(value) is True and target == "double":
            return [scipy.sparse.csc_matrix(value.astype(np.float64) if value.dtype.kind == "b" else value)]
        if isinstance(value, (CellArray, StructArray)) is True:
            raise EngineError(
                "matbridge:invalidConversion",
                f"Conversion to {target} from {class_name(value)} is not possible.",
            )
        array: np.ndarray = numeric_operand(value, target)
        dtype: np.dtype = _class_dtype(target)
        if dtype.kind in "iu":
            return [as_value(saturate(array, dtype))]
        if array.dtype.kind == "c":
            return [as_value(array.astype(np.complex64 if dtype == np.float32 else np.complex128))]
        return [as_value(array.astype(dtype))]

    return cast


for _cast_name in _NUMERIC_CLASSES:
    BUILTINS[_cast_name] = _cast_builtin(_cast_name)


@builtin("logical")
def _logical_cast(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("logical", args, 1, 1)
    if is_sparse(args[0]) is True:
        return [scipy.sparse.csc_matrix(args[0] != 0)]
    return [as_value(operators.to_logical(args[0], "logical"))]


@builtin("char")
def _char(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("char", args, 1)
    rows: list[str] = []
    for arg in args:
        if isinstance(arg, CharArray) is True:
            if len(arg.shape) == 2 and arg.shape[0] > 1:
                rows.extend(arg.rows())
            else:
                rows.append(arg.text())
        elif isinstance(arg, CellArray) is True:
            for item in arg.flat():
                rows.append(_text(item, "char"))
        else:
            codes: np.ndarray = saturate(numeric_operand(arg, "char"), np.dtype(np.uint16))
            if len(args) == 1:
                return [CharArray(codes)]
            rows.append("".join(chr(int(code)) for code in codes.reshape(-1, order="F")))
    if len(rows) == 1:
        return [CharArray.from_text(rows[0]) if rows[0] != "" else CharArray(np.zeros((1, 0), dtype=np.uint16))]
    return [CharArray.from_rows(rows)]


# -- queries --------------------------------------------------------------------


@builtin("size")
def _size(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("size", args, 1, 2)
    shape: tuple[int, ...] = shape_of(args[0])
    if len(args) == 2:
        dim: int = _integer(args[1], "size")
        if dim < 1:
            raise EngineError("matbridge:invalidDimension", "Dimension argument must be a positive integer.")
        return [_scalar(float(shape[dim - 1]) if dim <= len(shape) else 1.0)]
    if nargout <= 1:
        return [np.array([list(shape)], dtype=np.float64)]
    outputs: list[object] = []
    for position in range(nargout):
        if position < nargout - 1:
            outputs.append(_scalar(float(shape[position]) if position < len(shape) else 1.0))
        else:
            remaining: int = 1
            for dim_size in shape[position:]:
                remaining *= dim_size
            outputs.append(_scalar(float(remaining)))
    return outputs


@builtin("numel")
def _numel(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("numel", args, 1, 1)
    return [_scalar(float(numel(args[0])))]


@builtin("length")
def _length(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("length", args, 1, 1)
    shape: tuple[int, ...] = shape_of(args[0])
    return [_scalar(0.0 if numel(args[0]) == 0 else float(max(shape)))]


@builtin("ndims")
def _ndims(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("ndims", args, 1, 1)
    return [_scalar(float(len(shape_of(args[0]))))]


@builtin("class")
def _class(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("class", args, 1, 1)
    return [CharArray.from_text(class_name(args[0]))]


def _is_numeric(value: object) -> bool:
    if isinstance(value, (CharArray, CellArray, StructArray)) is True:
        return False
    return value.dtype.kind in "iufc"


_PREDICATES: dict[str, Callable[[object], bool]] = {
    "isempty": lambda value: numel(value) == 0,
    "isscalar": lambda value: numel(value) == 1,
    "isvector": lambda value: len(shape_of(value)) == 2 and min(shape_of(value)) == 1,
    "isrow": lambda value: len(shape_of(value)) == 2 and shape_of(value)[0] == 1,
    "iscolumn": lambda value: len(shape_of(value)) == 2 and shape_of(value)[1] == 1,
    "ismatrix": lambda value: len(shape_of(value)) == 2,
    "isnumeric": _is_numeric,
    "ischar": lambda value: isinstance(value, CharArray),
    "iscell": lambda value: isinstance(value, CellArray),
    "isstruct": lambda value: isinstance(value, StructArray),
    "islogical": lambda value: _is_numeric(value) is False and class_name(value) == "logical",
    "isfloat": lambda value: class_name(value) in ("double", "single"),
    "isinteger": lambda value: class_name(value) in _INTEGER_CLASSES,
    "issparse": is_sparse,
    "isreal": lambda value: isinstance(value, (CharArray, CellArray, StructArray)) or value.dtype.kind != "c",
    "iscellstr": lambda value: isinstance(value, CellArray)
    and all(isinstance(item, CharArray) for item in value.flat()),
}


def _predicate_builtin(name: str, predicate: Callable[[object], bool]) -> BuiltinFunction:
    def check(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
        _check_args(name, args, 1, 1)
        return [_logical(bool(predicate(args[0])))]

    return check


for _predicate_name, _predicate in _PREDICATES.items():
    BUILTINS[_predicate_name] = _predicate_builtin(_predicate_name, _predicate)


@builtin("isa")
def _isa(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("isa", args, 2, 2)
    wanted: str = _text(args[1], "isa")
    actual: str = class_name(args[0])
    if wanted == "numeric":
        return [_logical(actual in _NUMERIC_CLASSES)]
    if wanted == "float":
        return [_logical(actual in ("double", "single"))]
    if wanted == "integer":
        return [_logical(actual in _INTEGER_CLASSES)]
    return [_logical(actual == wanted)]


def _elementwise_predicate(name: str, function: Callable[[np.ndarray], np.ndarray]) -> BuiltinFunction:
    def check(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
        _check_args(name, args, 1, 1)
        array: np.ndarray = numeric_operand(args[0], name)
        if array.dtype.kind in "biu":
            return [as_value(function(array.astype(np.float64)))]
        return [as_value(function(array))]

    return check


for _predicate_name, _function in (("isnan", np.isnan), ("isinf", np.isinf), ("isfinite", np.isfinite)):
    BUILTINS[_predicate_name] = _elementwise_predicate(_predicate_name, _function)


@builtin("fieldnames")
def _fieldnames(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("fieldnames", args, 1, 1)
    if isinstance(args[0], StructArray) is False:
        raise EngineError("matbridge:fieldnames:invalidInput", "Invalid input argument of type '%s'." % class_name(args[0]))
    names: list[object] = [CharArray.from_text(name) for name in args[0].field_names]
    return [CellArray.from_list(names, (len(names), 1))]


@builtin("isfield")
def _isfield(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("isfield", args, 2, 2)
    if isinstance(args[0], StructArray) is False:
        return [_logical(False)]
    fields: list[str] = args[0].field_names
    if isinstance(args[1], CellArray) is True:
        flags: np.ndarray = np.array(
            [isinstance(item, CharArray) and item.text() in fields for item in args[1].flat()], dtype=bool
        )
        return [as_value(flags.reshape(args[1].shape, order="F"))]
    if isinstance(args[1], CharArray) is False:
        return [_logical(False)]
    return [_logical(args[1].text() in fields)]


@builtin("rmfield")
def _rmfield(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("rmfield", args, 2, 2)
    value: object = args[0]
    if isinstance(value, StructArray) is False:
        raise EngineError("matbridge:rmfield:notStruct", "First argument must be a struct.")
    removed: list[str] = (
        [_text(item, "rmfield") for item in args[1].flat()]
        if isinstance(args[1], CellArray) is True
        else [_text(args[1], "rmfield")]
    )
    for name in removed:
        if name not in value.field_names:
            raise EngineError(
                "matbridge:rmfield:InvalidFieldname",
                f"A field named '{name}' doesn't exist.",
            )
    kept: list[str] = [name for name in value.field_names if name not in removed]
    items: np.ndarray = np.empty(value.items.shape, dtype=object)
    for position in np.ndindex(*value.items.shape):
        element: dict[str, object] = value.items[position]
        items[position] = {name: element[name] for name in kept}
    return [StructArray(kept, items)]


@builtin("nnz")
def _nnz(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("nnz", args, 1, 1)
    if is_sparse(args[0]) is True:
        matrix: scipy.sparse.csc_matrix = scipy.sparse.csc_matrix(args[0])
        return [_scalar(float(np.count_nonzero(matrix.data)))]
    return [_scalar(float(np.count_nonzero(numeric_operand(args[0], "nnz"))))]


@builtin("exist")
def _exist(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("exist", args, 1, 2)
    name: str = _text(args[0], "exist")
    if name in interp.workspace:
        return [_scalar(1.0)]
    if name in BUILTINS:
        return [_scalar(5.0)]
    return [_scalar(0.0)]


# -- math -----------------------------------------------------------------------


def _unary_math(
    name: str,
    function: Callable[[np.ndarray], np.ndarray],
    needs_complex: Callable[[np.ndarray], np.ndarray] | None = None,
) -> BuiltinFunction:
    def apply(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
        _check_args(name, args, 1, 1)
        array: np.ndarray = numeric_operand(args[0], name)
        source: np.dtype = array.dtype
        wide: np.ndarray = _widen(array)
        if needs_complex is not None and wide.dtype.kind != "c" and bool(np.any(needs_complex(wide))) is True:
            wide = wide.astype(np.complex128)
        with np.errstate(all="ignore"):
            result: np.ndarray = function(wide)
        return [_float_result(result, source)]

    return apply


def _round_half_away(array: np.ndarray) -> np.ndarray:
    if array.dtype.kind == "c":
        return _round_half_away(array.real) + 1j * _round_half_away(array.imag)
    return np.where(array >= 0, np.floor(array + 0.5), np.ceil(array - 0.5))


_UNARY_MATH: dict[str, tuple[Callable[[np.ndarray], np.ndarray], Callable[[np.ndarray], np.ndarray] | None]] = {
    "sqrt": (np.sqrt, lambda array: array < 0),
    "exp": (np.exp, None),
    "log": (np.log, lambda array: array < 0),
    "log2": (np.log2, lambda array: array < 0),
    "log10": (np.log10, lambda array: array < 0),
    "sin": (np.sin, None),
    "cos": (np.cos, None),
    "tan": (np.tan, None),
    "asin": (np.arcsin, lambda array: np.abs(array) > 1),
    "acos": (np.arccos, lambda array: np.abs(array) > 1),
    "atan": (np.arctan, None),
    "sinh": (np.sinh, None),
    "cosh": (np.cosh, None),
    "tanh": (np.tanh, None),
    "floor": (np.floor, None),
    "ceil": (np.ceil, None),
    "fix": (np.fix, None),
    "round": (_round_half_away, None),
    "sign": (np.sign, None),
}

for _math_name, (_math_function, _domain) in _UNARY_MATH.items():
    BUILTINS[_math_name] = _unary_math(_math_name, _math_function, _domain)


@builtin("abs")
def _abs(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("abs", args, 1, 1)
    if is_sparse(args[0]) is True:
        return [scipy.sparse.csc_matrix(abs(args[0]))]
    array: np.ndarray = numeric_operand(args[0], "abs")
    if array.dtype.kind in "iu":
        return [as_value(saturate(np.abs(array.astype(np.float64)), array.dtype))]
    if array.dtype.kind == "b":
        return [as_value(array.astype(np.float64))]
    return [as_value(np.abs(array))]


def _complex_part(name: str) -> BuiltinFunction:
    def apply(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
        _check_args(name, args, 1, 1)
        array: np.ndarray = numeric_operand(args[0], name)
        if array.dtype.kind == "b":
            array = array.astype(np.float64)
        if name == "real":
            return [as_value(np.real(array).copy())]
        if name == "imag":
            return [as_value(np.imag(array).copy() if array.dtype.kind == "c" else np.zeros_like(array))]
        if name == "conj":
            return [as_value(np.conj(array))]
        return [as_value(np.angle(_widen(array)))]

    return apply


for _part_name in ("real", "imag", "conj", "angle"):
    BUILTINS[_part_name] = _complex_part(_part_name)


def _modulo_builtin(name: str) -> BuiltinFunction:
    def apply(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
        _check_args(name, args, 2, 2)
        left: np.ndarray = numeric_operand(args[0], name)
        right: np.ndarray = numeric_operand(args[1], name)
        target: np.dtype = operators.result_class(left, right, name)
        left_wide: np.ndarray
        right_wide: np.ndarray
        left_wide, right_wide = operators.expand(left.astype(np.float64), right.astype(np.float64), name)
        with np.errstate(all="ignore"):
            if name == "mod":
                quotient: np.ndarray = np.floor(left_wide / right_wide)
                result: np.ndarray = np.where(right_wide == 0, left_wide, left_wide - quotient * right_wide)
            else:
                quotient = np.fix(left_wide / right_wide)
                result = left_wide - quotient * right_wide
                if target.kind in "iu":
                    result = np.where(right_wide == 0, left_wide, result)
        return [operators.finish(result, target)]

    return apply


for _modulo_name in ("mod", "rem"):
    BUILTINS[_modulo_name] = _modulo_builtin(_modulo_name)


def _reduce(
    name: str,
    args: list[object],
    function: Callable[..., np.ndarray],
    identity: float,
    native: bool = True,
) -> object:
    """Reduce along the first non-singleton dimension or an explicit one."""
    _check_args(name, args, 1, 2)
    value: object = args[0]
    array: np.ndarray = numeric_operand(value, name)
    source: np.dtype = array.dtype
    if array.shape == (0, 0) and len(args) == 1:
        return _float_result(np.array([[identity]]), source if native is True else np.dtype(np.float64))
    axis: int = _axis(name, args, 1, tuple(array.shape))
    wide: np.ndarray = _pad_rank(_widen(array), axis + 1)
    with np.errstate(all="ignore"):
        result: np.ndarray = function(wide, axis=axis, keepdims=True)
    result = result.reshape(indexing.trim_shape(tuple(result.shape)))
    if native is False or source.kind == "b":
        source = np.dtype(np.float32) if source == np.float32 else np.dtype(np.float64)
    reduced: object = _float_result(result, source)
    if is_sparse(value) is True and len(shape_of(reduced)) == 2:
        return scipy.sparse.csc_matrix(reduced)
    return reduced


@builtin("sum")
def _sum(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    return [_reduce("sum", args, np.sum, 0.0)]


@builtin("prod")
def _prod(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    return [_reduce("prod", args, np.prod, 1.0)]


@builtin("mean")
def _mean(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    return [_reduce("mean", args, np.mean, math.nan, native=False)]


def _cumulative(name: str, function: Callable[..., np.ndarray]) -> BuiltinFunction:
    def apply(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
        _check_args(name, args, 1, 2)
        array: np.ndarray = numeric_operand(args[0], name)
        source: np.dtype = np.dtype(np.float64) if array.dtype.kind == "b" else array.dtype
        axis: int = _axis(name, args, 1, tuple(array.shape))
        if axis >= array.ndim:
            return [_float_result(_widen(array), source)]
        return [_float_result(function(_widen(array), axis=axis), source)]

    return apply


BUILTINS["cumsum"] = _cumulative("cumsum", np.cumsum)
BUILTINS["cumprod"] = _cumulative("cumprod", np.cumprod)


def _extremum(name: str, args: list[object], nargout: int) -> list[object]:
    _check_args(name, args, 1, 3)
    pick_max: bool = name == "max"
    if len(args) >= 2 and numel(args[1]) > 0:
        if len(args) == 3:
            raise EngineError("matbridge:maxrhs", f"'{name}' with two matrices to compare and a dimension is not supported.")
        left: np.ndarray = numeric_operand(args[0], name)
        right: np.ndarray = numeric_operand(args[1], name)
        target: np.dtype = operators.result_class(left, right, name)
        if left.dtype.kind == "b" and right.dtype.kind == "b":
            target = np.dtype(bool)
        left_expanded: np.ndarray
        right_expanded: np.ndarray
        left_expanded, right_expanded = operators.expand(_widen(left), _widen(right), name)
        combined: np.ndarray = (
            np.fmax(left_expanded, right_expanded) if pick_max is True else np.fmin(left_expanded, right_expanded)
        )
        if target.kind == "b":
            return [as_value(combined != 0)]
        return [operators.finish(combined, target)]

    array: np.ndarray = numeric_operand(args[0], name)
    if array.dtype.kind == "b":
        array = array.astype(np.float64)
    if array.size == 0:
        return [np.zeros((0, 0), dtype=array.dtype), np.zeros((0, 0))][:max(nargout, 1)]
    axis: int = _axis(name, args, 2, tuple(array.shape))
    array = _pad_rank(array, axis + 1)
    keys: np.ndarray = np.abs(array) if array.dtype.kind == "c" else array.astype(np.float64)
    fill: float = -math.inf if pick_max is True else math.inf
    keys = np.where(np.isnan(keys), fill, keys)
    chosen: np.ndarray = np.argmax(keys, axis=axis, keepdims=True) if pick_max is True else np.argmin(keys, axis=axis, keepdims=True)
    nan_slices: np.ndarray = np.all(np.isnan(np.abs(array.astype(np.complex128))), axis=axis, keepdims=True)
    values: np.ndarray = np.take_along_axis(array, chosen, axis=axis)
    shape: tuple[int, ...] = indexing.trim_shape(tuple(values.shape))
    outputs: list[object] = [as_value(values.reshape(shape))]
    if nargout > 1:
        positions: np.ndarray = np.where(nan_slices, 0, chosen) + 1
        outputs.append(positions.astype(np.float64).reshape(shape))
    return outputs


@builtin("max")
def _max(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    return _extremum("max", args, nargout)


@builtin("min")
def _min(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    return _extremum("min", args, nargout)


def _truth_reduce(name: str, args: list[object]) -> object:
    _check_args(name, args, 1, 2)
    bits: np.ndarray = operators.to_logical(args[0], name)
    if bits.shape == (0, 0) and len(args) == 1:
        return _logical(name == "all")
    axis: int = _axis(name, args, 1, tuple(bits.shape))
    bits = _pad_rank(bits, axis + 1)
    reduced: np.ndarray = np.any(bits, axis=axis, keepdims=True) if name == "any" else np.all(bits, axis=axis, keepdims=True)
    return as_value(reduced.reshape(indexing.trim_shape(tuple(reduced.shape))))


@builtin("any")
def _any(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    return [_truth_reduce("any", args)]


@builtin("all")
def _all(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    return [_truth_reduce("all", args)]


@builtin("find")
def _find(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("find", args, 1, 3)
    array: np.ndarray = numeric_operand(args[0], "find")
    flat: np.ndarray = array.reshape(-1, order="F")
    hits: np.ndarray = np.flatnonzero(flat != 0)
    if len(args) >= 2:
        limit: int = _integer(args[1], "find")
        last: bool = len(args) == 3 and _text(args[2], "find") == "last"
        hits = hits[-limit:] if last is True and limit > 0 else hits[:limit]
    is_row: bool = array.ndim == 2 and array.shape[0] == 1
    shape: tuple[int, int] = (1, hits.size) if is_row is True else (hits.size, 1)
    if array.shape == (0, 0):
        shape = (0, 0)
    if nargout <= 1:
        return [(hits + 1).astype(np.float64).reshape(shape)]
    height: int = array.shape[0]
    rows: np.ndarray = (hits % height + 1).astype(np.float64).reshape(shape) if height > 0 else np.zeros(shape)
    columns: np.ndarray = (hits // height + 1).astype(np.float64).reshape(shape) if height > 0 else np.zeros(shape)
    values: object = as_value(flat[hits].reshape(shape))
    return [rows, columns, values][:nargout]


@builtin("sort")
def _sort(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("sort", args, 1, 3)
    descending: bool = False
    numeric_args: list[object] = [args[0]]
    for arg in args[1:]:
        if isinstance(arg, CharArray) is True:
            mode: str = _text(arg, "sort").lower()
            if mode not in ("ascend", "descend"):
                raise EngineError("matbridge:sort:sortDirection", "Sorting direction must be 'ascend' or 'descend'.")
            descending = mode == "descend"
        else:
            numeric_args.append(arg)
    if isinstance(args[0], CellArray) is True:
        texts: list[str] = [_text(item, "sort") for item in args[0].flat()]
        order: list[int] = sorted(range(len(texts)), key=lambda position: texts[position], reverse=descending)
        items: list[object] = [args[0].flat()[position] for position in order]
        shape_cell: tuple[int, ...] = args[0].shape
        outputs: list[object] = [CellArray.from_list(items, shape_cell)]
        if nargout > 1:
            outputs.append(np.array([position + 1 for position in order], dtype=np.float64).reshape(shape_cell, order="F"))
        return outputs
    storage: np.ndarray
    wrap: Callable[[np.ndarray], object]
    storage, wrap = indexing.unwrap(args[0])
    axis: int = _axis("sort", numeric_args, 1, tuple(storage.shape))
    storage = _pad_rank(storage, axis + 1)
    keys: np.ndarray = np.abs(storage) if storage.dtype.kind == "c" else storage
    if descending is True:
        reversed_keys: np.ndarray = np.flip(keys, axis=axis)
        flipped_order: np.ndarray = np.flip(np.argsort(reversed_keys, axis=axis, kind="stable"), axis=axis)
        indices: np.ndarray = storage.shape[axis] - 1 - flipped_order
    else:
        indices = np.argsort(keys, axis=axis, kind="stable")
    sorted_values: np.ndarray = np.take_along_axis(storage, indices, axis=axis)
    shape: tuple[int, ...] = indexing.trim_shape(tuple(sorted_values.shape))
    result: list[object] = [wrap(sorted_values.reshape(shape))]
    if nargout > 1:
        result.append((indices + 1).astype(np.float64).reshape(shape))
    return result


@builtin("norm")
def _norm(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("norm", args, 1, 2)
    array: np.ndarray = _widen(numeric_operand(args[0], "norm"))
    if array.ndim > 2:
        raise EngineError("matbridge:norm:ndArray", "Input must be 2-D.")
    order: object = None
    if len(args) == 2:
        if isinstance(args[1], CharArray) is True:
            order = _text(args[1], "norm")
            order = "fro" if order == "fro" else (np.inf if order in ("inf", "Inf") else order)
        else:
            order = float(numeric_operand(args[1], "norm").reshape(-1)[0])
    if min(array.shape) == 1:
        vector: np.ndarray = array.reshape(-1)
        vector_order: object = 2 if order in (None, "fro") else order
        return [_scalar(float(np.linalg.norm(vector, vector_order)))]
    if array.size == 0:
        return [_scalar(0.0)]
    matrix_order: object = 2 if order is None else order
    return [_scalar(float(np.linalg.norm(array, matrix_order)))]


def _square_matrix(name: str, value: object) -> np.ndarray:
    array: np.ndarray = _widen(numeric_operand(value, name))
    if array.ndim != 2 or array.shape[0] != array.shape[1]:
        raise EngineError("matbridge:square", "Matrix must be square.")
    return array


@builtin("inv")
def _inv(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("inv", args, 1, 1)
    matrix: np.ndarray = _square_matrix("inv", args[0])
    try:
        return [as_value(np.linalg.inv(matrix))]
    except np.linalg.LinAlgError:
        return [np.full(matrix.shape, math.inf)]


@builtin("det")
def _det(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("det", args, 1, 1)
    return [_scalar(np.linalg.det(_square_matrix("det", args[0])))]


@builtin("trace")
def _trace(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("trace", args, 1, 1)
    return [_scalar(np.trace(_square_matrix("trace", args[0])))]


@builtin("transpose")
def _transpose(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("transpose", args, 1, 1)
    return [operators.transpose(args[0], False)]


@builtin("ctranspose")
def _ctranspose(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("ctranspose", args, 1, 1)
    return [operators.transpose(args[0], True)]


@builtin("horzcat")
def _horzcat(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    return [operators.concatenate(list(args), 1)]


@builtin("vertcat")
def _vertcat(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    return [operators.concatenate(list(args), 0)]


@builtin("cat")
def _cat(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("cat", args, 1)
    axis: int = _integer(args[0], "cat") - 1
    if axis < 2:
        return [operators.concatenate(list(args[1:]), axis)]
    parts: list[np.ndarray] = [_pad_rank(numeric_operand(arg, "cat"), axis + 1) for arg in args[1:] if numel(arg) > 0]
    if len(parts) == 0:
        return [empty_double()]
    try:
        return [as_value(np.concatenate(parts, axis=axis))]
    except ValueError as exc:
        raise EngineError(
            "matbridge:catenate:dimensionMismatch",
            "Dimensions of arrays being concatenated are not consistent.",
        ) from exc


def _flip_builtin(axis: int) -> BuiltinFunction:
    def apply(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
        _check_args("flip", args, 1, 1)
        storage: np.ndarray
        wrap: Callable[[np.ndarray], object]
        storage, wrap = indexing.unwrap(args[0])
        return [wrap(np.flip(storage, axis=axis).copy())]

    return apply


BUILTINS["fliplr"] = _flip_builtin(1)
BUILTINS["flipud"] = _flip_builtin(0)


@builtin("squeeze")
def _squeeze(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("squeeze", args, 1, 1)
    storage: np.ndarray
    wrap: Callable[[np.ndarray], object]
    storage, wrap = indexing.unwrap(args[0])
    if storage.ndim <= 2:
        return [args[0]]
    kept: tuple[int, ...] = tuple(dim for dim in storage.shape if dim != 1)
    return [wrap(storage.reshape(indexing.trim_shape(kept), order="F"))]


@builtin("num2cell")
def _num2cell(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("num2cell", args, 1, 1)
    storage: np.ndarray
    wrap: Callable[[np.ndarray], object]
    storage, wrap = indexing.unwrap(args[0])
    items: list[object] = []
    for element in storage.reshape(-1, order="F"):
        single: np.ndarray = np.empty((1, 1), dtype=storage.dtype)
        single[0, 0] = element
        items.append(wrap(single))
    return [CellArray.from_list(items, tuple(storage.shape))]


@builtin("cell2mat")
def _cell2mat(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("cell2mat", args, 1, 1)
    if isinstance(args[0], CellArray) is False:
        raise EngineError("matbridge:cell2mat:wrongInput", "Input must be a cell array.")
    items: np.ndarray = args[0].items
    if items.size == 0:
        return [empty_double()]
    if items.ndim > 2:
        raise EngineError("matbridge:cell2mat:ndArray", "Cell arrays with more than two dimensions are not supported.")
    rows: list[object] = [operators.concatenate(list(items[row, :]), 1) for row in range(items.shape[0])]
    return [operators.concatenate(rows, 0)]


# -- strings --------------------------------------------------------------------


@builtin("num2str")
def _num2str(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("num2str", args, 1, 2)
    if len(args) == 2:
        if isinstance(args[1], CharArray) is True:
            return [CharArray.from_text(format_text(_text(args[1], "num2str"), [args[0]]))]
        return [num2str(args[0], _integer(args[1], "num2str"))]
    return [num2str(args[0])]


@builtin("int2str")
def _int2str(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("int2str", args, 1, 1)
    return [num2str(as_value(_round_half_away(_widen(numeric_operand(args[0], "int2str")))))]


@builtin("str2double")
def _str2double(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("str2double", args, 1, 1)
    if isinstance(args[0], CharArray) is False:
        return [_scalar(math.nan)]
    try:
        return [_scalar(float(args[0].text().strip().replace("Inf", "inf")))]
    except ValueError:
        return [_scalar(math.nan)]


def _mat2str_element(value: object, logical: bool) -> str:
    if logical is True:
        return "true" if value else "false"
    if isinstance(value, complex) is True:
        return _number_text(value, 15)
    return _number_text(value, 15)


@builtin("mat2str")
def _mat2str(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("mat2str", args, 1, 2)
    if isinstance(args[0], CharArray) is True:
        rows_text: list[str] = ["'" + row.replace("'", "''") + "'" for row in args[0].rows()]
        if len(rows_text) == 1:
            return [CharArray.from_text(rows_text[0])]
        return [CharArray.from_text("[" + ";".join(rows_text) + "]")]
    array: np.ndarray = numeric_operand(args[0], "mat2str")
    if array.ndim > 2:
        raise EngineError("matbridge:mat2str:TwoDInput", "Input matrix must be 2-D.")
    logical: bool = array.dtype.kind == "b"
    rows: list[str] = [
        " ".join(_mat2str_element(item.item(), logical) for item in array[row, :]) for row in range(array.shape[0])
    ]
    if array.size == 1:
        return [CharArray.from_text(rows[0])]
    return [CharArray.from_text("[" + ";".join(rows) + "]")]


@builtin("sprintf")
def _sprintf(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("sprintf", args, 1)
    text: str = format_text(_text(args[0], "sprintf"), list(args[1:]))
    if text == "":
        return [CharArray(np.zeros((1, 0), dtype=np.uint16))]
    return [CharArray.from_text(text)]


@builtin("fprintf")
def _fprintf(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("fprintf", args, 1)
    remaining: list[object] = list(args)
    if isinstance(remaining[0], CharArray) is False:
        remaining = remaining[1:]
        _check_args("fprintf", remaining, 1)
    text: str = format_text(_text(remaining[0], "fprintf"), remaining[1:])
    interp.write(text)
    if nargout > 0:
        return [_scalar(float(len(text.encode("utf-8"))))]
    return []


@builtin("disp")
def _disp(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("disp", args, 1, 1)
    interp.write(display.disp_text(args[0]))
    return []


@builtin("display")
def _display(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("display", args, 1, 1)
    interp.write(display.render("ans", args[0]))
    return []


def _string_map(name: str, function: Callable[[str], str]) -> BuiltinFunction:
    def apply(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
        _check_args(name, args, 1, 1)
        value: object = args[0]
        if isinstance(value, CellArray) is True:
            mapped: list[object] = [CharArray.from_text(function(_text(item, name))) for item in value.flat()]
            return [CellArray.from_list(mapped, value.shape)]
        if isinstance(value, CharArray) is False:
            return [value]
        if len(value.shape) == 2 and value.shape[0] > 1:
            return [CharArray.from_rows([function(row) for row in value.rows()])]
        return [CharArray.from_text(function(value.text()))]

    return apply


BUILTINS["upper"] = _string_map("upper", str.upper)
BUILTINS["lower"] = _string_map("lower", str.lower)
BUILTINS["strtrim"] = _string_map("strtrim", lambda text: text.strip(" \t\n\r\f\v\0"))
BUILTINS["deblank"] = _string_map("deblank", lambda text: text.rstrip(" \t\n\r\f\v\0"))


@builtin("strcat")
def _strcat(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("strcat", args, 1)
    cells: list[CellArray] = [arg for arg in args if isinstance(arg, CellArray) is True]
    if len(cells) > 0:
        shaped: list[CellArray] = [cell for cell in cells if numel(cell) != 1]
        shape: tuple[int, ...] = shaped[0].shape if len(shaped) > 0 else (1, 1)
        count: int = 1
        for dim in shape:
            count *= dim
        joined: list[object] = []
        for position in range(count):
            pieces: list[str] = []
            for arg in args:
                if isinstance(arg, CellArray) is True:
                    contents: list[object] = arg.flat()
                    pieces.append(_text(contents[0] if len(contents) == 1 else contents[position], "strcat"))
                else:
                    pieces.append(_text(arg, "strcat"))
            joined.append(CharArray.from_text("".join(pieces)))
        return [CellArray.from_list(joined, shape)]
    text: str = "".join(_text(arg, "strcat").rstrip(" \t\n\r\f\v\0") for arg in args)
    return [CharArray.from_text(text)]


@builtin("strrep")
def _strrep(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("strrep", args, 3, 3)
    old: str = _text(args[1], "strrep")
    new: str = _text(args[2], "strrep")
    return _string_map("strrep", lambda text: text.replace(old, new) if old != "" else text)(interp, [args[0]], 1)


@builtin("strsplit")
def _strsplit(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("strsplit", args, 1, 2)
    text: str = _text(args[0], "strsplit")
    pieces: list[str]
    if len(args) == 2:
        delimiter: str = _unescape(_text(args[1], "strsplit"))
        pieces = text.split(delimiter)
    else:
        pieces = re.split(r"\s+", text)
    return [CellArray.from_list([CharArray.from_text(piece) for piece in pieces])]


@builtin("strjoin")
def _strjoin(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("strjoin", args, 1, 2)
    if isinstance(args[0], CellArray) is False:
        raise EngineError("matbridge:strjoin:InvalidCellType", "First input must be a cell array of character vectors.")
    delimiter: str = " " if len(args) == 1 else _unescape(_text(args[1], "strjoin"))
    return [CharArray.from_text(delimiter.join(_text(item, "strjoin") for item in args[0].flat()))]


def _compare_strings(name: str, left: object, right: object, fold: bool) -> object:
    def equal(first: object, second: object) -> bool:
        if isinstance(first, CharArray) is False or isinstance(second, CharArray) is False:
            return False
        if first.shape != second.shape and not (numel(first) == 0 and numel(second) == 0):
            return False
        first_text: str = first.text()
        second_text: str = second.text()
        if fold is True:
            return first_text.lower() == second_text.lower()
        return first_text == second_text

    if isinstance(left, CellArray) is True or isinstance(right, CellArray) is True:
        cell: CellArray = left if isinstance(left, CellArray) is True else right
        other: object = right if cell is left else left
        if isinstance(other, CellArray) is True:
            if numel(other) != 1 and numel(cell) != 1 and other.shape != cell.shape:
                raise EngineError("matbridge:strcmp:InputsSizeMismatch", "Inputs must be the same size or either one can be a scalar.")
            if numel(cell) == 1 and numel(other) != 1:
                cell, other = other, cell
            other_items: list[object] = other.flat()
            flags: list[bool] = [
                equal(item, other_items[0] if len(other_items) == 1 else other_items[position])
                for position, item in enumerate(cell.flat())
            ]
        else:
            flags = [equal(item, other) for item in cell.flat()]
        return as_value(np.array(flags, dtype=bool).reshape(cell.shape, order="F"))
    return _logical(equal(left, right))


@builtin("strcmp")
def _strcmp(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("strcmp", args, 2, 2)
    return [_compare_strings("strcmp", args[0], args[1], False)]


@builtin("strcmpi")
def _strcmpi(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("strcmpi", args, 2, 2)
    return [_compare_strings("strcmpi", args[0], args[1], True)]


# -- comparison and control -------------------------------------------------------


def values_equal(left: object, right: object) -> bool:
    """Deep equality used by ``isequal``: classes may differ for numbers, NaN is unequal."""
    if shape_of(left) != shape_of(right):
        return False
    if isinstance(left, CellArray) is True or isinstance(right, CellArray) is True:
        if isinstance(left, CellArray) is False or isinstance(right, CellArray) is False:
            return False
        return all(values_equal(first, second) for first, second in zip(left.flat(), right.flat()))
    if isinstance(left, StructArray) is True or isinstance(right, StructArray) is True:
        if isinstance(left, StructArray) is False or isinstance(right, StructArray) is False:
            return False
        if set(left.field_names) != set(right.field_names):
            return False
        for first, second in zip(left.flat(), right.flat()):
            for name in left.field_names:
                if values_equal(first[name], second[name]) is False:
                    return False
        return True
    left_array: np.ndarray = numeric_operand(left, "isequal")
    right_array: np.ndarray = numeric_operand(right, "isequal")
    with np.errstate(invalid="ignore"):
        return bool(np.array_equal(left_array, right_array))


@builtin("isequal")
def _isequal(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("isequal", args, 2)
    first: object = args[0]
    return [_logical(all(values_equal(first, other) for other in args[1:]))]


@builtin("error")
def _error(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("error", args, 1)
    first: object = args[0]
    if isinstance(first, StructArray) is True:
        element: dict[str, object] = first.flat()[0] if numel(first) > 0 else {}
        message_value: object = element.get("message", CharArray.from_text(""))
        identifier_value: object = element.get("identifier", CharArray.from_text(""))
        message_text: str = _text(message_value, "error")
        if message_text == "":
            return []
        raise EngineError(_text(identifier_value, "error"), message_text)
    text: str = _text(first, "error")
    rest: list[object] = list(args[1:])
    identifier: str = ""
    if len(rest) > 0 and _IDENTIFIER_PATTERN.match(text) is not None:
        identifier = text
        message: str = format_text(_text(rest[0], "error"), rest[1:])
    elif len(rest) > 0:
        message = format_text(text, rest)
    else:
        message = text
    if message == "" and identifier == "":
        return []
    raise EngineError(identifier, message)


@builtin("deal")
def _deal(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    _check_args("deal", args, 1)
    wanted: int = max(nargout, 1)
    if len(args) == 1:
        return [args[0]] * wanted
    if len(args) != wanted:
        raise EngineError("matbridge:deal:narginNargoutMismatch", "The number of outputs should match the number of inputs.")
    return list(args)


@builtin("clear")
def _clear(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    interp.clear([_text(arg, "clear") for arg in args])
    return []


@builtin("who")
def _who(interp: "Interpreter", args: list[object], nargout: int) -> list[object]:
    names: list[str] = interp.variable_names()
    if nargout > 0:
        return [CellArray.from_list([CharArray.from_text(name) for name in names], (len(names), 1))]
    interp.write(interp.who_text())
    return []


def call(interp: "Interpreter", name: str, args: list[object], nargout: int) -> list[object]:
    """Invoke a builtin by name.

    :raises EngineError: When no builtin of that name exists.
    """
    function: BuiltinFunction | None = BUILTINS.get(name)
    if function is None:
        raise undefined_name(name)
    return function(interp, args, nargout)
