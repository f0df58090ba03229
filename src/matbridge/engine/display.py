"""Text rendering of engine values for ``x = ...`` echoes and ``disp``."""

import numpy as np
import scipy.sparse

from matbridge.engine.values import CellArray
from matbridge.engine.values import CharArray
from matbridge.engine.values import StructArray
from matbridge.engine.values import class_name
from matbridge.engine.values import describe
from matbridge.engine.values import is_sparse
from matbridge.engine.values import numel
from matbridge.engine.values import shape_of
from matbridge.types import format_shape

_INDENT: str = "    "


def format_real(number: float, integral: bool) -> str:
    """Format one real number the way the short display format does."""
    if np.isnan(number):
        return "NaN"
    if np.isinf(number):
        return "Inf" if number > 0 else "-Inf"
    if integral is True:
        return str(int(number))
    magnitude: float = abs(number)
    if magnitude != 0 and (magnitude >= 1e5 or magnitude < 1e-4):
        return f"{number:.4e}"
    return f"{number:.4f}"


def format_number(number: complex | float | int | bool, integral: bool) -> str:
    """Format one element, complex values as ``a + bi``."""
    if isinstance(number, (complex, np.complexfloating)) is True:
        real_text: str = format_real(float(number.real), integral)
        imag: float = float(number.imag)
        sign: str = "-" if imag < 0 else "+"
        return f"{real_text} {sign} {format_real(abs(imag), integral)}i"
    return format_real(float(number), integral)


def _is_integral(array: np.ndarray) -> bool:
    if array.dtype.kind in "biu":
        return True
    finite: np.ndarray = array[np.isfinite(array)] if array.dtype.kind == "f" else array
    if array.dtype.kind == "c":
        parts: np.ndarray = np.concatenate([array.real.ravel(), array.imag.ravel()])
        finite = parts[np.isfinite(parts)]
    if finite.size == 0:
        return True
    return bool(np.all(finite == np.round(finite))) and bool(np.all(np.abs(finite) < 1e10))


def _matrix_lines(matrix: np.ndarray) -> list[str]:
    """Render a two-dimensional numeric array as right-aligned columns."""
    integral: bool = _is_integral(matrix)
    cells: list[list[str]] = [
        [format_number(matrix[row, column].item(), integral) for column in range(matrix.shape[1])]
        for row in range(matrix.shape[0])
    ]
    width: int = max((len(text) for row in cells for text in row), default=1)
    return ["".join(text.rjust(width + 3) for text in row) for row in cells]


def _slices(array: np.ndarray) -> list[tuple[str, np.ndarray]]:
    """Split an N-d array into labelled two-dimensional pages."""
    if array.ndim <= 2:
        return [("", array)]
    pages: list[tuple[str, np.ndarray]] = []
    trailing: tuple[int, ...] = tuple(array.shape[2:])
    for position in np.ndindex(*reversed(trailing)):
        page_index: tuple[int, ...] = tuple(reversed(position))
        label: str = "(:,:," + ",".join(str(value + 1) for value in page_index) + ")"
        pages.append((label, array[(slice(None), slice(None)) + page_index]))
    return pages


def summary(value: object) -> str:
    """Short one-line rendering used inside cells and struct displays."""
    if isinstance(value, CharArray) is True:
        shape: tuple[int, ...] = value.shape
        if len(shape) == 2 and shape[0] == 1:
            return f"'{value.text()}'"
        if shape == (0, 0):
            return "''"
        return f"[{describe(value)}]"
    if isinstance(value, CellArray) is True:
        return f"{{{describe(value)}}}"
    if isinstance(value, StructArray) is True:
        return f"[{describe(value)}]"
    if is_sparse(value) is True:
        return f"[{format_shape(shape_of(value))} sparse {class_name(value)}]"
    array: np.ndarray = np.asarray(value)
    if array.size == 1:
        text: str = format_number(array.reshape(-1)[0].item(), _is_integral(array))
        return text
    if array.size == 0:
        return "[]"
    if array.ndim == 2 and array.shape[0] == 1 and array.size <= 10:
        integral: bool = _is_integral(array)
        return "[" + " ".join(format_number(item.item(), integral) for item in array.reshape(-1)) + "]"
    return f"[{describe(value)}]"


def _empty_text(value: object) -> str:
    kind: str = "char array" if isinstance(value, CharArray) is True else class_name(value) + " array"
    if isinstance(value, CellArray) is True:
        kind = "cell array"
    if isinstance(value, StructArray) is True:
        kind = "struct array with no elements"
        return f"{format_shape(shape_of(value))} {kind}"
    return f"{format_shape(shape_of(value))} empty {kind}"


def body_lines(value: object) -> list[str]:
    """Render the body of a value without the ``name =`` header."""
    if isinstance(value, StructArray) is True:
        if numel(value) == 1:
            element: dict[str, object] = value.items.reshape(-1)[0]
            width: int = max((len(name) for name in value.field_names), default=0)
            return [f"{_INDENT}{name.rjust(width)}: {summary(element[name])}" for name in value.field_names]
        lines: list[str] = [f"  {format_shape(value.shape)} struct array with fields:", ""]
        lines.extend(f"{_INDENT}{name}" for name in value.field_names)
        return lines
    if numel(value) == 0 and is_sparse(value) is False:
        return [f"  {_empty_text(value)}"]
    if isinstance(value, CharArray) is True:
        return [f"{_INDENT}'{row}'" for row in value.rows()] if len(value.shape) == 2 else [f"  {describe(value)}"]
    if isinstance(value, CellArray) is True:
        if len(value.shape) > 2:
            return [f"  {describe(value)}"]
        rows: list[list[str]] = [
            ["{" + summary(value.items[row, column]) + "}" for column in range(value.shape[1])]
            for row in range(value.shape[0])
        ]
        widest: int = max((len(text) for row in rows for text in row), default=0)
        return [_INDENT + "    ".join(text.ljust(widest) for text in row).rstrip() for row in rows]
    if is_sparse(value) is True:
        coo: scipy.sparse.coo_matrix = scipy.sparse.coo_matrix(value)
        if coo.nnz == 0:
            return [f"   All zero sparse: {format_shape(shape_of(value))}"]
        order: np.ndarray = np.lexsort((coo.row, coo.col))
        integral_data: bool = _is_integral(coo.data)
        entries: list[tuple[str, str]] = [
            (f"({coo.row[item] + 1},{coo.col[item] + 1})", format_number(coo.data[item].item(), integral_data))
            for item in order
        ]
        label_width: int = max(len(label) for label, _ in entries)
        return [f"   {label.ljust(label_width)}    {text}" for label, text in entries]
    return _matrix_lines(np.asarray(value))


def render(name: str, value: object) -> str:
    """Render ``name = value`` as printed after an unsuppressed statement.

    :param name: Variable name.
    :param value: Engine value.
    :returns: Display text ending with a newline.
    """
    if isinstance(value, StructArray) is True and numel(value) == 1:
        return f"{name} =\n\n  struct with fields:\n\n" + "\n".join(body_lines(value)) + "\n\n"
    if isinstance(value, CharArray) is True and len(value.shape) == 2 and value.shape[0] == 1:
        return f"{name} = '{value.text()}'\n"
    if isinstance(value, CellArray) is True and numel(value) > 0:
        return f"{name} =\n\n  {describe(value)} array\n\n" + "\n".join(body_lines(value)) + "\n\n"
    if is_sparse(value) is False and isinstance(value, (CharArray, CellArray, StructArray)) is False:
        array: np.ndarray = np.asarray(value)
        if array.size == 1:
            return f"{name} = {format_number(array.reshape(-1)[0].item(), _is_integral(array))}\n"
        if array.ndim > 2 and array.size > 0:
            pieces: list[str] = []
            for label, page in _slices(array):
                pieces.append(f"{name}{label} =\n\n" + "\n".join(_matrix_lines(page)) + "\n\n")
            return "".join(pieces)
    return f"{name} =\n\n" + "\n".join(body_lines(value)) + "\n\n"


def disp_text(value: object) -> str:
    """Render a value the way ``disp`` prints it."""
    if isinstance(value, CharArray) is True:
        return "".join(row + "\n" for row in value.rows()) if len(value.shape) == 2 else describe(value) + "\n"
    if numel(value) == 0 and is_sparse(value) is False:
        return ""
    if isinstance(value, (CellArray, StructArray)) is False and is_sparse(value) is False:
        array: np.ndarray = np.asarray(value)
        if array.size == 1:
            return format_number(array.reshape(-1)[0].item(), _is_integral(array)) + "\n"
    return "\n".join(body_lines(value)) + "\n"
