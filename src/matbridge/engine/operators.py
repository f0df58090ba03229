"""Arithmetic, relational, logical and concatenation semantics.

Operands are engine values (see :mod:`matbridge.engine.values`). Binary
element-wise operators use implicit expansion: shapes are padded with
trailing singleton dimensions to the same rank and every dimension must
either match or be 1.

Class rules for arithmetic:

- ``double``, ``logical`` and ``char`` operands compute in ``double``.
- ``single`` wins over ``double``.
- An integer class wins over ``double`` and ``single``; results are rounded
  half away from zero and saturated to the class range. Two different
  integer classes cannot be combined.
"""

import logging
from collections.abc import Callable

import numpy as np
import scipy.sparse

from matbridge.engine.errors import EngineError
from matbridge.engine.values import CellArray
from matbridge.engine.values import CharArray
from matbridge.engine.values import StructArray
from matbridge.engine.values import as_value
from matbridge.engine.values import is_sparse
from matbridge.engine.values import numel
from matbridge.engine.values import raise_type_error
from matbridge.engine.values import shape_of

logger = logging.getLogger(__name__)

ARITHMETIC_OPERATORS: frozenset[str] = frozenset({"+", "-", ".*", "./", ".\\", ".^"})
RELATIONAL_OPERATORS: frozenset[str] = frozenset({"==", "~=", "<", "<=", ">", ">="})
LOGICAL_OPERATORS: frozenset[str] = frozenset({"&", "|"})
MATRIX_OPERATORS: frozenset[str] = frozenset({"*", "/", "\\", "^"})

_OPERATOR_NAMES: dict[str, str] = {
    "+": "plus",
    "-": "minus",
    ".*": "times",
    "./": "rdivide",
    ".\\": "ldivide",
    ".^": "power",
    "*": "mtimes",
    "/": "mrdivide",
    "\\": "mldivide",
    "^": "mpower",
    "==": "eq",
    "~=": "ne",
    "<": "lt",
    "<=": "le",
    ">": "gt",
    ">=": "ge",
    "&": "and",
    "|": "or",
}


def _power(base: np.ndarray, exponent: np.ndarray) -> np.ndarray:
    """Element-wise power that goes complex for negative bases and fractional exponents."""
    if base.dtype.kind != "c" and exponent.dtype.kind != "c":
        needs_complex: np.ndarray = (base < 0) & (exponent != np.round(exponent))
        if bool(np.any(needs_complex)) is True:
            return np.power(base.astype(np.complex128), exponent)
    return np.power(base, exponent)


_ELEMENTWISE: dict[str, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
    "+": np.add,
    "-": np.subtract,
    ".*": np.multiply,
    "./": np.true_divide,
    ".\\": lambda left, right: np.true_divide(right, left),
    ".^": _power,
}


def _comparison(operator: str, left: np.ndarray, right: np.ndarray) -> np.ndarray:
    if operator == "==":
        return np.equal(left, right)
    if operator == "~=":
        return np.not_equal(left, right)
    left_real: np.ndarray = left.real if left.dtype.kind == "c" else left
    right_real: np.ndarray = right.real if right.dtype.kind == "c" else right
    if operator == "<":
        return np.less(left_real, right_real)
    if operator == "<=":
        return np.less_equal(left_real, right_real)
    if operator == ">":
        return np.greater(left_real, right_real)
    return np.greater_equal(left_real, right_real)


def operator_name(operator: str) -> str:
    """Return the function name of an operator, used in error messages."""
    return _OPERATOR_NAMES.get(operator, operator)


def numeric_operand(value: object, operation: str) -> np.ndarray:
    """Return the dense numeric array behind an operand.

    :param value: Engine value.
    :param operation: Operation name for error messages.
    :returns: Numeric or boolean array.
    :raises EngineError: For cells and structs.
    """
    if isinstance(value, CharArray) is True:
        return value.codes.astype(np.float64)
    if isinstance(value, (CellArray, StructArray)) is True:
        raise_type_error(operation, value)
    if is_sparse(value) is True:
        return np.asarray(value.toarray())
    return np.asarray(value)


def to_logical(value: object, operation: str) -> np.ndarray:
    """Convert an operand to a boolean array.

    :param value: Engine value.
    :param operation: Operation name for error messages.
    :returns: Boolean array.
    :raises EngineError: When the operand contains NaN.
    """
    array: np.ndarray = numeric_operand(value, operation)
    if array.dtype.kind == "b":
        return array
    if array.dtype.kind in "fc" and bool(np.any(np.isnan(array))) is True:
        raise EngineError("matbridge:nologicalnan", "NaN's cannot be converted to logicals.")
    return array != 0


def is_truthy(value: object) -> bool:
    """Evaluate a condition: nonempty and all elements nonzero."""
    if numel(value) == 0:
        return False
    return bool(np.all(to_logical(value, "logical")))


def logical_scalar(value: object, operator: str) -> bool:
    """Convert an operand of ``&&``/``||`` to a Python bool.

    :param value: Engine value.
    :param operator: ``"&&"`` or ``"||"``.
    :returns: Truth value.
    :raises EngineError: When the operand is not a scalar.
    """
    if numel(value) != 1:
        raise EngineError(
            "matbridge:binaryLogicalOperator",
            f"Operands to the {operator} operator must be convertible to logical scalar values.",
        )
    return bool(to_logical(value, operator).reshape(-1)[0])


def saturate(array: np.ndarray, dtype: np.dtype) -> np.ndarray:
    """Round half away from zero and clamp into an integer class.

    :param array: Real or complex values (imaginary parts are dropped).
    :param dtype: Integer dtype.
    :returns: Array of ``dtype``.
    """
    values: np.ndarray = np.asarray(array)
    if values.dtype.kind == "c":
        values = values.real
    values = values.astype(np.float64)
    info: np.iinfo = np.iinfo(dtype)
    with np.errstate(invalid="ignore"):
        rounded: np.ndarray = np.where(values >= 0, np.floor(values + 0.5), np.ceil(values - 0.5))
        rounded = np.nan_to_num(rounded, nan=0.0, posinf=float(info.max), neginf=float(info.min))
        clipped: np.ndarray = np.clip(rounded, float(info.min), float(info.max))
        result: np.ndarray = clipped.astype(dtype)
    # float64 cannot hold the int64/uint64 maxima exactly
    result[rounded >= float(info.max)] = info.max
    result[rounded <= float(info.min)] = info.min
    return result


def result_class(left: np.ndarray, right: np.ndarray, operation: str) -> np.dtype:
    """Pick the storage dtype of an arithmetic result.

    :param left: Left operand array.
    :param right: Right operand array.
    :param operation: Operation name for error messages.
    :returns: Integer dtype, ``float32`` or ``float64``.
    :raises EngineError: For two different integer classes.
    """
    left_integer: bool = left.dtype.kind in "iu"
    right_integer: bool = right.dtype.kind in "iu"
    if left_integer is True and right_integer is True and left.dtype != right.dtype:
        raise EngineError(
            "matbridge:mixedIntegerClasses",
            "Integers can only be combined with integers of the same class, or scalar doubles.",
        )
    if left_integer is True or right_integer is True:
        integer_dtype: np.dtype = left.dtype if left_integer is True else right.dtype
        other: np.ndarray = right if left_integer is True else left
        if other.dtype.kind == "c":
            raise EngineError(
                "matbridge:complexInteger",
                f"Complex integer arithmetic is not supported for '{operation}'.",
            )
        return integer_dtype
    if left.dtype in (np.float32, np.complex64) or right.dtype in (np.float32, np.complex64):
        return np.dtype(np.float32)
    return np.dtype(np.float64)


def finish(result: np.ndarray, target: np.dtype) -> object:
    """Cast a float64/complex128 result into ``target`` and wrap it as a value."""
    if target.kind in "iu":
        return as_value(saturate(result, target))
    if target == np.float32:
        if result.dtype.kind == "c":
            return as_value(result.astype(np.complex64))
        return as_value(result.astype(np.float32))
    return as_value(result)


def _widen(array: np.ndarray) -> np.ndarray:
    if array.dtype.kind == "c":
        return array.astype(np.complex128)
    return array.astype(np.float64)


def expand(left: np.ndarray, right: np.ndarray, operation: str) -> tuple[np.ndarray, np.ndarray]:
    """Pad both operands to the same rank and check implicit-expansion compatibility.

    :param left: Left operand.
    :param right: Right operand.
    :param operation: Operation name for error messages.
    :returns: Reshaped operands ready for numpy broadcasting.
    :raises EngineError: When some dimension differs and neither side is 1.
    """
    rank: int = max(left.ndim, right.ndim, 2)
    left_shape: tuple[int, ...] = tuple(left.shape) + (1,) * (rank - left.ndim)
    right_shape: tuple[int, ...] = tuple(right.shape) + (1,) * (rank - right.ndim)
    for left_dim, right_dim in zip(left_shape, right_shape):
        if left_dim != right_dim and left_dim != 1 and right_dim != 1:
            raise EngineError(
                "matbridge:sizeDimensionsMustMatch",
                f"Arrays have incompatible sizes for this operation ('{operation}').",
            )
    return left.reshape(left_shape), right.reshape(right_shape)


def _sparse_operand(value: object) -> scipy.sparse.csc_matrix:
    if is_sparse(value) is True:
        return scipy.sparse.csc_matrix(value)
    return scipy.sparse.csc_matrix(numeric_operand(value, "sparse").astype(np.float64))


def _sparse_binary(operator: str, left: object, right: object) -> object | None:
    """Evaluate the sparse-preserving combinations; ``None`` means densify."""
    left_sparse: bool = is_sparse(left)
    right_sparse: bool = is_sparse(right)
    left_scalar: bool = numel(left) == 1
    right_scalar: bool = numel(right) == 1
    if operator in ("+", "-") and left_sparse is True and right_sparse is True:
        if shape_of(left) != shape_of(right):
            return None
        if operator == "+":
            return scipy.sparse.csc_matrix(left + right)
        return scipy.sparse.csc_matrix(left - right)
    if operator == ".*" or (operator == "*" and (left_scalar is True or right_scalar is True)):
        if left_sparse is True and right_scalar is False and shape_of(left) == shape_of(right):
            return scipy.sparse.csc_matrix(left.multiply(_sparse_operand(right)))
        if right_sparse is True and left_scalar is False and shape_of(left) == shape_of(right):
            return scipy.sparse.csc_matrix(right.multiply(_sparse_operand(left)))
        if left_sparse is True and right_scalar is True:
            return scipy.sparse.csc_matrix(left * numeric_operand(right, operator).reshape(-1)[0])
        if right_sparse is True and left_scalar is True:
            return scipy.sparse.csc_matrix(right * numeric_operand(left, operator).reshape(-1)[0])
        return None
    if operator in ("./", "/") and left_sparse is True and right_scalar is True and right_sparse is False:
        divisor: np.ndarray = numeric_operand(right, operator).reshape(-1)
        if divisor[0] != 0:
            return scipy.sparse.csc_matrix(left / divisor[0])
        return None
    if operator == "*" and left_sparse is True and right_sparse is True:
        if shape_of(left)[1] != shape_of(right)[0]:
            raise EngineError("matbridge:innerdim", "Inner matrix dimensions must agree.")
        return scipy.sparse.csc_matrix(left @ right)
    if operator == "*" and (left_sparse is True or right_sparse is True):
        left_matrix: object = left if left_sparse is True else numeric_operand(left, operator).astype(np.float64)
        right_matrix: object = right if right_sparse is True else numeric_operand(right, operator).astype(np.float64)
        if shape_of(left)[1] != shape_of(right)[0]:
            raise EngineError("matbridge:innerdim", "Inner matrix dimensions must agree.")
        product: object = left_matrix @ right_matrix
        return as_value(np.asarray(product.toarray() if is_sparse(product) is True else product))
    return None


def elementwise(operator: str, left: object, right: object) -> object:
    """Apply an element-wise arithmetic operator.

    :param operator: One of :data:`ARITHMETIC_OPERATORS`.
    :param left: Left operand.
    :param right: Right operand.
    :returns: Result value.
    :raises EngineError: On incompatible classes or sizes.
    """
    name: str = operator_name(operator)
    if is_sparse(left) is True or is_sparse(right) is True:
        sparse_result: object | None = _sparse_binary(operator, left, right)
        if sparse_result is not None:
            return sparse_result
    left_array: np.ndarray = numeric_operand(left, name)
    right_array: np.ndarray = numeric_operand(right, name)
    target: np.dtype = result_class(left_array, right_array, name)
    left_expanded: np.ndarray
    right_expanded: np.ndarray
    left_expanded, right_expanded = expand(left_array, right_array, name)
    with np.errstate(all="ignore"):
        result: np.ndarray = _ELEMENTWISE[operator](_widen(left_expanded), _widen(right_expanded))
    return finish(result, target)


def relational(operator: str, left: object, right: object) -> object:
    """Apply a relational operator, returning a logical array."""
    name: str = operator_name(operator)
    if isinstance(left, CharArray) is True and isinstance(right, CharArray) is True:
        left_codes: np.ndarray = left.codes.astype(np.float64)
        right_codes: np.ndarray = right.codes.astype(np.float64)
    else:
        left_codes = numeric_operand(left, name)
        right_codes = numeric_operand(right, name)
    left_expanded: np.ndarray
    right_expanded: np.ndarray
    left_expanded, right_expanded = expand(left_codes, right_codes, name)
    with np.errstate(invalid="ignore"):
        result: np.ndarray = _comparison(operator, left_expanded, right_expanded)
    return as_value(result)


def logical(operator: str, left: object, right: object) -> object:
    """Apply element-wise ``&`` or ``|``."""
    name: str = operator_name(operator)
    left_bits: np.ndarray
    right_bits: np.ndarray
    left_bits, right_bits = expand(to_logical(left, name), to_logical(right, name), name)
    if operator == "&":
        return as_value(np.logical_and(left_bits, right_bits))
    return as_value(np.logical_or(left_bits, right_bits))


def negate(value: object) -> object:
    """Unary minus."""
    if is_sparse(value) is True:
        return scipy.sparse.csc_matrix(-value)
    array: np.ndarray = numeric_operand(value, "uminus")
    if array.dtype.kind in "iu":
        return as_value(saturate(-array.astype(np.float64), array.dtype))
    if array.dtype.kind == "b":
        return as_value(-array.astype(np.float64))
    return as_value(-array)


def unary_plus(value: object) -> object:
    """Unary plus: logical and char operands become double."""
    if is_sparse(value) is True:
        return value
    array: np.ndarray = numeric_operand(value, "uplus")
    if array.dtype.kind == "b":
        return as_value(array.astype(np.float64))
    return as_value(array)


def logical_not(value: object) -> object:
    """Unary ``~``."""
    return as_value(np.logical_not(to_logical(value, "not")))


def transpose(value: object, conjugate: bool) -> object:
    """Transpose a two-dimensional value.

    :param value: Engine value.
    :param conjugate: ``True`` for ``'`` (complex conjugate transpose).
    :returns: Transposed value.
    :raises EngineError: For arrays with more than two dimensions.
    """
    if len(shape_of(value)) > 2:
        raise EngineError("matbridge:transpose:ndArray", "Transpose on ND array is not defined.")
    if is_sparse(value) is True:
        flipped: scipy.sparse.spmatrix = value.T
        if conjugate is True:
            flipped = flipped.conj()
        return scipy.sparse.csc_matrix(flipped)
    if isinstance(value, CharArray) is True:
        return CharArray(value.codes.T.copy())
    if isinstance(value, CellArray) is True:
        return CellArray(value.items.T.copy())
    if isinstance(value, StructArray) is True:
        return StructArray(value.field_names, value.items.T.copy())
    array: np.ndarray = np.asarray(value)
    if conjugate is True and array.dtype.kind == "c":
        return as_value(np.conj(array.T))
    return as_value(array.T.copy())


def _solve(left: np.ndarray, right: np.ndarray) -> np.ndarray:
    """Solve ``left @ x = right`` exactly for square systems, by least squares otherwise."""
    if left.shape[0] == left.shape[1]:
        try:
            return np.linalg.solve(left, right)
        except np.linalg.LinAlgError:
            logger.debug("Singular system, falling back to least squares")
    return np.linalg.lstsq(left, right, rcond=None)[0]


def matrix_operation(operator: str, left: object, right: object) -> object:
    """Apply ``*``, ``/``, ``\\`` or ``^`` with matrix semantics.

    Scalar operands reduce each operator to its element-wise form.

    :param operator: One of :data:`MATRIX_OPERATORS`.
    :param left: Left operand.
    :param right: Right operand.
    :returns: Result value.
    :raises EngineError: On mismatched dimensions.
    """
    name: str = operator_name(operator)
    if is_sparse(left) is True or is_sparse(right) is True:
        sparse_result: object | None = _sparse_binary(operator, left, right)
        if sparse_result is not None:
            return sparse_result
    left_scalar: bool = numel(left) == 1
    right_scalar: bool = numel(right) == 1
    if operator == "*" and (left_scalar is True or right_scalar is True):
        return elementwise(".*", left, right)
    if operator == "/" and right_scalar is True:
        return elementwise("./", left, right)
    if operator == "\\" and left_scalar is True:
        return elementwise(".\\", left, right)
    if operator == "^" and left_scalar is True and right_scalar is True:
        return elementwise(".^", left, right)

    left_array: np.ndarray = numeric_operand(left, name)
    right_array: np.ndarray = numeric_operand(right, name)
    if left_array.ndim > 2 or right_array.ndim > 2:
        raise EngineError("matbridge:undefinedFunction", f"Arguments of '{name}' must be 2-D.")
    target: np.dtype = result_class(left_array, right_array, name)
    left_wide: np.ndarray = _widen(left_array)
    right_wide: np.ndarray = _widen(right_array)

    with np.errstate(all="ignore"):
        if operator == "*":
            if left_wide.shape[1] != right_wide.shape[0]:
                raise EngineError("matbridge:innerdim", "Inner matrix dimensions must agree.")
            return finish(left_wide @ right_wide, target)
        if operator == "\\":
            if left_wide.shape[0] != right_wide.shape[0]:
                raise EngineError("matbridge:dimagree", "Matrix dimensions must agree.")
            return finish(_solve(left_wide, right_wide), target)
        if operator == "/":
            if left_wide.shape[1] != right_wide.shape[1]:
                raise EngineError("matbridge:dimagree", "Matrix dimensions must agree.")
            return finish(_solve(right_wide.T, left_wide.T).T, target)

        if right_scalar is False or left_wide.shape[0] != left_wide.shape[1]:
            raise EngineError(
                "matbridge:square",
                "Inputs to '^' must be a square matrix and a scalar.",
            )
        exponent: complex | float = right_wide.reshape(-1)[0]
        if isinstance(exponent, complex) is False and float(exponent) == round(float(exponent)):
            power: int = int(round(float(exponent)))
            if power < 0:
                return finish(np.linalg.matrix_power(np.linalg.inv(left_wide), -power), target)
            return finish(np.linalg.matrix_power(left_wide, power), target)
        eigenvalues: np.ndarray
        eigenvectors: np.ndarray
        eigenvalues, eigenvectors = np.linalg.eig(left_wide)
        powered: np.ndarray = eigenvectors @ np.diag(eigenvalues.astype(np.complex128) ** exponent)
        return finish(powered @ np.linalg.inv(eigenvectors), target)


def binary(operator: str, left: object, right: object) -> object:
    """Dispatch any non-short-circuit binary operator."""
    if operator in ARITHMETIC_OPERATORS:
        return elementwise(operator, left, right)
    if operator in MATRIX_OPERATORS:
        return matrix_operation(operator, left, right)
    if operator in RELATIONAL_OPERATORS:
        return relational(operator, left, right)
    if operator in LOGICAL_OPERATORS:
        return logical(operator, left, right)
    raise EngineError("matbridge:parse", f"Unknown operator '{operator}'.")


# -- ranges -------------------------------------------------------------------


def _range_endpoint(value: object) -> float | None:
    if numel(value) == 0:
        return None
    array: np.ndarray = numeric_operand(value, "colon")
    return float(np.real(array.reshape(-1, order="F")[0]))


def make_range(start: object, step: object | None, stop: object) -> object:
    """Evaluate ``start:stop`` or ``start:step:stop``.

    :returns: A row vector; ``char`` when both endpoints are char, the
        integer class when any endpoint is an integer.
    """
    first: float | None = _range_endpoint(start)
    increment: float | None = 1.0 if step is None else _range_endpoint(step)
    last: float | None = _range_endpoint(stop)
    if first is None or increment is None or last is None:
        return np.zeros((1, 0))
    if increment == 0 or np.isnan(increment) or (increment > 0 and first > last) or (increment < 0 and first < last):
        values: np.ndarray = np.zeros(0)
    else:
        count: int = int(np.floor((last - first) / increment + 1e-10)) + 1
        values = first + increment * np.arange(count, dtype=np.float64)
    if isinstance(start, CharArray) is True and isinstance(stop, CharArray) is True:
        return CharArray(values.astype(np.uint16).reshape(1, -1))
    for endpoint in (start, step, stop):
        if endpoint is None or isinstance(endpoint, np.ndarray) is False:
            continue
        if endpoint.dtype.kind in "iu":
            return as_value(saturate(values, endpoint.dtype).reshape(1, -1))
    return values.reshape(1, -1)


# -- concatenation ------------------------------------------------------------


def _concat_class(arrays: list[np.ndarray]) -> np.dtype:
    """Pick the result dtype of numeric concatenation: leftmost integer, then single, then double."""
    for array in arrays:
        if array.dtype.kind in "iu":
            return array.dtype
    if any(array.dtype in (np.float32, np.complex64) for array in arrays) is True:
        return np.dtype(np.float32)
    if len(arrays) > 0 and all(array.dtype.kind == "b" for array in arrays) is True:
        return np.dtype(bool)
    return np.dtype(np.float64)


def _join(arrays: list[np.ndarray], axis: int) -> np.ndarray:
    rank: int = max(max(array.ndim for array in arrays), 2)
    padded: list[np.ndarray] = [
        array.reshape(tuple(array.shape) + (1,) * (rank - array.ndim)) for array in arrays
    ]
    reference: tuple[int, ...] = padded[0].shape
    for array in padded[1:]:
        for dim in range(rank):
            if dim != axis and array.shape[dim] != reference[dim]:
                raise EngineError(
                    "matbridge:catenate:dimensionMismatch",
                    "Dimensions of arrays being concatenated are not consistent.",
                )
    return np.concatenate(padded, axis=axis)


def _struct_items(values: list[StructArray]) -> tuple[list[str], list[np.ndarray]]:
    field_names: list[str] = values[0].field_names
    items: list[np.ndarray] = []
    for value in values:
        if set(value.field_names) != set(field_names):
            raise EngineError(
                "matbridge:catenate:structFieldBad",
                "Concatenation of structures requires the same field names.",
            )
        items.append(value.items)
    return field_names, items


def concatenate(values: list[object], axis: int) -> object:
    """Concatenate values horizontally (``axis=1``) or vertically (``axis=0``).

    Empty ``[]`` operands are skipped. Cells absorb non-cell operands as
    1-by-1 cells, char absorbs numbers as character codes.

    :param values: Engine values.
    :param axis: Zero-based concatenation dimension.
    :returns: Concatenated value.
    :raises EngineError: On inconsistent dimensions or incompatible kinds.
    """
    if len(values) == 0:
        return np.zeros((0, 0))
    nonempty: list[object] = [value for value in values if numel(value) > 0]
    if len(nonempty) == 0:
        for value in values:
            if shape_of(value) != (0, 0):
                return value
        return values[0]
    if len(nonempty) == 1:
        return nonempty[0]

    if any(isinstance(value, CellArray) for value in nonempty) is True:
        cells: list[np.ndarray] = []
        for value in nonempty:
            if isinstance(value, CellArray) is True:
                cells.append(value.items)
            else:
                wrapped: np.ndarray = np.empty((1, 1), dtype=object)
                wrapped[0, 0] = value
                cells.append(wrapped)
        return CellArray(_join(cells, axis))

    if any(isinstance(value, StructArray) for value in nonempty) is True:
        if all(isinstance(value, StructArray) for value in nonempty) is False:
            raise EngineError(
                "matbridge:concatenation:structConversion",
                "Cannot concatenate a struct with a value of another class.",
            )
        field_names: list[str]
        items: list[np.ndarray]
        field_names, items = _struct_items(nonempty)
        return StructArray(field_names, _join(items, axis))

    if any(is_sparse(value) for value in nonempty) is True:
        blocks: list[scipy.sparse.csc_matrix] = [_sparse_operand(value) for value in nonempty]
        try:
            if axis == 1:
                joined: scipy.sparse.spmatrix = scipy.sparse.hstack(blocks, format="csc")
            else:
                joined = scipy.sparse.vstack(blocks, format="csc")
        except ValueError as exc:
            raise EngineError(
                "matbridge:catenate:dimensionMismatch",
                "Dimensions of arrays being concatenated are not consistent.",
            ) from exc
        return scipy.sparse.csc_matrix(joined)

    if any(isinstance(value, CharArray) for value in nonempty) is True:
        codes: list[np.ndarray] = []
        for value in nonempty:
            if isinstance(value, CharArray) is True:
                codes.append(value.codes)
            else:
                codes.append(saturate(numeric_operand(value, "horzcat"), np.dtype(np.uint16)))
        return CharArray(_join(codes, axis))

    arrays: list[np.ndarray] = [np.asarray(value) for value in nonempty]
    target: np.dtype = _concat_class(arrays)
    if target.kind == "b":
        return as_value(_join(arrays, axis))
    return finish(_join([_widen(array) for array in arrays], axis), target)
