"""Subscripted reference, assignment and deletion on engine values.

Subscripts are one-based. A single subscript indexes linearly in
column-major order; several subscripts index per dimension, with the last
subscript spanning all remaining dimensions. Assignment grows the target
and fills new elements with zeros, ``[]`` cells or structs whose fields are
``[]``.
"""

from collections.abc import Callable

import numpy as np
import scipy.sparse

from matbridge.engine.errors import EngineError
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


class ColonSubscript:
    """Marker for a bare ``:`` subscript."""

    def __repr__(self) -> str:
        return "COLON"


COLON: ColonSubscript = ColonSubscript()


def _bad_subscript() -> EngineError:
    return EngineError(
        "matbridge:badsubscript",
        "Subscript indices must either be real positive integers or logicals.",
    )


def _out_of_bounds(position: int, extent: int) -> EngineError:
    return EngineError(
        "matbridge:indexOutOfBounds",
        f"Index exceeds matrix dimensions: index {position} is out of bounds for size {extent}.",
    )


def trim_shape(shape: tuple[int, ...]) -> tuple[int, ...]:
    """Drop trailing singleton dimensions beyond the second."""
    trimmed: list[int] = list(shape)
    while len(trimmed) > 2 and trimmed[-1] == 1:
        trimmed.pop()
    while len(trimmed) < 2:
        trimmed.append(1)
    return tuple(trimmed)


def _is_vector(shape: tuple[int, ...]) -> bool:
    return len(shape) == 2 and (shape[0] == 1 or shape[1] == 1)


def unwrap(value: object) -> tuple[np.ndarray, Callable[[np.ndarray], object]]:
    """Return the storage array of a value and a function that rewraps new storage."""
    if isinstance(value, CharArray) is True:
        return value.codes, CharArray
    if isinstance(value, CellArray) is True:
        return value.items, CellArray
    if isinstance(value, StructArray) is True:
        field_names: list[str] = value.field_names
        return value.items, lambda items: StructArray(field_names, items)
    if is_sparse(value) is True:
        def resparsify(array: np.ndarray) -> object:
            if array.ndim == 2:
                return scipy.sparse.csc_matrix(array)
            return as_value(array)
        return np.asarray(value.toarray()), resparsify
    return np.asarray(value), as_value


def _subscript_shape(subscript: object) -> tuple[int, ...]:
    """Shape of the position list a subscript produces."""
    array: np.ndarray = numeric_operand(subscript, "subsindex")
    if array.dtype.kind == "b":
        count: int = int(np.count_nonzero(array))
        if array.ndim == 2 and array.shape[0] == 1:
            return (1, count)
        return (count, 1)
    return tuple(array.shape)


def positions(subscript: object, extent: int, allow_grow: bool = False) -> np.ndarray:
    """Convert one subscript into zero-based positions.

    :param subscript: :data:`COLON`, a logical mask or positive integers.
    :param extent: Size of the indexed dimension.
    :param allow_grow: Accept positions beyond ``extent`` (assignment).
    :returns: ``int64`` positions.
    :raises EngineError: On invalid or out-of-range subscripts.
    """
    if subscript is COLON:
        return np.arange(extent, dtype=np.int64)
    if isinstance(subscript, (CellArray, StructArray)) is True:
        raise _bad_subscript()
    array: np.ndarray = numeric_operand(subscript, "subsindex")
    flat: np.ndarray = array.reshape(-1, order="F")
    if flat.dtype.kind == "b":
        found: np.ndarray = np.flatnonzero(flat).astype(np.int64)
        if allow_grow is False and found.size > 0 and int(found[-1]) >= extent:
            raise _out_of_bounds(int(found[-1]) + 1, extent)
        return found
    if flat.dtype.kind == "c":
        raise _bad_subscript()
    numbers: np.ndarray = flat.astype(np.float64)
    if numbers.size > 0:
        if bool(np.any(numbers != np.floor(numbers))) is True or bool(np.any(numbers < 1)) is True:
            raise _bad_subscript()
    result: np.ndarray = numbers.astype(np.int64) - 1
    if allow_grow is False and result.size > 0:
        largest: int = int(result.max())
        if largest >= extent:
            raise _out_of_bounds(largest + 1, extent)
    return result


def _per_dimension(shape: tuple[int, ...], count: int) -> tuple[int, ...]:
    """Fold ``shape`` into exactly ``count`` dimensions; the last one absorbs the rest."""
    dims: list[int] = list(shape)
    while len(dims) < count:
        dims.append(1)
    if len(dims) > count:
        tail: int = 1
        for dim in dims[count - 1:]:
            tail *= dim
        dims = dims[:count - 1] + [tail]
    return tuple(dims)


def index(value: object, subscripts: list[object]) -> object:
    """Evaluate ``value(subscripts...)``.

    :param value: Engine value.
    :param subscripts: Evaluated subscripts, possibly :data:`COLON`.
    :returns: Selected elements as a value of the same class.
    :raises EngineError: On invalid or out-of-range subscripts.
    """
    if len(subscripts) == 0:
        return value
    storage: np.ndarray
    wrap: Callable[[np.ndarray], object]
    storage, wrap = unwrap(value)
    shape: tuple[int, ...] = tuple(storage.shape)

    if len(subscripts) == 1:
        subscript: object = subscripts[0]
        flat: np.ndarray = storage.reshape(-1, order="F")
        picked: np.ndarray = flat[positions(subscript, flat.size)]
        result_shape: tuple[int, ...]
        if subscript is COLON:
            result_shape = (picked.size, 1)
        else:
            subscript_shape: tuple[int, ...] = _subscript_shape(subscript)
            if _is_vector(shape) is True and flat.size != 1 and _is_vector(subscript_shape) is True:
                result_shape = (1, picked.size) if shape[0] == 1 else (picked.size, 1)
            else:
                result_shape = subscript_shape
        return wrap(picked.reshape(trim_shape(result_shape), order="F"))

    dims: tuple[int, ...] = _per_dimension(shape, len(subscripts))
    reshaped: np.ndarray = storage.reshape(dims, order="F")
    selectors: list[np.ndarray] = [
        positions(subscript, dims[position]) for position, subscript in enumerate(subscripts)
    ]
    selected: np.ndarray = reshaped[np.ix_(*selectors)]
    return wrap(selected.reshape(trim_shape(tuple(selected.shape)), order="F"))


def cell_contents(value: object, subscripts: list[object]) -> list[object]:
    """Evaluate ``value{subscripts...}`` into a comma-separated list.

    :raises EngineError: When ``value`` is not a cell.
    """
    if isinstance(value, CellArray) is False:
        raise EngineError(
            "matbridge:cellRefFromNonCell",
            f"Brace indexing is not supported for variables of type '{class_name(value)}'.",
        )
    selected: object = index(value, subscripts)
    return selected.flat()


# -- assignment ---------------------------------------------------------------


def _empty_like(rhs: object) -> object:
    """Starting value when assigning into an undefined name."""
    if isinstance(rhs, CellArray) is True:
        return CellArray(np.empty((0, 0), dtype=object))
    if isinstance(rhs, StructArray) is True:
        return StructArray(rhs.field_names, np.empty((0, 0), dtype=object))
    if isinstance(rhs, CharArray) is True:
        return CharArray(np.zeros((0, 0), dtype=np.uint16))
    if is_sparse(rhs) is True:
        return scipy.sparse.csc_matrix((0, 0))
    return np.zeros((0, 0), dtype=np.asarray(rhs).dtype)


def empty_struct_element(field_names: list[str]) -> dict[str, object]:
    """Return one struct element with every field set to ``[]``."""
    return {name: empty_double() for name in field_names}


def with_fields(value: StructArray, field_names: list[str]) -> StructArray:
    """Return a copy of ``value`` with any missing fields added as ``[]``."""
    missing: list[str] = [name for name in field_names if name not in value.field_names]
    if len(missing) == 0:
        return value
    items: np.ndarray = np.empty(value.items.shape, dtype=object)
    for position in np.ndindex(*value.items.shape):
        element: dict[str, object] = dict(value.items[position])
        for name in missing:
            element[name] = empty_double()
        items[position] = element
    return StructArray(value.field_names + missing, items)


def _fill(storage: np.ndarray, target: object) -> None:
    """Initialize freshly grown object slots."""
    if storage.dtype != object:
        return
    for position in np.ndindex(*storage.shape):
        if storage[position] is None:
            if isinstance(target, StructArray) is True:
                storage[position] = empty_struct_element(target.field_names)
            else:
                storage[position] = empty_double()


def _grow(storage: np.ndarray, new_shape: tuple[int, ...], target: object) -> np.ndarray:
    if tuple(storage.shape) == tuple(new_shape):
        return storage.copy()
    grown: np.ndarray
    if storage.dtype == object:
        grown = np.empty(new_shape, dtype=object)
    else:
        grown = np.zeros(new_shape, dtype=storage.dtype)
    grown[tuple(slice(0, dim) for dim in storage.shape)] = storage
    _fill(grown, target)
    return grown


def _coerce(target: object, rhs: object) -> tuple[object, np.ndarray]:
    """Reconcile classes and return the (possibly converted) target and rhs storage.

    :raises EngineError: When the classes cannot be combined.
    """
    target_is_empty_double: bool = (
        isinstance(target, np.ndarray) is True and target.size == 0 and target.dtype == np.float64
    )
    if isinstance(target, CellArray) is True or isinstance(rhs, CellArray) is True:
        if isinstance(rhs, CellArray) is False:
            raise EngineError(
                "matbridge:invalidConversion",
                f"Conversion to cell from {class_name(rhs)} is not possible.",
            )
        if isinstance(target, CellArray) is False:
            if target_is_empty_double is False:
                raise EngineError(
                    "matbridge:invalidConversion",
                    f"Conversion to {class_name(target)} from cell is not possible.",
                )
            target = CellArray(np.empty((0, 0), dtype=object))
        return target, rhs.items

    if isinstance(target, StructArray) is True or isinstance(rhs, StructArray) is True:
        if isinstance(rhs, StructArray) is False:
            raise EngineError(
                "matbridge:invalidConversion",
                f"Conversion to struct from {class_name(rhs)} is not possible.",
            )
        if isinstance(target, StructArray) is False:
            if target_is_empty_double is False:
                raise EngineError(
                    "matbridge:invalidConversion",
                    f"Conversion to {class_name(target)} from struct is not possible.",
                )
            target = StructArray(rhs.field_names, np.empty((0, 0), dtype=object))
        if numel(target) == 0 and set(target.field_names) != set(rhs.field_names):
            target = StructArray(rhs.field_names, np.empty(shape_of(target), dtype=object))
        elif set(target.field_names) != set(rhs.field_names):
            raise EngineError(
                "matbridge:heterogeneousStrucAssignment",
                "Subscripted assignment between dissimilar structures.",
            )
        reordered: np.ndarray = np.empty(rhs.items.shape, dtype=object)
        for position in np.ndindex(*rhs.items.shape):
            element: dict[str, object] = rhs.items[position]
            reordered[position] = {name: element[name] for name in target.field_names}
        return target, reordered

    if isinstance(target, CharArray) is True:
        if isinstance(rhs, CharArray) is True:
            return target, rhs.codes
        if numel(target) == 0:
            return _coerce(np.zeros(shape_of(target)), rhs)
        return target, saturate(numeric_operand(rhs, "subsasgn"), np.dtype(np.uint16))

    target_array: np.ndarray = numeric_operand(target, "subsasgn")
    rhs_array: np.ndarray = numeric_operand(rhs, "subsasgn")
    new_dtype: np.dtype = target_array.dtype
    if target_array.size == 0 and is_sparse(target) is False:
        new_dtype = rhs_array.dtype
    elif target_array.dtype.kind == "b" and rhs_array.dtype.kind != "b":
        new_dtype = rhs_array.dtype
    elif target_array.dtype.kind in "f" and rhs_array.dtype.kind in "iu":
        new_dtype = rhs_array.dtype
    elif rhs_array.dtype.kind == "c" and target_array.dtype.kind != "c":
        new_dtype = np.dtype(np.complex64) if target_array.dtype == np.float32 else np.dtype(np.complex128)
    if is_sparse(target) is True:
        new_dtype = np.dtype(bool) if target_array.dtype.kind == "b" and rhs_array.dtype.kind == "b" else new_dtype
        if new_dtype.kind not in "bc":
            new_dtype = np.dtype(np.float64)
    converted_target: np.ndarray = target_array.astype(new_dtype) if new_dtype != target_array.dtype else target_array
    if new_dtype.kind in "iu" and rhs_array.dtype != new_dtype:
        converted_rhs: np.ndarray = saturate(rhs_array, new_dtype)
    else:
        converted_rhs = rhs_array.astype(new_dtype)
    if is_sparse(target) is True:
        return scipy.sparse.csc_matrix(converted_target), converted_rhs
    return converted_target, converted_rhs


def _store(storage: np.ndarray, selector: tuple, block_shape: tuple[int, ...], rhs: np.ndarray) -> None:
    """Write ``rhs`` into ``storage[selector]``, broadcasting a single element."""
    count: int = 1
    for dim in block_shape:
        count *= dim
    if rhs.size != 1 and rhs.size != count:
        raise EngineError(
            "matbridge:subsassignnumelmismatch",
            "Unable to perform assignment because the left and right sides have a different number of elements.",
        )
    if storage.dtype == object:
        source: list[object] = list(rhs.reshape(-1, order="F"))
        block_positions: list[tuple[int, ...]] = list(np.ndindex(*block_shape))
        ordered: list[tuple[int, ...]] = sorted(block_positions, key=lambda item: tuple(reversed(item)))
        view: np.ndarray = storage[selector]
        for offset, position in enumerate(ordered):
            view[position] = source[0] if len(source) == 1 else source[offset]
        storage[selector] = view
        return
    if rhs.size == 1:
        storage[selector] = rhs.reshape(-1)[0]
    else:
        storage[selector] = rhs.reshape(block_shape, order="F")


def assign(target: object | None, subscripts: list[object], rhs: object) -> object:
    """Evaluate ``target(subscripts...) = rhs`` and return the updated value.

    :param target: Current value, or ``None`` for an undefined name.
    :param subscripts: Evaluated subscripts.
    :param rhs: Assigned value.
    :returns: New value; ``target`` itself is not modified.
    :raises EngineError: On class, size or subscript errors.
    """
    if target is None:
        target = _empty_like(rhs)
    if len(subscripts) == 0:
        return rhs
    converted: object
    rhs_storage: np.ndarray
    converted, rhs_storage = _coerce(target, rhs)
    storage: np.ndarray
    wrap: Callable[[np.ndarray], object]
    storage, wrap = unwrap(converted)
    shape: tuple[int, ...] = tuple(storage.shape)

    if len(subscripts) == 1:
        flat_count: int = storage.size
        chosen: np.ndarray = positions(subscripts[0], flat_count, allow_grow=True)
        needed: int = int(chosen.max()) + 1 if chosen.size > 0 else 0
        if needed > flat_count:
            new_shape: tuple[int, ...]
            if flat_count == 0 or (len(shape) == 2 and shape[0] == 1):
                new_shape = (1, needed)
            elif len(shape) == 2 and shape[1] == 1:
                new_shape = (needed, 1)
            else:
                raise EngineError(
                    "matbridge:indexOutOfBounds",
                    "Attempt to grow array along ambiguous dimension.",
                )
            base: np.ndarray = storage.reshape(-1, order="F")
            if new_shape[0] == 1:
                base = base.reshape((1, flat_count))
            else:
                base = base.reshape((flat_count, 1))
            storage = _grow(base, new_shape, converted)
            shape = new_shape
        flat: np.ndarray = storage.reshape(-1, order="F").copy()
        _store(flat, (chosen,), (chosen.size,), rhs_storage)
        return wrap(flat.reshape(shape, order="F"))

    rhs_shape: tuple[int, ...] = tuple(rhs_storage.shape)
    count: int = len(subscripts)
    dims: tuple[int, ...] = _per_dimension(shape, count)
    reshaped: np.ndarray = storage.reshape(dims, order="F")
    selectors: list[np.ndarray] = []
    new_dims: list[int] = list(dims)
    for position, subscript in enumerate(subscripts):
        extent: int = dims[position]
        if subscript is COLON and extent == 0 and rhs_storage.size != 1:
            extent = rhs_shape[position] if position < len(rhs_shape) else 1
            new_dims[position] = extent
            selectors.append(np.arange(extent, dtype=np.int64))
            continue
        chosen_positions: np.ndarray = positions(subscript, extent, allow_grow=True)
        if chosen_positions.size > 0:
            new_dims[position] = max(new_dims[position], int(chosen_positions.max()) + 1)
        selectors.append(chosen_positions)
    if len(shape) > count and tuple(new_dims) != dims:
        raise EngineError("matbridge:indexOutOfBounds", "Attempt to grow array along ambiguous dimension.")
    grown: np.ndarray = _grow(reshaped, tuple(new_dims), converted)
    block_shape: tuple[int, ...] = tuple(selector.size for selector in selectors)
    _store(grown, np.ix_(*selectors), block_shape, rhs_storage)
    if len(shape) > count:
        return wrap(grown.reshape(shape, order="F"))
    return wrap(grown.reshape(trim_shape(tuple(new_dims)), order="F"))


def delete(target: object, subscripts: list[object]) -> object:
    """Evaluate ``target(subscripts...) = []``.

    :raises EngineError: When more than one subscript is not ``:``.
    """
    storage: np.ndarray
    wrap: Callable[[np.ndarray], object]
    storage, wrap = unwrap(target)
    shape: tuple[int, ...] = tuple(storage.shape)

    if len(subscripts) == 1:
        flat: np.ndarray = storage.reshape(-1, order="F")
        removed: np.ndarray = positions(subscripts[0], flat.size)
        keep: np.ndarray = np.ones(flat.size, dtype=bool)
        keep[removed] = False
        remaining: np.ndarray = flat[keep]
        if subscripts[0] is COLON:
            return wrap(remaining.reshape((0, 0)))
        if len(shape) == 2 and shape[1] == 1 and shape[0] != 1:
            return wrap(remaining.reshape((remaining.size, 1)))
        return wrap(remaining.reshape((1, remaining.size)))

    dims: tuple[int, ...] = _per_dimension(shape, len(subscripts))
    reshaped: np.ndarray = storage.reshape(dims, order="F")
    partial: list[int] = []
    complete: list[int] = []
    for position, subscript in enumerate(subscripts):
        if subscript is COLON:
            continue
        chosen: np.ndarray = np.unique(positions(subscript, dims[position]))
        if chosen.size == dims[position]:
            complete.append(position)
        else:
            partial.append(position)
    if len(partial) > 1:
        raise EngineError(
            "matbridge:nullAssignment",
            "A null assignment can have only one non-colon index.",
        )
    axis: int = 0
    if len(partial) == 1:
        axis = partial[0]
    elif len(complete) > 0:
        axis = complete[0]
    removed_positions: np.ndarray = positions(subscripts[axis], dims[axis])
    result: np.ndarray = np.delete(reshaped, np.unique(removed_positions), axis=axis)
    return wrap(result.reshape(trim_shape(tuple(result.shape)), order="F"))
