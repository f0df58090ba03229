"""Type tags shared by foreign values, the marshaller, and the engine."""

import enum
import operator
from collections.abc import Iterable

import numpy as np

from matbridge.errors import ConversionTypeError
from matbridge.errors import InvalidArgumentError


class ValueKind(enum.Enum):
    """Closed set of foreign value kinds."""

    NUMERIC = "numeric"
    LOGICAL = "logical"
    CHAR = "char"
    CELL = "cell"
    STRUCT = "struct"
    SPARSE = "sparse"


class ElementType(enum.Enum):
    """Element types, keyed by the engine class name."""

    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    UINT64 = "uint64"
    SINGLE = "single"
    DOUBLE = "double"
    LOGICAL = "logical"
    CHAR = "char"

    @property
    def class_name(self) -> str:
        """Engine class name, such as ``double``."""
        return self.value

    @property
    def dtype(self) -> np.dtype:
        """Little-endian numpy dtype used for column-major storage."""
        return _DTYPES[self]

    @property
    def element_size(self) -> int:
        """Size of one (real) element in bytes."""
        return self.dtype.itemsize

    @property
    def is_integer(self) -> bool:
        """Whether this is one of the eight integer types."""
        return self in _INTEGER_TYPES

    @property
    def is_float(self) -> bool:
        """Whether this is ``single`` or ``double``."""
        return self is ElementType.SINGLE or self is ElementType.DOUBLE

    @property
    def is_numeric(self) -> bool:
        """Whether values of this type belong to the numeric kind."""
        return self.is_integer is True or self.is_float is True

    @classmethod
    def from_class_name(cls, class_name: str) -> "ElementType":
        """Look up an element type by engine class name.

        :param class_name: Class name such as ``int32``.
        :returns: Matching element type.
        :raises ConversionTypeError: If the name is unknown.
        """
        try:
            return cls(class_name)
        except ValueError as exc:
            raise ConversionTypeError(f"Unknown element class {class_name!r}") from exc

    @classmethod
    def from_dtype(cls, dtype: object) -> "ElementType":
        """Return the nearest element type for a numpy dtype.

        Complex dtypes map to their component type; ``float16`` widens to
        ``single``.

        :param dtype: Anything ``numpy.dtype`` accepts.
        :returns: Matching element type.
        :raises ConversionTypeError: If the dtype has no foreign counterpart.
        """
        resolved: np.dtype = np.dtype(dtype)
        if resolved.kind == "b":
            return cls.LOGICAL
        if resolved.kind == "c":
            if resolved.itemsize <= 8:
                return cls.SINGLE
            return cls.DOUBLE
        if resolved.kind == "f":
            if resolved.itemsize <= 4:
                return cls.SINGLE
            if resolved.itemsize == 8:
                return cls.DOUBLE
            raise ConversionTypeError(f"No foreign element type for {resolved}")
        if resolved.kind in ("i", "u"):
            name: str = f"{'int' if resolved.kind == 'i' else 'uint'}{resolved.itemsize * 8}"
            return cls(name)
        raise ConversionTypeError(f"No foreign element type for {resolved}")


_DTYPES: dict[ElementType, np.dtype] = {
    ElementType.INT8: np.dtype("<i1"),
    ElementType.INT16: np.dtype("<i2"),
    ElementType.INT32: np.dtype("<i4"),
    ElementType.INT64: np.dtype("<i8"),
    ElementType.UINT8: np.dtype("<u1"),
    ElementType.UINT16: np.dtype("<u2"),
    ElementType.UINT32: np.dtype("<u4"),
    ElementType.UINT64: np.dtype("<u8"),
    ElementType.SINGLE: np.dtype("<f4"),
    ElementType.DOUBLE: np.dtype("<f8"),
    ElementType.LOGICAL: np.dtype("bool"),
    ElementType.CHAR: np.dtype("<u2"),
}

_INTEGER_TYPES: frozenset[ElementType] = frozenset(
    {
        ElementType.INT8,
        ElementType.INT16,
        ElementType.INT32,
        ElementType.INT64,
        ElementType.UINT8,
        ElementType.UINT16,
        ElementType.UINT32,
        ElementType.UINT64,
    }
)


class Ownership(enum.Enum):
    """Who is responsible for returning a foreign value's memory."""

    HOST_OWNED = "HostOwned"
    SESSION_OWNED = "SessionOwned"
    RELEASED = "Released"


def kind_for_element_type(element_type: ElementType) -> ValueKind:
    """Return the dense kind that stores ``element_type`` elements.

    :param element_type: Element type.
    :returns: NUMERIC, LOGICAL, or CHAR.
    """
    if element_type is ElementType.LOGICAL:
        return ValueKind.LOGICAL
    if element_type is ElementType.CHAR:
        return ValueKind.CHAR
    return ValueKind.NUMERIC


def normalize_shape(shape: Iterable[int] | int) -> tuple[int, ...]:
    """Validate a shape and pad it to at least two dimensions.

    A bare integer ``n`` means ``(n, n)``; a one-element shape ``(n,)`` means
    an ``n``-by-1 column. Trailing singleton dimensions beyond the second are
    kept as given.

    :param shape: Dimension sizes.
    :returns: Shape tuple of rank two or more.
    :raises InvalidArgumentError: If a dimension is negative or not an integer.
    """
    dims: list[int]
    if isinstance(shape, (int, np.integer)) is True and isinstance(shape, bool) is False:
        size: int = operator.index(shape)
        dims = [size, size]
    else:
        dims = []
        try:
            for dim in shape:
                if isinstance(dim, bool) is True:
                    raise InvalidArgumentError("Shape dimensions must be integers")
                dims.append(operator.index(dim))
        except TypeError as exc:
            raise InvalidArgumentError(f"Invalid shape {shape!r}") from exc

    for dim in dims:
        if dim < 0:
            raise InvalidArgumentError(f"Shape dimensions must be non-negative, got {tuple(dims)}")

    if len(dims) == 0:
        return (1, 1)
    if len(dims) == 1:
        return (dims[0], 1)
    return tuple(dims)


def shape_numel(shape: tuple[int, ...]) -> int:
    """Return the number of elements in ``shape``.

    :param shape: Dimension sizes.
    :returns: Product of the dimensions.
    """
    count: int = 1
    for dim in shape:
        count *= dim
    return count


def format_shape(shape: tuple[int, ...]) -> str:
    """Render a shape as ``2x3x4``.

    :param shape: Dimension sizes.
    :returns: Display string.
    """
    return "x".join(str(dim) for dim in shape)
