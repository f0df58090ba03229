"""Read and write MAT-files (version 5) as foreign values.

The container layout is handled by :mod:`scipy.io`; this module maps the
arrays scipy produces to and from :class:`ForeignValue` so files behave like
a session workspace on disk. Writes are buffered and flushed on
:meth:`MatFile.close`.
"""

import logging
import os
from collections.abc import Mapping

import numpy as np
import scipy.io
import scipy.sparse
from scipy.io.matlab import MatReadError

from matbridge.convert import to_array
from matbridge.convert import to_default
from matbridge.convert import to_foreign
from matbridge.convert import to_sparse
from matbridge.errors import InvalidArgumentError
from matbridge.errors import MatFileError
from matbridge.errors import UndefinedVariableError
from matbridge.types import ValueKind
from matbridge.value import ForeignValue
from matbridge.value import is_valid_name

logger: logging.Logger = logging.getLogger(__name__)

_MODES: frozenset[str] = frozenset({"r", "w", "u"})
_LOAD_OPTIONS: dict[str, object] = {
    "squeeze_me": False,
    "chars_as_strings": False,
    "struct_as_record": True,
    "mat_dtype": False,
}


def _char_shape(shape: tuple[int, ...]) -> tuple[int, ...]:
    """Drop the trailing singleton dimensions ``loadmat`` appends to char arrays."""
    trimmed: list[int] = list(shape)
    while len(trimmed) > 2 and trimmed[-1] == 1:
        trimmed.pop()
    return tuple(trimmed)


def _decode(loaded: object, header: tuple[tuple[int, ...], str] | None = None) -> ForeignValue:
    """Convert one array produced by ``scipy.io.loadmat`` to a foreign value.

    ``loadmat`` reads logical arrays as ``uint8``; the class and shape recorded
    in the file header (from ``scipy.io.whosmat``) restore them for top-level
    variables.

    :param loaded: Loaded array, struct record array, cell object array or sparse matrix.
    :param header: Recorded ``(shape, class)`` of a top-level variable.
    :returns: New host-owned value.
    """
    if scipy.sparse.issparse(loaded) is True:
        return to_foreign(scipy.sparse.csc_matrix(loaded))
    array: np.ndarray = np.asarray(loaded)
    if array.dtype.names is not None:
        names: list[str] = list(array.dtype.names)
        struct: ForeignValue = ForeignValue.create_struct(names, array.shape)
        try:
            for position, element in enumerate(array.reshape(-1, order="F")):
                for name in names:
                    struct.set_field(name, _decode(element[name]), position)
        except Exception:
            struct.release()
            raise
        return struct
    if array.dtype.kind == "U":
        char_shape: tuple[int, ...] = _char_shape(array.shape)
        if header is not None and int(np.prod(header[0])) == array.size:
            char_shape = header[0]
        char: ForeignValue = ForeignValue.create_char(char_shape)
        codes: list[int] = [ord(item) if len(item) == 1 else 32 for item in array.reshape(-1, order="F")]
        with char.data() as view:
            view[...] = np.array(codes, dtype=np.uint16).reshape(char_shape, order="F")
        return char
    if array.dtype == object:
        cell: ForeignValue = ForeignValue.create_cell(array.shape)
        try:
            for position, item in enumerate(array.reshape(-1, order="F")):
                cell.set_cell(position, _decode(item))
        except Exception:
            cell.release()
            raise
        return cell
    if header is not None and header[1] == "logical" and array.dtype != np.bool_:
        array = array.astype(np.bool_)
    return to_foreign(array)


def _encode(value: ForeignValue) -> object:
    """Convert a foreign value to an array ``scipy.io.savemat`` writes faithfully.

    :param value: Host-owned value; it is only read.
    :returns: Array, record array, object array or sparse matrix.
    """
    kind: ValueKind = value.kind
    if kind is ValueKind.SPARSE:
        return to_sparse(value)
    shape: tuple[int, ...] = value.shape
    if kind is ValueKind.CELL:
        cells: np.ndarray = np.empty(shape, dtype=object)
        for position in range(value.numel):
            index: tuple[int, ...] = tuple(int(i) for i in np.unravel_index(position, shape, order="F"))
            child: ForeignValue | None = value.get_cell(position)
            cells[index] = np.zeros((0, 0)) if child is None else _encode(child)
        return cells
    if kind is ValueKind.STRUCT:
        names: tuple[str, ...] = value.field_names
        records: np.ndarray = np.empty(shape, dtype=[(name, object) for name in names])
        for position in range(value.numel):
            index = tuple(int(i) for i in np.unravel_index(position, shape, order="F"))
            for name in names:
                field: ForeignValue | None = value.get_field(name, position)
                records[name][index] = np.zeros((0, 0)) if field is None else _encode(field)
        return records
    return to_array(value)


class MatFile:
    """One open MAT-file.

    Modes: ``"r"`` reads an existing file, ``"w"`` creates or truncates a
    file for writing, ``"u"`` reads an existing file (or starts empty) and
    writes everything back on close.
    """

    _path: str
    _mode: str
    _contents: dict[str, object]
    _headers: dict[str, tuple[tuple[int, ...], str]]
    _is_open: bool
    _is_dirty: bool

    def __init__(self, path: str | os.PathLike[str], mode: str = "r") -> None:
        """Open a MAT-file.

        :param path: File path.
        :param mode: ``"r"``, ``"w"`` or ``"u"``.
        :raises MatFileError: If the mode is unknown or the file cannot be read.
        """
        if mode not in _MODES:
            raise MatFileError(f"Unknown MAT-file mode {mode!r}; expected one of r, w, u")
        self._path = os.fspath(path)
        self._mode = mode
        self._contents = {}
        self._headers = {}
        self._is_open = True
        self._is_dirty = mode == "w"

        if mode == "r" or (mode == "u" and os.path.exists(self._path) is True):
            self._contents = self._load(None)
            self._headers = self._read_headers()
        logger.debug("Opened MAT-file %s in mode %r", self._path, mode)

    def __repr__(self) -> str:
        state: str = "open" if self._is_open is True else "closed"
        return f"<MatFile {self._path!r} mode={self._mode!r} {state}>"

    @property
    def path(self) -> str:
        return self._path

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def is_open(self) -> bool:
        return self._is_open

    def _load(self, names: list[str] | None) -> dict[str, object]:
        """Read variables from disk.

        :param names: Variables to read, or ``None`` for all.
        :returns: Mapping from name to loaded array.
        :raises MatFileError: If the file is missing or unreadable.
        """
        try:
            loaded: dict[str, object] = scipy.io.loadmat(self._path, variable_names=names, **_LOAD_OPTIONS)
        except (OSError, ValueError, TypeError, MatReadError) as exc:
            raise MatFileError(f"Cannot read MAT-file {self._path!r}: {exc}") from exc
        return {name: array for name, array in loaded.items() if name.startswith("__") is False}

    def _read_headers(self) -> dict[str, tuple[tuple[int, ...], str]]:
        """Read the recorded shape and class of every variable.

        :returns: Mapping from name to ``(shape, class)``.
        :raises MatFileError: If the file is unreadable.
        """
        try:
            entries: list[tuple[str, tuple[int, ...], str]] = scipy.io.whosmat(self._path)
        except (OSError, ValueError, TypeError, MatReadError) as exc:
            raise MatFileError(f"Cannot read MAT-file {self._path!r}: {exc}") from exc
        return {name: (tuple(int(dim) for dim in shape), matlab_class) for name, shape, matlab_class in entries}

    def _require_open(self) -> None:
        if self._is_open is False:
            raise MatFileError(f"MAT-file {self._path!r} is closed")

    def _require_readable(self) -> None:
        self._require_open()
        if self._mode == "w":
            raise MatFileError(f"MAT-file {self._path!r} was opened write-only")

    def _require_writable(self) -> None:
        self._require_open()
        if self._mode == "r":
            raise MatFileError(f"MAT-file {self._path!r} was opened read-only")

    def list_variable_names(self) -> list[str]:
        """Return the names of the variables in the file, in file order."""
        self._require_open()
        return list(self._contents)

    def get_value(self, name: str) -> ForeignValue:
        """Read one variable.

        :param name: Variable name.
        :returns: New host-owned foreign value.
        :raises UndefinedVariableError: If the file has no such variable.
        :raises MatFileError: If the file is closed or write-only.
        """
        self._require_readable()
        if name not in self._contents:
            raise UndefinedVariableError(name, f"MAT-file {self._path!r} has no variable {name!r}")
        return _decode(self._contents[name], self._headers.get(name))

    def get_converted(self, name: str) -> object:
        """Read one variable and convert it with :func:`to_default`."""
        value: ForeignValue = self.get_value(name)
        try:
            return to_default(value)
        finally:
            value.release()

    def put_value(self, name: str, value: object) -> None:
        """Stage one variable for writing.

        Foreign values are copied and keep their ownership; host values are
        converted with :func:`to_foreign`.

        :param name: Variable name.
        :param value: Foreign or host value.
        :raises InvalidArgumentError: If ``name`` is not a valid identifier.
        :raises MatFileError: If the file is closed or read-only.
        """
        self._require_writable()
        if is_valid_name(name) is False:
            raise InvalidArgumentError(f"Invalid variable name: {name!r}")
        self._headers.pop(name, None)
        if isinstance(value, ForeignValue) is True:
            self._contents[name] = _encode(value)
        else:
            temporary: ForeignValue = to_foreign(value)
            try:
                self._contents[name] = _encode(temporary)
            finally:
                temporary.release()
        self._is_dirty = True

    def put_many(self, values: Mapping[str, object]) -> None:
        """Stage several variables for writing."""
        for name, value in values.items():
            self.put_value(name, value)

    def flush(self) -> None:
        """Write staged variables to disk.

        :raises MatFileError: If writing fails.
        """
        self._require_writable()
        if self._is_dirty is False:
            return
        try:
            scipy.io.savemat(
                self._path,
                self._contents,
                format="5",
                long_field_names=True,
                do_compression=False,
                oned_as="column",
            )
        except (OSError, ValueError, TypeError) as exc:
            raise MatFileError(f"Cannot write MAT-file {self._path!r}: {exc}") from exc
        self._is_dirty = False
        logger.debug("Wrote %d variable(s) to %s", len(self._contents), self._path)

    def close(self) -> None:
        """Flush pending writes and close. Closing twice does nothing."""
        if self._is_open is False:
            return
        try:
            if self._mode != "r":
                self.flush()
        finally:
            self._is_open = False
            self._contents = {}
            self._headers = {}

    def __enter__(self) -> "MatFile":
        return self

    def __exit__(self, exc_type: object, exc_value: object, traceback: object) -> None:
        self.close()


def open_matfile(path: str | os.PathLike[str], mode: str = "r") -> MatFile:
    """Open a MAT-file; see :class:`MatFile`."""
    return MatFile(path, mode)
