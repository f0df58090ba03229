"""Foreign heap backing foreign-value storage.

Blocks handed out here are the only memory foreign values store data in.
The heap keeps its own accounting so leaks and double frees are observable
independently of Python's garbage collector.
"""

import logging
import threading

from matbridge.config import HeapConfig
from matbridge.errors import AllocationError
from matbridge.errors import InvalidArgumentError
from matbridge.errors import OwnershipError

logger = logging.getLogger(__name__)

_LARGE_ALLOCATION_BYTES: int = 64 * 1024 * 1024
_DEFAULT_HEAP_LOCK: threading.Lock = threading.Lock()
_DEFAULT_HEAP: "ForeignHeap | None" = None


class HeapBlock:
    """One zero-filled allocation owned by a :class:`ForeignHeap`."""

    __slots__ = ("block_id", "buffer", "__weakref__")

    block_id: int
    buffer: bytearray

    def __init__(self, block_id: int, buffer: bytearray) -> None:
        """Initialize a block record.

        :param block_id: Heap-unique identifier.
        :param buffer: Backing storage.
        """
        self.block_id = block_id
        self.buffer = buffer

    @property
    def nbytes(self) -> int:
        """Size of the block in bytes."""
        return len(self.buffer)

    def __repr__(self) -> str:
        """Return a short description.

        :returns: Representation string.
        """
        return f"HeapBlock(id={self.block_id}, nbytes={self.nbytes})"


class ForeignHeap:
    """Allocator with an optional byte limit and live-block accounting."""

    _limit_bytes: int | None
    _live: dict[int, HeapBlock]
    _live_bytes: int
    _next_block_id: int
    _lock: threading.Lock

    def __init__(self, limit_bytes: int | None = None) -> None:
        """Initialize an empty heap.

        :param limit_bytes: Maximum bytes live at once, or ``None`` for no limit.
        :raises InvalidArgumentError: If the limit is negative.
        """
        if limit_bytes is not None and limit_bytes < 0:
            raise InvalidArgumentError("limit_bytes must not be negative")
        self._limit_bytes = limit_bytes
        self._live = {}
        self._live_bytes = 0
        self._next_block_id = 1
        self._lock = threading.Lock()

    @property
    def limit_bytes(self) -> int | None:
        """Configured byte limit."""
        return self._limit_bytes

    @property
    def live_blocks(self) -> int:
        """Number of blocks allocated and not yet freed."""
        with self._lock:
            return len(self._live)

    @property
    def live_bytes(self) -> int:
        """Total size of live blocks."""
        with self._lock:
            return self._live_bytes

    def allocate(self, nbytes: int) -> HeapBlock:
        """Allocate one zero-filled block.

        :param nbytes: Requested size in bytes.
        :returns: New block.
        :raises AllocationError: If the limit would be exceeded or memory is exhausted.
        """
        if nbytes < 0:
            raise InvalidArgumentError("Allocation size must not be negative")

        with self._lock:
            if self._limit_bytes is not None:
                remaining: int = self._limit_bytes - self._live_bytes
                if nbytes > remaining:
                    raise AllocationError(
                        f"Foreign heap cannot allocate {nbytes} bytes "
                        + f"({remaining} of {self._limit_bytes} remaining)"
                    )
            try:
                buffer: bytearray = bytearray(nbytes)
            except (MemoryError, OverflowError) as exc:
                raise AllocationError(f"Foreign heap cannot allocate {nbytes} bytes") from exc

            block: HeapBlock = HeapBlock(self._next_block_id, buffer)
            self._next_block_id += 1
            self._live[block.block_id] = block
            self._live_bytes += nbytes

        if nbytes >= _LARGE_ALLOCATION_BYTES:
            logger.debug("Allocated large foreign block %d (%d bytes)", block.block_id, nbytes)
        return block

    def free(self, block: HeapBlock) -> None:
        """Return one block to the heap.

        Freed storage is zeroed so stale views never observe old contents.

        :param block: Block previously returned by :meth:`allocate`.
        :raises OwnershipError: If the block is not live on this heap.
        """
        with self._lock:
            live_block: HeapBlock | None = self._live.pop(block.block_id, None)
            if live_block is not block:
                if live_block is not None:
                    self._live[live_block.block_id] = live_block
                raise OwnershipError(f"Block {block.block_id} is not live on this heap")
            self._live_bytes -= block.nbytes
            block.buffer[:] = bytes(block.nbytes)

    def owns(self, block: HeapBlock) -> bool:
        """Report whether ``block`` is live on this heap.

        :param block: Candidate block.
        :returns: ``True`` when the block has not been freed.
        """
        with self._lock:
            return self._live.get(block.block_id) is block


def get_heap() -> ForeignHeap:
    """Return the process-wide heap, creating it from the environment on first use.

    :returns: Shared heap.
    """
    global _DEFAULT_HEAP
    with _DEFAULT_HEAP_LOCK:
        if _DEFAULT_HEAP is None:
            config: HeapConfig = HeapConfig.from_env()
            _DEFAULT_HEAP = ForeignHeap(limit_bytes=config.limit_bytes)
        return _DEFAULT_HEAP
