"""
Payload Chunker

Design Decision: Unit Size
==========================

Options Considered:
| Size    | Pros                          | Cons                              |
|---------|-------------------------------|-----------------------------------|
| 8KB     | Fine-grained progress         | Per-write overhead dominates      |
| 64KB    | Matches common socket buffers | -                                 |
| 1MB     | Fewer acknowledgments         | Long stalls before timeout fires  |
| Whole   | Single write call             | One timeout covers the whole load |

Decision: 64KB (65,536 bytes) default, configurable
- One acknowledgment per unit keeps the write timeout meaningful
- Units are sliced through a memoryview, one copy per unit

Slicing Strategy: Fixed-Size
- Units cover [0, N) with no gaps or overlaps, ascending offsets
- The last unit carries N mod unit_size bytes (or unit_size when even)
- N = 0 produces no units at all
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Tuple, Union

import aiofiles

# Unit size: 64KB
UNIT_SIZE = 64 * 1024  # 65,536 bytes

# Default payload size used by the harness
DEFAULT_PAYLOAD_SIZE = 82178160

PayloadLike = Union[bytes, bytearray, memoryview]


@dataclass(frozen=True)
class TransferUnit:
    """One write unit: a slice of the payload starting at `offset`."""
    offset: int
    payload: bytes

    @property
    def length(self) -> int:
        return len(self.payload)

    @property
    def end(self) -> int:
        return self.offset + len(self.payload)


class PayloadChunker:
    """
    Splits an in-memory payload into fixed-size transfer units.
    """

    def __init__(self, unit_size: int = UNIT_SIZE):
        if unit_size <= 0:
            raise ValueError(f"unit_size must be positive, got {unit_size}")
        self.unit_size = unit_size

    def get_unit_count(self, payload_size: int) -> int:
        """Calculate number of units for a payload of given size."""
        return (payload_size + self.unit_size - 1) // self.unit_size

    def get_unit_bounds(self, unit_index: int, payload_size: int) -> Tuple[int, int]:
        """
        Get byte range for a specific unit.

        Returns:
            (start_offset, length) tuple
        """
        start = unit_index * self.unit_size
        length = min(self.unit_size, payload_size - start)
        return start, length

    def iter_units(self, payload: PayloadLike) -> Iterator[TransferUnit]:
        """
        Split a payload into units.

        Yields:
            TransferUnit in ascending offset order
        """
        view = memoryview(payload)
        size = len(view)
        for unit_index in range(self.get_unit_count(size)):
            start, length = self.get_unit_bounds(unit_index, size)
            yield TransferUnit(offset=start, payload=bytes(view[start:start + length]))

    def split(self, payload: PayloadLike) -> List[TransferUnit]:
        return list(self.iter_units(payload))


def synthetic_payload(size: int, fill: bytes = b'A') -> bytes:
    """Build a payload of `size` bytes by repeating `fill`."""
    if size < 0:
        raise ValueError("payload size must be >= 0")
    if not fill:
        return bytes(size)
    repeats = size // len(fill) + 1
    return (fill * repeats)[:size]


async def load_payload(file_path: Path) -> bytes:
    """Read a whole file into memory to use as payload."""
    async with aiofiles.open(file_path, 'rb') as f:
        return await f.read()
