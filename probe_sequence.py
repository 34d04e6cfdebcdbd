import logging
from array import array
from typing import Final, Iterator, Optional, Union

import numpy as np

log = logging.getLogger(__name__)

# these are used to check which int size to use for storing offsets
type_codes: Final[tuple[str, ...]] = ("b", "h", "l", "q")
item_sizes: Final[tuple[int, ...]] = (0x7F, 0x7FFF, 0x7FFFFFFF, 0x7FFFFFFFFFFFFFFF)

SeedLike = Union[None, int, np.random.Generator]


def hash_key(key: str) -> int:
    return hash(key)


def get_correct_type_code(size: int) -> str:
    index = 0
    while size >= item_sizes[index]:
        index += 1
    return type_codes[index]


class ProbeSequence:
    """
    A shared random probe sequence for an open addressing table of a fixed size

    Notes
    -----
        * ``self.offsets`` is a permutation of ``0..size-1`` with ``offsets[0] == 0``

        * the candidate slot for ``key`` at attempt ``i`` is ``(hash(key) + offsets[i]) % size``

        * since the offsets are a permutation, the candidates of any key visit every slot exactly once,
          and the first candidate is always the raw hash bucket of the key

        * the permutation is shared by all keys, it is not drawn per key
    """

    __slots__ = ("_size", "_rng", "offsets")

    def __init__(self, size: int, rng: SeedLike = None):
        if size < 1:
            raise ValueError(f"The size of a probe sequence must be >= 1: not {size}")
        self._size = size
        self._rng: np.random.Generator = np.random.default_rng(rng)
        self.offsets: Optional[array] = None

    def gen(self):
        """
        Draw a fresh offset permutation

        The gen method must always be invoked before ProbeSequence objects can be used
        """
        permutation = self._rng.permutation(np.arange(1, self._size, dtype=np.int64))
        self.offsets = array(get_correct_type_code(self._size), [0])
        self.offsets.extend(permutation.tolist())
        log.debug("generated probe offsets for %d slots", self._size)

    def __call__(self, key: str, attempt: int) -> int:
        if not 0 <= attempt < self._size:
            raise IndexError(
                f"attempt must be in the range [0, {self._size}): not {attempt}"
            )
        return (hash_key(key) + self.offsets[attempt]) % self._size

    def candidates(self, key: str) -> Iterator[int]:
        h = hash_key(key)
        size = self._size
        for offset in self.offsets:
            yield (h + offset) % size

    @property
    def rng(self) -> np.random.Generator:
        return self._rng

    def size(self) -> int:
        return self._size
