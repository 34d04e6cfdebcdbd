import logging
import math
from collections.abc import MutableMapping
from dataclasses import dataclass
from enum import Enum, auto
from numbers import Integral
from typing import Any, Callable, Final, Iterator, Optional

from probe_sequence import ProbeSequence, SeedLike

log = logging.getLogger(__name__)

# a sentinel used to tell an omitted default apart from None
_MISSING: Final[object] = object()


class SlotState(Enum):
    NEVER_USED = auto()
    OCCUPIED = auto()
    TOMBSTONED = auto()


@dataclass(slots=True)
class Slot:
    """
    A single cell of the table

    A slot is in exactly one of three states:
        1) NEVER_USED: nothing was stored here since the slot array was allocated
        2) OCCUPIED: holds a live key-value pair
        3) TOMBSTONED: held a pair that has since been removed

    Only OCCUPIED slots carry a payload. ``removals`` counts the kills this slot has seen,
    it lets value references tell a reloaded slot apart from the one they were bound to
    """

    key: Optional[str] = None
    value: Optional[int] = None
    state: SlotState = SlotState.NEVER_USED
    removals: int = 0

    def load(self, key: str, value: int) -> None:
        self.key = key
        self.value = value
        self.state = SlotState.OCCUPIED

    def kill(self) -> None:
        """
        Turn an occupied slot into a tombstone, clearing its payload

        A tombstone must never be mistaken for a never used slot: it still lies on the
        probe path of other keys. Calling this on a slot that is not occupied does nothing.
        """
        if self.state is not SlotState.OCCUPIED:
            return
        self.key = None
        self.value = None
        self.state = SlotState.TOMBSTONED
        self.removals += 1

    def is_empty(self) -> bool:
        # governs where new keys may land, not where probing may stop
        return self.state is not SlotState.OCCUPIED

    def is_occupied(self) -> bool:
        return self.state is SlotState.OCCUPIED

    def is_tombstone(self) -> bool:
        return self.state is SlotState.TOMBSTONED

    def key_matches(self, candidate_key: str) -> bool:
        return self.state is SlotState.OCCUPIED and self.key == candidate_key


class ValueRef:
    """
    A short-lived handle to the value stored for a key

    The handle is bound to the slot holding the key when it was created.
    Any resize of the owning table moves every pair into a fresh slot array,
    so a handle used after a resize raises RuntimeError. So does a handle whose
    key has since been removed, even if the key was inserted again into the same slot.
    Re-fetch the handle with ``ProbingHashTable.ref``.
    """

    __slots__ = ("_table", "_slot", "_key", "_generation", "_removals")

    def __init__(self, table: "ProbingHashTable", slot: Slot, key: str):
        self._table = table
        self._slot = slot
        self._key = key
        self._generation = table._generation
        self._removals = slot.removals

    @property
    def key(self) -> str:
        return self._key

    def _checked_slot(self) -> Slot:
        if self._generation != self._table._generation:
            raise RuntimeError(
                f"stale reference to {self._key!r}: the table was resized"
            )
        if (
            self._slot.removals != self._removals
            or not self._slot.key_matches(self._key)
        ):
            raise RuntimeError(
                f"stale reference to {self._key!r}: the key was removed"
            )
        return self._slot

    @property
    def value(self) -> int:
        return self._checked_slot().value

    @value.setter
    def value(self, value: int) -> None:
        slot = self._checked_slot()
        slot.value = _validate_value(value)

    def __repr__(self):
        return f"ValueRef({self._key!r})"


def _validate_key(key: Any) -> str:
    if not isinstance(key, str):
        raise TypeError(f"keys must be strings: not {type(key).__name__}")
    return key


def _validate_value(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, Integral):
        raise TypeError(f"values must be integers: not {type(value).__name__}")
    if value < 0:
        raise ValueError(f"values must be unsigned: not {value}")
    return int(value)


class ProbingHashTable(MutableMapping):
    """
    A dictionary from strings to unsigned integers which resolves collisions using open addressing

    Notes
    -----
        * ``self._slots`` is a flat list of ``Slot`` objects, its length is the capacity

        * ``self._probe_sequence`` holds one random permutation of offsets shared by all keys,
          it is regenerated only when the slot array is reallocated

        * removed pairs leave tombstones behind, a lookup keeps probing past both tombstones
          and never used slots until it finds a match or exhausts the sequence

        * the table grows by ``growth_factor`` as soon as the load factor reaches ``usable_fraction``,
          it never shrinks

        * indexing an absent key inserts it with value 0, like ``collections.defaultdict(int)``
    """

    DEFAULT_CAPACITY: Final[int] = 8

    __slots__ = (
        "_slots",
        "_probe_sequence",
        "_num_occupied",
        "_usable_fraction",
        "_growth_factor",
        "_rng",
        "_generation",
    )

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        *,
        usable_fraction: float = 0.5,
        growth_factor: float = 2.0,
        rng: SeedLike = None,
    ):
        """
        Parameters
        ----------
        capacity : int, optional
            The initial number of slots. It must be an integer >= 1, the default is 8
        usable_fraction : float, optional
            The maximum load factor of the table. When this is reached, the table is expanded.
            This value has to be in the range (0, 1). The default is 0.5.
        growth_factor : float, optional
            The factor by which to expand the table, by default it is 2. It must be > 1
        rng : numpy.random.Generator or int, optional
            The source of randomness for the probe offsets, or a seed for one.
            The same generator is used again on every resize
        """
        self._usable_fraction: float = usable_fraction
        self._growth_factor: float = growth_factor
        self._validate_capacity(capacity)
        self._validate_attributes()
        # resolved to a numpy Generator by the first probe sequence
        self._rng = rng
        self._slots: list[Slot] = [Slot() for _ in range(capacity)]
        self._probe_sequence = self._gen_probe_sequence(capacity)
        # the number of occupied slots, tombstones are not counted
        self._num_occupied: int = 0
        # bumped on every resize, used to detect stale value references
        self._generation: int = 0

    def _validate_attributes(self):
        self._validate_usable_fraction()
        self._validate_growth_factor()

    @staticmethod
    def _validate_capacity(capacity: Any):
        if isinstance(capacity, bool) or not isinstance(capacity, Integral):
            raise TypeError(f"capacity must be an integer: not {type(capacity).__name__}")
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1: not {capacity}")

    def _validate_usable_fraction(self):
        # written so that nan fails the comparison
        if not 0 < self._usable_fraction < 1:
            raise ValueError(
                f"The usable fraction should be a value in the range (0, 1): not {self._usable_fraction}"
            )

    def _validate_growth_factor(self):
        if not (self._growth_factor > 1 and math.isfinite(self._growth_factor)):
            raise ValueError(
                f"The growth factor must be a finite number > 1: not {self._growth_factor}"
            )

    def _gen_probe_sequence(self, capacity: int) -> ProbeSequence:
        probe_sequence = ProbeSequence(capacity, self._rng)
        self._rng = probe_sequence.rng
        probe_sequence.gen()
        return probe_sequence

    @property
    def capacity(self) -> int:
        return len(self._slots)

    @property
    def size(self) -> int:
        return self._num_occupied

    @property
    def tombstones(self) -> int:
        return sum(1 for slot in self._slots if slot.is_tombstone())

    def load_factor(self) -> float:
        return self._num_occupied / len(self._slots)

    def _should_grow_table(self) -> bool:
        return self.load_factor() >= self._usable_fraction

    def _grown_capacity(self) -> int:
        return max(self.capacity + 1, int(self.capacity * self._growth_factor))

    def _find_slot(self, key: str) -> Optional[Slot]:
        """
        Return the occupied slot holding ``key`` or None

        The whole probe sequence is scanned unless a match is found first.
        A never used slot does not end the scan.
        """
        slots = self._slots
        for slot_index in self._probe_sequence.candidates(key):
            if slots[slot_index].key_matches(key):
                return slots[slot_index]
        return None

    def contains(self, key: str) -> bool:
        return self._find_slot(key) is not None

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return self.contains(key)

    def lookup(self, key: str) -> Optional[int]:
        if (slot := self._find_slot(key)) is None:
            return None
        return slot.value

    def insert(self, key: str, value: int) -> bool:
        """
        Insert a new key-value pair

        Parameters
        ----------
        key : str
            The key to insert
        value : int
            An unsigned integer

        Returns
        -------
        True
            If the pair was inserted
        False
            If ``key`` was already present, in which case nothing changes

        Raises
        ------
        RuntimeError
            If no candidate slot was empty. This cannot happen while the load factor is kept
            below ``usable_fraction``, so it means the slot array was tampered with
        """
        key = _validate_key(key)
        value = _validate_value(value)
        if self.contains(key):
            return False
        self._insert_absent(key, value)
        return True

    def _insert_absent(self, key: str, value: int) -> Slot:
        # the caller has already established that ``key`` is absent
        slots = self._slots
        for slot_index in self._probe_sequence.candidates(key):
            if slots[slot_index].is_empty():
                slot = slots[slot_index]
                slot.load(key, value)
                self._num_occupied += 1
                break
        else:
            log.error(
                "probe sequence exhausted inserting %r: %d of %d slots occupied",
                key,
                self._num_occupied,
                self.capacity,
            )
            raise RuntimeError(
                f"no empty slot found for {key!r} after {self.capacity} probes"
            )

        if self._should_grow_table():
            self.resize(self._grown_capacity())
            # the pair now lives in the new slot array
            slot = self._find_slot(key)
        return slot

    def remove(self, key: str) -> bool:
        if (slot := self._find_slot(key)) is None:
            return False
        slot.kill()
        self._num_occupied -= 1
        return True

    def resize(self, new_capacity: int):
        """
        Move every live pair into a fresh table of ``new_capacity`` slots

        The replacement is built completely, with a newly drawn probe sequence,
        before its slot array is swapped in. Tombstones are dropped along the way.
        Reinsertion goes through the ordinary insert path, minus the duplicate check since
        the live keys are already distinct, so the replacement may grow again on its own.
        """
        self._validate_capacity(new_capacity)
        old_capacity, dropped = self.capacity, self.tombstones
        replacement = ProbingHashTable(
            new_capacity,
            usable_fraction=self._usable_fraction,
            growth_factor=self._growth_factor,
            rng=self._rng,
        )
        for slot in self._slots:
            if slot.is_occupied():
                replacement._insert_absent(slot.key, slot.value)

        self._slots, self._probe_sequence, self._num_occupied = (
            replacement._slots,
            replacement._probe_sequence,
            replacement._num_occupied,
        )
        self._generation += 1
        log.debug(
            "resized from %d to %d slots: %d entries moved, %d tombstones dropped",
            old_capacity,
            self.capacity,
            self._num_occupied,
            dropped,
        )

    def _slot_for_update(self, key: str) -> Slot:
        key = _validate_key(key)
        if (slot := self._find_slot(key)) is None:
            slot = self._insert_absent(key, 0)
        return slot

    def __getitem__(self, key: str) -> int:
        return self._slot_for_update(key).value

    def __setitem__(self, key: str, value: int):
        value = _validate_value(value)
        if (slot := self._find_slot(_validate_key(key))) is not None:
            # overwrite old value
            slot.load(key, value)
        else:
            self._insert_absent(key, value)

    def ref(self, key: str) -> ValueRef:
        return ValueRef(self, self._slot_for_update(key), key)

    def modify(self, key: str, func: Callable[[int], int]) -> int:
        """
        Replace the value of ``key`` with ``func(value)`` and return the result

        An absent key is inserted with value 0 before ``func`` is applied.
        """
        slot = self._slot_for_update(key)
        slot.value = _validate_value(func(slot.value))
        return slot.value

    def __delitem__(self, key: str):
        if not self.remove(key):
            raise KeyError(f"{key} not found")

    def get(self, key: str, default: Any = None) -> Any:
        if (slot := self._find_slot(key)) is None:
            return default
        return slot.value

    def pop(self, key: str, default: Any = _MISSING) -> Any:
        if (slot := self._find_slot(key)) is None:
            if default is _MISSING:
                raise KeyError(f"{key} not found")
            return default
        value = slot.value
        slot.kill()
        self._num_occupied -= 1
        return value

    def setdefault(self, key: str, default: int = 0) -> int:
        """
        Return the value of ``key``, inserting ``default`` first if it is absent

        Unlike ``dict.setdefault`` the default is 0, not None: values must be unsigned
        integers, so ``setdefault(key, None)`` raises TypeError for an absent key.
        """
        if (slot := self._find_slot(key)) is not None:
            return slot.value
        return self._insert_absent(_validate_key(key), _validate_value(default)).value

    def _occupied_slots(self) -> Iterator[Slot]:
        yield from filter(Slot.is_occupied, self._slots)

    def keys(self) -> list[str]:
        return [slot.key for slot in self._occupied_slots()]

    def values(self) -> list[int]:
        return [slot.value for slot in self._occupied_slots()]

    def items(self) -> list[tuple[str, int]]:
        return [(slot.key, slot.value) for slot in self._occupied_slots()]

    def __iter__(self) -> Iterator[str]:
        yield from (slot.key for slot in self._occupied_slots())

    def __len__(self) -> int:
        return self._num_occupied

    def __str__(self):
        return "".join(
            f"Key: {key} -- Value: {value}\n" for key, value in self.items()
        )

    def __repr__(self):
        pairs = ", ".join(f"{key!r}: {value!r}" for key, value in self.items())
        return f"{type(self).__name__}({{{pairs}}}, capacity={self.capacity})"

    def describe(self) -> str:
        return "\n".join(
            (
                "--Table Attributes--:",
                f"  capacity        : {self.capacity}",
                f"  size            : {self._num_occupied}",
                f"  tombstones      : {self.tombstones}",
                f"  load factor     : {self.load_factor():.3f}",
            )
        )


if __name__ == "__main__":
    import string

    import numpy as np

    logging.basicConfig(level=logging.DEBUG)

    n = 2000
    rng = np.random.default_rng()
    letters = np.array(list(string.ascii_letters))
    keys = ["".join(rng.choice(letters, 10)) for _ in range(n)]
    values = rng.integers(0, 1_000_000, n)

    table = ProbingHashTable()
    for index, (k, v) in enumerate(zip(keys, values)):
        table[k] = v
        assert k in table
        if index and index % 5 == 0:
            del table[keys[index - 1]]
            assert keys[index - 1] not in table
    print(table.describe())
