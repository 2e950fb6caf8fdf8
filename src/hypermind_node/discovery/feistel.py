"""Feistel permutation of the IPv4 address space.

A balanced Feistel network over 32-bit blocks (two 16-bit halves) is a
bijection on [0, 2^32) for *any* round function, because every round can be
undone: given (L', R') = (R, L ^ F(R, k)) we recover (L, R) = (R' ^ F(L', k), L').
Encrypting a counter 0, 1, 2, ... therefore visits every address exactly once,
in an order that depends on the seed. Nothing here is meant to be
cryptographically strong; only the uniqueness property matters.
"""

from __future__ import annotations

MASK16 = 0xFFFF
MASK32 = 0xFFFF_FFFF
SPACE_SIZE = 1 << 32
DEFAULT_ROUNDS = 4


class EnumeratorExhausted(Exception):
    """All 2^32 addresses have been produced."""


def _round_keys(seed: int, rounds: int) -> tuple[int, ...]:
    keys = []
    state = seed & MASK32
    for i in range(rounds):
        state = (state * 0x9E3779B1 + 0x7F4A7C15 + i) & MASK32
        keys.append((state ^ (state >> 16)) & MASK16)
    return tuple(keys)


def _round(half: int, key: int) -> int:
    x = (half ^ key) & MASK16
    x = (x * 0x2F4B + 0x9E37) & MASK16
    x ^= x >> 7
    x = (x * 0x6A5D) & MASK16
    return x ^ (x >> 9)


class FeistelPermutation:
    """Keyed pseudo-random permutation of the 32-bit integers."""

    def __init__(self, seed: int, rounds: int = DEFAULT_ROUNDS) -> None:
        if rounds < 3:
            raise ValueError("Feistel permutation needs at least 3 rounds")
        self.seed = seed & MASK32
        self.rounds = rounds
        self._keys = _round_keys(self.seed, rounds)

    def encrypt(self, value: int) -> int:
        left, right = (value >> 16) & MASK16, value & MASK16
        for key in self._keys:
            left, right = right, left ^ _round(right, key)
        return (left << 16) | right

    def decrypt(self, value: int) -> int:
        left, right = (value >> 16) & MASK16, value & MASK16
        for key in reversed(self._keys):
            left, right = right ^ _round(left, key), left
        return (left << 16) | right


def ipv4_to_string(address: int) -> str:
    """Render a 32-bit integer as a dotted-quad address."""
    return ".".join(str((address >> shift) & 0xFF) for shift in (24, 16, 8, 0))


class AddressEnumerator:
    """Lazy, seed-ordered walk over every IPv4 address.

    Holds only the permutation and a counter. Once 2^32 addresses have been
    produced it stays exhausted: iteration stops and next_address() raises
    EnumeratorExhausted. It never wraps around.
    """

    def __init__(self, seed: int, rounds: int = DEFAULT_ROUNDS) -> None:
        self._permutation = FeistelPermutation(seed, rounds)
        self._counter = 0

    @property
    def seed(self) -> int:
        return self._permutation.seed

    @property
    def position(self) -> int:
        """Number of addresses produced so far."""
        return self._counter

    @property
    def exhausted(self) -> bool:
        return self._counter >= SPACE_SIZE

    def next_address(self) -> int:
        if self._counter >= SPACE_SIZE:
            raise EnumeratorExhausted(
                f"address space exhausted after {SPACE_SIZE} addresses"
            )
        address = self._permutation.encrypt(self._counter)
        self._counter += 1
        return address

    def __iter__(self) -> AddressEnumerator:
        return self

    def __next__(self) -> int:
        try:
            return self.next_address()
        except EnumeratorExhausted:
            raise StopIteration from None
