from __future__ import annotations

import hashlib


_BLOCK = 64


class DeterministicPRNG:
    """Reproducible byte stream for corruption injection.

    Blocks are BLAKE2b digests keyed by ``seed_base`` over ``(seed_id,
    block counter)``, so the same pair always yields the same stream on every
    platform.
    """

    def __init__(self, seed_base: bytes, seed_id: int):
        self._key = hashlib.blake2b(seed_base, digest_size=32).digest()
        self._seed = (seed_id & 0xFFFFFFFFFFFFFFFF).to_bytes(8, "big")
        self._block_no = 0
        self._pending = bytearray()

    def _block(self) -> bytes:
        h = hashlib.blake2b(self._seed + self._block_no.to_bytes(8, "big"), key=self._key, digest_size=_BLOCK)
        self._block_no += 1
        return h.digest()

    def next_bytes(self, n: int) -> bytes:
        while len(self._pending) < n:
            self._pending += self._block()
        out = bytes(self._pending[:n])
        del self._pending[:n]
        return out

    def next_uint(self, bound: int) -> int:
        """Uniform integer in ``[0, bound)``; 0 when ``bound`` is not positive."""
        if bound <= 0:
            return 0
        span = 1 << 64
        cutoff = span - span % bound
        while True:
            v = int.from_bytes(self.next_bytes(8), "big")
            if v < cutoff:
                return v % bound

    def mutate(self, original: bytes) -> bytes:
        """Replacement bytes that differ from ``original`` at every position."""
        out = bytearray(len(original))
        for i, b in enumerate(original):
            mask = 0
            while not mask:
                mask = self.next_bytes(1)[0]
            out[i] = b ^ mask
        return bytes(out)
