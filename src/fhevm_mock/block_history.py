# -*- encoding: utf-8 -*-
"""
FHEVM Mock
fhevm_mock.block_history module

Rewind detection for the log scanners.

Local dev nodes are routinely reverted to a snapshot (evm_revert) and then
mined again, possibly past the height the scanner had reached. Comparing
block numbers alone misses that case, so each scanner remembers the hash of
every block it stopped at and, before the next scan, checks that those
blocks are still canonical. The newest remembered block that still matches
is the fork point: everything after it has to be scanned again.
"""

import logging

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 256  # scan heads remembered per scanner


class BlockHistory:
    """Hashes of the blocks a scanner stopped at.

    Args:
        w3: Web3 instance.
        size: Number of scan heads to remember.
    """

    def __init__(self, w3, size=DEFAULT_HISTORY_SIZE):
        self.w3 = w3
        self.size = size
        self._hashes = {}

    def _hash_of(self, block_number):
        return bytes(self.w3.eth.get_block(block_number).hash)

    def record(self, block_number):
        """Remember the current hash of a block the scan stopped at."""
        self._hashes[block_number] = self._hash_of(block_number)
        while len(self._hashes) > self.size:
            del self._hashes[min(self._hashes)]

    def fork_point(self, latest):
        """Return the block the chain was rewound to, or None.

        Returns None when the newest remembered block is still canonical
        (or nothing was remembered yet). Otherwise returns the newest
        remembered block that still matches, or -1 if none does, and
        forgets the blocks above it.
        """
        if not self._hashes:
            return None
        head = max(self._hashes)
        if head <= latest and self._hash_of(head) == self._hashes[head]:
            return None

        fork = -1
        for number in sorted(self._hashes, reverse=True):
            if number <= latest and self._hash_of(number) == self._hashes[number]:
                fork = number
                break
        for number in [n for n in self._hashes if n > fork]:
            del self._hashes[number]
        logger.info("Block %d is no longer canonical, chain forked after %d", head, fork)
        return fork
