# -*- encoding: utf-8 -*-
"""
FHEVM Mock
fhevm_mock.shadow_store module

Cleartext shadow of every ciphertext handle seen by the mock.

A single sqlite relation maps the canonical hex form of a handle to the
decimal text of its plaintext, together with the block of the executor event
that produced it (NULL for client inputs). The block lets a chain rewind
drop exactly the entries written by reverted blocks.

The default database lives in memory, so the shadow is process-local and
disappears with the process; a file path can be given to inspect the table
while debugging.
"""

import logging
import sqlite3
import threading

from fhevm_mock.errors import ValidationError
from fhevm_mock.fhe_types import handle_to_hex

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS ciphertexts "
    "(handle BINARY PRIMARY KEY, clearText TEXT, block INTEGER)"
)


def _to_clear_text(value):
    """Serialize a plaintext (int, bool or bytes) to its stored text form."""
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, int):
        if value < 0:
            raise ValidationError("Plaintext values must be non-negative")
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return str(int.from_bytes(value, "big"))
    raise ValidationError(f"Unsupported plaintext type {type(value).__name__}")


class ShadowStore:
    """Handle -> plaintext relation.

    put() is write-once unless the caller passes overwrite=True; only the
    randomness operations of the executor do that, so re-replaying events
    never changes an existing entry.
    """

    def __init__(self, path=IN_MEMORY):
        self.path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock:
            self._conn.execute(_SCHEMA)
            self._conn.commit()

    def get(self, handle):
        """Return the plaintext of a handle as an int, or None if absent."""
        key = handle_to_hex(handle)
        with self._lock:
            row = self._conn.execute(
                "SELECT clearText FROM ciphertexts WHERE handle = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        return int(row[0])

    def put(self, handle, value, overwrite=False, block_number=None):
        """Record the plaintext of a handle.

        Args:
            handle: Handle as int, bytes or hex string.
            value: Plaintext as int, bool or bytes.
            overwrite: Replace an existing entry instead of keeping it.
            block_number: Block of the event that produced the value, if any.

        Returns:
            True if a row was written, False if an existing entry was kept.
        """
        key = handle_to_hex(handle)
        clear_text = _to_clear_text(value)
        verb = "INSERT OR REPLACE" if overwrite else "INSERT OR IGNORE"
        with self._lock:
            cursor = self._conn.execute(
                f"{verb} INTO ciphertexts (handle, clearText, block) VALUES (?, ?, ?)",
                (key, clear_text, block_number),
            )
            self._conn.commit()
        written = cursor.rowcount > 0
        if written:
            logger.debug("Shadow %s = %s", key, clear_text)
        return written

    def discard_after(self, block_number):
        """Drop the entries produced by events in blocks after block_number.

        Returns:
            The number of entries dropped.
        """
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM ciphertexts WHERE block > ?", (block_number,)
            )
            self._conn.commit()
        if cursor.rowcount:
            logger.info(
                "Dropped %d shadow entries from blocks after %d",
                cursor.rowcount, block_number,
            )
        return cursor.rowcount

    def __contains__(self, handle):
        return self.get(handle) is not None

    def __len__(self):
        with self._lock:
            (count,) = self._conn.execute(
                "SELECT COUNT(*) FROM ciphertexts"
            ).fetchone()
        return count

    def close(self):
        with self._lock:
            self._conn.close()
