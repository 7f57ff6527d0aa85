# -*- encoding: utf-8 -*-
"""
FHEVM Mock
fhevm_mock.coprocessor module

Cleartext replay of the FHE executor's event log.

HandleShadowEngine scans executor logs from its cursor to the latest block,
computes the plaintext effect of every operation and records it in the
ShadowStore. It is the only writer of non-input shadow entries.

Replay is idempotent: entries are written with overwrite=False, so applying
the same event twice leaves the store unchanged. The two randomness
operations are the exception and always overwrite, which lets a test that
reverts to a chain snapshot sample fresh random values.

A chain rewind is detected by block hash (BlockHistory): shadow entries from
the reverted blocks are dropped and the re-mined blocks are replayed.

Each engine instance owns its cursor, so several independent simulations can
share a process.
"""

import logging
import operator
import secrets
import threading
import time

from fhevm_mock.block_history import BlockHistory
from fhevm_mock.errors import (
    FhevmMockError,
    NotFoundError,
    UnsupportedOperationError,
    ValidationError,
)
from fhevm_mock.executor_events import decode_log
from fhevm_mock.fhe_types import FheType, handle_to_hex, handle_type

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 10
DEFAULT_INITIAL_BACKOFF = 0.05  # seconds
DEFAULT_MAX_BACKOFF = 1.0       # seconds
DEFAULT_BACKOFF_FACTOR = 2.0

RANDOM_OPERATIONS = frozenset({"FheRand", "FheRandBounded"})

_WRAPPING = {
    "FheAdd": operator.add,
    "FheSub": operator.sub,
    "FheMul": operator.mul,
    "FheBitAnd": operator.and_,
    "FheBitOr": operator.or_,
    "FheBitXor": operator.xor,
}

_COMPARISONS = {
    "FheEq": operator.eq,
    "FheNe": operator.ne,
    "FheGe": operator.ge,
    "FheGt": operator.gt,
    "FheLe": operator.le,
    "FheLt": operator.lt,
    "FheEqBytes": operator.eq,
    "FheNeBytes": operator.ne,
}


def _shift_left(value, shift, bits):
    return value << (shift % bits)


def _shift_right(value, shift, bits):
    return value >> (shift % bits)


def _rotate_left(value, shift, bits):
    shift %= bits
    return (value << shift) | (value >> (bits - shift))


def _rotate_right(value, shift, bits):
    shift %= bits
    return (value >> shift) | (value << (bits - shift))


_SHIFTS = {
    "FheShl": _shift_left,
    "FheShr": _shift_right,
    "FheRotl": _rotate_left,
    "FheRotr": _rotate_right,
}


def _type_argument(raw):
    """Decode a bytes1 type argument (toType, randType) to an FheType."""
    return FheType.from_tag(raw[0])


class HandleShadowEngine:
    """Replays executor events into a ShadowStore.

    Args:
        w3: Web3 instance connected to the node running the executor.
        executor_address: Address of the executor contract.
        store: ShadowStore receiving the plaintexts.
        first_block: Block the cursor starts from.
        max_retries: Extra reads get_clear_text() makes for an absent value.
        initial_backoff: Delay before the first retry, in seconds.
        max_backoff: Upper bound on the delay between retries.
        backoff_factor: Multiplier applied to the delay after each retry.
    """

    def __init__(
        self,
        w3,
        executor_address,
        store,
        first_block=0,
        max_retries=DEFAULT_MAX_RETRIES,
        initial_backoff=DEFAULT_INITIAL_BACKOFF,
        max_backoff=DEFAULT_MAX_BACKOFF,
        backoff_factor=DEFAULT_BACKOFF_FACTOR,
    ):
        self.w3 = w3
        self.executor_address = executor_address
        self.store = store
        self.first_block = first_block
        self.cursor = first_block
        self._history = BlockHistory(w3)
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._backoff_factor = backoff_factor
        self._replay_lock = threading.Lock()
        self._handlers = {
            "TrivialEncrypt": self._trivial_encrypt,
            "TrivialEncryptBytes": self._trivial_encrypt_bytes,
            "VerifyCiphertext": self._verify_ciphertext,
            "Cast": self._cast,
            "FheNot": self._not,
            "FheNeg": self._neg,
            "FheDiv": self._div_rem,
            "FheRem": self._div_rem,
            "FheMin": self._min_max,
            "FheMax": self._min_max,
            "FheIfThenElse": self._if_then_else,
            "FheRand": self._rand,
            "FheRandBounded": self._rand_bounded,
        }
        for name in _WRAPPING:
            self._handlers[name] = self._wrapping
        for name in _SHIFTS:
            self._handlers[name] = self._shift
        for name in _COMPARISONS:
            self._handlers[name] = self._compare

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def replay_new_events(self):
        """Apply every executor event between the cursor and the latest block.

        The cursor moves to latest + 1 as soon as the logs are fetched, so
        a batch is never applied twice. An event that cannot be replayed is
        logged and skipped while the rest of the batch is applied; the first
        such error is raised once the batch is done.

        Returns:
            The number of executor events applied.
        """
        with self._replay_lock:
            latest = self.w3.eth.block_number
            self._handle_rewind(latest)
            if self.cursor > latest:
                return 0

            logs = self.w3.eth.get_logs({
                "address": self.executor_address,
                "fromBlock": self.cursor,
                "toBlock": latest,
            })
            first = self.cursor
            self.cursor = latest + 1
            self._history.record(latest)

            events = [event for event in map(decode_log, logs) if event is not None]
            events.sort(key=lambda e: (e.block_number or 0, e.log_index or 0))

            failures = []
            for event in events:
                try:
                    self.apply_event(event)
                except FhevmMockError as exc:
                    logger.error("Skipping %r: %s", event, exc)
                    failures.append(exc)

            applied = len(events) - len(failures)
            if events:
                logger.info(
                    "Replayed %d of %d executor events from blocks %d-%d",
                    applied, len(events), first, latest,
                )
            if failures:
                raise failures[0]
            return applied

    def _handle_rewind(self, latest):
        fork = self._history.fork_point(latest)
        if fork is not None:
            self.cursor = max(fork + 1, self.first_block)
            self.store.discard_after(fork)
            logger.info("Chain rewound, rescanning executor events from block %d", self.cursor)
        elif latest + 1 < self.cursor:
            logger.info(
                "Chain rewound to block %d (cursor was %d), rescanning",
                latest, self.cursor,
            )
            self.cursor = latest + 1

    def apply_event(self, event):
        """Compute and record the plaintext effect of one executor event."""
        handler = self._handlers.get(event.name)
        if handler is None:
            raise UnsupportedOperationError(f"No replay rule for {event.name}")
        handler(event)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_clear_text(self, handle):
        """Return the shadow value of a handle, waiting for it if absent.

        Makes one read plus up to max_retries retries, sleeping with
        exponential backoff between them.

        Raises:
            NotFoundError: if the value is still absent after the last retry.
        """
        key = handle_to_hex(handle)
        delay = self._initial_backoff
        for attempt in range(self._max_retries + 1):
            value = self.store.get(key)
            if value is not None:
                return value
            if attempt < self._max_retries:
                time.sleep(delay)
                delay = min(delay * self._backoff_factor, self._max_backoff)
        raise NotFoundError(
            f"No record found for handle {key} after {self._max_retries} retries"
        )

    def _clear(self, handle):
        value = self.store.get(handle)
        if value is None:
            raise NotFoundError(f"No shadow value for handle {handle_to_hex(handle)}")
        return value

    def _rhs(self, event, as_bytes=False):
        rhs = event.args["rhs"]
        if as_bytes:
            rhs = int.from_bytes(rhs, "big")
        if event.is_scalar:
            return rhs
        return self._clear(rhs)

    def _record(self, event, value):
        self.store.put(
            event.args["result"], value,
            overwrite=event.name in RANDOM_OPERATIONS,
            block_number=event.block_number,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _wrapping(self, event):
        result_type = handle_type(event.args["result"])
        lhs = self._clear(event.args["lhs"])
        rhs = self._rhs(event)
        value = _WRAPPING[event.name](lhs, rhs) % result_type.modulus
        self._record(event, value)

    def _shift(self, event):
        result_type = handle_type(event.args["result"])
        lhs = self._clear(event.args["lhs"])
        rhs = self._rhs(event)
        value = _SHIFTS[event.name](lhs, rhs, result_type.bits)
        self._record(event, value % result_type.modulus)

    def _compare(self, event):
        lhs = self._clear(event.args["lhs"])
        rhs = self._rhs(event, as_bytes=event.name.endswith("Bytes"))
        value = 1 if _COMPARISONS[event.name](lhs, rhs) else 0
        self._record(event, value)

    def _div_rem(self, event):
        if not event.is_scalar:
            raise UnsupportedOperationError(
                f"Non-scalar {event.name} is not implemented"
            )
        lhs = self._clear(event.args["lhs"])
        rhs = event.args["rhs"]
        if rhs == 0:
            raise ValidationError(f"{event.name} by a zero scalar")
        value = lhs // rhs if event.name == "FheDiv" else lhs % rhs
        self._record(event, value)

    def _min_max(self, event):
        lhs = self._clear(event.args["lhs"])
        rhs = self._rhs(event)
        if event.name == "FheMin":
            value = lhs if lhs < rhs else rhs
        else:
            value = lhs if lhs > rhs else rhs
        self._record(event, value)

    def _not(self, event):
        result_type = handle_type(event.args["result"])
        value = ~self._clear(event.args["ct"]) & result_type.mask
        self._record(event, value)

    def _neg(self, event):
        result_type = handle_type(event.args["result"])
        complement = ~self._clear(event.args["ct"]) & result_type.mask
        self._record(event, (complement + 1) % result_type.modulus)

    def _cast(self, event):
        target = _type_argument(event.args["toType"])
        value = self._clear(event.args["ct"]) % target.modulus
        self._record(event, value)

    def _trivial_encrypt(self, event):
        self._record(event, event.args["pt"])

    def _trivial_encrypt_bytes(self, event):
        self._record(event, int.from_bytes(event.args["pt"], "big"))

    def _if_then_else(self, event):
        control = self._clear(event.args["control"])
        if_true = self._clear(event.args["ifTrue"])
        if_false = self._clear(event.args["ifFalse"])
        self._record(event, if_true if control == 1 else if_false)

    def _verify_ciphertext(self, event):
        handle = event.args["inputHandle"]
        if self.store.get(handle) is None:
            raise NotFoundError(
                f"User input was not found for handle {handle_to_hex(handle)}"
            )

    def _rand(self, event):
        rand_type = _type_argument(event.args["randType"])
        value = secrets.randbits(rand_type.bits)
        self._record(event, value)

    def _rand_bounded(self, event):
        bits = max(event.args["upperBound"].bit_length() - 1, 0)
        value = secrets.randbits(bits)
        self._record(event, value)
