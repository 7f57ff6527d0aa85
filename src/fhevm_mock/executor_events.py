# -*- encoding: utf-8 -*-
"""
FHEVM Mock
fhevm_mock.executor_events module

Log codec for the events emitted by the FHE executor contract.

The executor (the events-emitting variant deployed in mocked mode) emits
one event per homomorphic operation. None of the parameters are indexed,
so every field is ABI-encoded in the log data and the event is identified
by topic 0 alone.
"""

from eth_abi import decode
from web3 import Web3

_BINARY = [
    ("lhs", "uint256"),
    ("rhs", "uint256"),
    ("scalarByte", "bytes1"),
    ("result", "uint256"),
]
_BINARY_BYTES = [
    ("lhs", "uint256"),
    ("rhs", "bytes"),
    ("scalarByte", "bytes1"),
    ("result", "uint256"),
]
_UNARY = [("ct", "uint256"), ("result", "uint256")]

EXECUTOR_EVENTS = {
    "FheAdd": _BINARY,
    "FheSub": _BINARY,
    "FheMul": _BINARY,
    "FheDiv": _BINARY,
    "FheRem": _BINARY,
    "FheBitAnd": _BINARY,
    "FheBitOr": _BINARY,
    "FheBitXor": _BINARY,
    "FheShl": _BINARY,
    "FheShr": _BINARY,
    "FheRotl": _BINARY,
    "FheRotr": _BINARY,
    "FheEq": _BINARY,
    "FheEqBytes": _BINARY_BYTES,
    "FheNe": _BINARY,
    "FheNeBytes": _BINARY_BYTES,
    "FheGe": _BINARY,
    "FheGt": _BINARY,
    "FheLe": _BINARY,
    "FheLt": _BINARY,
    "FheMin": _BINARY,
    "FheMax": _BINARY,
    "FheNeg": _UNARY,
    "FheNot": _UNARY,
    "VerifyCiphertext": [
        ("inputHandle", "bytes32"),
        ("userAddress", "address"),
        ("inputProof", "bytes"),
        ("inputType", "bytes1"),
        ("result", "uint256"),
    ],
    "Cast": [("ct", "uint256"), ("toType", "bytes1"), ("result", "uint256")],
    "TrivialEncrypt": [
        ("pt", "uint256"), ("toType", "bytes1"), ("result", "uint256"),
    ],
    "TrivialEncryptBytes": [
        ("pt", "bytes"), ("toType", "bytes1"), ("result", "uint256"),
    ],
    "FheIfThenElse": [
        ("control", "uint256"),
        ("ifTrue", "uint256"),
        ("ifFalse", "uint256"),
        ("result", "uint256"),
    ],
    "FheRand": [("randType", "bytes1"), ("result", "uint256")],
    "FheRandBounded": [
        ("upperBound", "uint256"), ("randType", "bytes1"), ("result", "uint256"),
    ],
}


def event_signature(name):
    """Canonical signature, e.g. "FheAdd(uint256,uint256,bytes1,uint256)"."""
    types = ",".join(abi_type for _, abi_type in EXECUTOR_EVENTS[name])
    return f"{name}({types})"


def event_topic(name):
    """Topic 0 of an executor event as a 0x-prefixed hex string."""
    return Web3.to_hex(Web3.keccak(text=event_signature(name)))


def topic_hex(topic):
    """Normalize a log topic (bytes or hex string) to lowercase 0x hex."""
    if isinstance(topic, str):
        return topic.lower()
    return Web3.to_hex(topic)


_BY_TOPIC = {event_topic(name): name for name in EXECUTOR_EVENTS}


class ExecutorEvent:
    """A decoded executor log."""

    __slots__ = ("name", "args", "block_number", "log_index")

    def __init__(self, name, args, block_number=None, log_index=None):
        self.name = name
        self.args = args
        self.block_number = block_number
        self.log_index = log_index

    @property
    def is_scalar(self):
        return self.args.get("scalarByte") == b"\x01"

    def __repr__(self):
        return (
            f"ExecutorEvent({self.name}, block={self.block_number}, "
            f"index={self.log_index})"
        )


def decode_log(log):
    """Decode a raw executor log.

    Args:
        log: A log entry as returned by w3.eth.get_logs.

    Returns:
        An ExecutorEvent, or None if the log is not an executor event.
    """
    topics = log["topics"]
    if not topics:
        return None
    name = _BY_TOPIC.get(topic_hex(topics[0]))
    if name is None:
        return None

    fields = EXECUTOR_EVENTS[name]
    values = decode([abi_type for _, abi_type in fields], bytes(log["data"]))
    args = {field: value for (field, _), value in zip(fields, values)}
    return ExecutorEvent(
        name,
        args,
        block_number=log.get("blockNumber"),
        log_index=log.get("logIndex"),
    )
