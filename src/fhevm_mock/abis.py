# -*- encoding: utf-8 -*-
"""
FHEVM Mock
fhevm_mock.abis module

ABI fragments of the external contracts the mock talks to.

Only the functions and events the mock actually uses are listed. A full
artifact can be loaded instead with load_contract_abi().
"""

import json

ACL_ABI = [
    {
        "type": "function",
        "name": "isAllowedForDecryption",
        "stateMutability": "view",
        "inputs": [{"name": "handle", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

GATEWAY_ABI = [
    {
        "type": "function",
        "name": "fulfillRequest",
        "stateMutability": "payable",
        "inputs": [
            {"name": "requestID", "type": "uint256"},
            {"name": "decryptedCts", "type": "bytes"},
            {"name": "signatures", "type": "bytes[]"},
        ],
        "outputs": [],
    },
    {
        "type": "event",
        "name": "EventDecryption",
        "anonymous": False,
        "inputs": [
            {"name": "requestID", "type": "uint256", "indexed": True},
            {"name": "cts", "type": "uint256[]", "indexed": False},
            {"name": "contractCaller", "type": "address", "indexed": False},
            {"name": "callbackSelector", "type": "bytes4", "indexed": False},
            {"name": "msgValue", "type": "uint256", "indexed": False},
            {"name": "maxTimestamp", "type": "uint256", "indexed": False},
            {"name": "passSignaturesToCaller", "type": "bool", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "ResultCallback",
        "anonymous": False,
        "inputs": [
            {"name": "requestID", "type": "uint256", "indexed": True},
            {"name": "success", "type": "bool", "indexed": False},
            {"name": "result", "type": "bytes", "indexed": False},
        ],
    },
]


def event_inputs(abi, name, indexed):
    """Return the (name, type) pairs of an event's indexed or data inputs."""
    for entry in abi:
        if entry["type"] == "event" and entry["name"] == name:
            return [
                (arg["name"], arg["type"])
                for arg in entry["inputs"]
                if arg["indexed"] == indexed
            ]
    raise KeyError(f"Event {name} not found in ABI")


def event_signature(abi, name):
    for entry in abi:
        if entry["type"] == "event" and entry["name"] == name:
            types = ",".join(arg["type"] for arg in entry["inputs"])
            return f"{name}({types})"
    raise KeyError(f"Event {name} not found in ABI")


def load_contract_abi(abi_path):
    """Load a contract ABI from a compiled JSON artifact.

    Accepts both hardhat/forge artifacts (a dict with an "abi" key) and bare
    ABI lists.
    """
    with open(abi_path) as f:
        artifact = json.load(f)
    if isinstance(artifact, dict):
        return artifact["abi"]
    return artifact
