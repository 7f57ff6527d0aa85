# -*- encoding: utf-8 -*-
"""
FHEVM Mock Test Configuration

Shared pytest fixtures and in-process chain fakes for the mock test suite.

The fakes model only the surface the mock touches:
- FakeChain: block height, per-block hashes, a log table and get_logs
  filtering by address, block range and topic 0; revert() rolls all three
  back the way evm_revert does
- FakeACL / FakeGateway: the contract calls made by the fulfillment service
- provider.make_request: records the hardhat_* calls

Signers use anvil's deterministic keys, so addresses are stable across runs.
"""

import itertools
from types import SimpleNamespace

import pytest
from eth_abi import encode as abi_encode
from web3 import Web3

from fhevm_mock.abis import GATEWAY_ABI, event_inputs
from fhevm_mock.coprocessor import HandleShadowEngine
from fhevm_mock.executor_events import EXECUTOR_EVENTS, event_topic, topic_hex
from fhevm_mock.fhe_types import FheType
from fhevm_mock.gateway import EVENT_DECRYPTION_TOPIC, RESULT_CALLBACK_TOPIC
from fhevm_mock.shadow_store import ShadowStore
from fhevm_mock.signing import COPROCESSOR_DOMAIN, KMS_DOMAIN, SigningAuthority

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CHAIN_ID = 31337

# anvil's deterministic account #0, used as the coprocessor signer
ANVIL_DEPLOYER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
ANVIL_DEPLOYER_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

# anvil's deterministic account #1, used as the KMS signer
ANVIL_KMS_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
ANVIL_KMS_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

ACL_ADDRESS = Web3.to_checksum_address("0x" + "11" * 20)
EXECUTOR_ADDRESS = Web3.to_checksum_address("0x" + "22" * 20)
GATEWAY_ADDRESS = Web3.to_checksum_address("0x" + "33" * 20)
KMS_VERIFIER_ADDRESS = Web3.to_checksum_address("0x" + "44" * 20)
INPUT_VERIFIER_ADDRESS = Web3.to_checksum_address("0x" + "55" * 20)
USER_ADDRESS = Web3.to_checksum_address("0x" + "66" * 20)
DAPP_ADDRESS = Web3.to_checksum_address("0x" + "77" * 20)


# ---------------------------------------------------------------------------
# Handles
# ---------------------------------------------------------------------------

def make_handle(seed, fhe_type, index=0):
    """Deterministic handle int with the given type tag embedded."""
    material = Web3.keccak(text=f"handle-{seed}")[:29]
    raw = bytes(material) + bytes([index, fhe_type.tag, 0])
    return int.from_bytes(raw, "big")


# ---------------------------------------------------------------------------
# Chain fakes
# ---------------------------------------------------------------------------

class FakeProvider:
    """Records make_request calls (hardhat_* RPC methods)."""

    def __init__(self):
        self.requests = []

    def make_request(self, method, params):
        self.requests.append((method, params))
        return {"jsonrpc": "2.0", "id": len(self.requests), "result": None}


class FakeEth:
    def __init__(self, chain):
        self._chain = chain
        self.chain_id = CHAIN_ID

    @property
    def block_number(self):
        return self._chain.block_number

    def get_block(self, block_number):
        return SimpleNamespace(
            number=block_number, hash=self._chain.block_hashes[block_number]
        )

    def get_logs(self, filter_params):
        self._chain.get_logs_calls.append(dict(filter_params))
        return self._chain.filter_logs(filter_params)

    def wait_for_transaction_receipt(self, tx_hash, timeout=120):
        return self._chain.receipts[bytes(tx_hash)]


_block_serial = itertools.count()


def _new_block_hash():
    # Unique across chains, so a re-mined block never reuses a hash.
    return bytes(Web3.keccak(text=f"block-{next(_block_serial)}"))


class FakeChain:
    """Minimal in-memory chain: a block height, block hashes and logs."""

    def __init__(self, block_number=0):
        self.block_number = block_number
        self.block_hashes = [_new_block_hash() for _ in range(block_number + 1)]
        self.logs = []
        self.receipts = {}
        self.get_logs_calls = []
        self.eth = FakeEth(self)
        self.provider = FakeProvider()

    def mine(self, count=1):
        self.block_number += count
        self.block_hashes.extend(_new_block_hash() for _ in range(count))
        return self.block_number

    def revert(self, block_number):
        """Drop every block after block_number along with its logs."""
        self.block_number = block_number
        del self.block_hashes[block_number + 1:]
        self.logs = [log for log in self.logs if log["blockNumber"] <= block_number]

    def add_log(self, address, topics, data, block_number=None):
        if block_number is None:
            block_number = self.block_number
        log_index = sum(1 for log in self.logs if log["blockNumber"] == block_number)
        log = {
            "address": address,
            "topics": [bytes(Web3.to_bytes(hexstr=t)) if isinstance(t, str) else t
                       for t in topics],
            "data": data,
            "blockNumber": block_number,
            "logIndex": log_index,
        }
        self.logs.append(log)
        return log

    def filter_logs(self, filter_params):
        address = filter_params.get("address")
        from_block = filter_params.get("fromBlock", 0)
        to_block = filter_params.get("toBlock", self.block_number)
        topics = filter_params.get("topics") or []
        matched = []
        for log in self.logs:
            if address is not None and log["address"].lower() != address.lower():
                continue
            if not from_block <= log["blockNumber"] <= to_block:
                continue
            if topics and topic_hex(log["topics"][0]) != topic_hex(topics[0]):
                continue
            matched.append(log)
        return matched


# ---------------------------------------------------------------------------
# Log builders
# ---------------------------------------------------------------------------

def add_executor_log(chain, name, block_number=None, **args):
    """Append an executor event log with the given field values."""
    fields = EXECUTOR_EVENTS[name]
    data = abi_encode(
        [abi_type for _, abi_type in fields],
        [args[field] for field, _ in fields],
    )
    return chain.add_log(EXECUTOR_ADDRESS, [event_topic(name)], data, block_number)


def add_decryption_request(chain, request_id, handles, msg_value=0, block_number=None):
    """Append a gateway EventDecryption log."""
    data_fields = event_inputs(GATEWAY_ABI, "EventDecryption", indexed=False)
    data = abi_encode(
        [abi_type for _, abi_type in data_fields],
        [list(handles), DAPP_ADDRESS, b"\x12\x34\x56\x78", msg_value, 2**64, False],
    )
    topics = [EVENT_DECRYPTION_TOPIC, request_id.to_bytes(32, "big")]
    return chain.add_log(GATEWAY_ADDRESS, topics, data, block_number)


def add_result_callback(chain, request_id, block_number=None):
    """Append a gateway ResultCallback log."""
    data = abi_encode(["bool", "bytes"], [True, b""])
    topics = [RESULT_CALLBACK_TOPIC, request_id.to_bytes(32, "big")]
    return chain.add_log(GATEWAY_ADDRESS, topics, data, block_number)


# ---------------------------------------------------------------------------
# Contract fakes
# ---------------------------------------------------------------------------

class _Call:
    def __init__(self, call=None, transact=None):
        self._call = call
        self._transact = transact

    def call(self):
        return self._call()

    def transact(self, tx):
        return self._transact(tx)


class FakeACL:
    """ACL whose isAllowedForDecryption answers from a set of handles."""

    def __init__(self, allowed=()):
        self.address = ACL_ADDRESS
        self.allowed = set(allowed)
        self.queries = []
        self.functions = SimpleNamespace(
            isAllowedForDecryption=self._is_allowed_for_decryption
        )

    def _is_allowed_for_decryption(self, handle):
        def call():
            self.queries.append(handle)
            return handle in self.allowed
        return _Call(call=call)


class FakeGateway:
    """Gateway whose fulfillRequest mines a block with a ResultCallback."""

    def __init__(self, chain, status=1):
        self.address = GATEWAY_ADDRESS
        self.chain = chain
        self.status = status
        self.fulfillments = []
        self.functions = SimpleNamespace(fulfillRequest=self._fulfill_request)

    def _fulfill_request(self, request_id, decrypted_result, signatures):
        def transact(tx):
            self.fulfillments.append(SimpleNamespace(
                request_id=request_id,
                decrypted_result=decrypted_result,
                signatures=list(signatures),
                tx=dict(tx),
            ))
            block = self.chain.mine()
            if self.status == 1:
                add_result_callback(self.chain, request_id, block)
            tx_hash = bytes(Web3.keccak(text=f"fulfill-{request_id}-{block}"))
            self.chain.receipts[tx_hash] = SimpleNamespace(
                status=self.status, blockNumber=block
            )
            return tx_hash
        return _Call(transact=transact)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def chain():
    return FakeChain(block_number=1)


@pytest.fixture
def store():
    shadow = ShadowStore()
    yield shadow
    shadow.close()


@pytest.fixture
def engine(chain, store):
    """Engine with no retry delay, so absent values fail fast."""
    return HandleShadowEngine(
        w3=chain,
        executor_address=EXECUTOR_ADDRESS,
        store=store,
        max_retries=0,
        initial_backoff=0,
    )


@pytest.fixture
def coprocessor_signer():
    return SigningAuthority(
        ANVIL_DEPLOYER_KEY, COPROCESSOR_DOMAIN, INPUT_VERIFIER_ADDRESS, CHAIN_ID
    )


@pytest.fixture
def kms_signer():
    return SigningAuthority(
        ANVIL_KMS_KEY, KMS_DOMAIN, KMS_VERIFIER_ADDRESS, CHAIN_ID
    )


@pytest.fixture
def euint8_handles():
    return [make_handle(i, FheType.EUINT8) for i in range(3)]
