# -*- encoding: utf-8 -*-
"""
FHEVM Mock
fhevm_mock.gateway module

Emulation of the asynchronous decryption protocol.

The gateway contract emits EventDecryption when a dApp asks for a decryption
and ResultCallback once a relayer has fulfilled it. In mocked mode this
service plays relayer and KMS: it makes sure the shadow store is fresh,
checks the ACL, encodes the shadow values, has every KMS signer sign them
and submits the fulfillment. Against a live network it only waits, block by
block, for the real relayer to fulfill the request.

A request is authorized, encoded and signed as a unit before anything is
sent: an ACL denial or a signing failure means no transaction at all. Such a
request is logged and recorded in `failed`, and the remaining requests are
still served.

Whether a request was already served is read from the chain alone
(ResultCallback logs), so a request id reused after a chain revert is
fulfilled again.
"""

import logging

from eth_abi import decode, encode
from web3 import Web3

from fhevm_mock.abis import GATEWAY_ABI, event_inputs, event_signature
from fhevm_mock.block_history import BlockHistory
from fhevm_mock.errors import (
    AuthorizationError,
    FhevmMockError,
    SigningConfigurationError,
)
from fhevm_mock.executor_events import topic_hex
from fhevm_mock.fhe_types import handle_to_hex, handle_type
from fhevm_mock.signing import KMS_DECRYPTION_SCHEMA
from fhevm_mock.transactions import (
    ZERO_ADDRESS,
    submit_fulfillment,
    wait_for_next_block,
)

logger = logging.getLogger(__name__)

# Placeholder request id prepended while ABI-encoding the decrypted values so
# that dynamic offsets come out as the callback expects them; its 32-byte
# word is stripped afterwards.
PLACEHOLDER_REQUEST_ID = 31

EVENT_DECRYPTION_TOPIC = Web3.to_hex(
    Web3.keccak(text=event_signature(GATEWAY_ABI, "EventDecryption"))
)
RESULT_CALLBACK_TOPIC = Web3.to_hex(
    Web3.keccak(text=event_signature(GATEWAY_ABI, "ResultCallback"))
)
_DECRYPTION_DATA = event_inputs(GATEWAY_ABI, "EventDecryption", indexed=False)


class DecryptionRequest:
    """A decryption request decoded from an EventDecryption log."""

    __slots__ = (
        "request_id", "handles", "contract_caller", "callback_selector",
        "msg_value", "max_timestamp", "pass_signatures_to_caller",
        "block_number", "log_index",
    )

    def __init__(
        self, request_id, handles, contract_caller, callback_selector,
        msg_value, max_timestamp, pass_signatures_to_caller=False,
        block_number=None, log_index=None,
    ):
        self.request_id = request_id
        self.handles = list(handles)
        self.contract_caller = contract_caller
        self.callback_selector = callback_selector
        self.msg_value = msg_value
        self.max_timestamp = max_timestamp
        self.pass_signatures_to_caller = pass_signatures_to_caller
        self.block_number = block_number
        self.log_index = log_index

    @classmethod
    def from_log(cls, log):
        values = decode(
            [abi_type for _, abi_type in _DECRYPTION_DATA], bytes(log["data"])
        )
        fields = dict(zip((name for name, _ in _DECRYPTION_DATA), values))
        return cls(
            request_id=_topic_int(log["topics"][1]),
            handles=fields["cts"],
            contract_caller=fields["contractCaller"],
            callback_selector=fields["callbackSelector"],
            msg_value=fields["msgValue"],
            max_timestamp=fields["maxTimestamp"],
            pass_signatures_to_caller=fields["passSignaturesToCaller"],
            block_number=log.get("blockNumber"),
            log_index=log.get("logIndex"),
        )

    def __repr__(self):
        return f"DecryptionRequest({self.request_id}, {len(self.handles)} handles)"


def _topic_int(topic):
    return int(topic_hex(topic), 16)


def encode_decryption_result(handles, clear_values):
    """ABI-encode decrypted values in the order of their handles.

    Args:
        handles: Ciphertext handles; their type tags pick the ABI types.
        clear_values: Shadow integers, one per handle.

    Returns:
        The encoded values without the leading request id word.
    """
    types = []
    values = []
    for handle, clear_text in zip(handles, clear_values):
        fhe_type = handle_type(handle)
        types.append(fhe_type.abi_type)
        values.append(fhe_type.decrypted_value(clear_text))
    encoded = encode(["uint256"] + types, [PLACEHOLDER_REQUEST_ID] + values)
    return encoded[32:]


class DecryptionFulfillmentService:
    """Fulfills gateway decryption requests from the shadow store.

    Args:
        w3: Web3 instance.
        gateway: web3.py Contract instance for the gateway.
        acl: web3.py Contract instance for the ACL.
        engine: HandleShadowEngine providing fresh shadow values.
        kms_signers: list of SigningAuthority in the KMS domain.
        acl_address: ACL address included in every signed result.
        mocked: Self-fulfill requests (True) or wait for a relayer (False).
        first_block: Block the cursor starts from.
        relayer: Address impersonated when submitting fulfillments.
        poll_interval: Seconds between block polls in live mode.
    """

    def __init__(
        self, w3, gateway, acl, engine, kms_signers, acl_address,
        mocked=True, first_block=0, relayer=ZERO_ADDRESS, poll_interval=1.0,
    ):
        self.w3 = w3
        self.gateway = gateway
        self.acl = acl
        self.engine = engine
        self.kms_signers = list(kms_signers)
        self.acl_address = acl_address
        self.mocked = mocked
        self.first_block = first_block
        self.cursor = first_block
        self.relayer = relayer
        self.poll_interval = poll_interval
        self.failed = {}
        self._history = BlockHistory(w3)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def _gateway_logs(self, topic, to_block):
        return self.w3.eth.get_logs({
            "address": self.gateway.address,
            "fromBlock": self.cursor,
            "toBlock": to_block,
            "topics": [topic],
        })

    def fulfilled_request_ids(self, to_block=None):
        """Request ids with a ResultCallback between the cursor and to_block."""
        if to_block is None:
            to_block = self.w3.eth.block_number
        logs = self._gateway_logs(RESULT_CALLBACK_TOPIC, to_block)
        return {_topic_int(log["topics"][1]) for log in logs}

    def pending_requests(self, to_block=None):
        """Unfulfilled requests since the cursor, in emission order."""
        if to_block is None:
            to_block = self.w3.eth.block_number
        # Callbacks for requests up to to_block may land after it.
        fulfilled = self.fulfilled_request_ids()
        requests = [
            DecryptionRequest.from_log(log)
            for log in self._gateway_logs(EVENT_DECRYPTION_TOPIC, to_block)
        ]
        requests.sort(key=lambda r: (r.block_number or 0, r.log_index or 0))
        return [r for r in requests if r.request_id not in fulfilled]

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------

    def process_pending_requests(self):
        """Fulfill (or, on a live network, wait for) every pending request.

        A request that cannot be served (ACL denial, missing shadow value,
        signing or submission failure) is logged, recorded in `failed` and
        skipped; the other requests are still handled. Errors outside the
        mock's own taxonomy, such as a lost node connection, propagate and
        leave the cursor unchanged.

        Returns:
            list of request ids handled by this call, failed ones included.
        """
        latest = self.w3.eth.block_number
        self._handle_rewind(latest)
        if self.cursor > latest:
            return []

        handled = []
        for request in self.pending_requests(latest):
            logger.info(
                "Requested decrypt on block %s (requestID %d) for %d handles",
                request.block_number, request.request_id, len(request.handles),
            )
            try:
                if self.mocked:
                    self.fulfill(request)
                else:
                    self._await_relayer(request)
            except FhevmMockError as exc:
                logger.exception("Failed to fulfill request %d", request.request_id)
                self.failed[request.request_id] = exc
            else:
                self.failed.pop(request.request_id, None)
            handled.append(request.request_id)

        # Requests emitted after latest, including those triggered by our own
        # fulfillment callbacks, fall into the next window.
        self.cursor = latest + 1
        self._history.record(latest)
        return handled

    def _handle_rewind(self, latest):
        fork = self._history.fork_point(latest)
        if fork is not None:
            self.cursor = max(fork + 1, self.first_block)
            logger.info("Chain rewound, rescanning decryption requests from block %d", self.cursor)
        elif self.cursor > latest + 1:
            self.cursor = latest + 1

    def fulfill(self, request):
        """Authorize, encode, sign and submit one request.

        Returns:
            The fulfillment transaction hash.

        Raises:
            AuthorizationError: if the ACL denies any of the handles.
            NotFoundError: if a handle has no shadow value.
            SigningConfigurationError: if no KMS signer is configured.
            FulfillmentError: if the fulfillment transaction reverted.
        """
        try:
            self.engine.replay_new_events()
        except FhevmMockError:
            # Values from the other events of the batch were still recorded.
            logger.exception("Executor replay failed before request %d", request.request_id)
        self.check_authorization(request.handles)

        clear_values = [self.engine.get_clear_text(h) for h in request.handles]
        decrypted_result = encode_decryption_result(request.handles, clear_values)
        signatures = self.sign_result(request.handles, decrypted_result)

        return submit_fulfillment(
            self.w3, self.gateway, request.request_id, decrypted_result,
            signatures, value=request.msg_value, relayer=self.relayer,
        )

    def check_authorization(self, handles):
        denied = [
            handle_to_hex(h) for h in handles
            if not self.acl.functions.isAllowedForDecryption(h).call()
        ]
        if denied:
            raise AuthorizationError(
                f"Handles not authorized for decryption: {', '.join(denied)}"
            )

    def sign_result(self, handles, decrypted_result):
        """One KMS signature per signer over (ACL, handles, result)."""
        if not self.kms_signers:
            raise SigningConfigurationError("No KMS signer configured")
        message = {
            "aclAddress": self.acl_address,
            "handlesList": list(handles),
            "decryptedResult": decrypted_result,
        }
        return [
            signer.sign(KMS_DECRYPTION_SCHEMA, message)
            for signer in self.kms_signers
        ]

    def _await_relayer(self, request):
        while True:
            latest = self._wait_for_next_block()
            if request.request_id in self.fulfilled_request_ids(latest):
                logger.info("Request %d fulfilled by relayer", request.request_id)
                return

    def _wait_for_next_block(self):
        return wait_for_next_block(self.w3, self.poll_interval)
