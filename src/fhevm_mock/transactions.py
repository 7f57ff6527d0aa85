# -*- encoding: utf-8 -*-
"""
FHEVM Mock
fhevm_mock.transactions module

Transaction submission for gateway fulfillments.

In mocked mode the gateway accepts fulfillments from the zero address, which
is registered as its relayer. Nobody holds that key, so the transaction is
sent from an impersonated account on the local dev node (hardhat or anvil,
both accept the hardhat_* RPC methods).
"""

import logging
import time

from fhevm_mock.errors import FulfillmentError

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
RELAYER_BALANCE_WEI = 100 * 10**18  # enough gas money for any test session
DEFAULT_RECEIPT_TIMEOUT = 120  # seconds


def impersonate_account(w3, address, balance=RELAYER_BALANCE_WEI):
    """Let the dev node accept unsigned transactions from an address.

    The account is also funded so it can pay for gas.
    """
    w3.provider.make_request("hardhat_impersonateAccount", [address])
    w3.provider.make_request("hardhat_setBalance", [address, hex(balance)])


def stop_impersonating(w3, address):
    w3.provider.make_request("hardhat_stopImpersonatingAccount", [address])


def submit_fulfillment(
    w3, gateway, request_id, decrypted_result, signatures,
    value=0, relayer=ZERO_ADDRESS, timeout=DEFAULT_RECEIPT_TIMEOUT,
):
    """Send gateway.fulfillRequest from the impersonated relayer.

    Args:
        w3: Web3 instance connected to a hardhat-compatible dev node.
        gateway: web3.py Contract instance for the gateway.
        request_id: Decryption request id.
        decrypted_result: ABI-encoded decrypted values (without request id).
        signatures: list of 65-byte KMS signatures.
        value: Wei forwarded with the fulfillment (the request's msgValue).
        relayer: Address to impersonate.
        timeout: Seconds to wait for the receipt.

    Returns:
        The transaction hash as a hex string.

    Raises:
        FulfillmentError: if the transaction was mined but reverted.
    """
    impersonate_account(w3, relayer)
    try:
        tx_hash = gateway.functions.fulfillRequest(
            request_id, decrypted_result, signatures
        ).transact({"from": relayer, "value": value})
        receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
    finally:
        stop_impersonating(w3, relayer)

    tx_hex = "0x" + bytes(tx_hash).hex()
    if receipt.status != 1:
        raise FulfillmentError(
            f"fulfillRequest for request {request_id} reverted (tx {tx_hex})"
        )
    logger.info(
        "Gateway sent decryption result for request %d in block %d (tx %s)",
        request_id, receipt.blockNumber, tx_hex,
    )
    return tx_hex


def wait_for_next_block(w3, poll_interval=1.0):
    """Block until the chain head moves past its current height.

    Returns:
        The new block number.
    """
    start = w3.eth.block_number
    while True:
        time.sleep(poll_interval)
        current = w3.eth.block_number
        if current > start:
            return current
