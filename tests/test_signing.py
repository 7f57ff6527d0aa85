# -*- encoding: utf-8 -*-
"""
Tests for fhevm_mock.signing: EIP-712 authorities and signature packing.

Signatures are recovered with eth_account to check that they were made by
the configured key over the expected domain.
"""

import pytest
from eth_account import Account

from fhevm_mock.errors import SigningConfigurationError
from fhevm_mock.signing import (
    COPROCESSOR_INPUT_SCHEMA,
    KMS_DECRYPTION_SCHEMA,
    KMS_INPUT_SCHEMA,
    SIGNATURE_SIZE,
    SigningAuthority,
    pack_signature,
)
from tests.conftest import (
    ACL_ADDRESS,
    ANVIL_DEPLOYER_ADDRESS,
    ANVIL_KMS_ADDRESS,
    CHAIN_ID,
    DAPP_ADDRESS,
    KMS_VERIFIER_ADDRESS,
    USER_ADDRESS,
)


def _decryption_message():
    return {
        "aclAddress": ACL_ADDRESS,
        "handlesList": [1, 2, 3],
        "decryptedResult": b"\x00" * 31 + b"\x2a",
    }


def _recover(authority, schema, message, signature):
    signable = authority.encode(schema, message)
    return Account.recover_message(signable, signature=signature)


# ---------------------------------------------------------------------------
# pack_signature
# ---------------------------------------------------------------------------

class TestPackSignature:
    def test_layout(self):
        packed = pack_signature(1, 2, 28)
        assert len(packed) == SIGNATURE_SIZE
        assert packed[:32] == (1).to_bytes(32, "big")
        assert packed[32:64] == (2).to_bytes(32, "big")
        assert packed[64] == 28

    def test_parity_v_is_normalized(self):
        assert pack_signature(1, 2, 0)[64] == 27
        assert pack_signature(1, 2, 1)[64] == 28


# ---------------------------------------------------------------------------
# SigningAuthority
# ---------------------------------------------------------------------------

class TestSigningAuthority:
    def test_address(self, coprocessor_signer, kms_signer):
        assert coprocessor_signer.address == ANVIL_DEPLOYER_ADDRESS
        assert kms_signer.address == ANVIL_KMS_ADDRESS

    def test_requires_private_key(self):
        with pytest.raises(SigningConfigurationError):
            SigningAuthority("", "KMSVerifier", KMS_VERIFIER_ADDRESS, CHAIN_ID)

    def test_domain(self, kms_signer):
        assert kms_signer.domain() == {
            "name": "KMSVerifier",
            "version": "1",
            "chainId": CHAIN_ID,
            "verifyingContract": KMS_VERIFIER_ADDRESS,
        }

    def test_decryption_signature_recovers_to_signer(self, kms_signer):
        message = _decryption_message()
        signature = kms_signer.sign(KMS_DECRYPTION_SCHEMA, message)
        assert len(signature) == SIGNATURE_SIZE
        assert signature[64] in (27, 28)
        recovered = _recover(kms_signer, KMS_DECRYPTION_SCHEMA, message, signature)
        assert recovered == ANVIL_KMS_ADDRESS

    def test_input_signatures_recover(self, coprocessor_signer, kms_signer):
        message = {
            "aclAddress": ACL_ADDRESS,
            "hashOfCiphertext": b"\x01" * 32,
            "handlesList": [7],
            "userAddress": USER_ADDRESS,
            "contractAddress": DAPP_ADDRESS,
        }
        copro_sig = coprocessor_signer.sign(COPROCESSOR_INPUT_SCHEMA, message)
        kms_sig = kms_signer.sign(KMS_INPUT_SCHEMA, message)
        assert _recover(
            coprocessor_signer, COPROCESSOR_INPUT_SCHEMA, message, copro_sig
        ) == ANVIL_DEPLOYER_ADDRESS
        assert _recover(kms_signer, KMS_INPUT_SCHEMA, message, kms_sig) == ANVIL_KMS_ADDRESS

    def test_signature_is_bound_to_the_message(self, kms_signer):
        message = _decryption_message()
        signature = kms_signer.sign(KMS_DECRYPTION_SCHEMA, message)
        tampered = dict(message, handlesList=[1, 2, 4])
        recovered = _recover(kms_signer, KMS_DECRYPTION_SCHEMA, tampered, signature)
        assert recovered != ANVIL_KMS_ADDRESS

    def test_rejects_schema_of_other_domain(self, coprocessor_signer):
        with pytest.raises(SigningConfigurationError):
            coprocessor_signer.sign(KMS_DECRYPTION_SCHEMA, _decryption_message())

    def test_rejects_incomplete_message(self, kms_signer):
        message = _decryption_message()
        del message["decryptedResult"]
        with pytest.raises(SigningConfigurationError):
            kms_signer.sign(KMS_DECRYPTION_SCHEMA, message)
