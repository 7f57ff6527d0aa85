# -*- encoding: utf-8 -*-
"""
FHEVM Mock
fhevm_mock.encryption module

Mocked client-side encryption and input-proof issuance.

The "ciphertext" of an input is its plaintext plus 32 random bytes of noise,
prefixed with its type tag. Handles are derived from the keccak digest of
all ciphertexts, and the input proof is a signed attestation over them:

    n_handles (1) || n_kms_signers (1) || digest (32) || handles (32 * n)
    || coprocessor signature (65) || kms signatures (65 * n_kms_signers)

The plaintexts are recorded in the shadow store so later executor events
(VerifyCiphertext first) can be replayed against them.
"""

import logging
import secrets

from web3 import Web3

from fhevm_mock.errors import SigningConfigurationError, ValidationError
from fhevm_mock.fhe_types import FheType, compose_handle
from fhevm_mock.signing import COPROCESSOR_INPUT_SCHEMA, KMS_INPUT_SCHEMA

logger = logging.getLogger(__name__)

NOISE_SIZE = 32
MAX_INPUT_VALUES = 255  # the proof stores the handle count in one byte
MAX_INPUT_BITS = 2048


def packed_bits(fhe_type):
    """Bits a value takes in an input ciphertext; a bool is packed as 2."""
    return 2 if fhe_type is FheType.EBOOL else fhe_type.bits


def parse_value(value):
    """Parse an input plaintext given as int, bool or decimal/hex string."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if text.lower().startswith("0x"):
                return int(text, 16)
            return int(text, 10)
        except ValueError:
            raise ValidationError(f"Invalid value {value!r}") from None
    raise ValidationError(f"Unsupported value type {type(value).__name__}")


def _checksum(address, label):
    if not isinstance(address, str) or not Web3.is_address(address):
        raise ValidationError(f"{label} is not a valid address: {address!r}")
    return Web3.to_checksum_address(address)


def validate_inputs(values, bits):
    """Check an encryption request before any hashing or signing.

    Returns:
        list of (plaintext int, FheType) pairs in argument order.
    """
    if not isinstance(values, (list, tuple)) or not isinstance(bits, (list, tuple)):
        raise ValidationError("values and bits must be lists")
    if not values:
        raise ValidationError("At least one value is required")
    if len(values) != len(bits):
        raise ValidationError(
            f"Got {len(values)} values but {len(bits)} bit widths"
        )
    if len(values) > MAX_INPUT_VALUES:
        raise ValidationError(
            f"Packing more than {MAX_INPUT_VALUES} variables in a single "
            "input ciphertext is unsupported"
        )

    inputs = []
    for value, width in zip(values, bits):
        fhe_type = FheType.from_bits(width)
        plaintext = parse_value(value)
        if plaintext < 0 or plaintext > fhe_type.mask:
            raise ValidationError(
                f"Value {plaintext} does not fit in {fhe_type} ({fhe_type.bits} bits)"
            )
        inputs.append((plaintext, fhe_type))

    if sum(packed_bits(fhe_type) for _, fhe_type in inputs) > MAX_INPUT_BITS:
        raise ValidationError(
            f"Packing more than {MAX_INPUT_BITS} bits in a single input "
            "ciphertext is unsupported"
        )
    return inputs


def mock_ciphertext(plaintext, fhe_type):
    """Type tag || big-endian plaintext || 32 bytes of noise."""
    return (
        bytes([fhe_type.tag])
        + plaintext.to_bytes(fhe_type.input_byte_length, "big")
        + secrets.token_bytes(NOISE_SIZE)
    )


def derive_handles(digest, types):
    """Derive one handle per input from the ciphertext digest."""
    handles = []
    for index, fhe_type in enumerate(types):
        material = Web3.keccak(digest + bytes([index]))
        handles.append(compose_handle(material, index, fhe_type))
    return handles


class EncryptionMockService:
    """Issues input handles and proofs, and shadows their plaintexts.

    Args:
        store: ShadowStore receiving the plaintexts.
        coprocessor_signer: SigningAuthority in the InputVerifier domain.
        kms_signers: list of SigningAuthority in the KMSVerifier domain.
        acl_address: ACL address included in every signed attestation.
    """

    def __init__(self, store, coprocessor_signer, kms_signers, acl_address):
        self.store = store
        self.coprocessor_signer = coprocessor_signer
        self.kms_signers = list(kms_signers)
        self.acl_address = acl_address

    def encrypt(self, values, bits, user_address, contract_address):
        """Encrypt values for a (user, contract) pair.

        Args:
            values: Plaintexts as ints or decimal/hex strings.
            bits: Bit width of each value (1 or 2 for ebool).
            user_address: Address that will submit the input.
            contract_address: Contract the input is bound to.

        Returns:
            (handles, input_proof): handles as 0x hex strings and the proof
            as a 0x hex string.

        Raises:
            ValidationError: on malformed values, widths or addresses.
            SigningConfigurationError: if a signer is missing.
        """
        inputs = validate_inputs(values, bits)
        user_address = _checksum(user_address, "userAddress")
        contract_address = _checksum(contract_address, "contractAddress")
        if self.coprocessor_signer is None:
            raise SigningConfigurationError("No coprocessor signer configured")
        if not self.kms_signers:
            raise SigningConfigurationError("No KMS signer configured")

        ciphertext = b"".join(mock_ciphertext(pt, t) for pt, t in inputs)
        digest = bytes(Web3.keccak(ciphertext))
        handles = derive_handles(digest, [t for _, t in inputs])
        handle_ints = [int.from_bytes(h, "big") for h in handles]

        coprocessor_signature = self.coprocessor_signer.sign(
            COPROCESSOR_INPUT_SCHEMA,
            {
                "aclAddress": self.acl_address,
                "hashOfCiphertext": digest,
                "handlesList": handle_ints,
                "userAddress": user_address,
                "contractAddress": contract_address,
            },
        )
        kms_message = {
            "aclAddress": self.acl_address,
            "hashOfCiphertext": digest,
            "userAddress": user_address,
            "contractAddress": contract_address,
        }
        kms_signatures = [
            signer.sign(KMS_INPUT_SCHEMA, kms_message) for signer in self.kms_signers
        ]

        proof = (
            bytes([len(handles), len(kms_signatures)])
            + digest
            + b"".join(handles)
            + coprocessor_signature
            + b"".join(kms_signatures)
        )

        for handle, (plaintext, _) in zip(handles, inputs):
            self.store.put(handle, plaintext, overwrite=False)

        logger.info(
            "Encrypted %d inputs for user %s on contract %s",
            len(handles), user_address, contract_address,
        )
        return ["0x" + h.hex() for h in handles], "0x" + proof.hex()
