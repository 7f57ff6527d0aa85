# -*- encoding: utf-8 -*-
"""
FHEVM Mock
fhevm_mock.signing module

EIP-712 signing for the two mocked authorities.

The coprocessor attests that an input ciphertext is well formed (domain
"InputVerifier"); the KMS attests input ciphertexts and decryption results
(domain "KMSVerifier"). Each authority is bound to one domain, and a schema
can only be signed by the authority whose domain it names.

Signatures are packed as r (32) || s (32) || v (1), v = 27 + recovery parity,
which is the calldata layout the on-chain verifiers split.
"""

from eth_account import Account
from eth_account.messages import encode_typed_data

from fhevm_mock.errors import SigningConfigurationError

DOMAIN_VERSION = "1"
SIGNATURE_SIZE = 65

COPROCESSOR_DOMAIN = "InputVerifier"
KMS_DOMAIN = "KMSVerifier"

_EIP712_DOMAIN_FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]


class TypedDataSchema:
    """Domain name, primary type and field list of one typed-data message."""

    __slots__ = ("domain_name", "primary_type", "fields")

    def __init__(self, domain_name, primary_type, fields):
        self.domain_name = domain_name
        self.primary_type = primary_type
        self.fields = fields

    @property
    def field_names(self):
        return [field["name"] for field in self.fields]

    def __repr__(self):
        return f"TypedDataSchema({self.domain_name}/{self.primary_type})"


COPROCESSOR_INPUT_SCHEMA = TypedDataSchema(
    COPROCESSOR_DOMAIN,
    "CiphertextVerificationForCopro",
    [
        {"name": "aclAddress", "type": "address"},
        {"name": "hashOfCiphertext", "type": "bytes32"},
        {"name": "handlesList", "type": "uint256[]"},
        {"name": "userAddress", "type": "address"},
        {"name": "contractAddress", "type": "address"},
    ],
)

KMS_INPUT_SCHEMA = TypedDataSchema(
    KMS_DOMAIN,
    "CiphertextVerificationForKMS",
    [
        {"name": "aclAddress", "type": "address"},
        {"name": "hashOfCiphertext", "type": "bytes32"},
        {"name": "userAddress", "type": "address"},
        {"name": "contractAddress", "type": "address"},
    ],
)

KMS_DECRYPTION_SCHEMA = TypedDataSchema(
    KMS_DOMAIN,
    "DecryptionResult",
    [
        {"name": "aclAddress", "type": "address"},
        {"name": "handlesList", "type": "uint256[]"},
        {"name": "decryptedResult", "type": "bytes"},
    ],
)


def pack_signature(r, s, v):
    """Pack signature components as r || s || v (65 bytes)."""
    if v < 27:
        v += 27
    return r.to_bytes(32, "big") + s.to_bytes(32, "big") + bytes([v])


class SigningAuthority:
    """A private key bound to one EIP-712 domain on one chain.

    Args:
        private_key: Hex private key of the signer.
        domain_name: EIP-712 domain name this authority signs for.
        verifying_contract: Address of the contract that checks signatures.
        chain_id: Chain id of the domain separator.

    Raises:
        SigningConfigurationError: if no private key is provided.
    """

    def __init__(self, private_key, domain_name, verifying_contract, chain_id):
        if not private_key:
            raise SigningConfigurationError(
                f"No private key configured for the {domain_name} signer"
            )
        self._account = Account.from_key(private_key)
        self.domain_name = domain_name
        self.verifying_contract = verifying_contract
        self.chain_id = int(chain_id)

    @property
    def address(self):
        return self._account.address

    def domain(self):
        return {
            "name": self.domain_name,
            "version": DOMAIN_VERSION,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }

    def encode(self, schema, message):
        """Return the signable EIP-712 message for a schema and its values."""
        if schema.domain_name != self.domain_name:
            raise SigningConfigurationError(
                f"{schema!r} cannot be signed by the {self.domain_name} authority"
            )
        missing = [name for name in schema.field_names if name not in message]
        if missing:
            raise SigningConfigurationError(
                f"{schema.primary_type} message is missing fields {missing}"
            )
        return encode_typed_data(full_message={
            "types": {
                "EIP712Domain": _EIP712_DOMAIN_FIELDS,
                schema.primary_type: schema.fields,
            },
            "primaryType": schema.primary_type,
            "domain": self.domain(),
            "message": {name: message[name] for name in schema.field_names},
        })

    def sign(self, schema, message):
        """Sign a typed-data message.

        Returns:
            65-byte signature r || s || v.
        """
        signed = self._account.sign_message(self.encode(schema, message))
        return pack_signature(signed.r, signed.s, signed.v)
