# -*- encoding: utf-8 -*-
"""
FHEVM Mock
fhevm_mock.fhe_types module

Encrypted value types and ciphertext handle layout.

A handle is a 32-byte identifier:

    bytes 0..28   hash material
    byte  29      input index (user inputs only)
    byte  30      type tag
    byte  31      handle version (0)

Each FheType member carries everything the mock needs to know about a tag:
its bit width, the ABI type of its decrypted value, and the fixed byte
length used when the decrypted value is a byte string or an address.
"""

import enum

from fhevm_mock.errors import ValidationError

HANDLE_SIZE = 32
HANDLE_VERSION = 0
MAX_HANDLE = (1 << (8 * HANDLE_SIZE)) - 1


class FheType(enum.Enum):
    # name = (tag, bits, decrypted ABI type, padded byte length)
    EBOOL = (0, 1, "bool", None)
    EUINT4 = (1, 4, "uint8", None)
    EUINT8 = (2, 8, "uint8", None)
    EUINT16 = (3, 16, "uint16", None)
    EUINT32 = (4, 32, "uint32", None)
    EUINT64 = (5, 64, "uint64", None)
    EUINT128 = (6, 128, "uint128", None)
    EADDRESS = (7, 160, "address", 20)
    EUINT256 = (8, 256, "uint256", None)
    EBYTES64 = (9, 512, "bytes", 64)
    EBYTES128 = (10, 1024, "bytes", 128)
    EBYTES256 = (11, 2048, "bytes", 256)

    def __init__(self, tag, bits, abi_type, byte_length):
        self.tag = tag
        self.bits = bits
        self.abi_type = abi_type
        self.byte_length = byte_length

    @property
    def modulus(self):
        return 1 << self.bits

    @property
    def mask(self):
        return self.modulus - 1

    @property
    def input_byte_length(self):
        """Number of bytes a plaintext occupies in an input ciphertext."""
        return (self.bits + 7) // 8

    @classmethod
    def from_tag(cls, tag):
        """Return the member for a numeric type tag.

        Raises:
            ValidationError: if the tag is not one of the known types.
        """
        try:
            return _BY_TAG[tag]
        except (KeyError, TypeError):
            raise ValidationError(f"Unknown ciphertext type tag {tag!r}") from None

    @classmethod
    def from_bits(cls, bits):
        """Return the member for an input bit width.

        Booleans are accepted as width 1 or 2; the client SDK sends 2 since
        the FHE library packs an ebool in two bits.

        Raises:
            ValidationError: if the width is not supported.
        """
        if isinstance(bits, bool):
            raise ValidationError(f"Unsupported bit width {bits!r}")
        try:
            return _BY_INPUT_BITS[bits]
        except (KeyError, TypeError):
            raise ValidationError(f"Unsupported bit width {bits!r}") from None

    def decrypted_value(self, clear_text):
        """Convert a shadow integer into the value the gateway ABI-encodes."""
        clear_text = int(clear_text)
        if self.abi_type == "bool":
            return clear_text == 1
        if self.byte_length is not None:
            return clear_text.to_bytes(self.byte_length, "big")
        return clear_text

    def __str__(self):
        return self.name.lower()


_BY_TAG = {member.tag: member for member in FheType}
_BY_INPUT_BITS = {member.bits: member for member in FheType}
_BY_INPUT_BITS[2] = FheType.EBOOL


def handle_to_int(handle):
    """Normalize a handle given as int, bytes or hex/decimal string.

    Raises:
        ValidationError: if the handle is malformed or out of range.
    """
    if isinstance(handle, bool):
        raise ValidationError("Handle must not be a boolean")
    if isinstance(handle, int):
        value = handle
    elif isinstance(handle, (bytes, bytearray)):
        if len(handle) != HANDLE_SIZE:
            raise ValidationError(
                f"Handle must be {HANDLE_SIZE} bytes, got {len(handle)}"
            )
        value = int.from_bytes(handle, "big")
    elif isinstance(handle, str):
        text = handle.strip()
        try:
            if text.lower().startswith("0x"):
                value = int(text, 16)
            else:
                value = int(text, 10)
        except ValueError:
            raise ValidationError(f"Invalid handle format: {handle!r}") from None
    else:
        raise ValidationError(f"Unsupported handle type {type(handle).__name__}")

    if value < 0 or value > MAX_HANDLE:
        raise ValidationError("Handle is out of the 256-bit range")
    return value


def handle_to_hex(handle):
    """Canonical representation: 0x followed by 64 lowercase hex digits."""
    return "0x" + format(handle_to_int(handle), "064x")


def handle_to_bytes(handle):
    return handle_to_int(handle).to_bytes(HANDLE_SIZE, "big")


def handle_type(handle):
    """Return the FheType embedded in the second-to-last byte of a handle."""
    return FheType.from_tag((handle_to_int(handle) >> 8) & 0xFF)


def handle_index(handle):
    """Return the input index embedded in byte 29 of a handle."""
    return (handle_to_int(handle) >> 16) & 0xFF


def compose_handle(prefix, index, fhe_type):
    """Build a handle from 29 bytes of hash material, an index and a type."""
    if len(prefix) < 29:
        raise ValidationError("Handle prefix must be at least 29 bytes")
    if not 0 <= index <= 0xFF:
        raise ValidationError(f"Handle index {index} does not fit in a byte")
    return bytes(prefix[:29]) + bytes([index, fhe_type.tag, HANDLE_VERSION])
