# -*- encoding: utf-8 -*-
"""
FHEVM Mock
fhevm_mock.errors module

Error taxonomy shared by the coprocessor, gateway and HTTP surfaces.

HTTP resources turn these into structured error responses. The replay and
fulfillment loops let them propagate so a failing batch is aborted as a
whole and retried on the next cycle.
"""


class FhevmMockError(Exception):
    """Base class for all mock coprocessor / gateway errors."""


class ValidationError(FhevmMockError):
    """Malformed handle, value or bit width in an inbound request."""


class NotFoundError(FhevmMockError):
    """A shadow value is absent (after retries, where retries apply)."""


class AuthorizationError(FhevmMockError):
    """The ACL denies decryption for at least one requested handle."""


class UnsupportedOperationError(FhevmMockError, NotImplementedError):
    """An executor operation the mock does not simulate."""


class SigningConfigurationError(FhevmMockError):
    """Signer key material is missing or used with the wrong domain."""


class FulfillmentError(FhevmMockError):
    """A gateway fulfillment transaction was mined but reverted."""
