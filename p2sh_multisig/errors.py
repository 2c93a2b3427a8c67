"""Error kinds raised by the multisig core.

Every external-call failure is converted into one of these at the call site so
that the console can print a message and return to the menu.
"""

from __future__ import annotations


class MultisigError(RuntimeError):
    """Base class for failures of a multisig action."""


class ValidationError(MultisigError):
    """Invalid address, redeem script, or a session/config mismatch."""


class FetchError(MultisigError):
    """A node query failed or returned nothing usable."""


class AddressValidationError(ValidationError, FetchError):
    """The node reported the address as invalid and no bypass was granted."""


class InsufficientFundsError(MultisigError):
    """Candidate UTXOs cannot cover the requested amount plus fee."""

    def __init__(self, message: str, *, available=None, needed=None) -> None:
        super().__init__(message)
        self.available = available
        self.needed = needed


class BuildError(MultisigError):
    """The node refused to construct the raw transaction."""


class SigningError(MultisigError):
    """Signing was rejected by the node or blocked by the duplicate guard."""


class DecodeError(MultisigError):
    """A hex blob (transaction or script) could not be decoded."""


class BroadcastError(MultisigError):
    """The node rejected submission, or broadcast was refused locally."""

    def __init__(self, message: str, node_message: str | None = None) -> None:
        super().__init__(message)
        self.node_message = node_message
