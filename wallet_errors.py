"""
Error types raised by the Stacks wallet keystore and session.

Four families, reported distinctly to callers:
- validation errors (bad input, malformed keystore files)
- cryptographic errors (wrong password or corrupted keystore, indistinguishable)
- state errors (operation needs an unlocked wallet)
- not-found errors (unknown wallet id or account index)
"""

from __future__ import annotations

INVALID_PASSWORD_MESSAGE = "Invalid password or corrupted keystore"
WALLET_LOCKED_MESSAGE = "Wallet is locked. Please unlock first."


class WalletError(Exception):
    """Base class for every wallet core error."""


class WalletValidationError(WalletError, ValueError):
    """Caller supplied something malformed or missing."""


class KeystoreFormatError(WalletValidationError):
    """A keystore envelope or file does not have the expected shape."""


class DuplicateWalletError(WalletValidationError):
    def __init__(self, wallet_id: str) -> None:
        super().__init__(f"Wallet with ID {wallet_id} already exists")
        self.wallet_id = wallet_id


class InvalidPasswordError(WalletError):
    """Wrong password or tampered keystore. The message never says which."""

    def __init__(self) -> None:
        super().__init__(INVALID_PASSWORD_MESSAGE)


class WalletLockedError(WalletError, RuntimeError):
    def __init__(self, message: str = WALLET_LOCKED_MESSAGE) -> None:
        super().__init__(message)


class WalletNotFoundError(WalletError, LookupError):
    """Unknown wallet id or account index."""
