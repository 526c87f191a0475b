"""Custom exception hierarchy for the keyswallet package."""

from __future__ import annotations


class WalletError(Exception):
    """Base class for all keyswallet specific errors."""

    default_message = "Wallet operation failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.default_message


class AuthenticationError(WalletError):
    """Raised when an operation is attempted without an authenticated user."""

    default_message = "User not authenticated"


class AccountsNotFoundError(WalletError):
    """Raised when a batched account lookup returns fewer rows than requested."""

    default_message = "Accounts not found"


class InvalidAccountsError(WalletError):
    """Raised when the fetched accounts can't take part in the movement."""

    default_message = "Invalid accounts"


class CurrencyMismatchError(InvalidAccountsError):
    """Raised when the accounts of one movement hold different currencies."""

    default_message = "Currency mismatch"


class InsufficientFundsError(WalletError):
    """Raised when an account operation would result in a negative balance."""

    default_message = "Insufficient funds"


class IdempotencyKeyConflictError(WalletError):
    """Raised when an idempotency key is reused for a different request."""

    default_message = "Idempotency key was already used for a different request"


class ConcurrencyError(WalletError):
    """Raised when account locks or optimistic retries can't be satisfied."""

    default_message = "Account is busy, try again"


class StorageError(WalletError):
    """Raised when the underlying store fails; carries the store's message."""

    default_message = "Storage failure"


class RecordNotFoundError(WalletError):
    """Raised when a bill, schedule or allowance lookup fails."""

    default_message = "Record not found"


class StaleAccountError(WalletError):
    """Internal signal: an account changed between read and compare-and-swap."""

    default_message = "Account changed concurrently"
