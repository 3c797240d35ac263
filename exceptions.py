"""Custom exception hierarchy for the comic chain API.

Each error carries the HTTP status it maps to and a stable ``code`` that is
returned to clients alongside the human readable message.
"""

from typing import Optional


class ComicChainError(Exception):
    """Base exception for all comic chain errors."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


# ---- Input Errors ----

class ValidationError(ComicChainError):
    """Bad or missing input, including uniqueness violations."""

    status_code = 400
    code = "validation_error"


class WalletLimitExceededError(ValidationError):
    """Mint would take a wallet past the per-wallet cap."""

    code = "wallet_limit_exceeded"

    def __init__(self, account_id: str, owned: int, requested: int, limit: int):
        super().__init__(
            f"Wallet {account_id} may hold at most {limit} NFT(s) of this episode",
            {"owned": owned, "requested": requested, "limit": limit},
        )


class NotFoundError(ComicChainError):
    """Requested record does not exist."""

    status_code = 404
    code = "not_found"


class AccessDeniedError(ComicChainError):
    """Ownership or NFT gating check failed."""

    status_code = 403
    code = "access_denied"


class ConflictError(ComicChainError):
    """State conflict, or optimistic concurrency retries exhausted."""

    status_code = 409
    code = "conflict"


# ---- Minting Errors ----

class MintingError(ComicChainError):
    """Base exception for mint rule rejections."""

    status_code = 400
    code = "minting_error"


class MintingDisabledError(MintingError):
    """Minting is not enabled for the episode."""

    code = "minting_disabled"

    def __init__(self, message: str = "Minting is not enabled for this episode"):
        super().__init__(message)


class MintingWindowClosedError(MintingError):
    """Current time falls outside the minting window."""

    code = "minting_window_closed"


class NotWhitelistedError(MintingError):
    """Buyer is not on the whitelist of a whitelist-only episode."""

    status_code = 403
    code = "not_whitelisted"

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} is not whitelisted for this episode", {"account_id": account_id})
        self.account_id = account_id


class SupplyExceededError(MintingError):
    """Mint would exceed the episode's maximum supply."""

    code = "supply_exceeded"

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"Requested {requested} NFT(s) but only {available} left",
            {"requested": requested, "available": available},
        )
        self.requested = requested
        self.available = available


# ---- External Collaborator Errors ----

class ExternalServiceError(ComicChainError):
    """Base exception for failures of external collaborators."""

    status_code = 502
    code = "external_service_error"


class LedgerError(ExternalServiceError):
    """Ledger gateway call failed or timed out."""

    code = "ledger_error"


class LedgerTimeoutError(LedgerError):
    """Ledger call exceeded its timeout; the call keeps running detached."""

    status_code = 504
    code = "ledger_timeout"


class StorageError(ExternalServiceError):
    """Content store call failed or timed out."""

    code = "storage_error"


# ---- Database Errors ----

class DatabaseError(ComicChainError):
    """Database is unavailable or an operation failed."""

    code = "database_error"
