from typing import Optional


class BaseServiceError(Exception):
    """Base exception for all service-related errors."""
    classification = "error"

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class DatabaseError(BaseServiceError):
    """Exception raised for database-related errors."""
    classification = "database_error"


class ClaimLostError(BaseServiceError):
    """Raised when a conditional listing update finds the row already changed."""
    classification = "claim_lost"


class StrategyConfigError(BaseServiceError):
    """Raised when a listing's reduction parameters cannot be used."""
    classification = "strategy_config"


class CryptoConfigError(BaseServiceError):
    """Raised when the process encryption key is missing or malformed."""
    classification = "crypto_config"


# --- Token lifecycle errors (account level) ---

class TokenError(BaseServiceError):
    """Base exception for access credential acquisition."""
    classification = "token_error"
    permanent = True


class NotConnectedError(TokenError):
    """Raised when the account has no stored refresh credential."""
    classification = "not_connected"


class DecryptionFailedError(TokenError):
    """Raised when the stored refresh credential cannot be decrypted with the current key."""
    classification = "decryption_failed"


class RefreshRejectedError(TokenError):
    """Raised when eBay rejects the refresh credential itself (invalid_grant)."""
    classification = "refresh_rejected"


class TokenExchangeError(TokenError):
    """Raised when eBay rejects the exchange request for a reason other than the refresh credential."""
    classification = "token_exchange_error"


class TokenTransientError(TokenError):
    """Raised on network or 5xx failures of the token endpoint. Retryable."""
    classification = "transient"
    permanent = False


# --- Outbound call errors ---

class CallError(BaseServiceError):
    """Base exception for classified marketplace call failures."""
    classification = "call_error"
    retryable = False

    def __init__(self, message: str = "", code: Optional[str] = None, attempts: int = 1):
        super().__init__(message, code=code)
        self.attempts = attempts


class RateLimitedError(CallError):
    """Raised when eBay signals throttling."""
    classification = "rate_limited"
    retryable = True

    def __init__(self, message: str = "", code: Optional[str] = None, attempts: int = 1,
                 retry_after: Optional[float] = None):
        super().__init__(message, code=code, attempts=attempts)
        self.retry_after = retry_after


class ClientCallError(CallError):
    """Raised on validation failures or missing items. Never retried."""
    classification = "client_error"


class AuthCallError(CallError):
    """Raised when the access credential is rejected mid-call."""
    classification = "auth_error"


class ServerCallError(CallError):
    """Raised on eBay 5xx responses or internal error codes."""
    classification = "server_error"
    retryable = True


class TransientCallError(CallError):
    """Raised on timeouts and network errors."""
    classification = "transient"
    retryable = True


class RetryExhaustedError(CallError):
    """Raised when a retryable error persists past the retry policy."""
    classification = "retries_exhausted"

    def __init__(self, last_error: CallError, attempts: int):
        super().__init__(
            f"Gave up after {attempts} attempts: {last_error.message}",
            code=last_error.code,
            attempts=attempts,
        )
        self.last_error = last_error
        self.classification = f"retries_exhausted:{last_error.classification}"
