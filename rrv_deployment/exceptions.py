class DeploymentError(Exception):
    """Base exception for deploy/verify/record lifecycle errors."""


class NetworkError(DeploymentError, ConnectionError):
    """Raised by signer and explorer adapters for transient network failures."""


# Pre-flight errors; never retried, the caller must fix the input.


class UnknownContractError(DeploymentError, LookupError):
    """Raised when a contract name has no matching compiled artifact."""


class ArgumentMismatchError(DeploymentError, ValueError):
    """Raised when constructor arguments disagree with the constructor ABI."""


# Network-facing errors; retried within bounded budgets, then surfaced.


class SubmissionError(DeploymentError):
    """Raised when a deployment transaction could not be broadcast."""


class ReceiptTimeoutError(DeploymentError, TimeoutError):
    """Raised when no receipt appeared within the polling budget."""

    def __init__(self, message: str, tx_hash: str = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class RevertedError(DeploymentError):
    """Raised when a deployment receipt indicates execution failure."""

    def __init__(self, message: str, tx_hash: str = None):
        super().__init__(message)
        self.tx_hash = tx_hash


# Guard-rail errors; surfaced immediately.


class ConflictError(DeploymentError):
    """Raised when a ledger write would replace a record with a different address."""


class NotFoundError(DeploymentError, LookupError):
    """Raised when no ledger record exists for a (network, label) key."""


class InProgressError(DeploymentError):
    """Raised when another deployment attempt holds the lock for the same key."""


class LedgerCorruptedError(DeploymentError):
    """Raised when the ledger file exists but cannot be parsed."""


class VerificationError(DeploymentError):
    """Raised on persistent explorer rejection or verification timeout."""
