"""
Ledger and gateway exceptions

Every failure the ledger or a gateway adapter can surface has its own class so
callers can tell "retry the call" apart from "accept the outcome".
"""

from typing import Optional


class WalletLedgerError(Exception):
    """Base class for all ledger and gateway errors"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(WalletLedgerError):
    """Bad input, rejected before any I/O"""


class DuplicateReference(WalletLedgerError):
    """A ledger mutation with this reference already exists"""

    def __init__(self, reference: str, message: Optional[str] = None):
        self.reference = reference
        super().__init__(message or f"Transaction reference already exists: {reference}")


class AlreadyProcessed(DuplicateReference):
    """A webhook-driven credit was already applied; a no-op success for the gateway"""

    def __init__(self, reference: str):
        super().__init__(reference, f"Reference already processed: {reference}")


class InsufficientFunds(WalletLedgerError):
    def __init__(self, balance: int, requested: int):
        self.balance = balance
        self.requested = requested
        super().__init__(f"Insufficient funds: balance {balance}, requested {requested}")


class WalletNotActive(WalletLedgerError):
    def __init__(self, user_id: str, status: str):
        self.user_id = user_id
        self.status = status
        super().__init__(f"Wallet for user {user_id} is {status}")


class AccountNotFound(WalletLedgerError):
    """Virtual account lookup exhausted its retries"""

    def __init__(self, account_number: str, attempts: int):
        self.account_number = account_number
        self.attempts = attempts
        super().__init__(f"No virtual account ending {account_number[-4:]} after {attempts} attempts")


class SignatureInvalid(WalletLedgerError):
    """Webhook signature missing or wrong; the webhook must not mutate anything"""


class GatewayError(WalletLedgerError):
    def __init__(self, gateway: str, message: str, status_code: Optional[int] = None):
        self.gateway = gateway
        self.status_code = status_code
        super().__init__(f"{gateway}: {message}")


class GatewayUnavailable(GatewayError):
    """Network failure, timeout or provider outage; the outcome is unknown and the call may be retried"""


class GatewayRejected(GatewayError):
    """The provider gave a definitive failure; not retryable"""


class AmountMismatch(WalletLedgerError):
    """Verified amount differs from the amount requested at initialization"""

    def __init__(self, reference: str, expected: int, actual: int):
        self.reference = reference
        self.expected = expected
        self.actual = actual
        super().__init__(f"Amount mismatch for {reference}: expected {expected}, verified {actual}")
