"""
Settlement engine exception hierarchy.

Validation errors are raised before any side effect. Not-found errors are
retried on the next sweep. External failures are recorded on the Transaction.
Capacity exhaustion and conflicts are results, not exceptions.
"""

# ============ BASE ============


class SettlementError(Exception):
    """Base exception for settlement engine errors"""

    pass


# ============ VALIDATION ============


class ValidationError(SettlementError):
    """Input rejected before any side effect"""

    pass


class InvalidAmount(ValidationError):
    """Payout amount is missing, zero or negative"""

    pass


class BlacklistedWallet(ValidationError):
    """Payout wallet is on the blacklist"""

    def __init__(self, wallet: str):
        super().__init__(f"Wallet {wallet} is blacklisted")
        self.wallet = wallet


# ============ NOT FOUND ============


class NotFoundError(SettlementError):
    """Referenced record does not exist (yet)"""

    pass


class PayoutNotFound(NotFoundError):
    pass


class AdvertisementNotFound(NotFoundError):
    pass


class TransactionNotFound(NotFoundError):
    pass


class ReceiptNotFound(NotFoundError):
    pass


# ============ STATE ============


class StateTransitionError(SettlementError):
    """Raised when an operator command is not allowed in the current state"""

    pass


# ============ EXTERNAL ============


class PlatformAPIError(SettlementError):
    """Trading platform rejected or failed a request"""

    def __init__(self, message: str, ret_code=None):
        super().__init__(message)
        self.ret_code = ret_code


class OrderAlreadyFinished(PlatformAPIError):
    """Release requested for an order the platform has already completed"""

    pass
