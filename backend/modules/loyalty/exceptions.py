# backend/modules/loyalty/exceptions.py

"""
Business errors raised by the loyalty ledger and redemption services.

All of them are raised before anything is written, so the enclosing atomic
unit rolls back cleanly. Messages are safe to show to the customer.
"""

from typing import Any, Optional

from core.error_handling import APIValidationError, ConflictError, NotFoundError


class InvalidAmount(APIValidationError):
    """Points amount must be a positive integer"""
    error_code = "INVALID_AMOUNT"

    def __init__(self, amount: Any):
        super().__init__(
            f"Points amount must be a positive integer, got {amount!r}",
            {"amount": str(amount)},
        )


class BelowMinimumRedemption(APIValidationError):
    error_code = "BELOW_MINIMUM_REDEMPTION"

    def __init__(self, points: int, minimum: int):
        super().__init__(
            f"Redemption of {points} points is below the program minimum of {minimum}",
            {"points": points, "minimum": minimum},
        )


class NotEnrolled(NotFoundError):
    """No loyalty account for the customer (or account id)"""
    error_code = "NOT_ENROLLED"

    def __init__(self, identifier: Any, resource: str = "Loyalty account"):
        super().__init__(resource, identifier)
        self.message = f"{resource} {identifier} is not enrolled in the loyalty program"


class InsufficientBalance(ConflictError):
    error_code = "INSUFFICIENT_BALANCE"

    def __init__(self, available: int, required: int):
        super().__init__(
            f"Insufficient points balance: have {available}, need {required}",
            {"available": available, "required": required},
        )


class AlreadyEnrolled(ConflictError):
    error_code = "ALREADY_ENROLLED"

    def __init__(self, customer_id: int):
        super().__init__(
            f"Customer {customer_id} is already enrolled in the loyalty program",
            {"customer_id": customer_id},
        )


class AccountInactive(ConflictError):
    error_code = "ACCOUNT_INACTIVE"

    def __init__(self, account_id: int):
        super().__init__(
            f"Loyalty account {account_id} is deactivated",
            {"account_id": account_id},
        )


class AlreadyReversed(ConflictError):
    error_code = "ALREADY_REVERSED"

    def __init__(self, transaction_id: int):
        super().__init__(
            f"Transaction {transaction_id} has already been reversed",
            {"transaction_id": transaction_id},
        )


class TransactionNotReversible(ConflictError):
    error_code = "TRANSACTION_NOT_REVERSIBLE"

    def __init__(self, transaction_id: int, reason: str):
        super().__init__(
            f"Transaction {transaction_id} cannot be reversed: {reason}",
            {"transaction_id": transaction_id, "reason": reason},
        )


class RewardUnavailable(ConflictError):
    error_code = "REWARD_UNAVAILABLE"

    def __init__(self, reward_id: int):
        super().__init__(
            f"Reward {reward_id} is not available",
            {"reward_id": reward_id},
        )


class TierIneligible(ConflictError):
    error_code = "TIER_INELIGIBLE"

    def __init__(self, tier: str, eligible_tiers):
        super().__init__(
            f"Reward is not available for {tier} tier members",
            {"tier": tier, "eligible_tiers": list(eligible_tiers or [])},
        )


class MinimumBalanceNotMet(ConflictError):
    error_code = "MINIMUM_BALANCE_NOT_MET"

    def __init__(self, available: int, minimum: int):
        super().__init__(
            f"Reward requires a balance of at least {minimum} points, have {available}",
            {"available": available, "minimum": minimum},
        )


class InsufficientStock(ConflictError):
    error_code = "INSUFFICIENT_STOCK"

    def __init__(self, reward_id: int, in_stock: int, requested: int):
        super().__init__(
            f"Insufficient stock for reward {reward_id}: {in_stock} left, {requested} requested",
            {"reward_id": reward_id, "in_stock": in_stock, "requested": requested},
        )


class InvalidStatusTransition(ConflictError):
    error_code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot change redemption status from {current} to {requested}",
            {"current": current, "requested": requested},
        )


class BonusAlreadyAwarded(ConflictError):
    error_code = "BONUS_ALREADY_AWARDED"

    def __init__(self, occasion: str, reference_id: Optional[str]):
        super().__init__(
            f"The {occasion} bonus for {reference_id} has already been awarded",
            {"occasion": occasion, "reference_id": reference_id},
        )
