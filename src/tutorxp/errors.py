"""Domain exceptions shared by the ledger, rules and redemption services."""

from __future__ import annotations


class InsufficientBalance(ValueError):
    """Raised when a debit exceeds the account's available balance."""

    def __init__(self, account_id: int, requested: int, available: int) -> None:
        self.account_id = account_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Account {account_id} has {available} XP available, {requested} requested"
        )


class RewardUnavailable(ValueError):
    """Raised when a catalog item is inactive, out of stock or not allowed for the student."""


class InvalidStateTransition(ValueError):
    """Raised for a redemption status change the state machine does not allow."""


class NotFound(LookupError):
    """Raised when a referenced account, challenge, badge or redemption does not exist."""


class NotEligible(PermissionError):
    """Raised when a student is outside a challenge's scope or it is full."""


class RuleConfigurationError(ValueError):
    """Base class for badge/challenge definitions that cannot be evaluated."""


class UnknownBadgeCriterion(RuleConfigurationError):
    """Raised for a criterion tag that has no variant."""


class MalformedBadgeCriterion(RuleConfigurationError):
    """Raised for a known criterion tag with missing or invalid fields."""


class MalformedChallengeMetric(RuleConfigurationError):
    """Raised for a challenge whose metric is not one of the supported metrics."""


class ConcurrentModificationConflict(RuntimeError):
    """Raised when lock or transaction contention outlasts the retry budget."""


class LedgerIntegrityError(RuntimeError):
    """Raised when stored balances disagree with the ledger chain."""
