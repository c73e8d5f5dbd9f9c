from __future__ import annotations

from typing import Optional


class BillingError(ValueError):
    pass


class ValidationError(BillingError):
    """Input rejected before any write (bad line items, missing client, amount below minimum)."""


class NotFoundError(BillingError):
    """Unknown id, or an id not owned by the caller."""


class InvalidTransitionError(BillingError):
    def __init__(self, current: str, target: str, *, already_in_state: bool = False, message: Optional[str] = None):
        self.current = current
        self.target = target
        self.already_in_state = already_in_state
        if message is None:
            if already_in_state:
                message = f"Document is already {current}"
            else:
                message = f"Invalid transition: {current} -> {target}"
        super().__init__(message)


class DerivationFailure(BillingError):
    """Offer acceptance could not create its invoice; nothing was written."""


class SchedulerItemError(BillingError):
    """One template/invoice failed inside a scheduler run."""


class DeliveryError(BillingError):
    """The email collaborator reported a failed send for an owner action."""
