"""Offer state machine.

Pure functions over an offer-shaped object (the ORM ``Offer`` in practice):
the status vocabulary, the transition table every operation is checked
against, the lazy timer evaluation and the ``can_perform`` predicate. Nothing
here touches the database, so the rules can be tested without one.
"""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime

from .errors import AppError, ForbiddenError, InvalidStateError


class OfferStatus(str, enum.Enum):
    PENDING = "pending"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    LOCKED = "locked"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DownpaymentStatus(str, enum.Enum):
    NONE = "none"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    CONFIRMED = "confirmed"


class Operation(str, enum.Enum):
    VIEW = "view"
    COUNTER = "counter"
    ACCEPT = "accept"
    REJECT = "reject"
    CANCEL = "cancel"
    EXTEND_TIMER = "extend_timer"
    MARK_DOWNPAYMENT_PAID = "mark_downpayment_paid"
    CONFIRM_DOWNPAYMENT = "confirm_downpayment"
    CONFIRM_TRADE = "confirm_trade"
    LOCK = "lock"
    VERIFY_PICKUP = "verify_pickup"
    RAISE_DISPUTE = "raise_dispute"
    RESOLVE_DISPUTE = "resolve_dispute"
    RECEIPT = "receipt"


TERMINAL = frozenset({OfferStatus.REJECTED, OfferStatus.EXPIRED, OfferStatus.COMPLETED, OfferStatus.CANCELLED})
NEGOTIATING = frozenset({OfferStatus.PENDING, OfferStatus.COUNTERED})
# downpayment states that block completion
UNSETTLED_DOWNPAYMENT = frozenset({DownpaymentStatus.AWAITING_PAYMENT, DownpaymentStatus.PAID})

# actor kinds
BUYER = "buyer"
SELLER = "seller"
PARTY = "party"
AWAITED = "awaited"  # the party that did not author the live terms
ADMIN = "admin"
ANYONE_INVOLVED = "involved"  # either party or an admin


@dataclass(frozen=True)
class Rule:
    sources: frozenset
    actor: str
    verified: bool = False


TRANSITIONS: dict[Operation, Rule] = {
    Operation.VIEW: Rule(frozenset(OfferStatus), ANYONE_INVOLVED),
    Operation.COUNTER: Rule(NEGOTIATING, AWAITED),
    Operation.ACCEPT: Rule(NEGOTIATING, AWAITED, verified=True),
    Operation.REJECT: Rule(NEGOTIATING, AWAITED),
    Operation.CANCEL: Rule(NEGOTIATING, BUYER),
    Operation.EXTEND_TIMER: Rule(NEGOTIATING | {OfferStatus.ACCEPTED}, PARTY),
    Operation.MARK_DOWNPAYMENT_PAID: Rule(frozenset({OfferStatus.ACCEPTED}), BUYER),
    Operation.CONFIRM_DOWNPAYMENT: Rule(frozenset({OfferStatus.ACCEPTED}), SELLER),
    Operation.CONFIRM_TRADE: Rule(frozenset({OfferStatus.ACCEPTED}), PARTY),
    Operation.LOCK: Rule(frozenset({OfferStatus.ACCEPTED}), PARTY, verified=True),
    Operation.VERIFY_PICKUP: Rule(frozenset({OfferStatus.LOCKED}), SELLER),
    Operation.RAISE_DISPUTE: Rule(frozenset({OfferStatus.ACCEPTED, OfferStatus.LOCKED}), PARTY, verified=True),
    Operation.RESOLVE_DISPUTE: Rule(frozenset({OfferStatus.DISPUTED}), ADMIN),
    Operation.RECEIPT: Rule(frozenset({OfferStatus.COMPLETED}), ANYONE_INVOLVED),
}

# every edge a status write may take; checked on each persisted change
EDGES: dict[OfferStatus, frozenset] = {
    OfferStatus.PENDING: frozenset({OfferStatus.COUNTERED, OfferStatus.ACCEPTED, OfferStatus.REJECTED, OfferStatus.CANCELLED, OfferStatus.EXPIRED}),
    OfferStatus.COUNTERED: frozenset({OfferStatus.COUNTERED, OfferStatus.ACCEPTED, OfferStatus.REJECTED, OfferStatus.CANCELLED, OfferStatus.EXPIRED}),
    OfferStatus.ACCEPTED: frozenset({OfferStatus.LOCKED, OfferStatus.DISPUTED, OfferStatus.COMPLETED, OfferStatus.EXPIRED}),
    OfferStatus.LOCKED: frozenset({OfferStatus.COMPLETED, OfferStatus.DISPUTED}),
    OfferStatus.DISPUTED: frozenset({OfferStatus.COMPLETED, OfferStatus.CANCELLED}),
    OfferStatus.REJECTED: frozenset(),
    OfferStatus.EXPIRED: frozenset(),
    OfferStatus.COMPLETED: frozenset(),
    OfferStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class Caller:
    """Authenticated identity an operation runs on behalf of."""

    id: uuid.UUID
    is_verified: bool = False
    is_admin: bool = False

    @classmethod
    def from_user(cls, user) -> "Caller":
        return cls(id=user.id, is_verified=bool(user.is_verified), is_admin=user.role == "admin")


def role_of(offer, user_id) -> str | None:
    if user_id == offer.buyer_user_id:
        return BUYER
    if user_id == offer.seller_user_id:
        return SELLER
    return None


def awaited_party_id(offer):
    """Id of the party whose response the live terms are waiting for."""
    if offer.last_proposer_id == offer.buyer_user_id:
        return offer.seller_user_id
    return offer.buyer_user_id


def effective_status(offer, now: datetime) -> OfferStatus:
    """Status with the timer applied.

    An overdue negotiation or unpaid accepted trade reads as expired; an overdue
    meetup reads as disputed. A paid or confirmed downpayment never expires.
    """
    status = OfferStatus(offer.status)
    deadline = offer.timer_expires_at
    if deadline is None or now < deadline:
        return status
    if status in NEGOTIATING:
        return OfferStatus.EXPIRED
    if status == OfferStatus.ACCEPTED:
        if DownpaymentStatus(offer.downpayment_status) in (DownpaymentStatus.NONE, DownpaymentStatus.AWAITING_PAYMENT):
            return OfferStatus.EXPIRED
        return status
    if status == OfferStatus.LOCKED:
        return OfferStatus.DISPUTED
    return status


def assert_edge(current: OfferStatus | str, target: OfferStatus | str) -> None:
    current, target = OfferStatus(current), OfferStatus(target)
    if target not in EDGES[current]:
        raise InvalidStateError(f"Cannot move offer from {current.value} to {target.value}")


def check(operation: Operation, offer, caller: Caller, now: datetime) -> OfferStatus:
    """Raise the typed error that forbids ``operation``; return the effective status otherwise.

    Order matters: outsiders learn nothing about state, then the status is
    checked, then the caller's role, turn and verification.
    """
    rule = TRANSITIONS[operation]
    role = role_of(offer, caller.id)
    if role is None and not (caller.is_admin and rule.actor in (ADMIN, ANYONE_INVOLVED)):
        raise ForbiddenError("You are not a party to this offer")

    status = effective_status(offer, now)
    if status not in rule.sources:
        raise InvalidStateError(f"Cannot {operation.value.replace('_', ' ')} an offer that is {status.value}")

    if rule.actor == BUYER and role != BUYER:
        raise ForbiddenError("Only the buyer can do this")
    if rule.actor == SELLER and role != SELLER:
        raise ForbiddenError("Only the seller can do this")
    if rule.actor == ADMIN and not caller.is_admin:
        raise ForbiddenError("Admin only")
    if rule.actor == AWAITED and caller.id != awaited_party_id(offer):
        raise ForbiddenError("Waiting for the other party to respond to your terms", code="not_your_turn")
    if rule.verified and not caller.is_verified:
        raise ForbiddenError("Account verification required", code="verification_required")
    return status


def can_perform(operation: Operation, offer, caller: Caller, now: datetime) -> bool:
    try:
        check(operation, offer, caller, now)
    except AppError:
        return False
    return True


def allowed_operations(offer, caller: Caller, now: datetime) -> list[str]:
    """Operations the caller could attempt next; used to drive client buttons."""
    return [op.value for op in TRANSITIONS if op not in (Operation.VIEW, Operation.RECEIPT) and can_perform(op, offer, caller, now)]
