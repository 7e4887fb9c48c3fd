"""
eligibility.py -- Which circle actions a caller may take right now.

Pure functions of (circle snapshot, caller, member facts, expired flag).
They are evaluated on every render of a circle, so they never raise: missing
facts or a missing caller simply make an action unavailable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from web3 import Web3

import config
from circle_state import Circle, CircleState, MemberFacts, to_raw_amount


def collateral_required(contribution_raw: int, collateral_factor: int, mode: str | None = None) -> int:
    mode = mode or config.COLLATERAL_MODE
    if mode == "percent":
        return int(contribution_raw) * int(collateral_factor) // 100
    return int(contribution_raw) * int(collateral_factor)


def required_join_deposit(circle: Circle, mode: str | None = None) -> int:
    """Collateral plus insurance fee, in token base units."""
    return collateral_required(circle.contribution_raw, circle.collateral_factor, mode) + circle.insurance_fee_raw


def required_contribution(circle: Circle) -> int:
    return circle.contribution_raw


def can_join(circle: Circle, caller: str | None) -> bool:
    return (
        bool(caller)
        and circle.state == CircleState.OPEN
        and not circle.has_member(caller)
        and circle.current_members < circle.max_members
    )


def can_contribute(circle: Circle, caller: str | None, deposited: bool | None) -> bool:
    # Unknown deposit status (facts not loaded yet) counts as not allowed.
    return (
        circle.state == CircleState.ACTIVE
        and circle.has_member(caller)
        and deposited is False
    )


def can_finalize_round(circle: Circle, expired: bool) -> bool:
    return circle.state == CircleState.ACTIVE and bool(expired)


def can_withdraw_collateral(circle: Circle, caller: str | None) -> bool:
    return circle.state in (CircleState.COMPLETED, CircleState.CANCELLED) and circle.has_member(caller)


def has_pending_payout(pending_raw: int | None) -> bool:
    return bool(pending_raw) and int(pending_raw) > 0


def current_recipient(circle: Circle, payout_order: tuple[str, ...] | None = None) -> str | None:
    """payoutOrder[currentRound - 1], falling back to join order."""
    if circle.state != CircleState.ACTIVE or circle.current_round < 1:
        return None
    order = payout_order or circle.members
    if not order:
        return None
    return order[(circle.current_round - 1) % len(order)]


@dataclass(frozen=True)
class Eligibility:
    circle_id: int
    caller: str | None
    can_join: bool = False
    can_contribute: bool = False
    can_finalize_round: bool = False
    can_withdraw_collateral: bool = False
    has_pending_payout: bool = False
    is_current_recipient: bool = False
    join_deposit_raw: int = 0
    contribution_raw: int = 0
    pending_payout_raw: int = 0

    def actions(self) -> list[str]:
        out = []
        if self.can_join:
            out.append("join")
        if self.can_contribute:
            out.append("contribute")
        if self.has_pending_payout:
            out.append("claim")
        if self.can_finalize_round:
            out.append("finalize")
        if self.can_withdraw_collateral:
            out.append("withdraw")
        return out


def evaluate(
    circle: Circle,
    caller: str | None,
    *,
    expired: bool,
    facts: MemberFacts | None = None,
    payout_order: tuple[str, ...] | None = None,
    mode: str | None = None,
) -> Eligibility:
    deposited = facts.deposited_this_round if facts is not None and facts.round == circle.current_round else None
    pending = facts.pending_payout_raw if facts is not None else 0
    recipient = current_recipient(circle, payout_order)
    return Eligibility(
        circle_id=circle.circle_id,
        caller=caller,
        can_join=can_join(circle, caller),
        can_contribute=can_contribute(circle, caller, deposited),
        can_finalize_round=can_finalize_round(circle, expired),
        can_withdraw_collateral=can_withdraw_collateral(circle, caller),
        has_pending_payout=has_pending_payout(pending),
        is_current_recipient=bool(caller and recipient and recipient.lower() == caller.lower()),
        join_deposit_raw=required_join_deposit(circle, mode),
        contribution_raw=required_contribution(circle),
        pending_payout_raw=int(pending or 0),
    )


# ---------------------------------------------------------------------------
# Circle creation parameters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CircleParams:
    name: str
    description: str
    token: str
    contribution_amount: str
    period_duration: int
    max_members: int
    collateral_factor: int
    insurance_fee: str
    payout_order: tuple[str, ...] = field(default_factory=tuple)

    def to_args(self, decimals: int) -> tuple:
        """Positional createCircle arguments with amounts in base units."""
        return (
            self.name,
            self.description,
            self.token,
            to_raw_amount(self.contribution_amount, decimals),
            int(self.period_duration),
            int(self.max_members),
            int(self.collateral_factor),
            to_raw_amount(self.insurance_fee, decimals),
            list(self.payout_order),
        )


def validate_circle_params(params: CircleParams, limits: dict | None = None) -> list[str]:
    """Human-readable problems; an empty list means the params may be submitted."""
    limits = limits or config.CIRCLE_LIMITS
    problems: list[str] = []

    if not params.name.strip():
        problems.append("name is required")
    if not params.description.strip():
        problems.append("description is required")
    if config.token_by_address(params.token) is None:
        problems.append(f"token {params.token} is not supported")

    try:
        contribution = Decimal(str(params.contribution_amount))
        if not limits["min_contribution"] <= contribution <= limits["max_contribution"]:
            problems.append(
                f"contribution must be between {limits['min_contribution']} and {limits['max_contribution']}"
            )
    except InvalidOperation:
        problems.append(f"contribution {params.contribution_amount!r} is not a number")

    try:
        if Decimal(str(params.insurance_fee)) < 0:
            problems.append("insurance fee cannot be negative")
    except InvalidOperation:
        problems.append(f"insurance fee {params.insurance_fee!r} is not a number")

    if not limits["min_members"] <= int(params.max_members) <= limits["max_members"]:
        problems.append(f"members must be between {limits['min_members']} and {limits['max_members']}")
    if not limits["min_period_sec"] <= int(params.period_duration) <= limits["max_period_sec"]:
        problems.append("period duration out of range")
    if not limits["min_collateral_factor"] <= int(params.collateral_factor) <= limits["max_collateral_factor"]:
        problems.append(
            f"collateral factor must be between {limits['min_collateral_factor']} and {limits['max_collateral_factor']}"
        )

    bad = [a for a in params.payout_order if not Web3.is_address(a)]
    if bad:
        problems.append(f"payout order has invalid address(es): {', '.join(bad)}")
    if len(params.payout_order) > int(params.max_members):
        problems.append("payout order lists more addresses than members")
    if len({a.lower() for a in params.payout_order}) != len(params.payout_order):
        problems.append("payout order repeats an address")
    return problems
