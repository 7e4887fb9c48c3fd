"""
circle_views.py -- Browse helpers and text formatting for circle snapshots.

Nothing here talks to the ledger.  Every function takes already-aggregated
Circle records (see circle_state.py) and returns plain values or strings
for the CLI.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

import config
from circle_state import Circle, CircleState, MemberFacts
from eligibility import Eligibility
from round_timer import RoundClock, format_remaining

STATUS_LABELS = {
    CircleState.OPEN: "Open",
    CircleState.ACTIVE: "Active",
    CircleState.COMPLETED: "Completed",
    CircleState.CANCELLED: "Cancelled",
}

_STATUS_FILTERS = {
    "open": CircleState.OPEN,
    "active": CircleState.ACTIVE,
    "completed": CircleState.COMPLETED,
    "cancelled": CircleState.CANCELLED,
}

SORT_KEYS = ("newest", "contribution", "members")


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_address(address: str | None) -> str:
    if not address:
        return "-"
    if len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def format_period(seconds: int) -> str:
    days = int(seconds) // 86400
    if days == 7:
        return "Weekly"
    if days == 14:
        return "Bi-weekly"
    if days == 30:
        return "Monthly"
    if days == 90:
        return "Quarterly"
    return f"{days} days"


def token_symbol(address: str) -> str:
    token = config.token_by_address(address)
    return token["symbol"] if token else "TOKEN"


def format_amount(amount: Decimal, token: str) -> str:
    return f"{Decimal(amount).normalize():f} {token_symbol(token)}"


def status_label(state: CircleState) -> str:
    return STATUS_LABELS.get(state, "Unknown")


# ---------------------------------------------------------------------------
# Browse
# ---------------------------------------------------------------------------

def filter_circles(
    circles: list[Circle],
    *,
    search: str = "",
    status: str = "all",
    token: str = "all",
) -> list[Circle]:
    """Case-insensitive search over name and description, plus status/token filters."""
    needle = search.strip().lower()
    wanted_state = _STATUS_FILTERS.get(status.lower()) if status and status != "all" else None
    if status and status != "all" and wanted_state is None:
        raise ValueError(f"unknown status filter {status!r}")

    out = []
    for circle in circles:
        if needle and needle not in circle.name.lower() and needle not in circle.description.lower():
            continue
        if wanted_state is not None and circle.state != wanted_state:
            continue
        if token and token != "all" and circle.token.lower() != token.lower():
            continue
        out.append(circle)
    return out


def sort_circles(circles: list[Circle], by: str = "newest") -> list[Circle]:
    if by == "newest":
        return sorted(circles, key=lambda c: c.circle_id, reverse=True)
    if by == "contribution":
        return sorted(circles, key=lambda c: (c.contribution_amount, c.circle_id), reverse=True)
    if by == "members":
        return sorted(circles, key=lambda c: (c.current_members, c.circle_id), reverse=True)
    raise ValueError(f"unknown sort key {by!r} (expected one of {', '.join(SORT_KEYS)})")


def membership_percent(circle: Circle) -> float:
    if circle.max_members <= 0:
        return 0.0
    return circle.current_members / circle.max_members * 100


def round_progress(circle: Circle, deposits: dict[str, bool]) -> tuple[int, int]:
    """(members who deposited this round, members)."""
    paid = sum(1 for m in circle.members if deposits.get(m))
    return paid, circle.current_members


# ---------------------------------------------------------------------------
# User summary
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UserStats:
    total: int
    created: int
    active: int
    completed: int


def user_stats(circles: list[Circle], address: str) -> UserStats:
    needle = address.lower()
    return UserStats(
        total=len(circles),
        created=sum(1 for c in circles if c.creator.lower() == needle),
        active=sum(1 for c in circles if c.state == CircleState.ACTIVE),
        completed=sum(1 for c in circles if c.state == CircleState.COMPLETED),
    )


def role(circle: Circle, address: str) -> str:
    return "Creator" if circle.creator.lower() == address.lower() else "Member"


# ---------------------------------------------------------------------------
# Text rendering
# ---------------------------------------------------------------------------

def render_row(circle: Circle) -> str:
    return (
        f"#{circle.circle_id:<4} {circle.name[:28]:<28} "
        f"{status_label(circle.state):<10} "
        f"{format_amount(circle.contribution_amount, circle.token):>14} "
        f"{format_period(circle.period_duration):<10} "
        f"{circle.current_members}/{circle.max_members}"
    )


def render_detail(
    circle: Circle,
    *,
    clock: RoundClock | None = None,
    eligibility: Eligibility | None = None,
    facts: MemberFacts | None = None,
    recipient: str | None = None,
    progress: tuple[int, int] | None = None,
    insurance_pool: Decimal | None = None,
) -> str:
    lines = [
        f"Circle #{circle.circle_id}: {circle.name}",
        f"  {circle.description}",
        f"  Status:        {status_label(circle.state)}",
        f"  Creator:       {format_address(circle.creator)}",
        f"  Contribution:  {format_amount(circle.contribution_amount, circle.token)} {format_period(circle.period_duration).lower()}",
        f"  Members:       {circle.current_members}/{circle.max_members} ({membership_percent(circle):.0f}%)",
        f"  Collateral:    x{circle.collateral_factor}, insurance fee {format_amount(circle.insurance_fee, circle.token)}",
    ]
    if insurance_pool is not None:
        lines.append(f"  Insurance:     {format_amount(insurance_pool, circle.token)} pooled")
    if circle.state == CircleState.ACTIVE:
        lines.append(f"  Round:         {circle.current_round}/{circle.current_members}")
        if clock is not None:
            left = "expired" if clock.expired else format_remaining(clock.remaining)
            lines.append(f"  Time left:     {left}")
        if recipient:
            lines.append(f"  Recipient:     {format_address(recipient)}")
        if progress is not None:
            lines.append(f"  Deposited:     {progress[0]}/{progress[1]} members")
    if facts is not None and facts.is_member:
        lines.append(
            f"  You:           collateral {format_amount(Decimal(facts.collateral_locked_raw).scaleb(-circle.decimals), circle.token)}, "
            f"{facts.defaults} default(s)"
        )
    if eligibility is not None:
        actions = eligibility.actions()
        lines.append(f"  Actions:       {', '.join(actions) if actions else 'none'}")
    return "\n".join(lines)
