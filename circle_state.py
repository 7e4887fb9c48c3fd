"""
circle_state.py -- Typed circle snapshots aggregated from batched ledger reads.

The ledger answers with positional tuples; this module turns them into
frozen records keyed by circle id.  All reads go through a SnapshotCache
keyed by query shape and dropped wholesale whenever a new block height is
observed, so every consumer sees one consistent copy per block.

A circle whose reads fail inside a batch becomes a CircleUnavailable marker
instead of failing the batch.  The marker is cached only until the next
block, which is the implicit retry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import IntEnum
from typing import Any, Awaitable, Callable, Hashable

import config
from ledger_gateway import LedgerError, ReadCall

logger = logging.getLogger(__name__)


class CircleState(IntEnum):
    OPEN = 0
    ACTIVE = 1
    COMPLETED = 2
    CANCELLED = 3


# getCircleInfo tuple positions
_CREATOR = 0
_TOKEN = 1
_CONTRIBUTION = 2
_PERIOD = 3
_MAX_MEMBERS = 4
_COLLATERAL_FACTOR = 5
_INSURANCE_FEE = 6
_START = 7
_ROUND = 8
_ROUND_START = 9
_STATE = 10


def scale_amount(raw: int, decimals: int) -> Decimal:
    """Smallest-unit integer -> token amount (100_000_000 @ 6 -> 100)."""
    return Decimal(int(raw)).scaleb(-int(decimals))


def to_raw_amount(amount: Any, decimals: int) -> int:
    """Token amount ("100.5", 100, Decimal) -> smallest-unit integer."""
    scaled = Decimal(str(amount)).scaleb(int(decimals))
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{amount} has more than {decimals} decimal places")
    return int(scaled)


@dataclass(frozen=True)
class Circle:
    circle_id: int
    name: str
    description: str
    creator: str
    token: str
    decimals: int
    contribution_raw: int
    period_duration: int
    max_members: int
    collateral_factor: int
    insurance_fee_raw: int
    start_timestamp: int
    current_round: int
    round_start: int
    state: CircleState
    members: tuple[str, ...] = ()

    @property
    def contribution_amount(self) -> Decimal:
        return scale_amount(self.contribution_raw, self.decimals)

    @property
    def insurance_fee(self) -> Decimal:
        return scale_amount(self.insurance_fee_raw, self.decimals)

    @property
    def current_members(self) -> int:
        return len(self.members)

    def has_member(self, address: str | None) -> bool:
        if not address:
            return False
        needle = address.lower()
        return any(m.lower() == needle for m in self.members)


@dataclass(frozen=True)
class CircleUnavailable:
    circle_id: int
    reason: str


@dataclass(frozen=True)
class MemberFacts:
    address: str
    round: int
    deposited_this_round: bool
    pending_payout_raw: int
    collateral_locked_raw: int
    defaults: int
    is_member: bool


@dataclass(frozen=True)
class CircleDetail:
    circle_id: int
    payout_order: tuple[str, ...]
    insurance_pool_raw: int


@dataclass(frozen=True)
class QueryResult:
    data: Any = None
    error: Exception | None = None
    is_loading: bool = False


def parse_circle(
    circle_id: int,
    info: tuple,
    details: tuple,
    members: list | tuple,
    decimals: int,
) -> Circle:
    name, description = details[0], details[1]
    return Circle(
        circle_id=int(circle_id),
        name=name or f"Circle {circle_id}",
        description=description or "No description available",
        creator=str(info[_CREATOR]),
        token=str(info[_TOKEN]),
        decimals=int(decimals),
        contribution_raw=int(info[_CONTRIBUTION]),
        period_duration=int(info[_PERIOD]),
        max_members=int(info[_MAX_MEMBERS]),
        collateral_factor=int(info[_COLLATERAL_FACTOR]),
        insurance_fee_raw=int(info[_INSURANCE_FEE]),
        start_timestamp=int(info[_START]),
        current_round=int(info[_ROUND]),
        round_start=int(info[_ROUND_START]),
        state=CircleState(int(info[_STATE])),
        members=tuple(str(m) for m in members),
    )


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class SnapshotCache:
    """Query-shape keyed cache, dropped wholesale when the block height changes.

    Concurrent callers for the same key share one in-flight load.  A load
    that was started under an older block is returned to its callers but
    never stored.
    """

    def __init__(self) -> None:
        self.block: int | None = None
        self._entries: dict[Hashable, Any] = {}
        self._pending: dict[Hashable, asyncio.Future] = {}

    def observe_block(self, block: int) -> bool:
        block = int(block)
        if block == self.block:
            return False
        if self._entries or self._pending:
            logger.debug(
                "Block %s -> %s: dropping %d cached and %d in-flight queries",
                self.block, block, len(self._entries), len(self._pending),
            )
        self._entries = {}
        self._pending = {}
        self.block = block
        return True

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable, default: Any = None) -> Any:
        return self._entries.get(key, default)

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        if key in self._entries:
            return self._entries[key]
        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        block = self.block
        task = asyncio.ensure_future(loader())
        self._pending[key] = task
        try:
            value = await asyncio.shield(task)
        finally:
            if self._pending.get(key) is task:
                del self._pending[key]
        if self.block == block:
            self._entries[key] = value
        else:
            logger.debug("Discarding %r loaded under block %s (now %s)", key, block, self.block)
        return value


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------

class SnapshotAggregator:
    def __init__(
        self,
        gateway,
        *,
        cache: SnapshotCache | None = None,
        decimals_for: Callable[[str], int] = config.token_decimals,
    ) -> None:
        self.gateway = gateway
        self.cache = cache or SnapshotCache()
        self.decimals_for = decimals_for
        self.snapshot = QueryResult(data={}, is_loading=True)

    def on_block(self, block: int) -> bool:
        """Record a newly observed block height.  True if the cache was dropped."""
        return self.cache.observe_block(block)

    async def refresh(self, block: int | None = None) -> QueryResult:
        """
        Re-read every circle if *block* is new (or the first refresh).

        The previous snapshot stays visible while loading and after a failed
        read; the failure is reported through QueryResult.error.
        """
        if block is None:
            block = await self.gateway.block_number()
        changed = self.on_block(block)
        if not changed and not self.snapshot.is_loading and self.snapshot.error is None:
            return self.snapshot

        previous = self.snapshot.data
        self.snapshot = QueryResult(data=previous, is_loading=True)
        try:
            circles = await self.all_circles()
        except LedgerError as e:
            logger.warning("Snapshot refresh at block %s failed: %s", block, e)
            self.snapshot = QueryResult(data=previous, error=e)
            return self.snapshot
        self.snapshot = QueryResult(data=circles)
        logger.debug("Snapshot refreshed at block %s: %d circle(s)", block, len(circles))
        return self.snapshot

    async def circle_count(self) -> int:
        async def load():
            return max(0, int(await self.gateway.read("nextCircleId")) - 1)
        return await self.cache.get_or_load(("circleCount",), load)

    async def circle_ids(self) -> list[int]:
        return list(range(1, await self.circle_count() + 1))

    async def all_circles(self) -> dict[int, Circle | CircleUnavailable]:
        return await self.fetch_circles(await self.circle_ids())

    async def fetch_circles(self, circle_ids: list[int]) -> dict[int, Circle | CircleUnavailable]:
        """
        info + details + members for every id in one batched read.

        No ids -> empty dict without touching the gateway.
        """
        ids = tuple(int(i) for i in circle_ids)
        if not ids:
            return {}

        async def load():
            calls = []
            for circle_id in ids:
                calls.append(ReadCall("getCircleInfo", (circle_id,)))
                calls.append(ReadCall("getCircleDetails", (circle_id,)))
                calls.append(ReadCall("getMembers", (circle_id,)))
            results = await self.gateway.read_batch(calls)

            out: dict[int, Circle | CircleUnavailable] = {}
            for i, circle_id in enumerate(ids):
                info, details, members = results[i * 3:i * 3 + 3]
                failed = [r.error for r in (info, details, members) if not r.ok]
                if failed:
                    logger.debug("Circle %d unavailable: %s", circle_id, "; ".join(failed))
                    out[circle_id] = CircleUnavailable(circle_id, "; ".join(failed))
                    continue
                try:
                    decimals = self.decimals_for(info.value[_TOKEN])
                    out[circle_id] = parse_circle(circle_id, info.value, details.value, members.value, decimals)
                except (IndexError, TypeError, ValueError) as e:
                    logger.debug("Circle %d malformed: %s", circle_id, e)
                    out[circle_id] = CircleUnavailable(circle_id, f"malformed: {e}")
            return out

        return await self.cache.get_or_load(("circles", ids), load)

    async def circle(self, circle_id: int) -> Circle | CircleUnavailable:
        return (await self.fetch_circles([circle_id]))[int(circle_id)]

    async def member_facts(self, circle: Circle, address: str) -> MemberFacts | None:
        """Per-caller facts for the eligibility checks.  None if the batch failed."""
        key = ("member", circle.circle_id, circle.current_round, address.lower())

        async def load():
            results = await self.gateway.read_batch([
                ReadCall("getRoundDeposited", (circle.circle_id, circle.current_round, address)),
                ReadCall("pendingPayouts", (circle.circle_id, address)),
                ReadCall("getMemberInfo", (circle.circle_id, address)),
            ])
            deposited, pending, info = results
            if not (deposited.ok and pending.ok and info.ok):
                return None
            collateral, defaults, is_member = info.value
            return MemberFacts(
                address=address,
                round=circle.current_round,
                deposited_this_round=bool(deposited.value),
                pending_payout_raw=int(pending.value),
                collateral_locked_raw=int(collateral),
                defaults=int(defaults),
                is_member=bool(is_member),
            )

        return await self.cache.get_or_load(key, load)

    async def round_deposits(self, circle: Circle) -> dict[str, bool]:
        """Deposit flag of every member for the current round."""
        if not circle.members or circle.current_round < 1:
            return {}
        key = ("deposits", circle.circle_id, circle.current_round)

        async def load():
            results = await self.gateway.read_batch([
                ReadCall("getRoundDeposited", (circle.circle_id, circle.current_round, m))
                for m in circle.members
            ])
            return {m: bool(r.value) for m, r in zip(circle.members, results) if r.ok}

        return await self.cache.get_or_load(key, load)

    async def circle_detail(self, circle_id: int) -> CircleDetail | None:
        key = ("detail", int(circle_id))

        async def load():
            order, pool = await self.gateway.read_batch([
                ReadCall("getPayoutOrder", (int(circle_id),)),
                ReadCall("getInsurancePool", (int(circle_id),)),
            ])
            if not (order.ok and pool.ok):
                return None
            return CircleDetail(
                circle_id=int(circle_id),
                payout_order=tuple(str(a) for a in order.value),
                insurance_pool_raw=int(pool.value),
            )

        return await self.cache.get_or_load(key, load)

    async def token_balance(self, token: str, owner: str) -> int:
        async def load():
            return int(await self.gateway.read("balanceOf", owner, token=token))
        return await self.cache.get_or_load(("balance", token.lower(), owner.lower()), load)


def available(results: dict[int, Circle | CircleUnavailable]) -> list[Circle]:
    """Fully-read circles in id order; unavailable ones are skipped."""
    return [results[k] for k in sorted(results) if isinstance(results[k], Circle)]


def user_circles(circles: list[Circle], address: str | None) -> list[Circle]:
    """Circles the address created or belongs to."""
    if not address:
        return []
    needle = address.lower()
    return [c for c in circles if c.creator.lower() == needle or c.has_member(address)]
