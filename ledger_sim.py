"""
ledger_sim.py -- In-memory circle program + token ledger for dry runs.

Implements the same async gateway interface as ledger_gateway.Web3Gateway so
the aggregator and orchestrator run unchanged without a node:

  - submit() validates the call the way gas estimation would and queues it
  - mine() includes every queued call in one new block; a call whose
    preconditions no longer hold gets a failed (status 0) receipt
  - with auto_mine=True, wait_for_receipt() mines on demand

Tests drive failures with inject_fault(fn, kind):
  "reject"     -> SignatureRejected at submit
  "validation" -> TxValidationError at submit
  "transport"  -> TransportError at submit
  "revert"     -> included, receipt status 0
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import config
from ledger_gateway import (
    ReadCall,
    ReadResult,
    Receipt,
    SignatureRejected,
    TransportError,
    TxReverted,
    TxValidationError,
)

logger = logging.getLogger(__name__)

OPEN, ACTIVE, COMPLETED, CANCELLED = 0, 1, 2, 3

_FAULT_KINDS = {"reject", "validation", "transport", "revert"}


class _Revert(Exception):
    pass


def _require(cond: bool, reason: str) -> None:
    if not cond:
        raise _Revert(reason)


def _same(a: str, b: str) -> bool:
    return str(a).lower() == str(b).lower()


@dataclass
class _SimCircle:
    creator: str
    token: str
    name: str
    description: str
    contribution: int
    period: int
    max_members: int
    collateral_factor: int
    insurance_fee: int
    payout_order: list[str]
    start_ts: int = 0
    current_round: int = 0
    round_start: int = 0
    state: int = OPEN
    members: list[str] = field(default_factory=list)
    collateral: dict[str, int] = field(default_factory=dict)
    defaults: dict[str, int] = field(default_factory=dict)
    deposits: set[tuple[int, str]] = field(default_factory=set)
    pending: dict[str, int] = field(default_factory=dict)
    insurance_pool: int = 0
    pot: int = 0

    def is_member(self, addr: str) -> bool:
        return any(_same(m, addr) for m in self.members)

    def order(self) -> list[str]:
        return list(self.payout_order) if self.payout_order else list(self.members)


@dataclass
class _PendingTx:
    tx_hash: str
    sender: str
    fn: str
    args: tuple
    token: str | None
    force_revert: bool = False


class SimulatedLedger:
    def __init__(
        self,
        *,
        ledger_address: str | None = None,
        caller: str | None = None,
        auto_mine: bool = True,
        clock: Callable[[], float] | None = None,
        collateral_mode: str | None = None,
        confirm: Callable[[str, str, tuple], bool] | None = None,
    ) -> None:
        self.ledger_address = ledger_address or config.ROSCA_CONTRACT_ADDRESS
        self.address = caller or config.DRY_RUN_ADDRESS
        self.auto_mine = bool(auto_mine)
        self.collateral_mode = collateral_mode or config.COLLATERAL_MODE
        self._clock = clock or time.time
        self._time_offset = 0.0
        self._confirm = confirm

        self.block = 1
        # Every accepted submission as (sender, fn, args), in order.
        self.submissions: list[tuple[str, str, tuple]] = []
        self.batch_reads = 0

        self._circles: dict[int, _SimCircle] = {}
        self._next_circle_id = 1
        self._balances: dict[tuple[str, str], int] = {}
        self._allowances: dict[tuple[str, str, str], int] = {}
        self._pending: list[_PendingTx] = []
        self._receipts: dict[str, Receipt] = {}
        self._waiters: dict[str, asyncio.Future] = {}
        self._faults: dict[str, list[str]] = {}
        self._tx_seq = 0
        self.unreadable_circles: set[int] = set()

    # ------------------ test / operator helpers ------------------

    def now(self) -> int:
        return int(self._clock() + self._time_offset)

    def advance(self, seconds: float) -> None:
        self._time_offset += float(seconds)

    def inject_fault(self, fn: str, kind: str) -> None:
        if kind not in _FAULT_KINDS:
            raise ValueError(f"unknown fault kind {kind!r}")
        self._faults.setdefault(fn, []).append(kind)

    def credit(self, token: str, owner: str, amount: int) -> None:
        key = (token.lower(), owner.lower())
        self._balances[key] = self._balances.get(key, 0) + int(amount)

    def cancel_circle(self, circle_id: int) -> None:
        circle = self._circles[int(circle_id)]
        if circle.state in (OPEN, ACTIVE):
            circle.state = CANCELLED

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def apply(self, sender: str, fn: str, args: tuple = (), *, token: str | None = None) -> Any:
        """Execute a call immediately, outside any block."""
        try:
            return self._execute(sender, fn, tuple(args), token, dry=False)
        except _Revert as e:
            raise TxValidationError(f"execution reverted: {e}") from e

    def join_deposit(self, circle_id: int) -> int:
        circle = self._circles[int(circle_id)]
        return self._collateral(circle) + circle.insurance_fee

    # ------------------ token ledger ------------------

    def _balance(self, token: str, owner: str) -> int:
        return self._balances.get((token.lower(), owner.lower()), 0)

    def _allowance(self, token: str, owner: str, spender: str) -> int:
        return self._allowances.get((token.lower(), owner.lower(), spender.lower()), 0)

    def _transfer(self, token: str, src: str, dst: str, amount: int, dry: bool) -> None:
        _require(self._balance(token, src) >= amount, "ERC20: transfer amount exceeds balance")
        if dry:
            return
        self._balances[(token.lower(), src.lower())] = self._balance(token, src) - amount
        self.credit(token, dst, amount)

    def _pull(self, token: str, owner: str, amount: int, dry: bool) -> None:
        """transferFrom(owner -> circle program) against the program's allowance."""
        allowed = self._allowance(token, owner, self.ledger_address)
        _require(allowed >= amount, "ERC20: insufficient allowance")
        self._transfer(token, owner, self.ledger_address, amount, dry)
        if not dry:
            self._allowances[(token.lower(), owner.lower(), self.ledger_address.lower())] = allowed - amount

    def _token_call(self, token: str, sender: str, fn: str, args: tuple, dry: bool) -> Any:
        if fn == "approve":
            spender, amount = args
            _require(int(amount) >= 0, "ERC20: negative amount")
            if not dry:
                self._allowances[(token.lower(), sender.lower(), str(spender).lower())] = int(amount)
            return True
        if fn == "mint":
            (amount,) = args
            _require(int(amount) > 0, "mint: zero amount")
            if not dry:
                self.credit(token, sender, int(amount))
            return None
        raise _Revert(f"token has no entry point {fn}")

    # ------------------ circle program: mutating ------------------

    def _circle(self, circle_id: int) -> _SimCircle:
        circle = self._circles.get(int(circle_id))
        _require(circle is not None, "circle does not exist")
        return circle

    def _collateral(self, circle: _SimCircle) -> int:
        if self.collateral_mode == "percent":
            return circle.contribution * circle.collateral_factor // 100
        return circle.contribution * circle.collateral_factor

    def _create_circle(self, sender, args, dry):
        (name, description, token, contribution, period, max_members,
         collateral_factor, insurance_fee, payout_order) = args
        _require(int(contribution) > 0, "contribution must be positive")
        _require(int(period) > 0, "period must be positive")
        _require(int(max_members) >= 2, "need at least two members")
        _require(int(collateral_factor) > 0, "collateral factor must be positive")
        _require(len(payout_order) <= int(max_members), "payout order longer than circle")
        if dry:
            return self._next_circle_id
        circle_id = self._next_circle_id
        self._next_circle_id += 1
        self._circles[circle_id] = _SimCircle(
            creator=sender,
            token=str(token),
            name=str(name),
            description=str(description),
            contribution=int(contribution),
            period=int(period),
            max_members=int(max_members),
            collateral_factor=int(collateral_factor),
            insurance_fee=int(insurance_fee),
            payout_order=list(payout_order),
        )
        return circle_id

    def _join_circle(self, sender, args, dry):
        circle = self._circle(args[0])
        _require(circle.state == OPEN, "circle not open")
        _require(not circle.is_member(sender), "already a member")
        _require(len(circle.members) < circle.max_members, "circle full")
        collateral = self._collateral(circle)
        self._pull(circle.token, sender, collateral + circle.insurance_fee, dry)
        if dry:
            return None
        circle.members.append(sender)
        circle.collateral[sender.lower()] = collateral
        circle.insurance_pool += circle.insurance_fee
        if len(circle.members) == circle.max_members:
            now = self.now()
            circle.state = ACTIVE
            circle.start_ts = now
            circle.current_round = 1
            circle.round_start = now
        return None

    def _contribute(self, sender, args, dry):
        circle = self._circle(args[0])
        _require(circle.state == ACTIVE, "circle not active")
        _require(circle.is_member(sender), "not a member")
        _require((circle.current_round, sender.lower()) not in circle.deposits, "already contributed")
        self._pull(circle.token, sender, circle.contribution, dry)
        if dry:
            return None
        circle.deposits.add((circle.current_round, sender.lower()))
        circle.pot += circle.contribution
        return None

    def _finalize_round(self, sender, args, dry):
        circle = self._circle(args[0])
        _require(circle.state == ACTIVE, "circle not active")
        _require(self.now() >= circle.round_start + circle.period, "round not expired")
        if dry:
            return None
        expected = circle.contribution * len(circle.members)
        for member in circle.members:
            key = member.lower()
            if (circle.current_round, key) in circle.deposits:
                continue
            penalty = min(circle.collateral.get(key, 0), circle.contribution)
            circle.collateral[key] = circle.collateral.get(key, 0) - penalty
            circle.defaults[key] = circle.defaults.get(key, 0) + 1
            circle.pot += penalty
        shortfall = max(0, expected - circle.pot)
        cover = min(shortfall, circle.insurance_pool)
        circle.insurance_pool -= cover
        circle.pot += cover

        order = circle.order()
        recipient = order[(circle.current_round - 1) % len(order)]
        circle.pending[recipient.lower()] = circle.pending.get(recipient.lower(), 0) + circle.pot
        circle.pot = 0

        if circle.current_round >= len(circle.members):
            circle.state = COMPLETED
        else:
            circle.current_round += 1
            circle.round_start = self.now()
        return None

    def _claim_payout(self, sender, args, dry):
        circle = self._circle(args[0])
        amount = circle.pending.get(sender.lower(), 0)
        _require(amount > 0, "no pending payout")
        self._transfer(circle.token, self.ledger_address, sender, amount, dry)
        if not dry:
            circle.pending[sender.lower()] = 0
        return None

    def _withdraw_collateral(self, sender, args, dry):
        circle = self._circle(args[0])
        _require(circle.state in (COMPLETED, CANCELLED), "circle still running")
        _require(circle.is_member(sender), "not a member")
        amount = circle.collateral.get(sender.lower(), 0)
        _require(amount > 0, "nothing to withdraw")
        self._transfer(circle.token, self.ledger_address, sender, amount, dry)
        if not dry:
            circle.collateral[sender.lower()] = 0
        return None

    _ENTRY_POINTS = {
        "createCircle": _create_circle,
        "joinCircle": _join_circle,
        "contribute": _contribute,
        "finalizeRoundIfExpired": _finalize_round,
        "claimPayout": _claim_payout,
        "withdrawCollateral": _withdraw_collateral,
    }

    def _execute(self, sender: str, fn: str, args: tuple, token: str | None, dry: bool) -> Any:
        if token is not None:
            return self._token_call(token, sender, fn, args, dry)
        handler = self._ENTRY_POINTS.get(fn)
        if handler is None:
            raise _Revert(f"no entry point {fn}")
        return handler(self, sender, args, dry)

    # ------------------ circle program: views ------------------

    def _view(self, fn: str, args: tuple, token: str | None) -> Any:
        if token is not None:
            if fn == "balanceOf":
                return self._balance(token, args[0])
            if fn == "allowance":
                return self._allowance(token, args[0], args[1])
            if fn == "decimals":
                return config.token_decimals(token)
            raise _Revert(f"token has no view {fn}")

        if fn == "nextCircleId":
            return self._next_circle_id
        circle_id = int(args[0])
        _require(circle_id not in self.unreadable_circles, "read failed")
        circle = self._circle(circle_id)
        if fn == "getCircleInfo":
            return (
                circle.creator,
                circle.token,
                circle.contribution,
                circle.period,
                circle.max_members,
                circle.collateral_factor,
                circle.insurance_fee,
                circle.start_ts,
                circle.current_round,
                circle.round_start,
                circle.state,
            )
        if fn == "getCircleDetails":
            return (circle.name, circle.description)
        if fn == "getMembers":
            return list(circle.members)
        if fn == "getPayoutOrder":
            return circle.order()
        if fn == "getInsurancePool":
            return circle.insurance_pool
        if fn == "getMemberInfo":
            key = str(args[1]).lower()
            return (circle.collateral.get(key, 0), circle.defaults.get(key, 0), circle.is_member(args[1]))
        if fn == "pendingPayouts":
            return circle.pending.get(str(args[1]).lower(), 0)
        if fn == "getRoundDeposited":
            return (int(args[1]), str(args[2]).lower()) in circle.deposits
        raise _Revert(f"no view {fn}")

    # ------------------ gateway interface ------------------

    async def block_number(self) -> int:
        return self.block

    async def read(self, fn: str, *args, token: str | None = None) -> Any:
        try:
            return self._view(fn, tuple(args), token)
        except _Revert as e:
            raise TxValidationError(str(e)) from e

    async def read_batch(self, calls: list[ReadCall]) -> list[ReadResult]:
        if not calls:
            return []
        self.batch_reads += 1
        results = []
        for call in calls:
            try:
                results.append(ReadResult(ok=True, value=self._view(call.fn, tuple(call.args), call.token)))
            except _Revert as e:
                results.append(ReadResult(ok=False, error=str(e)))
        return results

    async def submit(self, fn: str, args: tuple = (), *, sender: str | None = None,
                     token: str | None = None) -> str:
        sender = sender or self.address
        fault = self._faults.get(fn, []).pop(0) if self._faults.get(fn) else None

        if fault == "reject":
            raise SignatureRejected(f"{fn} rejected by signer")
        target = token or self.ledger_address
        if self._confirm is not None and not self._confirm(fn, target, tuple(args)):
            raise SignatureRejected(f"{fn} rejected by signer")
        if fault == "transport":
            raise TransportError(f"connection dropped while sending {fn}")
        if fault == "validation":
            raise TxValidationError(f"execution reverted: {fn} rejected by simulation")
        try:
            self._execute(sender, fn, tuple(args), token, dry=True)
        except _Revert as e:
            raise TxValidationError(f"execution reverted: {e}") from e

        self._tx_seq += 1
        tx_hash = f"0x{self._tx_seq:064x}"
        self._pending.append(
            _PendingTx(tx_hash, sender, fn, tuple(args), token, force_revert=(fault == "revert"))
        )
        self.submissions.append((sender, fn, tuple(args)))
        logger.info("[DRY RUN] Submitted %s%s from %s -> %s", fn, tuple(args), sender, tx_hash)
        return tx_hash

    def mine(self) -> int:
        """Include every queued call in one new block.  Returns the block height."""
        self.block += 1
        queued, self._pending = self._pending, []
        for tx in queued:
            status = 1
            if tx.force_revert:
                status = 0
            else:
                try:
                    self._execute(tx.sender, tx.fn, tx.args, tx.token, dry=False)
                except _Revert as e:
                    logger.info("[DRY RUN] %s reverted at inclusion: %s", tx.fn, e)
                    status = 0
            receipt = Receipt(tx_hash=tx.tx_hash, status=status, block_number=self.block)
            self._receipts[tx.tx_hash] = receipt
            waiter = self._waiters.pop(tx.tx_hash, None)
            if waiter is not None and not waiter.done():
                waiter.set_result(receipt)
        logger.debug("[DRY RUN] Mined block %d with %d tx(s)", self.block, len(queued))
        return self.block

    async def wait_for_receipt(self, tx_hash: str) -> Receipt:
        receipt = self._receipts.get(tx_hash)
        if receipt is None and self.auto_mine:
            # Yield first so concurrently submitted calls land in the same block.
            await asyncio.sleep(0)
            if tx_hash not in self._receipts:
                self.mine()
            receipt = self._receipts.get(tx_hash)
        if receipt is None:
            if not any(tx.tx_hash == tx_hash for tx in self._pending):
                raise TransportError(f"unknown transaction {tx_hash}")
            waiter = self._waiters.get(tx_hash)
            if waiter is None:
                waiter = asyncio.get_running_loop().create_future()
                self._waiters[tx_hash] = waiter
            receipt = await waiter
        if receipt.status != 1:
            raise TxReverted(f"transaction {tx_hash} reverted", tx_hash=tx_hash)
        return receipt


# ---------------------------------------------------------------------------
# Demo data
# ---------------------------------------------------------------------------

_DEMO_MEMBERS = (
    "0x1234567890abcdef1234567890abcdef12345678",
    "0x2345678901abcdef2345678901abcdef23456789",
    "0x3456789012abcdef3456789012abcdef34567890",
)

# (name, description, token symbol, contribution, period sec, max members,
#  collateral factor, insurance fee, demo members joining)
_DEMO_CIRCLES = (
    ("Monthly Savers Group",
     "A group of professionals saving for emergency funds and investments.",
     "USDC", 100, 30 * 86400, 10, 2, 5, 2),
    ("Weekly Builders Circle",
     "Tech workers saving for equipment and professional development.",
     "USDC", 50, 7 * 86400, 3, 3, 3, 3),
    ("Students Emergency Fund",
     "College students pooling resources for unexpected expenses.",
     "DAI", 25, 14 * 86400, 12, 1, 2, 1),
)


def seed_demo(sim: SimulatedLedger, caller: str | None = None, *, balance: int = 10_000) -> list[int]:
    """Create the demo circles and fund *caller* with every supported token."""
    circle_ids = []
    for name, description, symbol, contribution, period, max_members, factor, fee, joiners in _DEMO_CIRCLES:
        token = config.SUPPORTED_TOKENS[symbol]
        unit = 10 ** int(token["decimals"])
        circle_id = sim.apply(_DEMO_MEMBERS[0], "createCircle", (
            name, description, token["address"], contribution * unit, period,
            max_members, factor, fee * unit, [],
        ))
        for member in _DEMO_MEMBERS[:joiners]:
            deposit = sim.join_deposit(circle_id)
            sim.credit(token["address"], member, deposit)
            sim.apply(member, "approve", (sim.ledger_address, deposit), token=token["address"])
            sim.apply(member, "joinCircle", (circle_id,))
        circle_ids.append(circle_id)

    caller = caller or sim.address
    for token in config.SUPPORTED_TOKENS.values():
        sim.credit(token["address"], caller, balance * 10 ** int(token["decimals"]))
    logger.info("[DRY RUN] Seeded %d demo circle(s); funded %s", len(circle_ids), caller)
    return circle_ids
