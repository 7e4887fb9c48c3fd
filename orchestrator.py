"""
orchestrator.py -- Runs circle transaction flows against the ledger gateway.

Each flow instance is keyed by (kind, circle id), so a join on circle 1 and a
join on circle 2 progress independently.  A second start for a key that is
still in progress raises FlowBusyError.

The orchestrator owns no flow logic of its own: it feeds events into
flow_machine.transition() and executes the returned actions.  The only
suspension points are the gateway calls (allowance read, submit, receipt
wait), which is what guarantees that a dependent call is never submitted
before the approval's receipt has been observed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable

import config
import flow_machine as fm
from circle_state import Circle
from eligibility import CircleParams, required_contribution, required_join_deposit, validate_circle_params
from ledger_gateway import LedgerError
from notifier import Notifier

logger = logging.getLogger(__name__)

FlowKey = tuple[str, int]

# Flows that do not target a circle (create, mint) use this id.
NO_CIRCLE = 0


class FlowBusyError(RuntimeError):
    pass


class InvalidCircleParams(ValueError):
    def __init__(self, problems: list[str]):
        super().__init__("; ".join(problems))
        self.problems = problems


def _failure(exc: LedgerError, timestamp: float) -> fm.TxFailed:
    if exc.category == "rejected":
        reason = "Signature rejected"
    elif exc.category == "reverted":
        reason = "Transaction reverted on-chain"
    elif exc.category == "transport":
        reason = f"Network error: {exc.message or exc}"
    else:
        reason = exc.message or str(exc)
    return fm.TxFailed(category=exc.category, reason=reason, timestamp=timestamp)


class FlowOrchestrator:
    def __init__(
        self,
        gateway,
        notifier: Notifier | None = None,
        *,
        cfg: fm.FlowConfig | None = None,
        clock: Callable[[], float] = time.time,
        decimals_for: Callable[[str], int] = config.token_decimals,
        collateral_mode: str | None = None,
    ) -> None:
        self.gateway = gateway
        self.notifier = notifier or Notifier()
        self.cfg = cfg or fm.FlowConfig(
            ledger_address=gateway.ledger_address,
            success_reset_sec=config.FLOW_SUCCESS_RESET_SEC,
            error_reset_sec=config.FLOW_ERROR_RESET_SEC,
        )
        self._clock = clock
        self.decimals_for = decimals_for
        self.collateral_mode = collateral_mode
        self.flows: dict[FlowKey, fm.FlowState] = {}
        self._next_flow_id = 1
        self._reset_tasks: dict[FlowKey, asyncio.Task] = {}
        # approve() replaces the allowance, so flows spending the same token for
        # the same caller run their allowance phase one at a time.
        self._allowance_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._held: dict[tuple[FlowKey, int], asyncio.Lock] = {}

    # ------------------ queries ------------------

    def get(self, kind: str, circle_id: int = NO_CIRCLE) -> fm.FlowState:
        key = (kind, int(circle_id))
        return self.flows.get(key) or fm.idle_state(kind, int(circle_id))

    def in_progress(self) -> list[fm.FlowState]:
        return [s for s in self.flows.values() if s.in_progress]

    # ------------------ flows ------------------

    async def join(self, circle: Circle, caller: str) -> fm.FlowState:
        return await self._start(
            "join",
            circle.circle_id,
            caller,
            args=(circle.circle_id,),
            token=circle.token,
            required_amount=required_join_deposit(circle, self.collateral_mode),
        )

    async def contribute(self, circle: Circle, caller: str) -> fm.FlowState:
        return await self._start(
            "contribute",
            circle.circle_id,
            caller,
            args=(circle.circle_id,),
            token=circle.token,
            required_amount=required_contribution(circle),
        )

    async def claim_payout(self, circle_id: int, caller: str) -> fm.FlowState:
        return await self._start("claim", circle_id, caller, args=(int(circle_id),))

    async def finalize_round(self, circle_id: int, caller: str) -> fm.FlowState:
        return await self._start("finalize", circle_id, caller, args=(int(circle_id),))

    async def withdraw_collateral(self, circle_id: int, caller: str) -> fm.FlowState:
        return await self._start("withdraw", circle_id, caller, args=(int(circle_id),))

    async def create_circle(self, params: CircleParams, caller: str) -> fm.FlowState:
        problems = validate_circle_params(params)
        if problems:
            raise InvalidCircleParams(problems)
        args = params.to_args(self.decimals_for(params.token))
        return await self._start("create", NO_CIRCLE, caller, args=args)

    async def mint(self, token: str, amount_raw: int, caller: str) -> fm.FlowState:
        return await self._start("mint", NO_CIRCLE, caller, args=(int(amount_raw),), primary_token=token)

    def cancel(self, kind: str, circle_id: int = NO_CIRCLE) -> fm.FlowState:
        """Forget local tracking for a flow.  Submitted calls are not withdrawn."""
        key = (kind, int(circle_id))
        if key not in self.flows:
            return self.get(kind, circle_id)
        self._cancel_reset(key)
        state = self.flows[key]
        if state.primary_tx or state.approve_tx:
            logger.info("Cancelling %s flow %s; submitted tx(s) remain on the ledger", kind, circle_id)
        self._apply(key, fm.CancelFlow(timestamp=self._clock()))
        self.notifier.dismiss(state.notify_key)
        return self.flows[key]

    async def settle(self) -> None:
        """Wait for every scheduled auto-reset and queued notification."""
        while self._reset_tasks:
            tasks = list(self._reset_tasks.values())
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.notifier.drain()

    # ------------------ driver ------------------

    async def _start(
        self,
        kind: str,
        circle_id: int,
        caller: str,
        *,
        args: tuple,
        token: str = "",
        required_amount: int = 0,
        primary_token: str | None = None,
    ) -> fm.FlowState:
        key = (kind, int(circle_id))
        current = self.get(kind, circle_id)
        if current.in_progress:
            raise FlowBusyError(f"{kind} flow for circle {circle_id} is already {current.step}")

        self._cancel_reset(key)
        flow_id = self._next_flow_id
        self._next_flow_id += 1
        self.flows[key] = current

        start = fm.StartFlow(
            flow_id=flow_id,
            caller=caller,
            timestamp=self._clock(),
            args=args,
            token=token,
            required_amount=required_amount,
            primary_token=primary_token,
        )
        logger.info("Starting %s flow #%d for circle %s (caller %s)", kind, flow_id, circle_id, caller)
        await self._drive(key, flow_id, start)
        return self.flows[key]

    def _apply(self, key: FlowKey, event: fm.Event) -> list[fm.Action]:
        state = self.flows[key]
        nxt, actions = fm.transition(state, event, self.cfg)
        if nxt.step != state.step:
            logger.info("%s flow #%d (circle %d): %s -> %s", nxt.kind, nxt.flow_id, nxt.circle_id, state.step, nxt.step)
        for violation in fm.check_invariants(nxt):
            logger.error("Flow invariant violated for %s: %s", key, violation)
        self.flows[key] = nxt
        return actions

    def _still_running(self, key: FlowKey, flow_id: int) -> bool:
        state = self.flows.get(key)
        return state is not None and state.flow_id == flow_id and state.step != "idle"

    async def _drive(self, key: FlowKey, flow_id: int, event: fm.Event) -> None:
        events: deque = deque([event])
        try:
            while events:
                actions = self._apply(key, events.popleft())
                for action in actions:
                    try:
                        follow = await self._execute(key, flow_id, action)
                    except Exception as e:
                        # Not a classified ledger failure; the flow still has to end in error.
                        logger.exception("Unexpected failure running %s for %s", type(action).__name__, key)
                        follow = fm.TxFailed(
                            category="transport", reason=f"Unexpected error: {e}", timestamp=self._clock()
                        )
                    if not self._still_running(key, flow_id):
                        logger.info("Flow %s #%d no longer tracked; stopping", key, flow_id)
                        return
                    if follow is not None:
                        events.append(follow)
        finally:
            lock = self._held.pop((key, flow_id), None)
            if lock is not None:
                lock.release()

    async def _execute(self, key: FlowKey, flow_id: int, action: fm.Action) -> fm.Event | None:
        state = self.flows[key]

        if isinstance(action, fm.ReadAllowanceAction):
            lock = self._allowance_locks.setdefault(
                (action.token.lower(), action.owner.lower()), asyncio.Lock()
            )
            if lock.locked():
                logger.info("%s waiting for another %s allowance flow of %s", key, action.token, action.owner)
            await lock.acquire()
            self._held[(key, flow_id)] = lock
            try:
                amount = await self.gateway.read(
                    "allowance", action.owner, action.spender, token=action.token
                )
            except LedgerError as e:
                logger.warning("Allowance read failed for %s: %s", key, e)
                return _failure(e, self._clock())
            logger.info("Allowance %s for %s (need %s)", amount, key, state.required_amount)
            return fm.AllowanceRead(amount=int(amount), timestamp=self._clock())

        if isinstance(action, fm.SubmitTxAction):
            try:
                tx_hash = await self.gateway.submit(
                    action.fn, action.args, sender=state.caller, token=action.token
                )
            except LedgerError as e:
                logger.warning("Submitting %s for %s failed (%s): %s", action.fn, key, e.category, e)
                return _failure(e, self._clock())
            return fm.TxSubmitted(tx_hash=tx_hash, timestamp=self._clock())

        if isinstance(action, fm.AwaitReceiptAction):
            try:
                await self.gateway.wait_for_receipt(action.tx_hash)
            except LedgerError as e:
                logger.warning("%s tx %s for %s failed (%s): %s", action.phase, action.tx_hash, key, e.category, e)
                return _failure(e, self._clock())
            return fm.TxConfirmed(tx_hash=action.tx_hash, timestamp=self._clock())

        if isinstance(action, fm.NotifyAction):
            self.notifier.notify(action.key, action.level, action.message, flow_id=flow_id)
            return None

        if isinstance(action, fm.ScheduleResetAction):
            self._schedule_reset(key, action.flow_id, action.delay)
            return None

        raise TypeError(f"unknown flow action {action!r}")

    # ------------------ auto-reset ------------------

    def _schedule_reset(self, key: FlowKey, flow_id: int, delay: float) -> None:
        self._cancel_reset(key)

        async def _reset_later():
            try:
                await asyncio.sleep(max(0.0, float(delay)))
                if key in self.flows and self.flows[key].flow_id == flow_id:
                    self._apply(key, fm.ResetDue(flow_id=flow_id, timestamp=self._clock()))
            finally:
                if self._reset_tasks.get(key) is task:
                    del self._reset_tasks[key]

        task = asyncio.get_running_loop().create_task(_reset_later())
        self._reset_tasks[key] = task

    def _cancel_reset(self, key: FlowKey) -> None:
        task = self._reset_tasks.pop(key, None)
        if task is not None and not task.done():
            task.cancel()
