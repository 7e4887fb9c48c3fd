import asyncio
import threading
import unittest
from unittest import mock

import config
import flow_machine as fm
import notifier
from circle_state import SnapshotAggregator
from eligibility import CircleParams, required_join_deposit
from ledger_sim import SimulatedLedger
from notifier import Notifier
from orchestrator import FlowBusyError, FlowOrchestrator, InvalidCircleParams

USDC = config.SUPPORTED_TOKENS["USDC"]["address"]
USDT = config.SUPPORTED_TOKENS["USDT"]["address"]
UNIT = 10 ** 6
CREATOR = "0x" + "c0" * 20
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
T = 1_700_000_000


class OrchestratorTestBase(unittest.IsolatedAsyncioTestCase):
    auto_mine = True

    def setUp(self):
        self.sim = SimulatedLedger(caller=ALICE, clock=lambda: T, auto_mine=self.auto_mine,
                                   collateral_mode="multiplier")
        self.ledger = self.sim.ledger_address
        self.sim.credit(USDC, ALICE, 10_000 * UNIT)
        self.notifier = Notifier(forward_to_telegram=False)
        self.orch = FlowOrchestrator(
            self.sim,
            self.notifier,
            cfg=fm.FlowConfig(ledger_address=self.ledger, success_reset_sec=0, error_reset_sec=0),
            collateral_mode="multiplier",
        )

    def _create(self, contribution=100, factor=2, fee=5, max_members=3, token=USDC) -> int:
        return self.sim.apply(CREATOR, "createCircle", (
            "Test", "test circle", token, contribution * UNIT, 604800, max_members, factor, fee * UNIT, [],
        ))

    async def _circle(self, circle_id: int):
        return await SnapshotAggregator(self.sim).circle(circle_id)

    def _calls(self, fn: str) -> list[tuple]:
        return [args for _, name, args in self.sim.submissions if name == fn]

    async def _until(self, predicate, limit: int = 50):
        for _ in range(limit):
            if predicate():
                return
            await asyncio.sleep(0)
        self.fail("condition never reached")


class JoinFlowTests(OrchestratorTestBase):
    async def test_zero_allowance_approves_205_then_joins(self):
        circle = await self._circle(self._create())
        self.assertEqual(required_join_deposit(circle, "multiplier"), 205 * UNIT)

        state = await self.orch.join(circle, ALICE)

        self.assertEqual(state.step, "completed")
        self.assertEqual(
            [(fn, args) for _, fn, args in self.sim.submissions],
            [("approve", (self.ledger, 205 * UNIT)), ("joinCircle", (circle.circle_id,))],
        )
        # approve and join were mined in separate blocks
        self.assertEqual(self.sim.block, 3)
        refreshed = await self._circle(circle.circle_id)
        self.assertTrue(refreshed.has_member(ALICE))

    async def test_sufficient_allowance_skips_approve(self):
        circle = await self._circle(self._create())
        self.sim.apply(ALICE, "approve", (self.ledger, 500 * UNIT), token=USDC)

        state = await self.orch.join(circle, ALICE)

        self.assertEqual(state.step, "completed")
        self.assertEqual(self._calls("approve"), [])
        self.assertEqual(self._calls("joinCircle"), [(circle.circle_id,)])

    async def test_failed_approval_never_submits_join(self):
        circle = await self._circle(self._create())
        self.sim.inject_fault("approve", "revert")

        state = await self.orch.join(circle, ALICE)

        self.assertEqual(state.step, "error")
        self.assertEqual(state.error_category, "reverted")
        self.assertEqual(self._calls("joinCircle"), [])
        self.assertEqual(len(self.notifier.errors("join-1")), 1)

    async def test_rejected_signature(self):
        circle = await self._circle(self._create())
        self.sim.inject_fault("approve", "reject")

        state = await self.orch.join(circle, ALICE)

        self.assertEqual(state.error_category, "rejected")
        self.assertEqual(self.sim.submissions, [])
        self.assertEqual(self.notifier.active["join-1"].message, "Signature rejected")

    async def test_insufficient_balance_is_a_validation_error(self):
        circle = await self._circle(self._create())

        state = await self.orch.join(circle, BOB)

        self.assertEqual(state.step, "error")
        self.assertEqual(state.error_category, "validation")
        self.assertIn("exceeds balance", state.error)
        self.assertEqual(self._calls("approve"), [(self.ledger, 205 * UNIT)])
        self.assertEqual(self._calls("joinCircle"), [])

    async def test_transport_failure_on_join(self):
        circle = await self._circle(self._create())
        self.sim.inject_fault("joinCircle", "transport")

        state = await self.orch.join(circle, ALICE)

        self.assertEqual(state.error_category, "transport")
        self.assertTrue(state.error.startswith("Network error"))

    async def test_notifications_follow_the_flow(self):
        circle = await self._circle(self._create())
        await self.orch.join(circle, ALICE)
        messages = [n.message for n in self.notifier.for_key("join-1")]
        self.assertEqual(
            messages,
            ["Approving token spend...", "Joining circle...", "Successfully joined circle!"],
        )

    async def test_error_auto_resets_to_idle(self):
        circle = await self._circle(self._create())
        self.sim.inject_fault("joinCircle", "revert")
        state = await self.orch.join(circle, ALICE)
        self.assertEqual(state.step, "error")

        await self.orch.settle()

        self.assertEqual(self.orch.get("join", circle.circle_id).step, "idle")

    async def test_restart_after_reset(self):
        circle = await self._circle(self._create())
        self.sim.inject_fault("approve", "reject")
        await self.orch.join(circle, ALICE)
        await self.orch.settle()

        state = await self.orch.join(circle, ALICE)

        self.assertEqual(state.step, "completed")
        self.assertEqual(state.flow_id, 2)
        self.assertEqual(len(self.notifier.errors("join-1")), 1)


class ContributeFlowTests(OrchestratorTestBase):
    async def _active_circle(self):
        circle_id = self._create(max_members=2)
        for member in (ALICE, BOB):
            deposit = self.sim.join_deposit(circle_id)
            self.sim.credit(USDC, member, deposit)
            self.sim.apply(member, "approve", (self.ledger, deposit), token=USDC)
            self.sim.apply(member, "joinCircle", (circle_id,))
        return await self._circle(circle_id)

    async def test_contribute_approves_contribution_amount(self):
        circle = await self._active_circle()

        state = await self.orch.contribute(circle, ALICE)

        self.assertEqual(state.step, "completed")
        self.assertEqual(self._calls("approve"), [(self.ledger, 100 * UNIT)])
        self.assertEqual(self._calls("contribute"), [(circle.circle_id,)])
        self.assertTrue(await self.sim.read("getRoundDeposited", circle.circle_id, 1, ALICE))

    async def test_finalize_then_claim(self):
        circle = await self._active_circle()
        await self.orch.contribute(circle, ALICE)

        early = await self.orch.finalize_round(circle.circle_id, BOB)
        self.assertEqual(early.step, "error")
        self.assertIn("round not expired", early.error)

        self.sim.advance(604800)
        done = await self.orch.finalize_round(circle.circle_id, BOB)
        self.assertEqual(done.step, "completed")

        claim = await self.orch.claim_payout(circle.circle_id, ALICE)
        self.assertEqual(claim.step, "completed")
        self.assertEqual(self.notifier.active[f"claim-{circle.circle_id}"].message, "Payout claimed successfully!")

    async def test_withdraw_after_cancellation(self):
        circle = await self._active_circle()
        self.sim.cancel_circle(circle.circle_id)

        state = await self.orch.withdraw_collateral(circle.circle_id, ALICE)

        self.assertEqual(state.step, "completed")
        self.assertEqual(await self.sim.read("getMemberInfo", circle.circle_id, ALICE), (0, 0, True))


class ConcurrentFlowTests(OrchestratorTestBase):
    auto_mine = False

    async def test_distinct_circles_do_not_interfere(self):
        c1 = await self._circle(self._create(contribution=100))
        # different tokens run their allowance phases side by side
        c2 = await self._circle(self._create(contribution=40, token=USDT))
        self.sim.credit(USDT, ALICE, 10_000 * UNIT)

        t1 = asyncio.create_task(self.orch.join(c1, ALICE))
        await self._until(lambda: self.orch.get("join", 1).approve_tx)
        t2 = asyncio.create_task(self.orch.join(c2, ALICE))
        await self._until(lambda: self.orch.get("join", 2).approve_tx)

        first = self.orch.get("join", 1)
        self.assertEqual(first.step, "approving")
        self.assertEqual(first.circle_id, 1)
        self.assertEqual(first.args, (1,))
        self.assertEqual(first.required_amount, 205 * UNIT)
        self.assertEqual(self.orch.get("join", 2).required_amount, 85 * UNIT)
        # nothing depends on an unconfirmed approval yet
        self.assertEqual(self._calls("joinCircle"), [])

        self.sim.mine()
        await self._until(lambda: self.sim.pending_count == 2)
        self.assertEqual(sorted(self._calls("joinCircle")), [(1,), (2,)])
        self.sim.mine()

        s1, s2 = await asyncio.gather(t1, t2)
        self.assertEqual((s1.step, s2.step), ("completed", "completed"))

    async def test_same_token_flows_run_allowance_phase_in_turn(self):
        c1 = await self._circle(self._create(contribution=100))
        c2 = await self._circle(self._create(contribution=40))

        t1 = asyncio.create_task(self.orch.join(c1, ALICE))
        await self._until(lambda: self.orch.get("join", 1).approve_tx)
        t2 = asyncio.create_task(self.orch.join(c2, ALICE))
        for _ in range(5):
            await asyncio.sleep(0)

        waiting = self.orch.get("join", 2)
        self.assertEqual(waiting.step, "checking-allowance")
        self.assertIsNone(waiting.approve_tx)
        with self.assertRaises(FlowBusyError):
            await self.orch.join(c2, ALICE)

        self.sim.mine()
        await self._until(lambda: self.sim.pending_count == 1)
        self.sim.mine()
        self.assertEqual((await t1).step, "completed")

        await self._until(lambda: self.orch.get("join", 2).approve_tx)
        self.sim.mine()
        await self._until(lambda: self.sim.pending_count == 1)
        self.sim.mine()
        self.assertEqual((await t2).step, "completed")
        self.assertEqual(self._calls("approve"), [(self.ledger, 205 * UNIT), (self.ledger, 85 * UNIT)])
        self.assertEqual(self._calls("joinCircle"), [(1,), (2,)])

    async def test_second_start_on_same_circle_is_busy(self):
        circle = await self._circle(self._create())
        task = asyncio.create_task(self.orch.join(circle, ALICE))
        await self._until(lambda: self.orch.get("join", 1).approve_tx)

        with self.assertRaises(FlowBusyError):
            await self.orch.join(circle, ALICE)

        self.sim.mine()
        await self._until(lambda: self.sim.pending_count == 1)
        self.sim.mine()
        self.assertEqual((await task).step, "completed")

    async def test_cancel_stops_tracking_but_keeps_ledger_effect(self):
        circle = await self._circle(self._create())
        task = asyncio.create_task(self.orch.join(circle, ALICE))
        await self._until(lambda: self.orch.get("join", 1).approve_tx)

        cancelled = self.orch.cancel("join", 1)
        self.assertEqual(cancelled.step, "idle")
        self.assertNotIn("join-1", self.notifier.active)

        self.sim.mine()
        final = await task
        self.assertEqual(final.step, "idle")
        self.assertEqual(self._calls("joinCircle"), [])
        self.assertEqual(await self.sim.read("allowance", ALICE, self.ledger, token=USDC), 205 * UNIT)


class SingleStepFlowTests(OrchestratorTestBase):
    def _params(self, **overrides) -> CircleParams:
        base = dict(
            name="Family Pot",
            description="Saving together",
            token=USDC,
            contribution_amount="50",
            period_duration=config.PERIOD_PRESETS["weekly"],
            max_members=4,
            collateral_factor=2,
            insurance_fee="1.5",
        )
        base.update(overrides)
        return CircleParams(**base)

    async def test_create_circle(self):
        state = await self.orch.create_circle(self._params(), ALICE)

        self.assertEqual(state.step, "completed")
        self.assertEqual(state.key, ("create", 0))
        self.assertEqual(await self.sim.read("nextCircleId"), 2)
        circle = await self._circle(1)
        self.assertEqual(circle.creator, ALICE)
        self.assertEqual(circle.insurance_fee_raw, 1_500_000)

    async def test_invalid_params_never_reach_the_ledger(self):
        with self.assertRaises(InvalidCircleParams) as ctx:
            await self.orch.create_circle(self._params(max_members=500), ALICE)
        self.assertTrue(ctx.exception.problems)
        self.assertEqual(self.sim.submissions, [])


    async def test_unexpected_gateway_exception_ends_in_error(self):
        broken = mock.AsyncMock(side_effect=AttributeError("'NoneType' object has no attribute 'address'"))
        with mock.patch.object(self.sim, "submit", broken), self.assertLogs("orchestrator", level="ERROR"):
            state = await self.orch.create_circle(self._params(), ALICE)

        self.assertEqual(state.step, "error")
        self.assertEqual(state.error_category, "transport")
        self.assertEqual(len(self.notifier.errors("create-0")), 1)

        await self.orch.settle()
        self.assertEqual(self.orch.get("create").step, "idle")
        retry = await self.orch.create_circle(self._params(), ALICE)
        self.assertEqual(retry.step, "completed")

    async def test_slow_telegram_send_does_not_block_other_flows(self):
        gate = threading.Event()
        released = []

        def slow_send(text, parse_mode="HTML"):
            released.append(gate.wait(timeout=5))
            return True

        self.orch.notifier = Notifier(forward_to_telegram=True)
        with mock.patch.object(notifier, "_send_message", slow_send):
            created = await self.orch.create_circle(self._params(), ALICE)
            minted = await self.orch.mint(USDC, 1000 * UNIT, ALICE)
            self.assertEqual((created.step, minted.step), ("completed", "completed"))
            gate.set()
            await self.orch.settle()

        self.assertEqual(released, [True, True])
    async def test_mint(self):
        before = await self.sim.read("balanceOf", ALICE, token=USDC)

        state = await self.orch.mint(USDC, 1000 * UNIT, ALICE)

        self.assertEqual(state.step, "completed")
        self.assertEqual(await self.sim.read("balanceOf", ALICE, token=USDC), before + 1000 * UNIT)
        self.assertEqual(self.notifier.active["mint-0"].message, "Tokens minted successfully!")

    async def test_claim_without_payout_fails_validation(self):
        circle_id = self._create()
        state = await self.orch.claim_payout(circle_id, ALICE)
        self.assertEqual(state.error_category, "validation")
        self.assertEqual(self.sim.submissions, [])


if __name__ == "__main__":
    unittest.main()
