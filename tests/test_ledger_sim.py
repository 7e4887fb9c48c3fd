import unittest

import config
from ledger_gateway import ReadCall, SignatureRejected, TransportError, TxReverted, TxValidationError
from ledger_sim import ACTIVE, CANCELLED, COMPLETED, OPEN, SimulatedLedger, seed_demo

TOKEN = "0x" + "70" * 20
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CREATOR = "0x" + "c0" * 20
T = 1_700_000_000
WEEK = 604800


class SimulatedLedgerTestBase(unittest.IsolatedAsyncioTestCase):
    collateral_mode = "multiplier"

    def setUp(self):
        self.sim = SimulatedLedger(caller=ALICE, clock=lambda: T, collateral_mode=self.collateral_mode)
        self.ledger = self.sim.ledger_address

    def _create(self, *, factor=2, fee=5, members=2, payout_order=()) -> int:
        return self.sim.apply(CREATOR, "createCircle", (
            "Pot", "test", TOKEN, 100, WEEK, members, factor, fee, list(payout_order),
        ))

    def _join(self, circle_id: int, member: str, balance: int = 1000) -> None:
        self.sim.credit(TOKEN, member, balance)
        deposit = self.sim.join_deposit(circle_id)
        self.sim.apply(member, "approve", (self.ledger, deposit), token=TOKEN)
        self.sim.apply(member, "joinCircle", (circle_id,))

    def _contribute(self, circle_id: int, member: str) -> None:
        self.sim.apply(member, "approve", (self.ledger, 100), token=TOKEN)
        self.sim.apply(member, "contribute", (circle_id,))

    async def _balance(self, owner: str) -> int:
        return await self.sim.read("balanceOf", owner, token=TOKEN)


class LifecycleTests(SimulatedLedgerTestBase):
    async def test_circle_ids_start_at_one(self):
        self.assertEqual(await self.sim.read("nextCircleId"), 1)
        self.assertEqual(self._create(), 1)
        self.assertEqual(await self.sim.read("nextCircleId"), 2)

    async def test_full_circle_becomes_active(self):
        circle_id = self._create()
        self._join(circle_id, ALICE)
        info = await self.sim.read("getCircleInfo", circle_id)
        self.assertEqual(info[10], OPEN)

        self._join(circle_id, BOB)
        info = await self.sim.read("getCircleInfo", circle_id)
        self.assertEqual(info[10], ACTIVE)
        self.assertEqual(info[8], 1)
        self.assertEqual(info[9], T)
        self.assertEqual(await self.sim.read("getInsurancePool", circle_id), 10)

    async def test_two_rounds_with_one_default(self):
        circle_id = self._create()
        self._join(circle_id, ALICE)
        self._join(circle_id, BOB)

        self._contribute(circle_id, ALICE)
        with self.assertRaises(TxValidationError):
            self.sim.apply(CREATOR, "finalizeRoundIfExpired", (circle_id,))
        self.sim.advance(WEEK)
        self.sim.apply(CREATOR, "finalizeRoundIfExpired", (circle_id,))

        # Bob defaulted: one contribution seized from his collateral.
        self.assertEqual(await self.sim.read("getMemberInfo", circle_id, BOB), (100, 1, True))
        self.assertEqual(await self.sim.read("pendingPayouts", circle_id, ALICE), 200)
        info = await self.sim.read("getCircleInfo", circle_id)
        self.assertEqual((info[8], info[10]), (2, ACTIVE))

        self.sim.apply(ALICE, "claimPayout", (circle_id,))
        self.assertEqual(await self._balance(ALICE), 1000 - 205 - 100 + 200)
        with self.assertRaises(TxValidationError):
            self.sim.apply(ALICE, "claimPayout", (circle_id,))

        self._contribute(circle_id, ALICE)
        self._contribute(circle_id, BOB)
        self.sim.advance(WEEK)
        self.sim.apply(BOB, "finalizeRoundIfExpired", (circle_id,))
        info = await self.sim.read("getCircleInfo", circle_id)
        self.assertEqual(info[10], COMPLETED)
        self.assertEqual(await self.sim.read("pendingPayouts", circle_id, BOB), 200)

        self.sim.apply(ALICE, "withdrawCollateral", (circle_id,))
        self.sim.apply(BOB, "claimPayout", (circle_id,))
        self.sim.apply(BOB, "withdrawCollateral", (circle_id,))
        self.assertEqual(await self._balance(ALICE), 995)
        self.assertEqual(await self._balance(BOB), 995)

    async def test_contribute_once_per_round(self):
        circle_id = self._create()
        self._join(circle_id, ALICE)
        self._join(circle_id, BOB)
        self._contribute(circle_id, ALICE)
        self.assertTrue(await self.sim.read("getRoundDeposited", circle_id, 1, ALICE))
        with self.assertRaises(TxValidationError):
            self._contribute(circle_id, ALICE)

    async def test_explicit_payout_order(self):
        circle_id = self._create(payout_order=(BOB, ALICE))
        self._join(circle_id, ALICE)
        self._join(circle_id, BOB)
        self.sim.advance(WEEK)
        self.sim.apply(CREATOR, "finalizeRoundIfExpired", (circle_id,))
        self.assertGreater(await self.sim.read("pendingPayouts", circle_id, BOB), 0)
        self.assertEqual(await self.sim.read("getPayoutOrder", circle_id), [BOB, ALICE])

    async def test_join_rules(self):
        circle_id = self._create()
        self.sim.credit(TOKEN, ALICE, 1000)
        with self.assertRaisesRegex(TxValidationError, "insufficient allowance"):
            self.sim.apply(ALICE, "joinCircle", (circle_id,))
        self._join(circle_id, ALICE)
        with self.assertRaisesRegex(TxValidationError, "already a member"):
            self._join(circle_id, ALICE)

    async def test_withdraw_after_cancel(self):
        circle_id = self._create()
        self._join(circle_id, ALICE)
        with self.assertRaises(TxValidationError):
            self.sim.apply(ALICE, "withdrawCollateral", (circle_id,))
        self.sim.cancel_circle(circle_id)
        self.assertEqual((await self.sim.read("getCircleInfo", circle_id))[10], CANCELLED)
        self.sim.apply(ALICE, "withdrawCollateral", (circle_id,))
        self.assertEqual(await self._balance(ALICE), 1000 - 5)


class InsuranceTests(SimulatedLedgerTestBase):
    collateral_mode = "percent"

    async def test_insurance_pool_covers_shortfall(self):
        # percent mode: factor 50 -> collateral 50, less than one contribution
        circle_id = self._create(factor=50, fee=60)
        self._join(circle_id, ALICE)
        self._join(circle_id, BOB)
        self.assertEqual(self.sim.join_deposit(circle_id), 110)

        self._contribute(circle_id, ALICE)
        self.sim.advance(WEEK)
        self.sim.apply(CREATOR, "finalizeRoundIfExpired", (circle_id,))

        self.assertEqual(await self.sim.read("getMemberInfo", circle_id, BOB), (0, 1, True))
        self.assertEqual(await self.sim.read("pendingPayouts", circle_id, ALICE), 200)
        self.assertEqual(await self.sim.read("getInsurancePool", circle_id), 120 - 50)


class GatewayInterfaceTests(SimulatedLedgerTestBase):
    async def test_submit_validates_like_gas_estimation(self):
        circle_id = self._create()
        with self.assertRaisesRegex(TxValidationError, "insufficient allowance"):
            await self.sim.submit("joinCircle", (circle_id,), sender=ALICE)
        self.assertEqual(self.sim.submissions, [])

    async def test_manual_mining(self):
        self.sim.auto_mine = False
        tx_hash = await self.sim.submit("mint", (50,), sender=ALICE, token=TOKEN)
        self.assertEqual(self.sim.pending_count, 1)
        self.assertEqual(await self._balance(ALICE), 0)
        self.assertEqual(self.sim.mine(), 2)
        receipt = await self.sim.wait_for_receipt(tx_hash)
        self.assertEqual((receipt.status, receipt.block_number), (1, 2))
        self.assertEqual(await self._balance(ALICE), 50)

    async def test_revert_at_inclusion(self):
        self.sim.credit(TOKEN, ALICE, 1000)
        circle_id = self._create()
        self.sim.apply(ALICE, "approve", (self.ledger, 205), token=TOKEN)
        self.sim.auto_mine = False
        tx_hash = await self.sim.submit("joinCircle", (circle_id,), sender=ALICE)
        # allowance revoked before the join is included
        self.sim.apply(ALICE, "approve", (self.ledger, 0), token=TOKEN)
        self.sim.mine()
        with self.assertRaises(TxReverted) as ctx:
            await self.sim.wait_for_receipt(tx_hash)
        self.assertEqual(ctx.exception.tx_hash, tx_hash)

    async def test_injected_faults(self):
        self.sim.inject_fault("mint", "reject")
        self.sim.inject_fault("mint", "transport")
        self.sim.inject_fault("mint", "revert")
        with self.assertRaises(SignatureRejected):
            await self.sim.submit("mint", (1,), token=TOKEN)
        with self.assertRaises(TransportError):
            await self.sim.submit("mint", (1,), token=TOKEN)
        tx_hash = await self.sim.submit("mint", (1,), token=TOKEN)
        with self.assertRaises(TxReverted):
            await self.sim.wait_for_receipt(tx_hash)
        with self.assertRaises(ValueError):
            self.sim.inject_fault("mint", "explode")

    async def test_confirm_callback_can_decline(self):
        sim = SimulatedLedger(caller=ALICE, confirm=lambda fn, target, args: False)
        with self.assertRaises(SignatureRejected):
            await sim.submit("mint", (1,), token=TOKEN)

    async def test_unknown_receipt_is_a_transport_error(self):
        self.sim.auto_mine = False
        with self.assertRaises(TransportError):
            await self.sim.wait_for_receipt("0x" + "00" * 32)

    async def test_read_batch_marks_failures_per_call(self):
        circle_id = self._create()
        results = await self.sim.read_batch([
            ReadCall("getCircleDetails", (circle_id,)),
            ReadCall("getCircleDetails", (99,)),
        ])
        self.assertTrue(results[0].ok)
        self.assertEqual(results[0].value, ("Pot", "test"))
        self.assertFalse(results[1].ok)
        self.assertIn("does not exist", results[1].error)
        self.assertEqual(self.sim.batch_reads, 1)


class SeedTests(unittest.IsolatedAsyncioTestCase):
    async def test_seed_demo(self):
        sim = SimulatedLedger(caller=ALICE, collateral_mode="multiplier")
        ids = seed_demo(sim)
        self.assertEqual(ids, [1, 2, 3])
        self.assertEqual((await sim.read("getCircleInfo", 2))[10], ACTIVE)
        usdc = config.SUPPORTED_TOKENS["USDC"]
        self.assertEqual(
            await sim.read("balanceOf", ALICE, token=usdc["address"]),
            10_000 * 10 ** usdc["decimals"],
        )


if __name__ == "__main__":
    unittest.main()
