"""
rosca_client.py -- Command-line client for rotating savings circles.

HOW TO RUN:
  python rosca_client.py circles                  # browse every circle
  python rosca_client.py show 2                   # one circle + your actions
  python rosca_client.py join 1                   # approve (if needed) + join
  python rosca_client.py contribute 2
  python rosca_client.py finalize 2               # anyone, once the round expired
  python rosca_client.py claim 2
  python rosca_client.py withdraw 2
  python rosca_client.py create --name "Family Pot" --contribution 50 --period weekly
  python rosca_client.py mint --token USDC --amount 1000   # test-network faucet
  python rosca_client.py balance
  python rosca_client.py watch 2                  # follow new blocks

With DRY_RUN=true (the default) every command runs against an in-memory
ledger seeded with demo circles.  Set DRY_RUN=false, RPC_URL and
PRIVATE_KEY to talk to the deployed circle program.

Every signature is confirmed on the terminal unless --yes is given.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time
from typing import Callable

import config
import circle_views as views
import eligibility
import ledger_sim
from circle_state import (
    Circle,
    CircleState,
    CircleUnavailable,
    SnapshotAggregator,
    available,
    scale_amount,
    to_raw_amount,
    user_circles,
)
from eligibility import CircleParams, Eligibility
from ledger_gateway import LedgerError, Web3Gateway
from notifier import Notifier
from orchestrator import FlowBusyError, FlowOrchestrator, InvalidCircleParams
from round_timer import RoundTimer

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def prompt_confirm(fn: str, target: str, args: tuple) -> bool:
    """Terminal stand-in for a wallet signature prompt."""
    answer = input(f"Sign {fn}{tuple(args)} on {views.format_address(target)}? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def build_gateway(*, confirm: Callable[[str, str, tuple], bool] | None = None):
    """DRY_RUN selects the simulated ledger; otherwise the web3 gateway."""
    if config.DRY_RUN:
        sim = ledger_sim.SimulatedLedger(confirm=confirm)
        ledger_sim.seed_demo(sim)
        return sim
    if not config.RPC_URL:
        raise SystemExit("RPC_URL is required when DRY_RUN=false")
    if not config.PRIVATE_KEY:
        logger.warning("PRIVATE_KEY not set -- read-only session, every submission will be rejected")
    return Web3Gateway(confirm=confirm)


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------

class ClientRuntime:
    def __init__(
        self,
        gateway,
        *,
        caller: str | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.gateway = gateway
        self.caller = caller or gateway.address
        self.notifier = notifier or Notifier()
        self.aggregator = SnapshotAggregator(gateway)
        self.orchestrator = FlowOrchestrator(gateway, self.notifier)
        self.timer = RoundTimer(clock=clock)
        self.running = True
        self.last_block: int | None = None

    def shutdown(self, reason: str) -> None:
        if self.running:
            logger.info("Shutting down: %s", reason)
        self.running = False
        self.timer.stop()

    async def poll_block(self) -> bool:
        """Sample the block height; refresh the snapshot only when it moved."""
        block = await self.gateway.block_number()
        if block == self.last_block:
            return False
        self.last_block = block
        await self.aggregator.refresh(block)
        return True

    async def circles(self) -> list[Circle]:
        await self.poll_block()
        if self.aggregator.snapshot.error is not None:
            raise self.aggregator.snapshot.error
        return available(self.aggregator.snapshot.data or {})

    async def load_circle(self, circle_id: int) -> Circle:
        await self.poll_block()
        result = await self.aggregator.circle(circle_id)
        if isinstance(result, CircleUnavailable):
            raise LookupError(f"circle #{circle_id} is not available ({result.reason})")
        return result

    async def evaluate(self, circle: Circle) -> tuple[Eligibility, dict]:
        """Eligibility for the session caller plus the extra facts shown by `show`."""
        self.timer.track(circle)
        clock = self.timer.tick()
        facts = None
        if self.caller and circle.has_member(self.caller):
            facts = await self.aggregator.member_facts(circle, self.caller)
        detail = await self.aggregator.circle_detail(circle.circle_id)
        payout_order = detail.payout_order if detail is not None else None
        result = eligibility.evaluate(
            circle,
            self.caller,
            expired=self.timer.expired,
            facts=facts,
            payout_order=payout_order,
        )
        extra = {
            "clock": clock,
            "facts": facts,
            "recipient": eligibility.current_recipient(circle, payout_order),
            "insurance_pool": (
                scale_amount(detail.insurance_pool_raw, circle.decimals) if detail is not None else None
            ),
            "progress": None,
        }
        if circle.state == CircleState.ACTIVE:
            extra["progress"] = views.round_progress(circle, await self.aggregator.round_deposits(circle))
        return result, extra

    async def watch(self, circle_id: int | None = None, *, iterations: int | None = None) -> None:
        """Follow the chain: one cheap height read per tick, full reads on change."""
        count = 0
        logger.info("Watching for new blocks every %.1fs", config.BLOCK_POLL_INTERVAL_SEC)
        while self.running and (iterations is None or count < iterations):
            count += 1
            try:
                changed = await self.poll_block()
            except LedgerError as e:
                logger.warning("Block poll failed: %s", e)
                changed = False
            if changed:
                print(f"--- block {self.last_block} ---")
                if circle_id is None:
                    for circle in available(self.aggregator.snapshot.data or {}):
                        print(views.render_row(circle))
                else:
                    await _print_circle(self, circle_id)
            elif circle_id is not None and self.timer.active:
                was_expired = self.timer.expired
                clock = self.timer.tick()
                if clock is not None and clock.expired and not was_expired:
                    print(f"Round {self.timer.circle.current_round} expired -- finalize is available")
            await asyncio.sleep(config.BLOCK_POLL_INTERVAL_SEC)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _token_address(value: str) -> str:
    token = config.SUPPORTED_TOKENS.get(value.upper())
    if token is not None:
        return token["address"]
    if value.startswith("0x") and len(value) == 42:
        return value
    raise SystemExit(f"unknown token {value!r} (expected {', '.join(config.SUPPORTED_TOKENS)} or an address)")


def _period_seconds(value: str) -> int:
    if value.lower() in config.PERIOD_PRESETS:
        return config.PERIOD_PRESETS[value.lower()]
    try:
        return int(value)
    except ValueError:
        raise SystemExit(
            f"period must be seconds or one of {', '.join(config.PERIOD_PRESETS)}"
        ) from None


def _report(rt: ClientRuntime, state) -> int:
    note = rt.notifier.active.get(state.notify_key)
    if note is not None:
        print(note.message)
    if state.primary_tx:
        print(f"  tx: {state.primary_tx}")
    return 0 if state.step == "completed" else 1


async def _print_circle(rt: ClientRuntime, circle_id: int) -> None:
    circle = await rt.load_circle(circle_id)
    result, extra = await rt.evaluate(circle)
    print(views.render_detail(circle, eligibility=result, **extra))


async def cmd_circles(rt: ClientRuntime, args) -> int:
    circles = await rt.circles()
    if args.mine:
        circles = user_circles(circles, rt.caller)
    token = _token_address(args.token) if args.token != "all" else "all"
    circles = views.sort_circles(
        views.filter_circles(circles, search=args.search, status=args.status, token=token),
        args.sort,
    )
    if not circles:
        print("No circles found.")
        return 0
    for circle in circles:
        print(views.render_row(circle))
    if args.mine and rt.caller:
        stats = views.user_stats(circles, rt.caller)
        print(f"\n{stats.total} circle(s): {stats.created} created, {stats.active} active, {stats.completed} completed")
    return 0


async def cmd_show(rt: ClientRuntime, args) -> int:
    await _print_circle(rt, args.circle_id)
    return 0


async def cmd_flow(rt: ClientRuntime, args) -> int:
    kind = args.command
    circle = await rt.load_circle(args.circle_id)
    result, _ = await rt.evaluate(circle)
    allowed = {
        "join": result.can_join,
        "contribute": result.can_contribute,
        "claim": result.has_pending_payout,
        "finalize": result.can_finalize_round,
        "withdraw": result.can_withdraw_collateral,
    }[kind]
    if not allowed:
        print(f"Cannot {kind} circle #{circle.circle_id} right now "
              f"(status {views.status_label(circle.state)}, actions: {', '.join(result.actions()) or 'none'})")
        return 1

    orch = rt.orchestrator
    if kind == "join":
        print(f"Joining requires {views.format_amount(scale_amount(result.join_deposit_raw, circle.decimals), circle.token)}")
        state = await orch.join(circle, rt.caller)
    elif kind == "contribute":
        state = await orch.contribute(circle, rt.caller)
    elif kind == "claim":
        state = await orch.claim_payout(circle.circle_id, rt.caller)
    elif kind == "finalize":
        state = await orch.finalize_round(circle.circle_id, rt.caller)
    else:
        state = await orch.withdraw_collateral(circle.circle_id, rt.caller)
    return _report(rt, state)


async def cmd_create(rt: ClientRuntime, args) -> int:
    defaults = config.DEFAULT_CIRCLE_VALUES
    params = CircleParams(
        name=args.name,
        description=args.description,
        token=_token_address(args.token) if args.token else defaults["token"],
        contribution_amount=args.contribution or defaults["contribution_amount"],
        period_duration=_period_seconds(args.period) if args.period else defaults["period_duration"],
        max_members=args.members or defaults["max_members"],
        collateral_factor=args.collateral_factor or defaults["collateral_factor"],
        insurance_fee=args.insurance_fee if args.insurance_fee is not None else defaults["insurance_fee"],
        payout_order=tuple(a.strip() for a in args.payout_order.split(",") if a.strip()),
    )
    try:
        state = await rt.orchestrator.create_circle(params, rt.caller)
    except InvalidCircleParams as e:
        for problem in e.problems:
            print(f"  - {problem}")
        return 1
    code = _report(rt, state)
    if code == 0:
        print(f"New circle id: {int(await rt.gateway.read('nextCircleId')) - 1}")
    return code


async def cmd_mint(rt: ClientRuntime, args) -> int:
    token = _token_address(args.token)
    raw = to_raw_amount(args.amount, config.token_decimals(token))
    state = await rt.orchestrator.mint(token, raw, rt.caller)
    return _report(rt, state)


async def cmd_balance(rt: ClientRuntime, args) -> int:
    if not rt.caller:
        raise SystemExit("No account: set PRIVATE_KEY (or DRY_RUN=true)")
    await rt.poll_block()
    symbols = [args.token.upper()] if args.token else sorted(config.SUPPORTED_TOKENS)
    for symbol in symbols:
        token = _token_address(symbol)
        try:
            raw = await rt.aggregator.token_balance(token, rt.caller)
        except LedgerError as e:
            print(f"{symbol:<6} unavailable ({e})")
            continue
        print(f"{symbol:<6} {views.format_amount(scale_amount(raw, config.token_decimals(token)), token)}")
    return 0


async def cmd_watch(rt: ClientRuntime, args) -> int:
    await rt.watch(args.circle_id, iterations=args.iterations)
    return 0


COMMANDS = {
    "circles": cmd_circles,
    "show": cmd_show,
    "join": cmd_flow,
    "contribute": cmd_flow,
    "claim": cmd_flow,
    "finalize": cmd_flow,
    "withdraw": cmd_flow,
    "create": cmd_create,
    "mint": cmd_mint,
    "balance": cmd_balance,
    "watch": cmd_watch,
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Rotating savings circle client")
    p.add_argument("--yes", "-y", action="store_true", default=False, help="Sign without confirmation prompts")
    p.add_argument("--quiet", action="store_true", default=False, help="Skip the startup banner")
    sub = p.add_subparsers(dest="command", required=True)

    c = sub.add_parser("circles", help="List circles")
    c.add_argument("--search", default="", help="Match name or description")
    c.add_argument("--status", default="all", help="all, open, active, completed, cancelled")
    c.add_argument("--token", default="all", help="Token symbol or address")
    c.add_argument("--sort", default="newest", choices=views.SORT_KEYS)
    c.add_argument("--mine", action="store_true", default=False, help="Only circles you created or joined")

    s = sub.add_parser("show", help="Show one circle")
    s.add_argument("circle_id", type=int)

    for name, text in (
        ("join", "Approve (if needed) and join a circle"),
        ("contribute", "Approve (if needed) and contribute this round"),
        ("claim", "Claim your pending payout"),
        ("finalize", "Finalize an expired round"),
        ("withdraw", "Withdraw collateral from a finished circle"),
    ):
        f = sub.add_parser(name, help=text)
        f.add_argument("circle_id", type=int)

    cr = sub.add_parser("create", help="Create a circle")
    cr.add_argument("--name", required=True)
    cr.add_argument("--description", required=True)
    cr.add_argument("--token", default="", help="Token symbol or address (default USDC)")
    cr.add_argument("--contribution", default="", help="Contribution per period, in tokens")
    cr.add_argument("--period", default="", help="Seconds or weekly/biweekly/monthly/quarterly")
    cr.add_argument("--members", type=int, default=0)
    cr.add_argument("--collateral-factor", type=int, default=0)
    cr.add_argument("--insurance-fee", default=None, help="Insurance fee, in tokens")
    cr.add_argument("--payout-order", default="", help="Comma-separated addresses")

    m = sub.add_parser("mint", help="Mint test tokens")
    m.add_argument("--token", default="USDC")
    m.add_argument("--amount", required=True)

    b = sub.add_parser("balance", help="Token balances of your account")
    b.add_argument("--token", default="")

    w = sub.add_parser("watch", help="Follow new blocks")
    w.add_argument("circle_id", type=int, nargs="?", default=None)
    w.add_argument("--iterations", type=int, default=None)
    return p.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    gateway = build_gateway(confirm=None if args.yes else prompt_confirm)
    clock = gateway.now if config.DRY_RUN else time.time
    rt = ClientRuntime(gateway, clock=clock)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, rt.shutdown, f"signal {sig}")
        except (NotImplementedError, RuntimeError):
            pass

    try:
        return await COMMANDS[args.command](rt, args)
    except (LookupError, FlowBusyError) as e:
        print(str(e))
        return 1
    except LedgerError as e:
        logger.error("Ledger %s error: %s", e.category, e)
        return 1
    finally:
        rt.shutdown("command finished")
        await rt.notifier.drain()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging()
    if not args.quiet:
        config.print_banner()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
