"""
flow_machine.py

Transaction flow state machine for circle actions.

Design goals:
- Pure reducer transitions: (state, event) -> (next_state, actions)
- Allowance-gated flows (join, contribute):
    idle -> checking-allowance -> [approving ->] joining|contributing -> completed|error -> idle
- Single-step flows (claim, finalize, withdraw, create, mint):
    idle -> submitting -> completed|error -> idle
- The dependent call is only emitted on the approval's TxConfirmed
- One error notification per flow instance; later failures are ignored
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Literal


FlowKind = Literal["join", "contribute", "claim", "finalize", "withdraw", "create", "mint"]
Step = Literal[
    "idle",
    "checking-allowance",
    "approving",
    "joining",
    "contributing",
    "submitting",
    "completed",
    "error",
]
TxPhase = Literal["approve", "primary"]
NotifyLevel = Literal["loading", "success", "error"]

PRIMARY_CALL: dict[str, str] = {
    "join": "joinCircle",
    "contribute": "contribute",
    "claim": "claimPayout",
    "finalize": "finalizeRoundIfExpired",
    "withdraw": "withdrawCollateral",
    "create": "createCircle",
    "mint": "mint",
}

ALLOWANCE_KINDS = frozenset({"join", "contribute"})

_PRIMARY_STEP: dict[str, Step] = {"join": "joining", "contribute": "contributing"}

# (in-flight text, success text)
MESSAGES: dict[str, tuple[str, str]] = {
    "join": ("Joining circle...", "Successfully joined circle!"),
    "contribute": ("Processing contribution...", "Contribution successful!"),
    "claim": ("Claiming payout...", "Payout claimed successfully!"),
    "finalize": ("Finalizing round...", "Round finalized successfully!"),
    "withdraw": ("Withdrawing collateral...", "Collateral withdrawn successfully!"),
    "create": ("Creating circle...", "Circle created successfully!"),
    "mint": ("Minting tokens...", "Tokens minted successfully!"),
}

_TERMINAL: frozenset[str] = frozenset({"idle", "completed", "error"})


@dataclass(frozen=True)
class FlowConfig:
    ledger_address: str
    success_reset_sec: float = 3.0
    error_reset_sec: float = 5.0


@dataclass(frozen=True)
class FlowState:
    kind: FlowKind
    circle_id: int
    flow_id: int = 0
    step: Step = "idle"
    caller: str = ""
    token: str = ""
    required_amount: int = 0
    args: tuple = ()
    primary_token: str | None = None
    approve_tx: str = ""
    primary_tx: str = ""
    error: str = ""
    error_category: str = ""
    started_at: float = 0.0
    updated_at: float = 0.0

    @property
    def key(self) -> tuple[str, int]:
        return (self.kind, self.circle_id)

    @property
    def in_progress(self) -> bool:
        return self.step not in _TERMINAL

    @property
    def notify_key(self) -> str:
        return f"{self.kind}-{self.circle_id}"

    @property
    def primary_step(self) -> Step:
        return _PRIMARY_STEP.get(self.kind, "submitting")


# --------------------------- Events ---------------------------


@dataclass(frozen=True)
class StartFlow:
    flow_id: int
    caller: str
    timestamp: float
    args: tuple = ()
    token: str = ""
    required_amount: int = 0
    primary_token: str | None = None


@dataclass(frozen=True)
class AllowanceRead:
    amount: int
    timestamp: float


@dataclass(frozen=True)
class TxSubmitted:
    tx_hash: str
    timestamp: float


@dataclass(frozen=True)
class TxConfirmed:
    tx_hash: str
    timestamp: float


@dataclass(frozen=True)
class TxFailed:
    category: str
    reason: str
    timestamp: float


@dataclass(frozen=True)
class ResetDue:
    flow_id: int
    timestamp: float


@dataclass(frozen=True)
class CancelFlow:
    timestamp: float


Event = StartFlow | AllowanceRead | TxSubmitted | TxConfirmed | TxFailed | ResetDue | CancelFlow


# --------------------------- Actions ---------------------------


@dataclass(frozen=True)
class ReadAllowanceAction:
    token: str
    owner: str
    spender: str


@dataclass(frozen=True)
class SubmitTxAction:
    fn: str
    args: tuple
    phase: TxPhase
    token: str | None = None


@dataclass(frozen=True)
class AwaitReceiptAction:
    tx_hash: str
    phase: TxPhase


@dataclass(frozen=True)
class NotifyAction:
    key: str
    level: NotifyLevel
    message: str


@dataclass(frozen=True)
class ScheduleResetAction:
    flow_id: int
    delay: float


Action = ReadAllowanceAction | SubmitTxAction | AwaitReceiptAction | NotifyAction | ScheduleResetAction


# --------------------------- Helpers ---------------------------


def idle_state(kind: FlowKind, circle_id: int, flow_id: int = 0) -> FlowState:
    return FlowState(kind=kind, circle_id=int(circle_id), flow_id=flow_id)


def _primary(state: FlowState) -> tuple[FlowState, list[Action]]:
    fn = PRIMARY_CALL[state.kind]
    st = replace(state, step=state.primary_step)
    return st, [
        NotifyAction(st.notify_key, "loading", MESSAGES[st.kind][0]),
        SubmitTxAction(fn=fn, args=st.args, phase="primary", token=st.primary_token),
    ]


def check_invariants(state: FlowState) -> list[str]:
    violations: list[str] = []
    if state.required_amount < 0:
        violations.append("required_amount is negative")
    if state.primary_tx and state.kind in ALLOWANCE_KINDS and state.approve_tx and state.step == "approving":
        violations.append("primary call submitted while approval still pending")
    if state.step == "completed" and not state.primary_tx:
        violations.append("completed without a primary transaction")
    if state.step == "error" and not state.error:
        violations.append("error step without a reason")
    if state.step in ("checking-allowance", "approving") and state.kind not in ALLOWANCE_KINDS:
        violations.append(f"{state.kind} flow has no allowance phase")
    return violations


def to_dict(state: FlowState) -> dict:
    data = asdict(state)
    data["args"] = list(state.args)
    return data


# --------------------------- Reducer ---------------------------


def transition(state: FlowState, event: Event, cfg: FlowConfig) -> tuple[FlowState, list[Action]]:
    """
    Pure reducer for one event.
    """
    actions: list[Action] = []
    st = state

    if isinstance(event, StartFlow):
        if st.in_progress:
            return st, actions
        st = replace(
            idle_state(st.kind, st.circle_id, event.flow_id),
            caller=event.caller,
            token=event.token,
            required_amount=int(event.required_amount),
            args=tuple(event.args),
            primary_token=event.primary_token,
            started_at=event.timestamp,
            updated_at=event.timestamp,
        )
        if st.kind in ALLOWANCE_KINDS:
            st = replace(st, step="checking-allowance")
            actions.append(ReadAllowanceAction(token=st.token, owner=st.caller, spender=cfg.ledger_address))
            return st, actions
        st, a = _primary(st)
        actions.extend(a)
        return st, actions

    if isinstance(event, AllowanceRead):
        if st.step != "checking-allowance":
            return st, actions
        st = replace(st, updated_at=event.timestamp)
        if int(event.amount) >= st.required_amount:
            st, a = _primary(st)
            actions.extend(a)
            return st, actions
        st = replace(st, step="approving")
        actions.append(NotifyAction(st.notify_key, "loading", "Approving token spend..."))
        actions.append(
            SubmitTxAction(
                fn="approve",
                args=(cfg.ledger_address, st.required_amount),
                phase="approve",
                token=st.token,
            )
        )
        return st, actions

    if isinstance(event, TxSubmitted):
        if st.step == "approving" and not st.approve_tx:
            st = replace(st, approve_tx=event.tx_hash, updated_at=event.timestamp)
            actions.append(AwaitReceiptAction(event.tx_hash, "approve"))
        elif st.step == st.primary_step and not st.primary_tx:
            st = replace(st, primary_tx=event.tx_hash, updated_at=event.timestamp)
            actions.append(AwaitReceiptAction(event.tx_hash, "primary"))
        return st, actions

    if isinstance(event, TxConfirmed):
        if st.step == "approving" and event.tx_hash == st.approve_tx:
            st = replace(st, updated_at=event.timestamp)
            st, a = _primary(st)
            actions.extend(a)
            return st, actions
        if st.step == st.primary_step and event.tx_hash == st.primary_tx:
            st = replace(st, step="completed", updated_at=event.timestamp)
            actions.append(NotifyAction(st.notify_key, "success", MESSAGES[st.kind][1]))
            actions.append(ScheduleResetAction(st.flow_id, cfg.success_reset_sec))
        return st, actions

    if isinstance(event, TxFailed):
        if not st.in_progress:
            return st, actions
        st = replace(
            st,
            step="error",
            error=event.reason or event.category,
            error_category=event.category,
            updated_at=event.timestamp,
        )
        actions.append(NotifyAction(st.notify_key, "error", st.error))
        actions.append(ScheduleResetAction(st.flow_id, cfg.error_reset_sec))
        return st, actions

    if isinstance(event, ResetDue):
        if event.flow_id == st.flow_id and st.step in ("completed", "error"):
            st = idle_state(st.kind, st.circle_id, st.flow_id)
        return st, actions

    if isinstance(event, CancelFlow):
        # Local tracking only; anything already submitted stays on the ledger.
        return idle_state(st.kind, st.circle_id, st.flow_id), actions

    return st, actions
