"""
ledger_gateway.py -- Circle program + token ledger access over web3.py.

Handles:
  - Single reads against the circle program or a token ledger
  - Batched reads through Multicall3 aggregate3() with per-call failure
  - Signing and submitting mutating calls (submit phase)
  - Waiting for receipts (confirmation phase)
  - Mapping web3/RPC failures onto the client's error taxonomy

GATEWAY INTERFACE (shared with ledger_sim.SimulatedLedger):
  ledger_address                      address of the circle program
  address                             caller address the gateway signs for
  await block_number()                latest block height
  await read(fn, *args, token=None)   one view call
  await read_batch(calls)             list[ReadResult], one per ReadCall
  await submit(fn, args, sender=, token=None)  -> tx hash
  await wait_for_receipt(tx_hash)     -> Receipt, raises TxReverted

web3.py is synchronous; every RPC call runs in the default executor so the
event loop stays free for other flows while a call is in flight.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

import requests
from eth_abi import decode as abi_decode
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

import config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------

class LedgerError(Exception):
    """Base class for every failure of a ledger call."""

    category = "transport"

    def __init__(self, message: str = "", *, tx_hash: str = ""):
        super().__init__(message)
        self.message = message
        self.tx_hash = tx_hash


class SignatureRejected(LedgerError):
    """The signer declined to sign (or no key can sign for the caller)."""

    category = "rejected"


class TxValidationError(LedgerError):
    """Pre-submission failure: gas estimation reverted or the node refused."""

    category = "validation"


class TxReverted(LedgerError):
    """The transaction was included but its receipt is marked failed."""

    category = "reverted"


class TransportError(LedgerError):
    """RPC/connection failure during submission, read or receipt wait."""

    category = "transport"


def classify_error(exc: BaseException) -> LedgerError:
    """Map a web3 / requests exception onto a LedgerError subclass."""
    if isinstance(exc, LedgerError):
        return exc
    if isinstance(exc, ContractLogicError):
        reason = getattr(exc, "message", None) or str(exc)
        return TxValidationError(reason)
    if isinstance(exc, TimeExhausted):
        return TransportError(f"receipt wait exhausted: {exc}")
    if isinstance(exc, (requests.RequestException, OSError)):
        return TransportError(str(exc))
    if isinstance(exc, Web3Exception):
        # Web3RPCError and friends: the node answered but refused the call
        # (insufficient funds, nonce too low, ...).
        return TxValidationError(str(exc))
    if isinstance(exc, ValueError):
        return TxValidationError(str(exc))
    return TransportError(str(exc))


# Exceptions that classify_error() knows how to translate.  Anything else is
# a programming error and propagates untouched.
_LEDGER_EXCEPTIONS = (
    ContractLogicError,
    TimeExhausted,
    Web3Exception,
    requests.RequestException,
    OSError,
    ValueError,
)


# ---------------------------------------------------------------------------
# Read / receipt records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReadCall:
    fn: str
    args: tuple = ()
    token: str | None = None  # None = circle program, else token ledger address


@dataclass(frozen=True)
class ReadResult:
    ok: bool
    value: Any = None
    error: str = ""


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    status: int
    block_number: int


# ---------------------------------------------------------------------------
# ABIs (only the entries this client touches)
# ---------------------------------------------------------------------------

def _abi_fn(name, inputs=(), outputs=(), mutability="view"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


ROSCA_ABI = [
    _abi_fn(
        "createCircle",
        inputs=(
            ("name", "string"),
            ("description", "string"),
            ("token", "address"),
            ("contributionAmount", "uint256"),
            ("periodDuration", "uint256"),
            ("maxMembers", "uint256"),
            ("collateralFactor", "uint256"),
            ("insuranceFee", "uint256"),
            ("initialPayoutOrder", "address[]"),
        ),
        outputs=(("circleId", "uint256"),),
        mutability="nonpayable",
    ),
    _abi_fn("joinCircle", inputs=(("circleId", "uint256"),), mutability="nonpayable"),
    _abi_fn("contribute", inputs=(("circleId", "uint256"),), mutability="nonpayable"),
    _abi_fn("claimPayout", inputs=(("circleId", "uint256"),), mutability="nonpayable"),
    _abi_fn("finalizeRoundIfExpired", inputs=(("circleId", "uint256"),), mutability="nonpayable"),
    _abi_fn("withdrawCollateral", inputs=(("circleId", "uint256"),), mutability="nonpayable"),
    _abi_fn(
        "getCircleInfo",
        inputs=(("circleId", "uint256"),),
        outputs=(
            ("creator", "address"),
            ("token", "address"),
            ("contributionAmount", "uint256"),
            ("periodDuration", "uint256"),
            ("maxMembers", "uint256"),
            ("collateralFactor", "uint256"),
            ("insuranceFee", "uint256"),
            ("startTimestamp", "uint256"),
            ("currentRound", "uint256"),
            ("roundStart", "uint256"),
            ("state", "uint8"),
        ),
    ),
    _abi_fn(
        "getCircleDetails",
        inputs=(("circleId", "uint256"),),
        outputs=(("name", "string"), ("description", "string")),
    ),
    _abi_fn("getMembers", inputs=(("circleId", "uint256"),), outputs=(("", "address[]"),)),
    _abi_fn("getPayoutOrder", inputs=(("circleId", "uint256"),), outputs=(("", "address[]"),)),
    _abi_fn("getInsurancePool", inputs=(("circleId", "uint256"),), outputs=(("", "uint256"),)),
    _abi_fn(
        "getMemberInfo",
        inputs=(("circleId", "uint256"), ("member", "address")),
        outputs=(
            ("collateralLocked", "uint256"),
            ("defaults", "uint256"),
            ("isMember", "bool"),
        ),
    ),
    _abi_fn(
        "pendingPayouts",
        inputs=(("circleId", "uint256"), ("member", "address")),
        outputs=(("", "uint256"),),
    ),
    _abi_fn(
        "getRoundDeposited",
        inputs=(("circleId", "uint256"), ("round", "uint256"), ("member", "address")),
        outputs=(("", "bool"),),
    ),
    _abi_fn("nextCircleId", outputs=(("", "uint256"),)),
]

ERC20_ABI = [
    _abi_fn("balanceOf", inputs=(("owner", "address"),), outputs=(("", "uint256"),)),
    _abi_fn(
        "allowance",
        inputs=(("owner", "address"), ("spender", "address")),
        outputs=(("", "uint256"),),
    ),
    _abi_fn(
        "approve",
        inputs=(("spender", "address"), ("amount", "uint256")),
        outputs=(("", "bool"),),
        mutability="nonpayable",
    ),
    _abi_fn("mint", inputs=(("amount", "uint256"),), mutability="nonpayable"),
    _abi_fn("decimals", outputs=(("", "uint8"),)),
]

MULTICALL3_ABI = [
    {
        "type": "function",
        "name": "aggregate3",
        "stateMutability": "payable",
        "inputs": [
            {
                "name": "calls",
                "type": "tuple[]",
                "components": [
                    {"name": "target", "type": "address"},
                    {"name": "allowFailure", "type": "bool"},
                    {"name": "callData", "type": "bytes"},
                ],
            }
        ],
        "outputs": [
            {
                "name": "returnData",
                "type": "tuple[]",
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"},
                ],
            }
        ],
    }
]


def _output_types(abi: list, fn: str) -> list[str]:
    for entry in abi:
        if entry.get("type") == "function" and entry.get("name") == fn:
            return [o["type"] for o in entry["outputs"]]
    raise KeyError(f"{fn} not in ABI")


def decode_output(abi: list, fn: str, data: bytes) -> Any:
    """
    Decode raw return data for *fn*.

    Single-output functions return the bare value, multi-output functions a
    tuple in ABI order (the positional shape the aggregator expects).
    """
    types = _output_types(abi, fn)
    values = abi_decode(types, bytes(data))
    if len(types) == 1:
        return values[0]
    return tuple(values)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

Confirm = Callable[[str, str, tuple], bool]


class Web3Gateway:
    """Live gateway: one HTTP provider, one signing account."""

    def __init__(
        self,
        rpc_url: str | None = None,
        *,
        ledger_address: str | None = None,
        private_key: str | None = None,
        chain_id: int | None = None,
        multicall_address: str | None = None,
        confirm: Confirm | None = None,
        w3: Web3 | None = None,
    ) -> None:
        self.w3 = w3 or Web3(
            Web3.HTTPProvider(rpc_url or config.RPC_URL, request_kwargs={"timeout": 15})
        )
        self.ledger_address = Web3.to_checksum_address(
            ledger_address or config.ROSCA_CONTRACT_ADDRESS
        )
        self.chain_id = int(chain_id if chain_id is not None else config.CHAIN_ID)
        self._ledger = self.w3.eth.contract(address=self.ledger_address, abi=ROSCA_ABI)
        self._multicall = self.w3.eth.contract(
            address=Web3.to_checksum_address(multicall_address or config.MULTICALL_ADDRESS),
            abi=MULTICALL3_ABI,
        )
        key = private_key if private_key is not None else config.PRIVATE_KEY
        self._account = self.w3.eth.account.from_key(key) if key else None
        self._confirm = confirm
        # Serializes nonce assignment across concurrently running flows.
        self._nonce_lock = asyncio.Lock()

    @property
    def address(self) -> str | None:
        return self._account.address if self._account is not None else None

    # ------------------ plumbing ------------------

    async def _run(self, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except _LEDGER_EXCEPTIONS as e:
            raise classify_error(e) from e

    def _contract(self, token: str | None):
        if token is None:
            return self._ledger
        return self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)

    @staticmethod
    def _abi_for(token: str | None) -> list:
        return ROSCA_ABI if token is None else ERC20_ABI

    # ------------------ reads ------------------

    async def block_number(self) -> int:
        return int(await self._run(lambda: self.w3.eth.block_number))

    async def read(self, fn: str, *args, token: str | None = None) -> Any:
        result = await self._run(lambda: getattr(self._contract(token).functions, fn)(*args).call())
        logger.debug("read %s%s -> %s", fn, args, result)
        return result

    async def read_batch(self, calls: list[ReadCall]) -> list[ReadResult]:
        """
        One eth_call to Multicall3 carrying every read, each allowed to fail.

        A failing entry yields ReadResult(ok=False); only a failure of the
        aggregate call itself raises.
        """
        if not calls:
            return []
        def encode():
            payload = []
            for call in calls:
                contract = self._contract(call.token)
                payload.append((contract.address, True, contract.encode_abi(call.fn, args=list(call.args))))
            return payload

        payload = await self._run(encode)
        raw = await self._run(lambda: self._multicall.functions.aggregate3(payload).call())

        results: list[ReadResult] = []
        for call, (success, data) in zip(calls, raw):
            if not success:
                results.append(ReadResult(ok=False, error=f"{call.fn} reverted"))
                continue
            try:
                value = decode_output(self._abi_for(call.token), call.fn, data)
            except Exception as e:
                logger.debug("Undecodable %s%s result: %s", call.fn, call.args, e)
                results.append(ReadResult(ok=False, error=f"{call.fn} undecodable: {e}"))
                continue
            results.append(ReadResult(ok=True, value=value))
        return results

    # ------------------ writes ------------------

    async def submit(self, fn: str, args: tuple = (), *, sender: str | None = None,
                     token: str | None = None) -> str:
        """
        Sign and broadcast *fn(args)*.  Returns the tx hash as 0x-hex.

        Gas estimation runs inside build_transaction(), so a call the program
        would revert surfaces here as TxValidationError with the revert reason.
        """
        if self._account is None:
            raise SignatureRejected("no signing key configured")
        signer = self._account.address
        if sender and sender.lower() != signer.lower():
            raise SignatureRejected(f"key for {signer} cannot sign for {sender}")

        contract = await self._run(lambda: self._contract(token))
        if self._confirm is not None and not self._confirm(fn, contract.address, tuple(args)):
            raise SignatureRejected(f"{fn} rejected by signer")

        func = await self._run(lambda: getattr(contract.functions, fn)(*args))
        async with self._nonce_lock:
            nonce = await self._run(
                lambda: self.w3.eth.get_transaction_count(signer, "pending")
            )
            tx = await self._run(
                lambda: func.build_transaction(
                    {"from": signer, "nonce": nonce, "chainId": self.chain_id}
                )
            )
            signed = self._account.sign_transaction(tx)
            tx_hash = await self._run(
                lambda: self.w3.eth.send_raw_transaction(signed.raw_transaction)
            )

        hex_hash = Web3.to_hex(tx_hash)
        logger.info("Submitted %s%s -> %s", fn, tuple(args), hex_hash)
        return hex_hash

    async def wait_for_receipt(self, tx_hash: str) -> Receipt:
        # The provider's own receipt timeout is the only bound on this wait.
        raw = await self._run(lambda: self.w3.eth.wait_for_transaction_receipt(tx_hash))
        status = int(raw.get("status", 1))
        block = int(raw.get("blockNumber", 0))
        receipt = Receipt(tx_hash=tx_hash, status=status, block_number=block)
        if status != 1:
            logger.warning("Tx %s reverted in block %s", tx_hash, block)
            raise TxReverted(f"transaction {tx_hash} reverted", tx_hash=tx_hash)
        logger.info("Tx %s confirmed in block %s", tx_hash, block)
        return receipt
