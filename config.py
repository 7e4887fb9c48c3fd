"""
config.py -- All tunable parameters for the ROSCA circle client.

Every value here is loaded from environment variables so you can point the
client at a different network (or a local .env file) without touching code.

HOW TO READ THIS FILE:
  Each config value has a comment explaining:
    1. What it controls
    2. What happens if you raise/lower it
    3. The default and why it was chosen
"""

import os
import json as _json
import logging

# ---------------------------------------------------------------------------
# Helper: read an env var with a typed default
# ---------------------------------------------------------------------------

def _env(name, default, cast=str):
    """
    Read an environment variable and cast it to the right type.
    If the var is missing or empty, return *default* (already the right type).
    """
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        # Special handling for booleans -- "true"/"1"/"yes" are all truthy
        if cast is bool:
            return raw.strip().lower() in ("true", "1", "yes")
        return cast(raw)
    except (ValueError, TypeError):
        return default


# ---------------------------------------------------------------------------
# Network & credentials  (NEVER hard-code the key -- always use env vars)
# ---------------------------------------------------------------------------

# JSON-RPC endpoint of the chain hosting the circle program.
RPC_URL: str = _env("RPC_URL", "")

# Chain id used when signing transactions.  50312 = Somnia testnet.
CHAIN_ID: int = _env("CHAIN_ID", 50312, int)

# Address of the deployed circle program (RoscaSecure).
ROSCA_CONTRACT_ADDRESS: str = _env(
    "ROSCA_CONTRACT_ADDRESS", "0x1234567890abcdef1234567890abcdef12345678"
)

# Multicall3 is deployed at the same address on nearly every EVM chain.
# Batched snapshot reads go through its aggregate3() entry point.
MULTICALL_ADDRESS: str = _env(
    "MULTICALL_ADDRESS", "0xcA11bde05977b3631167028862bE2a173976CA11"
)

# Hex private key of the member account.  Only needed for live mode.
PRIVATE_KEY: str = _env("PRIVATE_KEY", "")

# Telegram bot token and chat id.  If set, every circle notification is
# mirrored to the chat as well as the log.
TELEGRAM_BOT_TOKEN: str = _env("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID: str = _env("TELEGRAM_CHAT_ID", "")

# ---------------------------------------------------------------------------
# DRY RUN -- the single capability switch
# ---------------------------------------------------------------------------

# When True (the default!), the client:
#   - Runs against an in-memory simulated ledger and token
#   - Mines a block for every confirmation it waits on
#   - Logs every submission with a [DRY RUN] prefix
#
# Set to False once RPC_URL, ROSCA_CONTRACT_ADDRESS and PRIVATE_KEY point at
# a real deployment.
DRY_RUN: bool = _env("DRY_RUN", True, bool)

# Address used as the caller in dry-run mode when no PRIVATE_KEY is set.
DRY_RUN_ADDRESS: str = _env(
    "DRY_RUN_ADDRESS", "0x00000000000000000000000000000000000000d1"
)

# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

# Tokens accepted for contributions.  Amounts on the ledger are integers in
# the token's smallest unit; they are divided by 10**decimals for display.
SUPPORTED_TOKENS: dict = {
    "USDC": {
        "address": "0xA0b86a33E6417c2A35A16ABDB8aD10b83cB21de0",
        "decimals": 6,
        "symbol": "USDC",
        "name": "USD Coin",
    },
    "USDT": {
        "address": "0x2A17e4e4d8e6798e0D3F55E4D8a8a3e7c8F7A9B0",
        "decimals": 6,
        "symbol": "USDT",
        "name": "Tether USD",
    },
    "DAI": {
        "address": "0x3A17e4e4d8e6798e0D3F55E4D8a8a3e7c8F7A9B1",
        "decimals": 18,
        "symbol": "DAI",
        "name": "Dai Stablecoin",
    },
}

# Optional JSON override, e.g. {"USDC": {"address": "0x..", "decimals": 6, ...}}
_tokens_override = _env("SUPPORTED_TOKENS_JSON", "")
if _tokens_override:
    try:
        SUPPORTED_TOKENS.update(_json.loads(_tokens_override))
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring invalid SUPPORTED_TOKENS_JSON")

# Decimals assumed for a token address that is not in SUPPORTED_TOKENS.
DEFAULT_TOKEN_DECIMALS: int = _env("DEFAULT_TOKEN_DECIMALS", 6, int)


def token_by_address(address: str) -> dict | None:
    """Look up a SUPPORTED_TOKENS entry by address (case-insensitive)."""
    needle = str(address or "").lower()
    for token in SUPPORTED_TOKENS.values():
        if token["address"].lower() == needle:
            return token
    return None


def token_decimals(address: str) -> int:
    token = token_by_address(address)
    if token is None:
        return DEFAULT_TOKEN_DECIMALS
    return int(token["decimals"])


# ---------------------------------------------------------------------------
# Circle limits & presets
# ---------------------------------------------------------------------------

# Checked locally before createCircle is submitted.  Contribution bounds are
# in whole tokens, period bounds in seconds.
CIRCLE_LIMITS: dict = {
    "min_members": 2,
    "max_members": 100,
    "min_period_sec": 60 * 60,          # 1 hour for testing
    "max_period_sec": 90 * 24 * 60 * 60,
    "min_contribution": 1,
    "max_contribution": 10000,
    "min_collateral_factor": 1,
    "max_collateral_factor": 10,
}

PERIOD_PRESETS: dict = {
    "weekly": 7 * 24 * 60 * 60,
    "biweekly": 14 * 24 * 60 * 60,
    "monthly": 30 * 24 * 60 * 60,
    "quarterly": 90 * 24 * 60 * 60,
}

DEFAULT_CIRCLE_VALUES: dict = {
    "contribution_amount": "100",
    "period_duration": PERIOD_PRESETS["monthly"],
    "max_members": 10,
    "collateral_factor": 2,
    "insurance_fee": "5",
    "token": SUPPORTED_TOKENS["USDC"]["address"],
}

# How the collateral factor is applied to the contribution amount.
# "multiplier" = contribution * factor        (factor 2 -> 2x contribution)
# "percent"    = contribution * factor / 100  (factor 150 -> 1.5x contribution)
# Must match the deployed program or joins will revert on the transfer.
COLLATERAL_MODE: str = _env("COLLATERAL_MODE", "multiplier")

# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------

# Seconds a completed flow stays visible before its local state resets.
FLOW_SUCCESS_RESET_SEC: float = _env("FLOW_SUCCESS_RESET_SEC", 3.0, float)

# Seconds a failed flow stays in the error step before resetting.
FLOW_ERROR_RESET_SEC: float = _env("FLOW_ERROR_RESET_SEC", 5.0, float)

# How often the block height is sampled.  Snapshots are only re-read when
# the height actually changes, so an idle chain costs one cheap call per tick.
BLOCK_POLL_INTERVAL_SEC: float = _env("BLOCK_POLL_INTERVAL_SEC", 2.0, float)

# Round countdown tick.
TIMER_TICK_SEC: float = _env("TIMER_TICK_SEC", 1.0, float)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

# Python log level.  DEBUG shows every ledger call; INFO is normal operations.
LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")


# ---------------------------------------------------------------------------
# Startup banner -- printed when the client launches
# ---------------------------------------------------------------------------

def print_banner():
    """Print a summary of the active settings so you know what's running."""
    mode = "DRY RUN (simulated ledger)" if DRY_RUN else "LIVE (on-chain)"
    lines = [
        "",
        "=" * 60,
        "  ROSCA CIRCLE CLIENT",
        "=" * 60,
        f"  Mode:            {mode}",
        f"  Chain id:        {CHAIN_ID}",
        f"  RPC:             {RPC_URL or 'NOT SET'}",
        f"  Circle program:  {ROSCA_CONTRACT_ADDRESS}",
        f"  Tokens:          {', '.join(sorted(SUPPORTED_TOKENS))}",
        f"  Collateral mode: {COLLATERAL_MODE}",
        f"  Block poll:      {BLOCK_POLL_INTERVAL_SEC:.1f}s",
        f"  Log level:       {LOG_LEVEL}",
        f"  Signing key:     {'configured' if PRIVATE_KEY else 'NOT SET'}",
        f"  Telegram:        {'configured' if TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID else 'NOT SET'}",
        "=" * 60,
        "",
    ]
    print("\n".join(lines))
