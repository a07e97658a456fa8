"""Shared constants for Solana launch tracking."""

from datetime import datetime, timezone

from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID


# Utility function to get timezone-aware UTC datetime
def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


PUMP_FUN_PROGRAM_ID = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"

SPL_TOKEN_PROGRAM_IDS: frozenset[str] = frozenset(
    {str(TOKEN_PROGRAM_ID), str(TOKEN_2022_PROGRAM_ID)}
)

# Swap venues and aggregators. Their presence marks a transaction as a trade.
DEX_PROGRAM_IDS: dict[str, str] = {
    PUMP_FUN_PROGRAM_ID: "pump.fun",
    "JUP4Fb2cqiRUcaTHdrPC8h2gNsA2ETXiPDD33WcGuJB": "jupiter-v4",
    "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4": "jupiter-v6",
    "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc": "orca-whirlpool",
    "RVKd61ztZW9GUwhRbbLoYVRE5Xf1B2tVscKqwZqXgEr": "raydium-v2",
    "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8": "raydium-amm-v4",
    "CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C": "raydium-cpmm",
    "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK": "raydium-clmm",
    "PhoeNiXZ8ByJGLkxNfZRnkUfjvmuYqLR89jjFHGqdXY": "phoenix",
    "srmqPvymJeFKQ4zGQed1GFppgkRHL9kaELCbyksJtPX": "openbook",
    "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin": "serum-v3",
}

# Pool programs whose deposits and withdrawals are liquidity changes rather than trades.
LIQUIDITY_PROGRAM_IDS: dict[str, str] = {
    "LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo": "meteora-dlmm",
    "Eo7WjKq67rjJQSZxS6z3YkapzY3eMj6Xy8X5EQVn5UaB": "meteora-damm-v1",
    "cpamdpZCGKUy5JxQXB4dcpGPiikHawvSWAd6mEn1sGG": "meteora-damm-v2",
}

# Hosts known to run rate-limited public RPC nodes.
PUBLIC_RPC_HOSTS: tuple[str, ...] = (
    "api.mainnet-beta.solana.com",
    "solana-api.projectserum.com",
    "rpc.ankr.com",
)

__all__ = [
    "utc_now",
    "PUMP_FUN_PROGRAM_ID",
    "SYSTEM_PROGRAM_ID",
    "SPL_TOKEN_PROGRAM_IDS",
    "DEX_PROGRAM_IDS",
    "LIQUIDITY_PROGRAM_IDS",
    "PUBLIC_RPC_HOSTS",
    "TOKEN_PROGRAM_ID",
    "TOKEN_2022_PROGRAM_ID",
]
