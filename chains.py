from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from errors import ConfigurationError


@dataclass(frozen=True)
class ChainProfile:
    """
    Everything the pipeline needs to know about one blockchain.

    The same ingestion pipeline runs for every chain; the differences
    (numéraire, DEX ordering, which holder addresses are not real holders,
    whether mint/freeze authorities exist at all) live here.
    """

    id: str
    name: str
    native_symbols: Tuple[str, ...]
    wrapped_native: str
    dexes: Tuple[str, ...]
    dex_priority: Tuple[str, ...] = ()
    burn_patterns: Tuple[str, ...] = ()
    program_accounts: Tuple[str, ...] = ()
    authority_checks: bool = False
    priority: int = 0
    block_explorer: str = ""
    dex_names: Dict[str, str] = field(default_factory=dict)

    def dex_rank(self, dex_id: Optional[str]) -> int:
        """
        Position of the DEX in the priority ordering; unknown DEXes sort last.
        """
        try:
            return self.dex_priority.index((dex_id or "").lower())
        except ValueError:
            return len(self.dex_priority)

    def is_numeraire(self, address: Optional[str], symbol: Optional[str]) -> bool:
        if address and address.lower() == self.wrapped_native.lower():
            return True
        return bool(symbol) and symbol.upper() in self.native_symbols


# ---------------------------------------------------------
# Known chains
# ---------------------------------------------------------
EVM_BURN_PATTERNS = (
    "0x000000000000000000000000000000000000dead",
    "0x0000000000000000000000000000000000000000",
)

CHAIN_PROFILES: Dict[str, ChainProfile] = {
    "solana": ChainProfile(
        id="solana",
        name="Solana",
        native_symbols=("SOL", "WSOL"),
        wrapped_native="So11111111111111111111111111111111111111112",
        dexes=("raydium", "orca", "meteora", "jupiter", "pumpswap"),
        dex_priority=("raydium", "orca", "meteora", "jupiter", "pumpswap"),
        burn_patterns=(
            "11111111111111111111111111111111",
            "1nc1nerator11111111111111111111111111111111",
            "DeadBeefDeadBeefDeadBeefDeadBeefDeadBeef",
        ),
        program_accounts=(
            "11111111111111111111111111111111",
            "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA",
            "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL",
        ),
        authority_checks=True,
        priority=3,
        block_explorer="https://solscan.io",
        dex_names={"raydium": "Raydium", "orca": "Orca", "meteora": "Meteora", "jupiter": "Jupiter", "pumpswap": "PumpSwap"},
    ),
    "ethereum": ChainProfile(
        id="ethereum",
        name="Ethereum",
        native_symbols=("ETH", "WETH"),
        wrapped_native="0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2",
        dexes=("uniswap", "sushiswap", "balancer"),
        dex_priority=("uniswap", "sushiswap", "balancer"),
        burn_patterns=EVM_BURN_PATTERNS,
        priority=10,
        block_explorer="https://etherscan.io",
        dex_names={"uniswap": "Uniswap", "sushiswap": "SushiSwap", "balancer": "Balancer"},
    ),
    "bsc": ChainProfile(
        id="bsc",
        name="Binance Smart Chain",
        native_symbols=("BNB", "WBNB"),
        wrapped_native="0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c",
        dexes=("pancakeswap", "biswap", "mdex"),
        dex_priority=("pancakeswap", "biswap", "mdex"),
        burn_patterns=EVM_BURN_PATTERNS,
        priority=9,
        block_explorer="https://bscscan.com",
        dex_names={"pancakeswap": "PancakeSwap", "biswap": "Biswap", "mdex": "MDEX"},
    ),
    "polygon": ChainProfile(
        id="polygon",
        name="Polygon",
        native_symbols=("MATIC", "WMATIC", "POL", "WPOL"),
        wrapped_native="0x0d500b1d8e8ef31e21c99d1db9a6444d3adf1270",
        dexes=("quickswap", "sushiswap", "uniswap"),
        dex_priority=("quickswap", "uniswap", "sushiswap"),
        burn_patterns=EVM_BURN_PATTERNS,
        priority=8,
        block_explorer="https://polygonscan.com",
        dex_names={"quickswap": "QuickSwap", "sushiswap": "SushiSwap", "uniswap": "Uniswap"},
    ),
    "arbitrum": ChainProfile(
        id="arbitrum",
        name="Arbitrum One",
        native_symbols=("ETH", "WETH"),
        wrapped_native="0x82af49447d8a07e3bd95bd0d56f35241523fbab1",
        dexes=("uniswap", "sushiswap", "camelot"),
        dex_priority=("uniswap", "camelot", "sushiswap"),
        burn_patterns=EVM_BURN_PATTERNS,
        priority=7,
        block_explorer="https://arbiscan.io",
        dex_names={"uniswap": "Uniswap", "sushiswap": "SushiSwap", "camelot": "Camelot"},
    ),
    "base": ChainProfile(
        id="base",
        name="Base",
        native_symbols=("ETH", "WETH"),
        wrapped_native="0x4200000000000000000000000000000000000006",
        dexes=("uniswap", "aerodrome", "baseswap"),
        dex_priority=("uniswap", "aerodrome", "baseswap"),
        burn_patterns=EVM_BURN_PATTERNS,
        priority=6,
        block_explorer="https://basescan.org",
        dex_names={"uniswap": "Uniswap", "aerodrome": "Aerodrome", "baseswap": "BaseSwap"},
    ),
}


def get_chain_profile(chain_id: str) -> ChainProfile:
    profile = CHAIN_PROFILES.get((chain_id or "").lower())
    if profile is None:
        raise ConfigurationError(f"Unsupported chain: {chain_id}")
    return profile


def get_supported_chains(raw: Optional[str]) -> List[str]:
    """
    Parse a comma-separated chain list (e.g. SUPPORTED_CHAINS) into ids.
    """
    if not raw:
        return ["solana"]
    return [c.strip().lower() for c in raw.split(",") if c.strip()]


def chains_by_priority(chain_ids: Iterable[str]) -> List[str]:
    """
    Highest-priority chains first; unknown ids go last in their given order.
    """
    ids = list(chain_ids)
    return sorted(
        ids,
        key=lambda c: -(CHAIN_PROFILES[c].priority if c in CHAIN_PROFILES else -1),
    )


def dex_info(chain_id: str, dex_id: str) -> Dict[str, object]:
    profile = get_chain_profile(chain_id)
    dex = (dex_id or "").lower()
    return {
        "id": dex,
        "name": profile.dex_names.get(dex, dex_id),
        "chain": profile.id,
        "supported": dex in profile.dexes,
        "priority": profile.dex_rank(dex) + 1,
    }


def profile_for(chain_id: str) -> ChainProfile:
    """
    Like get_chain_profile, but falls back to a bare profile (no burn lists,
    no authority checks) for chains without one.
    """
    chain = (chain_id or "").lower()
    return CHAIN_PROFILES.get(chain) or ChainProfile(
        id=chain,
        name=chain_id or "unknown",
        native_symbols=(),
        wrapped_native="",
        dexes=(),
    )
