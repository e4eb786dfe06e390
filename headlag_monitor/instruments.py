"""
Monitored instruments and chain-name normalization.

Every provider names chains its own way (Mobula "evm:8453" / "Base", Codex
numeric network ids, GeckoTerminal network slugs). Metrics are always
labelled with the normalized names below.
"""

from typing import Dict, List, Optional, Tuple

from headlag_monitor.models import MonitoredInstrument

SOLANA_NETWORK_ID = 1399811149

# networkId (Codex) -> normalized chain name
CHAIN_BY_NETWORK_ID: Dict[int, str] = {
    1: "ethereum",
    SOLANA_NETWORK_ID: "solana",
    8453: "base",
    56: "bnb",
    42161: "arbitrum",
    143: "monad",
}

# Mobula / Pulse chain ids and display names -> normalized chain name
CHAIN_BY_BLOCKCHAIN: Dict[str, str] = {
    "evm:1": "ethereum",
    "Ethereum": "ethereum",
    "solana": "solana",
    "solana:solana": "solana",
    "Solana": "solana",
    "evm:8453": "base",
    "Base": "base",
    "base": "base",
    "evm:56": "bnb",
    "BSC": "bnb",
    "bnb": "bnb",
    "BNB Smart Chain": "bnb",
    "BNB Smart Chain (BEP20)": "bnb",
    "evm:42161": "arbitrum",
    "Arbitrum": "arbitrum",
    "evm:143": "monad",
    "Monad": "monad",
    "monad": "monad",
}

# EVM chain id -> normalized name, used by the chain-head pollers
CHAIN_BY_EVM_CHAIN_ID: Dict[int, str] = {
    1: "ethereum",
    8453: "base",
    56: "bnb",
    42161: "arbitrum",
    143: "monad",
}

HEAD_LAG_POOLS: Tuple[MonitoredInstrument, ...] = (
    MonitoredInstrument(
        label="ETH/USDC Uniswap V3",
        chain="ethereum",
        address="0x88e6a0c2ddd26feeb64f039a2c41296fcb3f5640",
        blockchain="evm:1",
        network_id=1,
    ),
    MonitoredInstrument(
        label="SOL/USDC Raydium",
        chain="solana",
        address="7qbRF6YsyGuLUVs6Y1q64bdVrfe4ZcUUz1JRdoVNUJnm",
        blockchain="solana",
        network_id=SOLANA_NETWORK_ID,
    ),
    MonitoredInstrument(
        label="WETH/USDC Base",
        chain="base",
        address="0x4c36388be6f416a29c8d8eee81c771ce6be14b18",
        blockchain="evm:8453",
        network_id=8453,
    ),
    MonitoredInstrument(
        label="WBNB/BUSD PancakeSwap",
        chain="bnb",
        address="0x58f876857a02d6762e0101bb5c46a8c1ed44dc16",
        blockchain="evm:56",
        network_id=56,
    ),
    MonitoredInstrument(
        label="WETH/USDC Arbitrum",
        chain="arbitrum",
        address="0xc6962004f452be9203591991d15f6b388e09e8d0",
        blockchain="evm:42161",
        network_id=42161,
    ),
)

# GeckoTerminal addresses its ActionCable channels by an internal pool id.
GECKO_POOLS: Tuple[MonitoredInstrument, ...] = (
    MonitoredInstrument(label="ETH/USDC Uniswap V3", chain="ethereum",
                        address="147971598", blockchain="eth"),
    MonitoredInstrument(label="SOL/USDC Raydium", chain="solana",
                        address="162715608", blockchain="solana"),
    MonitoredInstrument(label="WETH/USDC Base", chain="base",
                        address="162840764", blockchain="base"),
    MonitoredInstrument(label="WBNB/BUSD PancakeSwap", chain="bnb",
                        address="24", blockchain="bsc"),
    MonitoredInstrument(label="WETH/USDC Arbitrum", chain="arbitrum",
                        address="162634438", blockchain="arbitrum"),
)

# Chains watched for new pool / token creation
PULSE_CHAINS: Tuple[str, ...] = (
    "solana:solana",
    "evm:1",
    "evm:8453",
    "evm:56",
    "evm:42161",
)

LAUNCHPAD_NETWORK_IDS: Tuple[int, ...] = (
    SOLANA_NETWORK_ID, 1, 8453, 56, 42161)


def chain_from_network_id(network_id: Optional[int]) -> str:
    if network_id is None:
        return "unknown"
    return CHAIN_BY_NETWORK_ID.get(network_id, f"network_{network_id}")


def chain_from_blockchain(blockchain: str) -> str:
    return CHAIN_BY_BLOCKCHAIN.get(blockchain, blockchain)


def chain_id_from_network_id(network_id: int) -> str:
    """Codex network id -> the "evm:N" / "solana:solana" form metadata checks take."""
    if network_id == SOLANA_NETWORK_ID:
        return "solana:solana"
    return f"evm:{network_id}"


def network_id_from_chain_id(chain_id: str) -> int:
    """Inverse of chain_id_from_network_id; 0 for chains Codex does not index."""
    if chain_id in ("solana", "solana:solana"):
        return SOLANA_NETWORK_ID
    if chain_id.startswith("evm:"):
        try:
            return int(chain_id[4:])
        except ValueError:
            return 0
    return 0


def is_solana(chain_id: str) -> bool:
    return chain_id in ("solana", "solana:solana")


def find_by_address(instruments: List[MonitoredInstrument], address: str) -> Optional[MonitoredInstrument]:
    wanted = address.lower()
    for inst in instruments:
        if inst.address.lower() == wanted:
            return inst
    return None
