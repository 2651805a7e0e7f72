"""Aptos DeFi protocol registry.

Contract addresses, liquid staking token types and Move entry function
names for the protocols the rebalancer can allocate into.
"""

from typing import Dict, Optional

APTOS_COIN_TYPE = "0x1::aptos_coin::AptosCoin"
OCTAS_PER_APT = 100_000_000

PROTOCOL_ADDRESSES: Dict[str, str] = {
    # Liquid staking
    "amnis": "0x111ae3e5bc816a5e63c2da97d0aa3886519e0cd5e4b046659fa35796bd11542a",
    "thala": "0xfaf4e633ae9eb31366c9ca24214231760926576c7b625313b3688b5e900731f6",
    "tortuga": "0x952c1b1fc8eb75ee80f432c9d0a84fcda1d5c7481501a7eca9199f1596a60b53",
    "ditto": "0xd11107bdf0d6d7040c6c0bfbdecb6545191fdf13e8d8d259952f53e1713f61b5",
    # Lending
    "aries": "0x9770fa9c725cbd97eb50b2be5f7416efdfd1f1554beb0750d4dae4c64e860da3",
    "echelon": "0xf8197c9fa1a397568a47b7a6c5a9b09fa97c8f29f9dcc347232c22e3b24b1f09",
    "echo": "0xeab7ea4d635b6b6add79d5045c4a45d8148d88287b1cfa1c3b6a4b56f46839ed",
    # DEXes / AMMs
    "pancakeswap": "0xc7efb4076dbe143cbcd98cfaaa929ecfc8f299203dfff63b95ccb6bfe19850fa",
    "liquidswap": "0x190d44266241744264b964a37b8f09863167a12d3e70cda39376cfb4e3561e12",
    "cetus": "0x27156bd56eb5637b9adde4d915b596f92d2f28f0ade2eaef48fa73e360e4e8a6",
}

# symbol -> (protocol, coin type)
LIQUID_STAKING_TOKENS: Dict[str, tuple] = {
    "stAPT": ("amnis", f"{PROTOCOL_ADDRESSES['amnis']}::staking::StakedAptos"),
    "sthAPT": ("thala", f"{PROTOCOL_ADDRESSES['thala']}::stake::StakedAptos"),
    "tAPT": ("tortuga", f"{PROTOCOL_ADDRESSES['tortuga']}::stapt_token::StakedApt"),
    "dAPT": ("ditto", f"{PROTOCOL_ADDRESSES['ditto']}::ditto::DittoAPT"),
}

# Resource type fragments that identify LP tokens
LP_TOKEN_MARKERS = ("LiquidityToken", "LpToken", "PancakeLP")

PROTOCOL_CATEGORIES: Dict[str, str] = {
    "amnis": "staking",
    "thala": "staking",
    "tortuga": "staking",
    "ditto": "staking",
    "aries": "lending",
    "echelon": "lending",
    "echo": "lending",
    "pancakeswap": "liquidity",
    "liquidswap": "liquidity",
    "cetus": "liquidity",
}

# Relative protocol risk, 1 (safest) to 5
PROTOCOL_RISK_RATINGS: Dict[str, float] = {
    "amnis": 2.0,
    "thala": 2.0,
    "tortuga": 2.5,
    "ditto": 2.5,
    "aries": 3.2,
    "echelon": 3.2,
    "echo": 3.2,
    "pancakeswap": 4.0,
    "liquidswap": 4.0,
    "cetus": 4.0,
}

DEFAULT_RISK_RATING = 3.0


class OperationType:
    """Rebalance operation types."""
    STAKE = "stake"
    UNSTAKE = "unstake"
    LEND = "lend"
    WITHDRAW = "withdraw"
    ADD_LIQUIDITY = "addLiquidity"
    REMOVE_LIQUIDITY = "removeLiquidity"


_ROUTER_FUNCTIONS = {
    OperationType.ADD_LIQUIDITY: "::router::add_liquidity",
    OperationType.REMOVE_LIQUIDITY: "::router::remove_liquidity",
}

FUNCTION_MAPPINGS: Dict[str, Dict[str, str]] = {
    "amnis": {
        OperationType.STAKE: "::staking::stake",
        OperationType.UNSTAKE: "::staking::unstake",
        OperationType.LEND: "::lending::supply",
        OperationType.WITHDRAW: "::lending::withdraw",
        **_ROUTER_FUNCTIONS,
    },
    "thala": {
        OperationType.STAKE: "::staking::stake_apt",
        OperationType.UNSTAKE: "::staking::unstake_apt",
        OperationType.LEND: "::lending::supply_apt",
        OperationType.WITHDRAW: "::lending::withdraw_apt",
        **_ROUTER_FUNCTIONS,
    },
    "tortuga": {
        OperationType.STAKE: "::staking::stake_apt",
        OperationType.UNSTAKE: "::staking::unstake_apt",
    },
    "ditto": {
        OperationType.STAKE: "::staking::stake",
        OperationType.UNSTAKE: "::staking::unstake",
    },
    "echo": {
        OperationType.LEND: "::lending::supply",
        OperationType.WITHDRAW: "::lending::withdraw",
    },
    "pancakeswap": dict(_ROUTER_FUNCTIONS),
    "liquidswap": dict(_ROUTER_FUNCTIONS),
}

GENERIC_FUNCTIONS: Dict[str, str] = {
    OperationType.STAKE: "::staking::stake",
    OperationType.UNSTAKE: "::staking::unstake",
    OperationType.LEND: "::lending::supply",
    OperationType.WITHDRAW: "::lending::withdraw",
    **_ROUTER_FUNCTIONS,
}


def get_contract_address(protocol: str) -> Optional[str]:
    """Contract address for a protocol, or None if unknown."""
    return PROTOCOL_ADDRESSES.get(protocol.lower())


def get_risk_rating(protocol: str) -> float:
    return PROTOCOL_RISK_RATINGS.get(protocol.lower(), DEFAULT_RISK_RATING)


def get_function_name(protocol: str, operation_type: str) -> str:
    """Move function suffix for a protocol operation.

    Falls back to the generic mapping, then to ``::<op>::execute``.
    """
    specific = FUNCTION_MAPPINGS.get(protocol.lower(), {})
    if operation_type in specific:
        return specific[operation_type]
    return GENERIC_FUNCTIONS.get(operation_type, f"::{operation_type.lower()}::execute")
