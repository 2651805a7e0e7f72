"""Prompt templates for strategy generation."""

import json
from typing import Any, Dict, List

from app.services.data.market_data import MarketOverview, ProtocolYield
from app.services.recommendation.allocation import RiskProfile

RISK_PROFILE_DESCRIPTIONS = {
    RiskProfile.CONSERVATIVE: (
        "Low risk tolerance, prioritizing capital preservation over high returns. "
        "Focus on established protocols and more secure staking options."
    ),
    RiskProfile.BALANCED: (
        "Moderate risk tolerance, seeking a balance between growth and security. "
        "Mix of staking and lending strategies across multiple protocols."
    ),
    RiskProfile.AGGRESSIVE: (
        "High risk tolerance, prioritizing maximum returns. Can include newer protocols, "
        "liquidity provision, and higher-yield opportunities."
    ),
}

RESPONSE_SCHEMA = """{
  "title": "%(title_hint)s",
  "summary": "Brief summary of the strategy (2-3 sentences)",
  "allocation": [
    {
      "protocol": "protocol name",
      "product": "specific product (e.g., Liquid Staking, Money Market)",
      "percentage": number (0-100, whole numbers, must sum to 100),
      "expectedApr": number (realistic APR value based on current data)
    }
  ],
  "totalApr": number (weighted average of allocation APRs),
  "rationale": "%(rationale_hint)s",
  "risks": ["Array of specific risks (3-5 items)"],
  "mitigations": ["Array of risk mitigation strategies (3-5 items)"],
  "steps": ["%(steps_hint)s"]
}"""


def format_protocols(yields: List[ProtocolYield]) -> str:
    """One JSON block per protocol, keyed by yield category."""
    grouped: Dict[str, Dict[str, Any]] = {}
    for y in yields:
        grouped.setdefault(y.protocol, {})[y.category] = {
            "apr": y.apr,
            "apy": y.apy,
            "tvl_usd": y.tvl_usd,
            "product": y.product,
        }
    return "\n\n".join(
        f"{name}: {json.dumps(data, indent=2)}" for name, data in sorted(grouped.items())
    )


def format_market(overview: MarketOverview, include_tvl: bool = True) -> str:
    apt = overview.apt
    info: Dict[str, Any] = {
        "aptos": {
            "price_usd": apt.price_usd if apt else None,
            "change_24h_pct": apt.change_24h_pct if apt else None,
        },
        "sentiment": overview.sentiment,
    }
    if include_tvl:
        info["total_tvl_usd"] = overview.protocol_rates.total_tvl_usd
    return json.dumps(info, indent=2)


def build_general_prompt(
    yields: List[ProtocolYield],
    overview: MarketOverview,
    risk_profile: RiskProfile,
) -> str:
    schema = RESPONSE_SCHEMA % {
        "title_hint": "Strategy title that reflects the approach",
        "rationale_hint": "Explanation of strategy based on market conditions (3-4 sentences)",
        "steps_hint": "Implementation steps for users (4-6 steps)",
    }
    return f"""As an AI financial advisor specialized in Aptos DeFi, analyze the following real-time data to provide a general best investment strategy for users with a {risk_profile.value} risk profile.

RISK PROFILE DEFINITION: {RISK_PROFILE_DESCRIPTIONS[risk_profile]}

CURRENT PROTOCOLS DATA:
{format_protocols(yields)}

MARKET OVERVIEW:
{format_market(overview)}

Provide a JSON response with:
{schema}

IMPORTANT GUIDELINES:
1. Allocations must sum to exactly 100%
2. Use only the protocols provided in the data
3. APR values must be realistic and based on current data
4. For conservative profiles, focus on established protocols
5. For aggressive profiles, can include higher yield opportunities
6. For balanced profiles, mix staking and lending protocols
7. Consider market sentiment and trends in your recommendations
8. Provide specific, actionable steps for implementation
9. Account for protocol-specific risks in your risk assessment"""


def build_personalized_prompt(
    yields: List[ProtocolYield],
    overview: MarketOverview,
    risk_profile: RiskProfile,
    current_allocation: List[Dict[str, Any]],
    total_value_usd: float,
    amount: float,
    preserve_staked_positions: bool,
) -> str:
    schema = RESPONSE_SCHEMA % {
        "title_hint": "Personalized strategy title",
        "rationale_hint": "Explanation of strategy based on portfolio and market conditions (3-4 sentences)",
        "steps_hint": "Implementation steps for this specific portfolio (5-7 steps)",
    }
    if preserve_staked_positions:
        preference = "User prefers to preserve currently staked positions."
        staked_guideline = "Incorporate existing staked positions into the new strategy where possible."
    else:
        preference = "User is open to rebalancing all positions."
        staked_guideline = "Feel free to recommend a complete rebalancing if optimal."

    return f"""As an AI financial advisor specialized in Aptos DeFi, provide a personalized investment strategy for a user with the following profile and portfolio data:

INVESTMENT AMOUNT: {amount} APT
TOTAL PORTFOLIO VALUE: ${total_value_usd:.2f}
RISK PROFILE: {risk_profile.value}
PREFERENCES: {preference}

CURRENT PORTFOLIO ALLOCATION:
{json.dumps(current_allocation, indent=2)}

AVAILABLE PROTOCOLS DATA:
{format_protocols(yields)}

MARKET OVERVIEW:
{format_market(overview, include_tvl=False)}

Provide a JSON response with:
{schema}

IMPORTANT GUIDELINES:
1. Allocations must sum to exactly 100%
2. Use only the protocols provided in the data
3. APR values must be realistic and based on current data
4. Consider the user's current allocation when making recommendations
5. Provide specific steps for transitioning from current allocation to recommended allocation
6. {staked_guideline}
7. Account for the specific amount the user wants to invest ({amount} APT)
8. Recommended APR should align with the risk profile: conservative (lower), balanced (moderate), aggressive (higher)
9. Consider market conditions and trends when making recommendations"""
