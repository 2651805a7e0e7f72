"""Allocation models, LLM output parsing and post-processing.

LLM text is reduced to a JSON object, validated into LLMRecommendation,
then post-processed: unknown protocols are dropped, percentages are
renormalized to whole numbers summing to exactly 100, and total APR is
recomputed from the allocation.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RiskProfile(str, Enum):
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


class RecommendationSource(str, Enum):
    AI = "ai"
    FALLBACK = "fallback"


class RecommendationType(str, Enum):
    GENERAL = "general"
    PERSONALIZED = "personalized"


class RecommendationParseError(ValueError):
    """LLM output did not contain a usable JSON object."""


def parse_risk_profile(value: Any) -> RiskProfile:
    """Coerce a string to RiskProfile, raising ValueError when unknown."""
    if isinstance(value, RiskProfile):
        return value
    try:
        return RiskProfile(str(value).lower())
    except ValueError:
        raise ValueError(
            f"Invalid risk profile {value!r}; expected one of "
            f"{', '.join(p.value for p in RiskProfile)}"
        )


# ==================== Data model ====================

@dataclass
class AllocationEntry:
    """One line of a target allocation. Percentages are in percent."""
    protocol: str
    product: str
    percentage: float
    expected_apr: float
    amount: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol,
            "product": self.product,
            "percentage": self.percentage,
            "expected_apr": self.expected_apr,
            "amount": self.amount,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AllocationEntry":
        return cls(
            protocol=data["protocol"],
            product=data.get("product") or "",
            percentage=float(data["percentage"]),
            expected_apr=float(data.get("expected_apr") or 0),
            amount=float(data["amount"]) if data.get("amount") is not None else None,
        )


@dataclass
class Recommendation:
    """Target allocation plus the narrative around it."""
    allocation: List[AllocationEntry]
    title: str
    summary: str
    total_apr: float
    rationale: str
    risks: List[str]
    mitigations: List[str]
    steps: List[str]
    risk_profile: RiskProfile
    source: RecommendationSource
    type: RecommendationType
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    wallet_address: Optional[str] = None
    total_investment: Optional[float] = None
    current_allocation: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allocation": [a.to_dict() for a in self.allocation],
            "title": self.title,
            "summary": self.summary,
            "total_apr": self.total_apr,
            "rationale": self.rationale,
            "risks": self.risks,
            "mitigations": self.mitigations,
            "steps": self.steps,
            "risk_profile": self.risk_profile.value,
            "source": self.source.value,
            "type": self.type.value,
            "generated_at": self.generated_at.isoformat(),
            "wallet_address": self.wallet_address,
            "total_investment": self.total_investment,
            "current_allocation": self.current_allocation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recommendation":
        return cls(
            allocation=[AllocationEntry.from_dict(a) for a in data.get("allocation", [])],
            title=data["title"],
            summary=data["summary"],
            total_apr=float(data["total_apr"]),
            rationale=data["rationale"],
            risks=list(data.get("risks", [])),
            mitigations=list(data.get("mitigations", [])),
            steps=list(data.get("steps", [])),
            risk_profile=RiskProfile(data["risk_profile"]),
            source=RecommendationSource(data["source"]),
            type=RecommendationType(data["type"]),
            generated_at=datetime.fromisoformat(data["generated_at"]),
            wallet_address=data.get("wallet_address"),
            total_investment=data.get("total_investment"),
            current_allocation=list(data.get("current_allocation", [])),
        )


# ==================== LLM output ====================

class LLMAllocationItem(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    protocol: str
    product: Optional[str] = ""
    percentage: float = 0.0
    expected_apr: float = Field(default=0.0, alias="expectedApr")

    @field_validator("product", mode="before")
    @classmethod
    def product_to_str(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("percentage", "expected_apr", mode="before")
    @classmethod
    def number_or_zero(cls, v: Any) -> float:
        if v is None or v == "":
            return 0.0
        if isinstance(v, str):
            v = v.strip().rstrip("%")
        return float(v)


class LLMRecommendation(BaseModel):
    """Shape of the JSON object the LLM is asked to return."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    title: Optional[str] = None
    summary: Optional[str] = None
    allocation: List[LLMAllocationItem] = Field(default_factory=list)
    total_apr: Optional[float] = Field(default=None, alias="totalApr")
    rationale: Optional[str] = None
    risks: Optional[List[str]] = None
    mitigations: Optional[List[str]] = None
    steps: Optional[List[str]] = None

    @field_validator("allocation", mode="before")
    @classmethod
    def ensure_list(cls, v: Any) -> List[Any]:
        if v is None:
            return []
        if isinstance(v, list):
            return v
        raise ValueError("allocation must be a list")

    @field_validator("risks", "mitigations", "steps", mode="before")
    @classmethod
    def list_or_none(cls, v: Any) -> Optional[List[str]]:
        if isinstance(v, list):
            return [str(item) for item in v]
        return None


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json(text: str) -> Dict[str, Any]:
    """Pull a JSON object out of LLM text.

    Accepts ```json fences, bare fences, raw JSON, and JSON wrapped in prose.

    Raises:
        RecommendationParseError: If no object can be decoded
    """
    if not text or not text.strip():
        raise RecommendationParseError("Empty LLM response")

    candidates = [m.group(1).strip() for m in _FENCE_RE.finditer(text)]
    candidates.append(text.strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise RecommendationParseError("Could not parse LLM response as a JSON object")


# ==================== Post-processing ====================

def _round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_allocation(entries: List[AllocationEntry]) -> List[AllocationEntry]:
    """Scale percentages to whole numbers summing to exactly 100.

    Entries with a zero or negative percentage are dropped first. The
    rounding remainder goes to the last entry, or to the largest one when
    the last entry cannot absorb it. Allocations already summing to 100
    are left untouched. Returns an empty list when nothing positive is left.
    """
    entries = [e for e in entries if e.percentage > 0]
    if not entries:
        return []

    total = sum(e.percentage for e in entries)
    if total == 100:
        return entries

    factor = 100 / total
    for entry in entries:
        entry.percentage = _round_half_up(entry.percentage * factor)

    remainder = 100 - sum(e.percentage for e in entries)
    if remainder:
        target = entries[-1]
        if target.percentage + remainder < 0:
            target = max(entries, key=lambda e: e.percentage)
        target.percentage += remainder
    return [e for e in entries if e.percentage > 0]


def weighted_apr(entries: Iterable[AllocationEntry]) -> float:
    return round(sum(e.expected_apr * e.percentage / 100 for e in entries), 2)


DEFAULT_RISKS = [
    "Smart contract risk",
    "Market volatility",
    "Protocol-specific risks",
]

DEFAULT_MITIGATIONS = [
    "Diversification across multiple protocols",
    "Focus on established protocols with security audits",
    "Regular portfolio monitoring",
]

DEFAULT_STEPS = [
    "Connect your wallet to CompounDefi",
    "Review and approve the recommended allocation",
    "Execute the strategy with one click",
    "Monitor performance regularly",
]


def post_process(
    raw: LLMRecommendation,
    known_protocols: Iterable[str],
    risk_profile: RiskProfile,
    rec_type: RecommendationType,
    amount: Optional[float] = None,
) -> Recommendation:
    """Turn validated LLM output into a Recommendation.

    Raises:
        RecommendationParseError: If nothing is left after filtering
    """
    known = {p.lower() for p in known_protocols}
    entries = [
        AllocationEntry(
            protocol=item.protocol.lower(),
            product=item.product or "",
            percentage=item.percentage,
            expected_apr=item.expected_apr,
        )
        for item in raw.allocation
        if item.protocol.lower() in known
    ]

    entries = normalize_allocation(entries)
    if not entries:
        raise RecommendationParseError("Allocation is empty after dropping unknown and non-positive entries")

    if amount:
        for entry in entries:
            entry.amount = round(entry.percentage / 100 * amount, 2)

    total_apr = weighted_apr(entries)
    label = risk_profile.value

    return Recommendation(
        allocation=entries,
        title=raw.title or f"{label.capitalize()} Investment Strategy",
        summary=raw.summary or f"Optimized {label} strategy for Aptos DeFi with an expected APR of {total_apr}%.",
        total_apr=total_apr,
        rationale=raw.rationale or "Strategy based on current market conditions and available protocols.",
        risks=raw.risks or list(DEFAULT_RISKS),
        mitigations=raw.mitigations or list(DEFAULT_MITIGATIONS),
        steps=raw.steps or list(DEFAULT_STEPS),
        risk_profile=risk_profile,
        source=RecommendationSource.AI,
        type=rec_type,
        total_investment=amount,
    )


# ==================== Fallback ====================

# risk profile -> (title, summary, total_apr, [(protocol, product, pct, apr)])
FALLBACK_STRATEGIES = {
    RiskProfile.CONSERVATIVE: (
        "Conservative Preservation Strategy",
        "A low-risk approach focusing on capital preservation with stable staking "
        "returns and secure lending positions.",
        5.8,
        [
            ("amnis", "Liquid Staking", 60, 7.5),
            ("thala", "Money Market", 40, 3.2),
        ],
    ),
    RiskProfile.BALANCED: (
        "Balanced Growth Strategy",
        "A balanced approach providing steady returns through diversified staking "
        "and lending positions.",
        6.7,
        [
            ("thala", "Liquid Staking", 40, 8.2),
            ("amnis", "Liquid Staking", 30, 7.5),
            ("echo", "Money Market", 30, 4.1),
        ],
    ),
    RiskProfile.AGGRESSIVE: (
        "High-Yield Growth Strategy",
        "An aggressive approach targeting maximum returns through a mix of staking, "
        "lending, and liquidity provision.",
        9.5,
        [
            ("thala", "Liquid Staking", 35, 8.2),
            ("echo", "Money Market", 40, 4.1),
            ("pancakeswap", "Liquidity Pooling", 25, 18.5),
        ],
    ),
}

FALLBACK_RISKS = [
    "Smart contract vulnerability risk",
    "Market volatility risk",
    "Protocol-specific operational risks",
    "Regulatory uncertainty in the DeFi space",
]

FALLBACK_MITIGATIONS = [
    "Diversification across multiple protocols and products",
    "Focus on established protocols with security audits",
    "Regular monitoring of positions and market conditions",
    "Maintaining a portion in liquid assets for flexibility",
]

FALLBACK_STEPS = [
    "Connect your wallet to CompounDefi",
    "Review the recommended allocation",
    "Approve the transactions to execute the strategy",
    "Set up automated monitoring for your positions",
    "Periodically review and rebalance if needed",
]

_FALLBACK_FOCUS = {
    RiskProfile.CONSERVATIVE: ("secure", "focus on established protocols"),
    RiskProfile.BALANCED: ("balanced", "focus on established protocols"),
    RiskProfile.AGGRESSIVE: ("high-yield", "diversification across multiple DeFi products"),
}


def fallback_recommendation(
    risk_profile: RiskProfile,
    rec_type: RecommendationType = RecommendationType.GENERAL,
    amount: Optional[float] = None,
    wallet_address: Optional[str] = None,
    current_allocation: Optional[List[Dict[str, Any]]] = None,
) -> Recommendation:
    """Hardcoded allocation used when the LLM path fails."""
    title, summary, total_apr, rows = FALLBACK_STRATEGIES[risk_profile]
    entries = [
        AllocationEntry(
            protocol=protocol,
            product=product,
            percentage=pct,
            expected_apr=apr,
            amount=round(pct / 100 * amount, 2) if amount else None,
        )
        for protocol, product, pct, apr in rows
    ]
    approach, focus = _FALLBACK_FOCUS[risk_profile]

    return Recommendation(
        allocation=entries,
        title=title,
        summary=summary,
        total_apr=total_apr,
        rationale=(
            f"This strategy is designed for {risk_profile.value} investors in the current market "
            f"environment, focusing on a {approach} approach through {focus}."
        ),
        risks=list(FALLBACK_RISKS),
        mitigations=list(FALLBACK_MITIGATIONS),
        steps=list(FALLBACK_STEPS),
        risk_profile=risk_profile,
        source=RecommendationSource.FALLBACK,
        type=rec_type,
        wallet_address=wallet_address,
        total_investment=amount,
        current_allocation=current_allocation or [],
    )
