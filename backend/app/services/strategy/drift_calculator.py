"""Drift between a wallet's current allocation and a target allocation.

Drift is the absolute percentage-point gap per protocol. Protocols held
but absent from the target drift to zero; targeted protocols not held are
marked ``add``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List

from app.core.contracts import PROTOCOL_CATEGORIES
from app.services.portfolio.portfolio_tracker import PortfolioSnapshot
from app.services.recommendation.allocation import AllocationEntry


class DriftAction(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    ADD = "add"
    HOLD = "hold"


@dataclass
class DriftEntry:
    protocol: str
    type: str
    current_percentage: float
    target_percentage: float
    drift: float
    action: DriftAction

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol,
            "type": self.type,
            "current_percentage": round(self.current_percentage, 4),
            "target_percentage": round(self.target_percentage, 4),
            "drift": round(self.drift, 4),
            "action": self.action.value,
        }


@dataclass
class DriftAnalysis:
    drifts: List[DriftEntry] = field(default_factory=list)
    max_drift: float = 0.0
    avg_drift: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "drifts": [d.to_dict() for d in self.drifts],
            "max_drift": round(self.max_drift, 4),
            "avg_drift": round(self.avg_drift, 4),
        }


def determine_protocol_type(product: str, protocol: str = "") -> str:
    """Position type for a targeted product.

    Product wording wins; the protocol registry decides when the wording
    is inconclusive.
    """
    text = (product or "").lower()

    if "stak" in text or "stapt" in text or ("apt" in text and "st" in text and "lp" not in text):
        return "staking"
    if any(k in text for k in ("lend", "supply", "deposit", "money market")):
        return "lending"
    if any(k in text for k in ("liquidity", "pool", "swap", " lp", "lp ")) or text.endswith("lp"):
        return "liquidity"

    return PROTOCOL_CATEGORIES.get(protocol.lower(), "holding")


def calculate_drift(snapshot: PortfolioSnapshot, target: Iterable[AllocationEntry]) -> DriftAnalysis:
    """Compare a snapshot against a target allocation.

    Entries are sorted by drift descending, then protocol name.
    """
    total = snapshot.total_value_usd
    if not total or total <= 0:
        return DriftAnalysis()

    current: Dict[str, float] = {}
    kinds: Dict[str, str] = {}
    for holding in snapshot.holdings:
        key = holding.protocol.lower()
        current[key] = current.get(key, 0.0) + holding.value_usd / total * 100
        kinds.setdefault(key, holding.kind)

    targets: Dict[str, float] = {}
    products: Dict[str, str] = {}
    for entry in target:
        key = entry.protocol.lower()
        targets[key] = targets.get(key, 0.0) + float(entry.percentage)
        products.setdefault(key, entry.product)

    drifts: List[DriftEntry] = []
    for protocol in set(current) | set(targets):
        current_pct = current.get(protocol, 0.0)
        target_pct = targets.get(protocol, 0.0)

        if protocol not in current:
            action = DriftAction.ADD
            kind = determine_protocol_type(products.get(protocol, ""), protocol)
        else:
            kind = kinds[protocol]
            if current_pct < target_pct:
                action = DriftAction.INCREASE
            elif current_pct > target_pct:
                action = DriftAction.DECREASE
            else:
                action = DriftAction.HOLD

        drifts.append(DriftEntry(
            protocol=protocol,
            type=kind,
            current_percentage=current_pct,
            target_percentage=target_pct,
            drift=abs(current_pct - target_pct),
            action=action,
        ))

    drifts.sort(key=lambda d: (-d.drift, d.protocol))
    max_drift = max((d.drift for d in drifts), default=0.0)
    avg_drift = sum(d.drift for d in drifts) / len(drifts) if drifts else 0.0

    return DriftAnalysis(drifts=drifts, max_drift=max_drift, avg_drift=avg_drift)
