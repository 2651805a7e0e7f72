"""Auto-rebalancer for Aptos DeFi wallets.

Compares a wallet's allocation with its AI-recommended target and, when
drift passes the wallet's threshold in calm markets, plans and executes
the operations that move it back toward target.

Gates applied before any execution:
1. Per-wallet single flight (a second concurrent request is rejected)
2. Cooldown since the last executed rebalance, unless forced
3. Drift threshold, unless forced

Delayed and recurring rebalances run as APScheduler jobs keyed by wallet.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import get_settings
from app.core.scheduler import get_scheduler, monitor_job_id, rebalance_job_id
from app.services.data.market_data import MarketDataService, get_market_data_service
from app.services.execution.transaction_manager import (
    ExecutionResult,
    FailedOperation,
    PayloadDraftExecutor,
    TransactionExecutor,
)
from app.services.portfolio.portfolio_tracker import (
    PortfolioSnapshot,
    PortfolioTracker,
    get_portfolio_tracker,
    validate_wallet_address,
)
from app.services.recommendation.ai_recommendation import (
    RecommendationService,
    get_recommendation_service,
)
from app.services.recommendation.allocation import Recommendation, RiskProfile, parse_risk_profile
from app.services.strategy.drift_calculator import DriftAnalysis, calculate_drift
from app.services.strategy.operation_planner import RebalanceOperation, plan_operations
from app.services.strategy.rebalance_state import (
    MonitoringInfo,
    RebalanceHistoryEntry,
    RebalanceSettings,
    RebalanceStateStore,
)

logger = structlog.get_logger()

# Investment amount used for recommendations when the wallet holds no APT
DEFAULT_RECOMMENDATION_AMOUNT = 100.0

# Allocation shares (percent) behind the risk profile heuristic
AGGRESSIVE_LIQUIDITY_PCT = 30.0
BALANCED_STAKED_PCT = 60.0
CONSERVATIVE_NATIVE_PCT = 70.0


class RebalanceError(Exception):
    """A rebalance precondition was not met."""

    def __init__(self, message: str, wallet_address: Optional[str] = None):
        self.message = message
        self.wallet_address = wallet_address
        super().__init__(message)


class RebalanceCooldownError(RebalanceError):
    def __init__(self, wallet_address: str, remaining_seconds: float):
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Rebalance cooldown active, {int(remaining_seconds)}s remaining",
            wallet_address,
        )


class RebalanceInProgressError(RebalanceError):
    def __init__(self, wallet_address: str):
        super().__init__("A rebalance is already in progress for this wallet", wallet_address)


@dataclass
class RebalanceCheck:
    """Whether a wallet should be rebalanced now."""
    wallet_address: str
    needs_rebalancing: bool
    risk_profile: str
    drift: DriftAnalysis
    volatility: float
    is_volatile: bool
    threshold: float
    last_rebalanced: Optional[datetime]
    cooldown_remaining_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet_address": self.wallet_address,
            "needs_rebalancing": self.needs_rebalancing,
            "risk_profile": self.risk_profile,
            "max_drift": round(self.drift.max_drift, 4),
            "avg_drift": round(self.drift.avg_drift, 4),
            "drift_details": [d.to_dict() for d in self.drift.drifts],
            "volatility": round(self.volatility, 4),
            "is_volatile": self.is_volatile,
            "threshold": self.threshold,
            "last_rebalanced": self.last_rebalanced.isoformat() if self.last_rebalanced else None,
            "cooldown_remaining_seconds": round(self.cooldown_remaining_seconds, 1),
        }


@dataclass
class RebalanceOutcome:
    """Result of one execute_rebalance call."""
    wallet_address: str
    executed: bool
    success: bool
    message: str
    risk_profile: str
    drift: DriftAnalysis
    operations: List[RebalanceOperation] = field(default_factory=list)
    successful_operations: List[Dict[str, Any]] = field(default_factory=list)
    failed_operations: List[FailedOperation] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet_address": self.wallet_address,
            "executed": self.executed,
            "success": self.success,
            "message": self.message,
            "risk_profile": self.risk_profile,
            "max_drift": round(self.drift.max_drift, 4),
            "drift_details": [d.to_dict() for d in self.drift.drifts],
            "operations": [op.to_dict() for op in self.operations],
            "successful_operations": list(self.successful_operations),
            "failed_operations": [f.to_dict() for f in self.failed_operations],
            "timestamp": self.timestamp.isoformat(),
        }


class AutoRebalancer:
    """Drift-driven rebalancing with per-wallet state."""

    def __init__(
        self,
        state: Optional[RebalanceStateStore] = None,
        portfolio_tracker: Optional[PortfolioTracker] = None,
        recommendation_service: Optional[RecommendationService] = None,
        market_data: Optional[MarketDataService] = None,
        executor: Optional[TransactionExecutor] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.state = state or RebalanceStateStore()
        self.executor = executor or PayloadDraftExecutor()
        self._portfolio_tracker = portfolio_tracker
        self._recommendation_service = recommendation_service
        self._market_data = market_data
        self._scheduler = scheduler

    @property
    def portfolio_tracker(self) -> PortfolioTracker:
        return self._portfolio_tracker or get_portfolio_tracker()

    @property
    def recommendation_service(self) -> RecommendationService:
        return self._recommendation_service or get_recommendation_service()

    @property
    def market_data(self) -> MarketDataService:
        return self._market_data or get_market_data_service()

    @property
    def scheduler(self) -> AsyncIOScheduler:
        return self._scheduler or get_scheduler()

    # ==================== Decision ====================

    async def determine_risk_profile(
        self, wallet_address: str, snapshot: PortfolioSnapshot
    ) -> RiskProfile:
        """Stored preference, else inferred from how the wallet is allocated."""
        preference = self.state.peek(wallet_address).settings.risk_profile
        if preference:
            return parse_risk_profile(preference)

        total = snapshot.total_value_usd
        if total <= 0:
            return RiskProfile.BALANCED

        liquidity_pct = snapshot.value_by_kind("liquidity") / total * 100
        staked_pct = snapshot.value_by_kind("staking") / total * 100
        native_pct = snapshot.value_by_kind("native") / total * 100

        if liquidity_pct > AGGRESSIVE_LIQUIDITY_PCT:
            return RiskProfile.AGGRESSIVE
        if staked_pct > BALANCED_STAKED_PCT:
            return RiskProfile.BALANCED
        if native_pct > CONSERVATIVE_NATIVE_PCT:
            return RiskProfile.CONSERVATIVE
        return RiskProfile.BALANCED

    async def _resolve_profile(
        self, wallet_address: str, snapshot: PortfolioSnapshot, risk_profile: Any
    ) -> RiskProfile:
        if risk_profile:
            return parse_risk_profile(risk_profile)
        return await self.determine_risk_profile(wallet_address, snapshot)

    async def _target_for(
        self,
        wallet_address: str,
        snapshot: PortfolioSnapshot,
        profile: RiskProfile,
        settings: RebalanceSettings,
        cached: bool,
    ) -> Recommendation:
        amount = round(snapshot.total_apt, 4) or DEFAULT_RECOMMENDATION_AMOUNT
        return await self.recommendation_service.generate_recommendation(
            wallet_address,
            risk_profile=profile,
            amount=amount,
            cached=cached,
            snapshot=snapshot,
            preserve_staked_positions=settings.preserve_staked_positions,
        )

    async def check_rebalance_needed(
        self, wallet_address: str, risk_profile: Any = None
    ) -> RebalanceCheck:
        """Drift, volatility and cooldown for a wallet, without side effects."""
        wallet_address = validate_wallet_address(wallet_address)
        wallet_state = self.state.peek(wallet_address)
        settings = wallet_state.settings

        snapshot = await self.portfolio_tracker.get_portfolio(wallet_address)
        profile = await self._resolve_profile(wallet_address, snapshot, risk_profile)
        recommendation = await self._target_for(wallet_address, snapshot, profile, settings, cached=True)
        drift = calculate_drift(snapshot, recommendation.allocation)

        volatility = await self.market_data.get_market_volatility()
        is_volatile = volatility > settings.volatility_threshold
        needs = drift.max_drift >= settings.min_rebalance_threshold and not is_volatile

        logger.info(
            "Rebalance check",
            wallet=wallet_address,
            risk_profile=profile.value,
            max_drift=round(drift.max_drift, 2),
            volatility=round(volatility, 2),
            needs_rebalancing=needs,
        )

        return RebalanceCheck(
            wallet_address=wallet_address,
            needs_rebalancing=needs,
            risk_profile=profile.value,
            drift=drift,
            volatility=volatility,
            is_volatile=is_volatile,
            threshold=settings.min_rebalance_threshold,
            last_rebalanced=wallet_state.last_rebalance_at,
            cooldown_remaining_seconds=self.state.cooldown_remaining(wallet_address),
        )

    def generate_rebalance_operations(
        self,
        snapshot: PortfolioSnapshot,
        recommendation: Recommendation,
        settings: RebalanceSettings,
    ) -> List[RebalanceOperation]:
        drift = calculate_drift(snapshot, recommendation.allocation)
        return plan_operations(snapshot, drift, settings)

    # ==================== Execution ====================

    async def execute_rebalance(
        self,
        wallet_address: str,
        force: bool = False,
        risk_profile: Any = None,
    ) -> RebalanceOutcome:
        """Rebalance a wallet toward a freshly generated recommendation.

        Args:
            wallet_address: Aptos account address
            force: Skip the cooldown and drift threshold gates
            risk_profile: Overrides the stored or inferred profile

        Raises:
            RebalanceInProgressError: Another rebalance for the wallet is running
            RebalanceCooldownError: Cooldown active and not forced
        """
        wallet_address = validate_wallet_address(wallet_address)
        if risk_profile:
            risk_profile = parse_risk_profile(risk_profile)
        wallet_state = self.state.get(wallet_address)

        if wallet_state.lock.locked():
            raise RebalanceInProgressError(wallet_address)

        if not force:
            remaining = self.state.cooldown_remaining(wallet_address)
            if remaining > 0:
                raise RebalanceCooldownError(wallet_address, remaining)

        async with wallet_state.lock:
            drift_before = 0.0
            profile_value: Optional[str] = None
            try:
                settings = wallet_state.settings
                snapshot = await self.portfolio_tracker.get_portfolio(wallet_address, force_refresh=True)
                profile = await self._resolve_profile(wallet_address, snapshot, risk_profile)
                profile_value = profile.value
                recommendation = await self._target_for(
                    wallet_address, snapshot, profile, settings, cached=False
                )
                drift = calculate_drift(snapshot, recommendation.allocation)
                drift_before = drift.max_drift

                if drift.max_drift < settings.min_rebalance_threshold and not force:
                    logger.info(
                        "Drift below threshold, nothing to rebalance",
                        wallet=wallet_address,
                        max_drift=round(drift.max_drift, 2),
                        threshold=settings.min_rebalance_threshold,
                    )
                    return RebalanceOutcome(
                        wallet_address=wallet_address,
                        executed=False,
                        success=True,
                        message="Portfolio is within the drift threshold",
                        risk_profile=profile.value,
                        drift=drift,
                    )

                operations = plan_operations(snapshot, drift, settings)
                operations = operations[:settings.max_operations_per_rebalance]
                if not operations:
                    return RebalanceOutcome(
                        wallet_address=wallet_address,
                        executed=False,
                        success=True,
                        message="No executable operations for the current drift",
                        risk_profile=profile.value,
                        drift=drift,
                    )

                result: ExecutionResult = await self.executor.execute_operations(wallet_address, operations)

            except Exception as e:
                logger.error("Rebalance failed", wallet=wallet_address, error=str(e))
                self.state.record(
                    wallet_address,
                    RebalanceHistoryEntry(
                        timestamp=datetime.now(timezone.utc),
                        success=False,
                        drift_before=drift_before,
                        risk_profile=profile_value,
                        error=str(e),
                    ),
                    mark_rebalanced=False,
                )
                raise

            success = not result.failed
            entry = RebalanceHistoryEntry(
                timestamp=datetime.now(timezone.utc),
                success=success,
                operations=len(operations),
                successful_operations=len(result.successful),
                failed_operations=len(result.failed),
                drift_before=drift_before,
                risk_profile=profile.value,
            )
            self.state.record(wallet_address, entry)
            self.clear_scheduled_rebalance(wallet_address)

            logger.info(
                "Rebalance executed",
                wallet=wallet_address,
                operations=len(operations),
                successful=len(result.successful),
                failed=len(result.failed),
            )

            return RebalanceOutcome(
                wallet_address=wallet_address,
                executed=True,
                success=success,
                message=(
                    "Rebalance executed"
                    if success
                    else f"Rebalance partially executed, {len(result.failed)} operation(s) failed"
                ),
                risk_profile=profile.value,
                drift=drift,
                operations=operations,
                successful_operations=result.successful,
                failed_operations=result.failed,
                timestamp=entry.timestamp,
            )

    # ==================== Scheduling ====================

    async def schedule_rebalance(
        self,
        wallet_address: str,
        delay_seconds: Optional[float] = None,
        only_if_needed: bool = False,
        force: bool = False,
        risk_profile: Any = None,
    ) -> Dict[str, Any]:
        """Schedule a one-shot rebalance, replacing any pending one."""
        wallet_address = validate_wallet_address(wallet_address)
        profile_value = parse_risk_profile(risk_profile).value if risk_profile else None

        if only_if_needed:
            check = await self.check_rebalance_needed(wallet_address, profile_value)
            if not check.needs_rebalancing:
                return {
                    "scheduled": False,
                    "wallet_address": wallet_address,
                    "reason": "Rebalancing not needed",
                    "check": check.to_dict(),
                }

        if delay_seconds is None:
            delay_seconds = get_settings().rebalance_immediate_delay_seconds
        delay_seconds = max(0.0, float(delay_seconds))
        run_at = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)

        self.scheduler.add_job(
            self._run_scheduled_rebalance,
            trigger=DateTrigger(run_date=run_at),
            id=rebalance_job_id(wallet_address),
            replace_existing=True,
            kwargs={"wallet_address": wallet_address, "force": force, "risk_profile": profile_value},
        )
        logger.info("Rebalance scheduled", wallet=wallet_address, run_at=run_at.isoformat())

        return {
            "scheduled": True,
            "wallet_address": wallet_address,
            "run_at": run_at.isoformat(),
            "delay_seconds": delay_seconds,
            "force": force,
        }

    def clear_scheduled_rebalance(self, wallet_address: str) -> bool:
        """Cancel the pending rebalance. Returns whether one existed."""
        try:
            self.scheduler.remove_job(rebalance_job_id(wallet_address))
        except JobLookupError:
            return False
        logger.info("Scheduled rebalance cleared", wallet=wallet_address)
        return True

    def get_scheduled_rebalance(self, wallet_address: str) -> Optional[Dict[str, Any]]:
        job = self.scheduler.get_job(rebalance_job_id(wallet_address))
        if job is None:
            return None
        next_run = getattr(job, "next_run_time", None)
        return {
            "wallet_address": wallet_address,
            "run_at": next_run.isoformat() if next_run else None,
            "force": job.kwargs.get("force", False),
            "risk_profile": job.kwargs.get("risk_profile"),
        }

    async def _run_scheduled_rebalance(
        self, wallet_address: str, force: bool = False, risk_profile: Optional[str] = None
    ) -> None:
        try:
            await self.execute_rebalance(wallet_address, force=force, risk_profile=risk_profile)
        except RebalanceError as e:
            logger.info("Scheduled rebalance skipped", wallet=wallet_address, reason=e.message)
        except Exception as e:
            logger.error("Scheduled rebalance failed", wallet=wallet_address, error=str(e))

    # ==================== Monitoring ====================

    async def enable_monitoring(
        self, wallet_address: str, check_interval_hours: Optional[float] = None
    ) -> Dict[str, Any]:
        """Start drift monitoring for a wallet.

        A wallet that already needs rebalancing outside its cooldown gets an
        immediate rebalance instead of a monitoring job.
        """
        wallet_address = validate_wallet_address(wallet_address)
        settings = get_settings()
        interval = check_interval_hours
        if interval is None:
            interval = settings.rebalance_monitor_interval_hours
        if interval <= 0:
            raise ValueError("check_interval_hours must be positive")

        pending = self.get_scheduled_rebalance(wallet_address)
        if pending:
            return {
                "monitoring": False,
                "wallet_address": wallet_address,
                "message": "A rebalance is already scheduled",
                "scheduled_rebalance": pending,
            }

        check = await self.check_rebalance_needed(wallet_address)
        if check.needs_rebalancing and check.cooldown_remaining_seconds <= 0:
            scheduled = await self.schedule_rebalance(
                wallet_address, delay_seconds=settings.rebalance_immediate_delay_seconds
            )
            return {
                "monitoring": False,
                "wallet_address": wallet_address,
                "message": "Rebalance needed, scheduled immediately",
                "scheduled_rebalance": scheduled,
                "check": check.to_dict(),
            }

        self.scheduler.add_job(
            self._run_monitor_check,
            trigger=IntervalTrigger(hours=interval),
            id=monitor_job_id(wallet_address),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            kwargs={"wallet_address": wallet_address},
        )
        self.state.get(wallet_address).monitoring = MonitoringInfo(
            started_at=datetime.now(timezone.utc),
            check_interval_hours=interval,
        )
        logger.info("Rebalance monitoring enabled", wallet=wallet_address, interval_hours=interval)

        return {
            "monitoring": True,
            "wallet_address": wallet_address,
            "message": "Monitoring enabled",
            "check_interval_hours": interval,
            "check": check.to_dict(),
        }

    def disable_monitoring(self, wallet_address: str) -> bool:
        """Stop monitoring and cancel any pending rebalance."""
        wallet_address = validate_wallet_address(wallet_address)
        removed = True
        try:
            self.scheduler.remove_job(monitor_job_id(wallet_address))
        except JobLookupError:
            removed = False
        cleared = self.clear_scheduled_rebalance(wallet_address)
        self.state.peek(wallet_address).monitoring = None
        if removed:
            logger.info("Rebalance monitoring disabled", wallet=wallet_address)
        return removed or cleared

    def get_monitoring_status(self, wallet_address: str) -> Optional[Dict[str, Any]]:
        wallet_address = validate_wallet_address(wallet_address)
        job = self.scheduler.get_job(monitor_job_id(wallet_address))
        if job is None:
            return None
        info = self.state.peek(wallet_address).monitoring
        next_run = getattr(job, "next_run_time", None)
        return {
            "wallet_address": wallet_address,
            "started_at": info.started_at.isoformat() if info else None,
            "check_interval_hours": info.check_interval_hours if info else None,
            "next_check": next_run.isoformat() if next_run else None,
        }

    async def _run_monitor_check(self, wallet_address: str) -> None:
        try:
            check = await self.check_rebalance_needed(wallet_address)
            if check.needs_rebalancing and check.cooldown_remaining_seconds <= 0:
                await self.execute_rebalance(wallet_address)
        except RebalanceError as e:
            logger.info("Monitored rebalance skipped", wallet=wallet_address, reason=e.message)
        except Exception as e:
            logger.error("Monitoring check failed", wallet=wallet_address, error=str(e))

    # ==================== Settings & history ====================

    def set_rebalance_settings(self, wallet_address: str, **updates: Any) -> RebalanceSettings:
        wallet_address = validate_wallet_address(wallet_address)
        if updates.get("risk_profile"):
            updates["risk_profile"] = parse_risk_profile(updates["risk_profile"]).value
        return self.state.update_settings(wallet_address, updates)

    def get_rebalance_settings(self, wallet_address: str) -> RebalanceSettings:
        return self.state.peek(validate_wallet_address(wallet_address)).settings

    def get_rebalance_history(
        self, wallet_address: str, limit: Optional[int] = 10
    ) -> List[RebalanceHistoryEntry]:
        return self.state.history(validate_wallet_address(wallet_address), limit)


# Lazy singleton instance
_auto_rebalancer: Optional[AutoRebalancer] = None


def get_auto_rebalancer() -> AutoRebalancer:
    """Get or create the auto-rebalancer singleton."""
    global _auto_rebalancer
    if _auto_rebalancer is None:
        _auto_rebalancer = AutoRebalancer()
    return _auto_rebalancer
