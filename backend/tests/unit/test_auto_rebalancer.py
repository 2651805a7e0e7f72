"""Tests for the auto-rebalancer.

Tests cover:
- Rebalance need (drift threshold and volatility gates)
- Cooldown and force
- Per-wallet single flight
- Partial failures, operation cap and history
- Risk profile inference and settings clamping
- Scheduling and monitoring jobs
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

WALLET = "0x" + "ab" * 32
OTHER_WALLET = "0x" + "cd" * 32


@pytest.fixture
def snapshot(make_snapshot):
    return make_snapshot([("APT", "native", "native", 1000.0)])


@pytest.fixture
def recommendation(make_recommendation):
    return make_recommendation([("aries", "Lending", 50), ("amnis", "Liquid Staking", 50)])


@pytest.fixture
def scheduler():
    from apscheduler.jobstores.base import JobLookupError

    scheduler = MagicMock()
    scheduler.get_job.return_value = None
    scheduler.remove_job.side_effect = JobLookupError("none")
    return scheduler


@pytest.fixture
def build_rebalancer(snapshot, recommendation, scheduler):
    """AutoRebalancer wired to mocks; keyword overrides replace collaborators."""
    from app.services.execution.transaction_manager import PayloadDraftExecutor
    from app.services.strategy.auto_rebalancer import AutoRebalancer
    from app.services.strategy.rebalance_state import RebalanceStateStore

    def _build(volatility=2.0, **overrides):
        tracker = MagicMock()
        tracker.get_portfolio = AsyncMock(return_value=snapshot)
        recommender = MagicMock()
        recommender.generate_recommendation = AsyncMock(return_value=recommendation)
        market = MagicMock()
        market.get_market_volatility = AsyncMock(return_value=volatility)

        kwargs = dict(
            state=RebalanceStateStore(history_size=10),
            portfolio_tracker=tracker,
            recommendation_service=recommender,
            market_data=market,
            executor=PayloadDraftExecutor(),
            scheduler=scheduler,
        )
        kwargs.update(overrides)
        return AutoRebalancer(**kwargs)

    return _build


class TestCheckRebalanceNeeded:
    """Test the drift and volatility gates."""

    @pytest.mark.asyncio
    async def test_needed_when_drift_exceeds_threshold(self, build_rebalancer):
        """Large drift in a calm market needs rebalancing."""
        rebalancer = build_rebalancer(volatility=2.0)

        check = await rebalancer.check_rebalance_needed(WALLET)

        assert check.needs_rebalancing is True
        assert check.drift.max_drift == pytest.approx(100.0)
        assert check.is_volatile is False
        assert check.cooldown_remaining_seconds == 0

    @pytest.mark.asyncio
    async def test_not_needed_when_volatile(self, build_rebalancer):
        """Volatility above the threshold suppresses rebalancing."""
        rebalancer = build_rebalancer(volatility=25.0)

        check = await rebalancer.check_rebalance_needed(WALLET)

        assert check.is_volatile is True
        assert check.needs_rebalancing is False

    @pytest.mark.asyncio
    async def test_not_needed_below_threshold(self, build_rebalancer, make_snapshot):
        """Drift under the threshold never needs rebalancing."""
        tracker = MagicMock()
        tracker.get_portfolio = AsyncMock(return_value=make_snapshot([
            ("APT", "native", "native", 20.0),
            ("stAPT", "amnis", "staking", 490.0),
            ("x", "aries", "lending", 490.0),
        ]))
        rebalancer = build_rebalancer(portfolio_tracker=tracker)

        check = await rebalancer.check_rebalance_needed(WALLET)

        assert check.drift.max_drift < check.threshold
        assert check.needs_rebalancing is False

    @pytest.mark.asyncio
    async def test_empty_wallet_not_needed(self, build_rebalancer, make_snapshot):
        """A wallet with no value has no drift and needs nothing."""
        tracker = MagicMock()
        tracker.get_portfolio = AsyncMock(return_value=make_snapshot([]))
        rebalancer = build_rebalancer(portfolio_tracker=tracker)

        check = await rebalancer.check_rebalance_needed(WALLET)

        assert check.drift.drifts == []
        assert check.drift.max_drift == 0
        assert check.needs_rebalancing is False

    @pytest.mark.asyncio
    async def test_uses_cached_recommendation(self, build_rebalancer):
        """Checks reuse a cached recommendation."""
        rebalancer = build_rebalancer()

        await rebalancer.check_rebalance_needed(WALLET)

        kwargs = rebalancer.recommendation_service.generate_recommendation.call_args.kwargs
        assert kwargs["cached"] is True

    @pytest.mark.asyncio
    async def test_invalid_wallet_rejected(self, build_rebalancer):
        """Malformed addresses raise before any lookup."""
        from app.services.portfolio.portfolio_tracker import InvalidWalletAddressError

        rebalancer = build_rebalancer()

        with pytest.raises(InvalidWalletAddressError):
            await rebalancer.check_rebalance_needed("not-a-wallet")
        rebalancer.portfolio_tracker.get_portfolio.assert_not_called()


class TestExecuteRebalance:
    """Test execute_rebalance gates and bookkeeping."""

    @pytest.mark.asyncio
    async def test_executes_and_records_history(self, build_rebalancer, scheduler):
        """A rebalance drafts operations and appends a history entry."""
        rebalancer = build_rebalancer()

        outcome = await rebalancer.execute_rebalance(WALLET)

        assert outcome.executed is True
        assert outcome.success is True
        assert [op.protocol for op in outcome.operations] == ["amnis", "aries"]
        assert len(outcome.successful_operations) == 2
        assert outcome.successful_operations[0]["status"] == "pending_signature"

        history = rebalancer.get_rebalance_history(WALLET)
        assert len(history) == 1
        assert history[0].success is True
        assert history[0].successful_operations == 2
        assert history[0].drift_before == pytest.approx(100.0)
        assert rebalancer.state.get(WALLET).last_rebalance_at is not None
        scheduler.remove_job.assert_called_with(f"rebalance:{WALLET}")

    @pytest.mark.asyncio
    async def test_fresh_recommendation_used(self, build_rebalancer):
        """Execution never relies on a cached recommendation."""
        rebalancer = build_rebalancer()

        await rebalancer.execute_rebalance(WALLET)

        kwargs = rebalancer.recommendation_service.generate_recommendation.call_args.kwargs
        assert kwargs["cached"] is False
        rebalancer.portfolio_tracker.get_portfolio.assert_awaited_with(WALLET, force_refresh=True)

    @pytest.mark.asyncio
    async def test_second_call_within_cooldown_rejected(self, build_rebalancer):
        """A second rebalance inside the cooldown fails without side effects."""
        from app.services.strategy.auto_rebalancer import RebalanceCooldownError

        rebalancer = build_rebalancer()
        await rebalancer.execute_rebalance(WALLET)
        calls_before = rebalancer.portfolio_tracker.get_portfolio.await_count

        with pytest.raises(RebalanceCooldownError) as exc_info:
            await rebalancer.execute_rebalance(WALLET)

        assert exc_info.value.remaining_seconds > 0
        assert len(rebalancer.get_rebalance_history(WALLET)) == 1
        assert rebalancer.portfolio_tracker.get_portfolio.await_count == calls_before

    @pytest.mark.asyncio
    async def test_force_skips_cooldown(self, build_rebalancer):
        """force=True proceeds inside the cooldown."""
        rebalancer = build_rebalancer()
        await rebalancer.execute_rebalance(WALLET)

        outcome = await rebalancer.execute_rebalance(WALLET, force=True)

        assert outcome.executed is True
        assert len(rebalancer.get_rebalance_history(WALLET)) == 2

    @pytest.mark.asyncio
    async def test_below_threshold_is_noop(self, build_rebalancer, make_snapshot):
        """Small drift returns a no-op and leaves state untouched."""
        tracker = MagicMock()
        tracker.get_portfolio = AsyncMock(return_value=make_snapshot([
            ("stAPT", "amnis", "staking", 510.0),
            ("x", "aries", "lending", 490.0),
        ]))
        rebalancer = build_rebalancer(portfolio_tracker=tracker)

        outcome = await rebalancer.execute_rebalance(WALLET)

        assert outcome.executed is False
        assert outcome.operations == []
        assert rebalancer.get_rebalance_history(WALLET) == []
        assert rebalancer.state.get(WALLET).last_rebalance_at is None

    @pytest.mark.asyncio
    async def test_operations_capped(self, build_rebalancer):
        """No more than max_operations_per_rebalance are executed."""
        from app.services.execution.transaction_manager import ExecutionResult

        async def all_succeed(wallet, ops):
            return ExecutionResult(successful=[{"operation": op.to_dict()} for op in ops])

        executor = MagicMock()
        executor.execute_operations = AsyncMock(side_effect=all_succeed)
        rebalancer = build_rebalancer(executor=executor)
        rebalancer.set_rebalance_settings(WALLET, max_operations_per_rebalance=1)

        outcome = await rebalancer.execute_rebalance(WALLET)

        sent = executor.execute_operations.call_args.args[1]
        assert len(sent) == 1
        assert len(outcome.operations) == 1

    @pytest.mark.asyncio
    async def test_partial_failure_reported(self, build_rebalancer):
        """Failed operations are listed; the rest still count as executed."""
        from app.services.execution.transaction_manager import ExecutionResult, FailedOperation

        async def half_fail(wallet, ops):
            return ExecutionResult(
                successful=[{"operation": ops[0].to_dict()}],
                failed=[FailedOperation(operation=op, error="simulation failed") for op in ops[1:]],
            )

        executor = MagicMock()
        executor.execute_operations = AsyncMock(side_effect=half_fail)
        rebalancer = build_rebalancer(executor=executor)

        outcome = await rebalancer.execute_rebalance(WALLET)

        assert outcome.executed is True
        assert outcome.success is False
        assert len(outcome.failed_operations) == 1
        assert outcome.failed_operations[0].error == "simulation failed"

        entry = rebalancer.get_rebalance_history(WALLET)[0]
        assert entry.successful_operations == 1
        assert entry.failed_operations == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_recorded_and_raised(self, build_rebalancer):
        """Unexpected failures land in history and propagate."""
        tracker = MagicMock()
        tracker.get_portfolio = AsyncMock(side_effect=RuntimeError("boom"))
        rebalancer = build_rebalancer(portfolio_tracker=tracker)

        with pytest.raises(RuntimeError):
            await rebalancer.execute_rebalance(WALLET)

        entry = rebalancer.get_rebalance_history(WALLET)[0]
        assert entry.success is False
        assert entry.error == "boom"
        assert rebalancer.state.get(WALLET).last_rebalance_at is None
        assert rebalancer.state.get(WALLET).lock.locked() is False

    @pytest.mark.asyncio
    async def test_same_wallet_in_progress_rejected(self, build_rebalancer):
        """A wallet already rebalancing rejects a second request."""
        from app.services.strategy.auto_rebalancer import RebalanceInProgressError

        rebalancer = build_rebalancer()

        async with rebalancer.state.get(WALLET).lock:
            with pytest.raises(RebalanceInProgressError):
                await rebalancer.execute_rebalance(WALLET, force=True)

        assert rebalancer.get_rebalance_history(WALLET) == []

    @pytest.mark.asyncio
    async def test_other_wallets_not_blocked(self, build_rebalancer):
        """The lock is per wallet."""
        rebalancer = build_rebalancer()

        async with rebalancer.state.get(WALLET).lock:
            outcome = await rebalancer.execute_rebalance(OTHER_WALLET)

        assert outcome.executed is True

    @pytest.mark.asyncio
    async def test_invalid_risk_profile_rejected_before_lock(self, build_rebalancer):
        """An unknown risk profile is a client error, not a failed rebalance."""
        rebalancer = build_rebalancer()

        with pytest.raises(ValueError):
            await rebalancer.execute_rebalance(WALLET, risk_profile="yolo")

        assert rebalancer.get_rebalance_history(WALLET) == []


class TestRiskProfile:
    """Test determine_risk_profile."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("holdings,expected", [
        ([("LP", "pancakeswap", "liquidity", 400.0), ("APT", "native", "native", 600.0)], "aggressive"),
        ([("stAPT", "amnis", "staking", 700.0), ("APT", "native", "native", 300.0)], "balanced"),
        ([("APT", "native", "native", 800.0), ("stAPT", "amnis", "staking", 200.0)], "conservative"),
        ([("APT", "native", "native", 500.0), ("stAPT", "amnis", "staking", 500.0)], "balanced"),
        ([], "balanced"),
    ])
    async def test_inferred_from_allocation(self, build_rebalancer, make_snapshot, holdings, expected):
        """The wallet's mix of positions decides the profile."""
        rebalancer = build_rebalancer()

        profile = await rebalancer.determine_risk_profile(WALLET, make_snapshot(holdings))

        assert profile.value == expected

    @pytest.mark.asyncio
    async def test_stored_preference_wins(self, build_rebalancer, make_snapshot):
        """An explicit preference overrides the heuristic."""
        rebalancer = build_rebalancer()
        rebalancer.set_rebalance_settings(WALLET, risk_profile="aggressive")

        snapshot = make_snapshot([("APT", "native", "native", 1000.0)])
        profile = await rebalancer.determine_risk_profile(WALLET, snapshot)

        assert profile.value == "aggressive"


class TestRebalanceSettings:
    """Test settings updates and clamping."""

    def test_defaults_from_config(self, build_rebalancer):
        """New wallets start from configured defaults."""
        rebalancer = build_rebalancer()

        settings = rebalancer.get_rebalance_settings(WALLET)

        assert settings.min_rebalance_threshold == 5.0
        assert settings.cooldown_period_seconds == 24 * 3600
        assert settings.max_operations_per_rebalance == 6

    def test_values_clamped(self, build_rebalancer):
        """Out-of-range numbers are pulled into range."""
        rebalancer = build_rebalancer()

        settings = rebalancer.set_rebalance_settings(
            WALLET,
            min_rebalance_threshold=50,
            max_slippage=0.01,
            max_operations_per_rebalance=99,
        )

        assert settings.min_rebalance_threshold == 20.0
        assert settings.max_slippage == 0.1
        assert settings.max_operations_per_rebalance == 10

    @pytest.mark.parametrize("value,expected", [
        (2, 7200),
        (0.5, 3600),
        (7200, 7200),
        (1800, 3600),
    ])
    def test_cooldown_hours_or_seconds(self, build_rebalancer, value, expected):
        """Small cooldowns are hours, large ones seconds, never under an hour."""
        rebalancer = build_rebalancer()

        settings = rebalancer.set_rebalance_settings(WALLET, cooldown_period=value)

        assert settings.cooldown_period_seconds == expected

    def test_invalid_risk_profile(self, build_rebalancer):
        """Unknown profiles are rejected."""
        rebalancer = build_rebalancer()

        with pytest.raises(ValueError):
            rebalancer.set_rebalance_settings(WALLET, risk_profile="reckless")


class TestRebalanceHistory:
    """Test the bounded history."""

    def test_history_bounded_newest_first(self):
        """Only the most recent entries are kept, newest first."""
        from app.services.strategy.rebalance_state import RebalanceHistoryEntry, RebalanceStateStore

        store = RebalanceStateStore(history_size=3)
        for i in range(5):
            store.record(
                WALLET,
                RebalanceHistoryEntry(
                    timestamp=datetime(2026, 1, 1, i, tzinfo=timezone.utc),
                    success=True,
                    operations=i,
                ),
            )

        history = store.history(WALLET)

        assert [e.operations for e in history] == [4, 3, 2]
        assert store.history(WALLET, limit=1)[0].operations == 4

    @pytest.mark.asyncio
    async def test_reads_do_not_register_wallets(self, build_rebalancer, scheduler):
        """Settings, history, monitoring and checks leave the store empty."""
        rebalancer = build_rebalancer()

        settings = rebalancer.get_rebalance_settings(OTHER_WALLET)
        rebalancer.get_rebalance_history(OTHER_WALLET)
        rebalancer.get_monitoring_status(OTHER_WALLET)
        rebalancer.disable_monitoring(OTHER_WALLET)
        await rebalancer.check_rebalance_needed(OTHER_WALLET)

        assert settings.risk_profile is None
        assert OTHER_WALLET not in rebalancer.state

    def test_writes_register_wallet(self, build_rebalancer):
        """Updating settings keeps the wallet's state."""
        rebalancer = build_rebalancer()

        rebalancer.set_rebalance_settings(WALLET, min_rebalance_threshold=8)

        assert WALLET in rebalancer.state
        assert rebalancer.get_rebalance_settings(WALLET).min_rebalance_threshold == 8


class TestScheduling:
    """Test scheduled rebalances and monitoring jobs."""

    @pytest.mark.asyncio
    async def test_schedule_adds_date_job(self, build_rebalancer, scheduler):
        """A schedule is a one-shot job keyed by wallet."""
        from apscheduler.triggers.date import DateTrigger

        rebalancer = build_rebalancer()

        result = await rebalancer.schedule_rebalance(WALLET, delay_seconds=60)

        assert result["scheduled"] is True
        kwargs = scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == f"rebalance:{WALLET}"
        assert kwargs["replace_existing"] is True
        assert isinstance(kwargs["trigger"], DateTrigger)

    @pytest.mark.asyncio
    async def test_only_if_needed_skips_when_not_needed(self, build_rebalancer, scheduler):
        """only_if_needed checks drift first."""
        rebalancer = build_rebalancer(volatility=50.0)

        result = await rebalancer.schedule_rebalance(WALLET, only_if_needed=True)

        assert result["scheduled"] is False
        scheduler.add_job.assert_not_called()

    def test_clear_without_job(self, build_rebalancer):
        """Clearing with nothing scheduled reports False."""
        rebalancer = build_rebalancer()

        assert rebalancer.clear_scheduled_rebalance(WALLET) is False

    @pytest.mark.asyncio
    async def test_monitoring_triggers_immediate_rebalance(self, build_rebalancer, scheduler):
        """A wallet that needs rebalancing now gets a short-delay job."""
        rebalancer = build_rebalancer()

        result = await rebalancer.enable_monitoring(WALLET)

        assert result["monitoring"] is False
        assert result["scheduled_rebalance"]["delay_seconds"] == 5.0
        assert scheduler.add_job.call_args.kwargs["id"] == f"rebalance:{WALLET}"

    @pytest.mark.asyncio
    async def test_monitoring_adds_interval_job(self, build_rebalancer, scheduler):
        """Otherwise a repeating check is registered."""
        from apscheduler.triggers.interval import IntervalTrigger

        rebalancer = build_rebalancer(volatility=50.0)

        result = await rebalancer.enable_monitoring(WALLET, check_interval_hours=2)

        assert result["monitoring"] is True
        kwargs = scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == f"monitor:{WALLET}"
        assert isinstance(kwargs["trigger"], IntervalTrigger)
        assert rebalancer.state.get(WALLET).monitoring.check_interval_hours == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("hours", [0, -1])
    async def test_monitoring_rejects_non_positive_interval(self, build_rebalancer, scheduler, hours):
        """Zero and negative intervals are errors, not the default."""
        rebalancer = build_rebalancer(volatility=50.0)

        with pytest.raises(ValueError):
            await rebalancer.enable_monitoring(WALLET, check_interval_hours=hours)

        scheduler.add_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_monitoring_default_interval(self, build_rebalancer, scheduler):
        """Omitting the interval uses the configured default."""
        from app.core.config import get_settings

        rebalancer = build_rebalancer(volatility=50.0)

        await rebalancer.enable_monitoring(WALLET)

        info = rebalancer.state.get(WALLET).monitoring
        assert info.check_interval_hours == get_settings().rebalance_monitor_interval_hours

    @pytest.mark.asyncio
    async def test_disable_monitoring(self, build_rebalancer, scheduler):
        """Disabling removes the monitor job and forgets monitoring state."""
        rebalancer = build_rebalancer(volatility=50.0)
        await rebalancer.enable_monitoring(WALLET)
        scheduler.remove_job.side_effect = None

        assert rebalancer.disable_monitoring(WALLET) is True
        scheduler.remove_job.assert_any_call(f"monitor:{WALLET}")
        assert rebalancer.state.get(WALLET).monitoring is None

    @pytest.mark.asyncio
    async def test_scheduled_job_swallows_cooldown(self, build_rebalancer):
        """A scheduled run inside the cooldown is skipped, not raised."""
        rebalancer = build_rebalancer()
        await rebalancer.execute_rebalance(WALLET)

        await rebalancer._run_scheduled_rebalance(WALLET)

        assert len(rebalancer.get_rebalance_history(WALLET)) == 1
