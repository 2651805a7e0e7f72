"""Tests for rebalance operation planning."""

import pytest


def _settings(**overrides):
    from app.services.strategy.rebalance_state import RebalanceSettings

    values = dict(
        min_rebalance_threshold=5.0,
        max_slippage=2.0,
        cooldown_period_seconds=86400,
        max_operations_per_rebalance=6,
        volatility_threshold=15.0,
        preserve_staked_positions=True,
    )
    values.update(overrides)
    return RebalanceSettings(**values)


def _plan(snapshot, recommendation, settings):
    from app.services.strategy.drift_calculator import calculate_drift
    from app.services.strategy.operation_planner import plan_operations

    return plan_operations(snapshot, calculate_drift(snapshot, recommendation.allocation), settings)


class TestPlanOperations:
    """Test plan_operations ordering, mapping and amounts."""

    def test_withdrawals_before_deposits(self, make_snapshot, make_recommendation):
        """Withdrawals come first, deposits follow in drift order."""
        snapshot = make_snapshot([
            ("APT", "native", "native", 600.0),
            ("stAPT", "amnis", "staking", 300.0),
            ("CAKE-LP", "pancakeswap", "liquidity", 100.0),
        ])
        target = make_recommendation([
            ("amnis", "Liquid Staking", 40),
            ("aries", "Lending", 40),
            ("thala", "Liquid Staking", 20),
        ])

        ops = _plan(snapshot, target, _settings())

        assert [(op.protocol, op.operation_type) for op in ops] == [
            ("pancakeswap", "removeLiquidity"),
            ("aries", "lend"),
            ("thala", "stake"),
            ("amnis", "stake"),
        ]

    def test_amount_in_apt(self, make_snapshot, make_recommendation):
        """Amount is drift share of total value converted at the APT price."""
        snapshot = make_snapshot([("APT", "native", "native", 1000.0)], apt_price=8.0)
        target = make_recommendation([("aries", "Lending", 25), ("amnis", "Liquid Staking", 75)])

        ops = {op.protocol: op for op in _plan(snapshot, target, _settings())}

        assert ops["aries"].amount == pytest.approx(31.25)
        assert ops["aries"].amount_usd == pytest.approx(250.0)
        assert ops["amnis"].amount == pytest.approx(93.75)

    def test_native_is_never_withdrawn(self, make_snapshot, make_recommendation):
        """Unallocated APT produces no operation of its own."""
        snapshot = make_snapshot([("APT", "native", "native", 1000.0)])
        target = make_recommendation([("aries", "Lending", 100)])

        ops = _plan(snapshot, target, _settings())

        assert [op.protocol for op in ops] == ["aries"]

    def test_staked_positions_preserved(self, make_snapshot, make_recommendation):
        """Overweight staking is only unstaked when preservation is off."""
        snapshot = make_snapshot([
            ("stAPT", "amnis", "staking", 500.0),
            ("APT", "native", "native", 500.0),
        ])
        target = make_recommendation([("amnis", "Liquid Staking", 20), ("aries", "Lending", 80)])

        preserved = _plan(snapshot, target, _settings(preserve_staked_positions=True))
        unpreserved = _plan(snapshot, target, _settings(preserve_staked_positions=False))

        assert all(op.operation_type != "unstake" for op in preserved)
        assert unpreserved[0].protocol == "amnis"
        assert unpreserved[0].operation_type == "unstake"
        assert unpreserved[0].function_name == "::staking::unstake"

    def test_drift_below_threshold_skipped(self, make_snapshot, make_recommendation):
        """Entries under the threshold are left alone."""
        snapshot = make_snapshot([
            ("stAPT", "amnis", "staking", 520.0),
            ("sthAPT", "thala", "staking", 480.0),
        ])
        target = make_recommendation([("amnis", "Liquid Staking", 50), ("thala", "Liquid Staking", 50)])

        assert _plan(snapshot, target, _settings(min_rebalance_threshold=5.0)) == []

    def test_tiny_amounts_dropped(self, make_snapshot, make_recommendation):
        """Operations under 0.01 APT are not worth a transaction."""
        snapshot = make_snapshot([("APT", "native", "native", 1000.0)], apt_price=10000.0)
        target = make_recommendation([("aries", "Lending", 5), ("amnis", "Liquid Staking", 95)])

        ops = _plan(snapshot, target, _settings())

        assert [op.protocol for op in ops] == ["amnis"]

    def test_unknown_protocol_dropped(self, make_snapshot, make_recommendation):
        """Protocols without a contract address cannot be targeted."""
        snapshot = make_snapshot([("APT", "native", "native", 1000.0)])
        target = make_recommendation([("mystery", "Lending", 50), ("aries", "Lending", 50)])

        ops = _plan(snapshot, target, _settings())

        assert [op.protocol for op in ops] == ["aries"]

    def test_contract_and_function_resolved(self, make_snapshot, make_recommendation):
        """Operations carry the protocol address and Move function."""
        from app.core.contracts import PROTOCOL_ADDRESSES

        snapshot = make_snapshot([("APT", "native", "native", 1000.0)])
        target = make_recommendation([("thala", "Liquid Staking", 100)])

        op = _plan(snapshot, target, _settings())[0]

        assert op.contract_address == PROTOCOL_ADDRESSES["thala"]
        assert op.function_name == "::staking::stake_apt"

    def test_zero_price_plans_nothing(self, make_snapshot, make_recommendation):
        """Without an APT price no amount can be computed."""
        from app.services.portfolio.portfolio_tracker import AssetHolding, PortfolioSnapshot

        snapshot = PortfolioSnapshot(
            wallet_address="0x" + "ab" * 32,
            apt_price_usd=0.0,
            holdings=(AssetHolding("APT", "native", "native", 10.0, 100.0),),
        )
        target = make_recommendation([("aries", "Lending", 100)])

        assert _plan(snapshot, target, _settings()) == []
