"""Unit tests for the venue registry and opportunity ranking."""
import pytest

from tradedesk.core.exceptions import ConfigurationError, UnknownVenueError
from tradedesk.core.models import PositionDirection, PositionStatus, TradingDecision
from tradedesk.strategies.platform_manager import (
    PlatformManager, VenueRegistration, VenueRegistry,
)

from conftest import FakeStrategy, FakeVenue


def _registration(venue, trading_params, priority=1, enabled=True, strategy=None):
    execution = FakeVenue(venue)
    return VenueRegistration(
        venue=venue,
        strategy=strategy or FakeStrategy(venue),
        execution=execution,
        params=trading_params.model_copy(
            update={"venue": venue, "priority": priority, "enabled": enabled}
        ),
        market_data=execution,
    )


def _trade(confidence):
    return TradingDecision.trade("signal", confidence, PositionDirection.LONG, 1_000)


class TestVenueRegistry:
    """Test registry construction and lookup."""

    def test_lookup(self, registry):
        assert registry.get("hyperliquid").venue == "hyperliquid"
        assert "hyperliquid" in registry
        assert len(registry) == 1
        assert registry.venues == ["hyperliquid"]

    def test_unknown_venue(self, registry):
        with pytest.raises(UnknownVenueError):
            registry.get("drift")

    def test_duplicate_registration(self, trading_params):
        with pytest.raises(ConfigurationError, match="registered twice"):
            VenueRegistry([
                _registration("hyperliquid", trading_params),
                _registration("hyperliquid", trading_params),
            ])

    def test_params_for_other_venue(self, trading_params):
        registration = _registration("hyperliquid", trading_params)
        mismatched = VenueRegistration(
            venue="drift",
            strategy=FakeStrategy("drift"),
            execution=registration.execution,
            params=registration.params,
            market_data=registration.market_data,
        )

        with pytest.raises(ConfigurationError):
            VenueRegistry([mismatched])

    def test_enabled_filter(self, trading_params):
        registry = VenueRegistry([
            _registration("hyperliquid", trading_params),
            _registration("drift", trading_params, enabled=False),
        ])

        assert [r.venue for r in registry.enabled()] == ["hyperliquid"]

    def test_registry_is_read_only(self, registry):
        with pytest.raises(TypeError):
            registry._entries["drift"] = None


class TestOpportunityScan:
    """Test scanning and ranking."""

    @pytest.mark.asyncio
    async def test_ranked_by_priority_then_confidence(self, trading_params, store):
        low = FakeStrategy("drift")
        low.instruments = ["SOL"]
        low.decisions = {"SOL": _trade(0.95)}
        high = FakeStrategy("hyperliquid")
        high.instruments = ["BTC", "ETH", "DOGE"]
        high.decisions = {"BTC": _trade(0.7), "ETH": _trade(0.9)}
        registry = VenueRegistry([
            _registration("drift", trading_params, priority=1, strategy=low),
            _registration("hyperliquid", trading_params, priority=5, strategy=high),
        ])

        opportunities = await PlatformManager(registry, store).scan_for_opportunities()

        assert [(o.venue, o.instrument) for o in opportunities] == [
            ("hyperliquid", "ETH"),
            ("hyperliquid", "BTC"),
            ("drift", "SOL"),
        ]
        assert opportunities[0].priority == 5

    @pytest.mark.asyncio
    async def test_held_instrument_skipped(self, registry, fake_strategy, store, make_position):
        fake_strategy.instruments = ["BTC", "ETH"]
        fake_strategy.decisions = {"BTC": _trade(0.8), "ETH": _trade(0.8)}
        await store.add(make_position(instrument="BTC"))

        opportunities = await PlatformManager(registry, store).scan_for_opportunities()

        assert [o.instrument for o in opportunities] == ["ETH"]
        assert fake_strategy.entry_calls == ["ETH"]

    @pytest.mark.asyncio
    async def test_created_position_counts_as_held(self, registry, fake_strategy, store, make_position):
        fake_strategy.instruments = ["BTC"]
        fake_strategy.decisions = {"BTC": _trade(0.8)}
        await store.add(make_position(instrument="BTC", status=PositionStatus.CREATED))

        assert await PlatformManager(registry, store).scan_for_opportunities() == []

    @pytest.mark.asyncio
    async def test_closed_position_not_held(self, registry, fake_strategy, store, make_position):
        fake_strategy.instruments = ["BTC"]
        fake_strategy.decisions = {"BTC": _trade(0.8)}
        await store.add(make_position(instrument="BTC", status=PositionStatus.CLOSED))

        opportunities = await PlatformManager(registry, store).scan_for_opportunities()

        assert len(opportunities) == 1

    @pytest.mark.asyncio
    async def test_cross_venue_rebuy_prevention(self, trading_params, store, make_position):
        drift = FakeStrategy("drift")
        drift.instruments = ["BTC"]
        drift.decisions = {"BTC": _trade(0.8)}
        registry = VenueRegistry([_registration("drift", trading_params, strategy=drift)])
        await store.add(make_position(instrument="BTC", venue="hyperliquid"))

        prevented = await PlatformManager(registry, store, True).scan_for_opportunities()
        allowed = await PlatformManager(registry, store, False).scan_for_opportunities()

        assert prevented == []
        assert [(o.venue, o.instrument) for o in allowed] == [("drift", "BTC")]

    @pytest.mark.asyncio
    async def test_discovery_failure_isolated(self, trading_params, store):
        broken = FakeStrategy("drift")

        async def fail():
            raise RuntimeError("discovery down")

        broken.discover_instruments = fail
        healthy = FakeStrategy("hyperliquid")
        healthy.instruments = ["ETH"]
        healthy.decisions = {"ETH": _trade(0.8)}
        registry = VenueRegistry([
            _registration("drift", trading_params, strategy=broken),
            _registration("hyperliquid", trading_params, strategy=healthy),
        ])

        opportunities = await PlatformManager(registry, store).scan_for_opportunities()

        assert [o.instrument for o in opportunities] == ["ETH"]

    @pytest.mark.asyncio
    async def test_disabled_venue_not_scanned(self, trading_params, store):
        strategy = FakeStrategy("drift")
        strategy.instruments = ["BTC"]
        strategy.decisions = {"BTC": _trade(0.8)}
        registry = VenueRegistry([
            _registration("drift", trading_params, enabled=False, strategy=strategy),
        ])

        assert await PlatformManager(registry, store).scan_for_opportunities() == []
        assert strategy.entry_calls == []
