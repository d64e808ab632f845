"""
TradeDesk - Main Entry Point

Trading decision and position reconciliation engine for perpetuals venues.

Usage:
    # Check configuration
    python main.py --check

    # Run the scheduled loop until SIGINT/SIGTERM
    python main.py

    # Run a single scan cycle and exit
    python main.py --once

    # Show system status
    python main.py --status
"""

import argparse
import asyncio
import json
import signal
from typing import Dict, Optional

import structlog

from tradedesk.core.config import TradeDeskConfig, app_config
from tradedesk.core.engine import TradingEngine
from tradedesk.exchange.ccxt_venue import CcxtVenue
from tradedesk.exchange.event_stream import FillEventStream
from tradedesk.exchange.token_discovery import TokenDiscovery
from tradedesk.oracles.predictor import PredictorClient
from tradedesk.positions.reconciler import FillReconciler
from tradedesk.positions.store import PositionStore
from tradedesk.risk.exit_arbiter import ExitDecisionArbiter
from tradedesk.risk.trailing import TrailingAdjuster
from tradedesk.signals.entry_timing import EntryTimingEvaluator
from tradedesk.signals.extreme_tracker import ExtremeTracker
from tradedesk.storage.database import Database
from tradedesk.strategies.platform_manager import (
    PlatformManager, VenueRegistration, VenueRegistry,
)
from tradedesk.strategies.predictive_perp import PredictivePerpStrategy
from tradedesk.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


class TradeDeskApp:
    """
    Wires configuration, persistence, venue adapters and the engine.

    Owns every resource it opens and releases them in shutdown().
    """

    def __init__(self, config: Optional[TradeDeskConfig] = None):
        self.config = config or app_config

        # Components
        self.database: Optional[Database] = None
        self.venue: Optional[CcxtVenue] = None
        self.predictor: Optional[PredictorClient] = None
        self.store: Optional[PositionStore] = None
        self.reconciler: Optional[FillReconciler] = None
        self.engine: Optional[TradingEngine] = None

        # State
        self._shutdown_event = asyncio.Event()
        self._initialized = False

    async def initialize(self, connect_venue: bool = True):
        """Initialize all components based on configuration."""
        cfg = self.config
        logger.info(
            "app.initializing",
            environment=cfg.system.environment,
            venue=cfg.venue.name,
            venue_enabled=cfg.venue.enabled,
        )

        self.database = Database(cfg.database.database_url)
        await self.database.initialize()

        self.store = PositionStore(self.database)
        await self.store.load()
        self.reconciler = FillReconciler(self.store)

        self.predictor = PredictorClient(cfg.predictor)
        self.venue = CcxtVenue(cfg.venue)
        if connect_venue and cfg.venue.enabled:
            await self.venue.initialize()

        entry_timing = EntryTimingEvaluator(
            cfg.entry_timing,
            ExtremeTracker(self.venue, cfg.entry_timing.extreme_lookback_minutes),
        )
        strategy = PredictivePerpStrategy(
            venue=cfg.venue.name,
            signals=self.predictor,
            market_data=self.venue,
            execution=self.venue,
            discovery=TokenDiscovery(self.venue, self.venue),
            entry_timing=entry_timing,
            min_confidence=cfg.venue.predictor_min_confidence,
        )
        event_stream = None
        if cfg.venue.enabled and cfg.venue.wallet_address:
            event_stream = FillEventStream(
                venue=cfg.venue.name,
                url=cfg.venue.ws_url,
                user_address=cfg.venue.wallet_address,
                reconciler=self.reconciler,
                base_delay=cfg.venue.reconnect_base_delay_seconds,
                max_delay=cfg.venue.reconnect_max_delay_seconds,
                max_attempts=cfg.venue.max_reconnect_attempts,
            )

        registry = VenueRegistry([
            VenueRegistration(
                venue=cfg.venue.name,
                strategy=strategy,
                execution=self.venue,
                params=cfg.venue.to_trading_params(),
                market_data=self.venue,
                event_stream=event_stream,
            )
        ])

        self.engine = TradingEngine(
            registry=registry,
            store=self.store,
            reconciler=self.reconciler,
            platform_manager=PlatformManager(
                registry, self.store, cfg.trading.cross_venue_rebuy_prevention
            ),
            exit_arbiter=ExitDecisionArbiter(registry),
            trailing=TrailingAdjuster(self.predictor, cfg.trailing),
            database=self.database,
            config=cfg.trading,
        )

        self._initialized = True
        logger.info("app.initialized", venues=registry.venues)

    async def run(self):
        """Run the scheduled loop until a shutdown signal arrives."""
        if not self._initialized:
            raise RuntimeError("App not initialized. Call initialize() first.")

        # Setup signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        try:
            await self.engine.start()
            await self._shutdown_event.wait()
        except Exception as e:
            logger.error("app.error", error=str(e), exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def run_once(self) -> bool:
        """Run one scan cycle, wait for queued fills, then shut down."""
        try:
            ran = await self.engine.run_cycle()
            await self.reconciler.drain()
            return ran
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Perform graceful shutdown."""
        logger.info("app.shutting_down")

        if self.engine:
            await self.engine.stop()
        if self.predictor:
            await self.predictor.close()
        if self.venue:
            await self.venue.close()
        if self.database:
            await self.database.close()

        logger.info("app.shutdown_complete")

    def _signal_handler(self):
        """Handle shutdown signals."""
        logger.info("app.shutdown_signal_received")
        self._shutdown_event.set()

    def get_status(self) -> Dict:
        status = self.engine.get_status() if self.engine else {}
        status["configuration"] = self.config.validate_configuration()
        return status


def print_check(result: Dict):
    """Print configuration check results."""
    print("\n" + "=" * 60)
    print("           TRADEDESK CONFIGURATION CHECK")
    print("=" * 60)
    if result["valid"]:
        print("\n✓ Configuration is valid")
    else:
        print("\n✗ Configuration issues:")
        for issue in result["issues"]:
            print(f"   - {issue}")
    print("\n" + "=" * 60)


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="TradeDesk - trading decision and position reconciliation engine"
    )
    parser.add_argument(
        "--once", action="store_true", help="Run a single scan cycle and exit"
    )
    parser.add_argument(
        "--status", action="store_true", help="Print status JSON and exit"
    )
    parser.add_argument(
        "--check", action="store_true", help="Check configuration and exit"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override LOG_LEVEL",
    )
    args = parser.parse_args()

    setup_logging(log_level=args.log_level)

    if args.check:
        print_check(app_config.validate_configuration())
        return

    app = TradeDeskApp()
    try:
        if args.status:
            await app.initialize(connect_venue=False)
            print(json.dumps(app.get_status(), indent=2, default=str))
            await app.shutdown()
            return

        await app.initialize()
        if args.once:
            await app.run_once()
            return
        await app.run()

    except KeyboardInterrupt:
        print("\n\nShutdown requested by user...")
    except Exception as e:
        logger.error("main.error", error=str(e), exc_info=True)
        print(f"\n✗ Fatal error: {e}")
        raise


if __name__ == "__main__":
    asyncio.run(main())
