"""
Commission Engine - Main entry point.
Starts the background scheduler that runs commission batches and payment reports.
"""
import asyncio
import logging
import signal
import sys

from config import Config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('commissions.log')
    ]
)

logger = logging.getLogger(__name__)


async def initialize_engine():
    """
    Initialize engine with all services and configurations.

    Returns:
        MLMScheduler: Started scheduler
    """
    try:
        logger.info("=" * 60)
        logger.info("COMMISSION ENGINE INITIALIZATION")
        logger.info("=" * 60)

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 1: Load configuration from .env
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("📋 Loading configuration from .env...")
        Config.initialize_from_env()
        logger.info("✓ Configuration loaded")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 2: Validate critical configuration
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🔍 Validating critical configuration keys...")
        await Config.validate_critical_keys()
        logger.info("✓ Configuration validated")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 3: Setup database and ledger protection
        # ═══════════════════════════════════════════════════════════════════════
        from core.db import setup_database

        logger.info("💾 Setting up database...")
        setup_database()
        logger.info("✓ Database ready")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 4: Check rule tables load
        # ═══════════════════════════════════════════════════════════════════════
        from mlm_system.config.rule_tables import load_rule_tables

        rules = load_rule_tables()
        logger.info(f"✓ Rule tables ready ({len(rules.versions)} versions)")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 5: Setup intake event handlers
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🎲 Setting up MLM event handlers...")
        from mlm_system.events.setup import setup_mlm_event_handlers
        setup_mlm_event_handlers()
        logger.info("✓ MLM event handlers registered")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 6: Start background scheduler (first commission run is immediate)
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🚀 Starting background scheduler...")
        from background import mlm_scheduler
        mlm_scheduler.scheduler = mlm_scheduler.MLMScheduler()
        await mlm_scheduler.scheduler.start()
        logger.info("✓ Background scheduler started")

        # Mark system as ready
        Config.set(Config.SYSTEM_READY, True)

        logger.info("=" * 60)
        logger.info("✅ INITIALIZATION COMPLETE")
        logger.info("=" * 60)

        return mlm_scheduler.scheduler

    except Exception as e:
        logger.critical(f"❌ Initialization failed: {e}", exc_info=True)
        raise


def setup_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    """Setup signal handlers for graceful shutdown."""
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers not available on Windows
            logger.warning(f"Signal handler for {sig} not available on this platform")


async def main():
    """Main entry point."""
    scheduler = None
    try:
        scheduler = await initialize_engine()

        stop_event = asyncio.Event()
        setup_signal_handlers(asyncio.get_running_loop(), stop_event)

        logger.info("🔄 Engine running, waiting for shutdown signal...")
        await stop_event.wait()

    except KeyboardInterrupt:
        logger.info("⚠️ Engine stopped by user")
    except Exception as e:
        logger.critical(f"❌ Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if scheduler:
            await scheduler.stop()
        from mlm_system.events.setup import teardown_mlm_event_handlers
        teardown_mlm_event_handlers()
        logger.info("👋 Engine shutdown complete")


if __name__ == '__main__':
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Engine stopped")
