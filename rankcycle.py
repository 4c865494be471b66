# rankcycle/rankcycle.py
"""
Rankcycle - main entry point.
Runs the income engine event handlers and background sweeps until stopped.
"""
import asyncio
import logging
import signal
import sys

from config import Config
from core.db import setup_database
from background.cycle_scheduler import CycleScheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('rankcycle.log')
    ]
)

logger = logging.getLogger(__name__)


async def initialize() -> CycleScheduler:
    """
    Initialize configuration, database, event handlers and scheduler.

    Returns:
        Started CycleScheduler
    """
    try:
        logger.info("=" * 60)
        logger.info("RANKCYCLE INITIALIZATION")
        logger.info("=" * 60)

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 1: Load configuration from .env
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("📋 Loading configuration from .env...")
        Config.initialize_from_env()
        logger.info("✓ Configuration loaded")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 2: Setup database
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("💾 Setting up database...")
        setup_database()
        logger.info("✓ Database ready")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 3: Validate critical configuration and rank table
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🔍 Validating critical configuration keys...")
        await Config.validate_critical_keys()

        from mlm_system.config.ranks import RANK_CONFIG
        ranks = RANK_CONFIG()
        logger.info(f"✓ Configuration validated, {len(ranks)} ranks: {', '.join(ranks)}")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 4: Setup MLM event handlers
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🎲 Setting up MLM event handlers...")
        from mlm_system.events.setup import setup_mlm_event_handlers
        setup_mlm_event_handlers()
        logger.info("✓ MLM event handlers registered")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 5: Start background scheduler
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🚀 Starting background scheduler...")
        scheduler = CycleScheduler()
        await scheduler.start()
        logger.info("✓ Background scheduler started")

        logger.info("=" * 60)
        logger.info("✅ INITIALIZATION COMPLETE")
        logger.info("=" * 60)

        return scheduler

    except Exception as e:
        logger.critical(f"❌ Initialization failed: {e}", exc_info=True)
        raise


def setup_signal_handlers(loop: asyncio.AbstractEventLoop, stopEvent: asyncio.Event) -> None:
    """Set stopEvent on SIGINT/SIGTERM."""
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stopEvent.set)
        except NotImplementedError:
            # Signal handlers not available on Windows
            logger.warning(f"Signal handler for {sig} not available on this platform")


async def main():
    """Main entry point."""
    scheduler = None
    try:
        scheduler = await initialize()

        stopEvent = asyncio.Event()
        setup_signal_handlers(asyncio.get_running_loop(), stopEvent)

        logger.info("🔄 Running, press Ctrl+C to stop")
        await stopEvent.wait()

    except KeyboardInterrupt:
        logger.info("⚠️ Stopped by user")
    except Exception as e:
        logger.critical(f"❌ Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if scheduler:
            await scheduler.stop()
        logger.info("👋 Shutdown complete")


def main_cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == '__main__':
    main_cli()
