# matrix-engine/matrix_engine.py
"""
Matrix Engine - Main entry point.
Starts event intake and the period scheduler, then runs until signalled.
"""
import asyncio
import logging
import signal
import sys

from config import Config
from core.db import setup_database
from models import register_all_listeners

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('matrix.log')
    ]
)

logger = logging.getLogger(__name__)


async def initialize_engine():
    """
    Initialize the engine with all services and configurations.

    Returns:
        MatrixScheduler: Started scheduler
    """
    try:
        logger.info("=" * 60)
        logger.info("MATRIX ENGINE INITIALIZATION")
        logger.info("=" * 60)

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 1: Load configuration from .env
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("📋 Loading configuration from .env...")
        Config.initialize_from_env()
        logging.getLogger().setLevel(Config.get(Config.LOG_LEVEL, "INFO"))
        logger.info("✓ Configuration loaded")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 2: Validate critical configuration
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🔍 Validating critical configuration keys...")
        Config.validate_critical_keys()

        # Fail fast on a malformed ladder
        from matrix_system.config.ranks import get_rank_ladder
        ladder = get_rank_ladder()
        logger.info(f"✓ Configuration validated ({len(ladder)} ranks)")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 3: Setup database and integrity listeners
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("💾 Setting up database...")
        setup_database()
        register_all_listeners()
        logger.info("✓ Database ready")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 4: Setup event handlers
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🎲 Setting up Matrix event handlers...")
        from matrix_system.events.setup import setup_matrix_event_handlers
        setup_matrix_event_handlers()
        logger.info("✓ Matrix event handlers registered")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 5: Start scheduler (one catch-up tick first)
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🚀 Starting period scheduler...")
        import background.matrix_scheduler as scheduler_module
        scheduler = scheduler_module.MatrixScheduler()
        scheduler_module.scheduler = scheduler
        await scheduler.runTick()
        await scheduler.start()
        logger.info("✓ Period scheduler started")

        Config.set(Config.SYSTEM_READY, True)

        logger.info("=" * 60)
        logger.info("✅ INITIALIZATION COMPLETE")
        logger.info("=" * 60)

        return scheduler

    except Exception as e:
        logger.critical(f"❌ Initialization failed: {e}", exc_info=True)
        raise


def setup_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    """Set stop_event on SIGINT/SIGTERM."""
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
        if scheduler is not None:
            await scheduler.stop()
        from matrix_system.events.setup import teardown_matrix_event_handlers
        teardown_matrix_event_handlers()
        logger.info("👋 Engine shutdown complete")


def cli():
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Engine stopped")


if __name__ == '__main__':
    cli()
