"""
Headless entry point - runs the cadence loops without the HTTP service.

    python -m arena_trader.main
"""
import asyncio
import logging
import signal
import sys

from .config import TradingConfig, load_config
from .engine import CycleScheduler, build_orchestrator

logger = logging.getLogger("arena_trader")


async def run(cfg: TradingConfig) -> None:
    """Run all loops until SIGINT/SIGTERM."""
    orchestrator = build_orchestrator(cfg)
    scheduler = CycleScheduler(cfg, orchestrator)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    logger.info("=" * 60)
    logger.info("ARENA TRADER STARTING")
    logger.info(f"Mode: {cfg.get_mode_description()}")
    logger.info(f"Roster: {', '.join(cfg.agent_ids)}")
    logger.info(
        f"Cadences: decisions {cfg.decision_interval_seconds}s, balances {cfg.balance_sync_seconds}s, "
        f"market {cfg.market_refresh_seconds}s, cleanup {cfg.trade_cleanup_seconds}s"
    )
    logger.info("=" * 60)

    scheduler.start()
    await stop_event.wait()

    logger.info("Shutting down Arena Trader...")
    await scheduler.stop()


def main():
    """Entry point."""
    try:
        cfg = load_config()
    except ValueError as e:
        print(f"CONFIGURATION ERROR: {e}")
        sys.exit(1)

    logging.basicConfig(
        level=cfg.log_level,
        format='%(asctime)s [ARENA] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if not cfg.openai_api_key:
        logger.warning("OpenAI API key not set. Every agent will HOLD. Set OPENAI_API_KEY.")

    asyncio.run(run(cfg))


if __name__ == "__main__":
    main()
