"""
Main entry point: capture live metrics from the analytics pages.

Opens the pages in a persistent browser profile, extracts every matching
response and writes at most one row per bucket per source until interrupted.
"""

import asyncio
import logging
import os
import signal
import sys

# Add project root to PYTHONPATH so imports work when running this script directly
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.capture import CaptureAgent
from core.config import Settings, load_settings
from core.infra.state import DiagnosticLog
from core.pipeline import open_state, open_store, run_pipeline
from core.registry import SourceRegistry
from core.throttle import ThrottledSink
from plugins.sycm import PageObserver, default_registry


def build_registry(settings: Settings) -> SourceRegistry:
    if settings.sources:
        return SourceRegistry.from_config(settings.sources)
    return default_registry()


async def main():
    """Run the capture pipeline until SIGINT/SIGTERM."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s"
    )
    logger = logging.getLogger(__name__)

    settings = load_settings()
    registry = build_registry(settings)
    logger.info(f"Loaded {len(registry)} metric source(s):")
    for src in registry:
        logger.info(f"  - {src.id}: {src.matcher.contains} -> {src.table}")

    store = open_store(settings)
    state = open_state(settings)
    observer = PageObserver(
        registry,
        urls=settings.capture.pages,
        user_data_dir=settings.capture.user_data_dir,
        headless=settings.capture.headless,
    )
    agent = CaptureAgent(registry, tz=settings.tz)
    sink = ThrottledSink(
        registry,
        store,
        state,
        default_minutes=settings.capture.throttle_minutes,
        tz=settings.tz,
        diagnostics=DiagnosticLog(state),
    )

    def signal_handler():
        logger.info("Received shutdown signal")
        observer.stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        asyncio.get_running_loop().add_signal_handler(sig, signal_handler)

    try:
        await run_pipeline("live-capture", [observer, agent, sink])
    finally:
        logger.info("Shutting down...")
        await sink.drain()
        await store.close()
        await state.close()
        logger.info("Shutdown complete")


def run_capture():
    """Entry point that can be called from other scripts."""
    asyncio.run(main())


if __name__ == "__main__":
    run_capture()
