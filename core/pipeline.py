"""
Pipeline wiring using the Transform chain pattern.
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, Dict, List, Optional

from .config import Settings
from .infra.state import SqliteKeyValue
from .infra.store import RestStore, SqliteStore
from .interfaces import KeyValueStore, RowStore, Transform

logger = logging.getLogger(__name__)


async def _drain(stages: List[Transform]) -> None:
    """Execute a pipeline by connecting transform stages."""

    async def seed() -> AsyncIterator[None]:
        """Seed the pipeline with a single None value."""
        yield None

    stream: AsyncIterator[Any] = seed()

    async with AsyncExitStack() as stack:
        # Enter all stages that support async context management
        for stage in stages:
            if hasattr(stage, "__aenter__"):
                await stack.enter_async_context(stage)

        for stage in stages:
            stream = stage(stream)

        # Sinks handle items; draining the final stream drives the pipeline
        async for _ in stream:
            pass


async def run_pipeline(name: str, stages: List[Transform]) -> bool:
    """Run one pipeline to completion; failures are logged, not raised."""
    try:
        logger.info(f"Starting pipeline: {name}")
        await _drain(stages)
        logger.info(f"Pipeline completed: {name}")
        return True
    except asyncio.CancelledError:
        logger.info(f"Pipeline cancelled: {name}")
        raise
    except Exception as e:
        logger.error(f"Pipeline {name} failed: {e}", exc_info=True)
        return False


async def run_all(pipelines: Dict[str, List[Transform]]) -> Dict[str, bool]:
    """Run all pipelines concurrently; one failing does not stop the others."""
    names = list(pipelines)
    results = await asyncio.gather(*(run_pipeline(n, pipelines[n]) for n in names))
    return dict(zip(names, results))


def open_store(settings: Settings, local_path: Optional[str] = None) -> RowStore:
    """The configured row store: local SQLite when a path is set, else the REST API."""
    path = local_path or settings.store.local_path
    if path:
        logger.info(f"Using local row store at {path}")
        return SqliteStore(path)
    if not (settings.store.url and settings.store.anon_key):
        logger.warning("SUPABASE_URL / SUPABASE_ANON_KEY not set, writes will be rejected")
    return RestStore(settings.store.url, settings.store.anon_key)


def open_state(settings: Settings) -> KeyValueStore:
    return SqliteKeyValue(settings.state_db)
