#!/usr/bin/env python3
"""
Chart CLI - query canonical series, notes and capture state.

Usage: python chart_cli.py <command> [options]

Commands:
    day <date> [table...]              - All series of one business day
    overlay <metric> <date> [date...]  - One metric overlaid across dates
    trend <metric> <start> <end>       - One value per day over a date range
    template <date> [date...]          - Metric keys available for the dates
    notes <chart> <date> [date...]     - Point notes of a chart
    note <chart> <date> <slot|-> <text> - Save a point note ("-" = whole day)
    import <file.xlsx>                 - Parse a workbook and print its days
    watch <table> [date]               - Live view refreshed on insert / poll
    throttle [minutes]                 - Show or set the capture throttle
    logs [clear]                       - Show or clear the capture diagnostics
    last-write                         - Show the most recent persisted write

Dates are YYYY-MM-DD in the business timezone; "today" is accepted.
"""

import asyncio
import json
import os
import sys
from typing import Any, List, Optional

# Add project root to PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from pydantic import BaseModel

from core.charts import ChartService, LiveChart
from core.config import Settings, load_settings
from core.infra.scheduler import Scheduler
from core.infra.state import DiagnosticLog
from core.infra.ws import RealtimeClient, realtime_url
from core.models import DaySeries
from core.notes import upsert_note
from core.pipeline import open_state, open_store
from core.throttle import ThrottledSink
from core.timegrid import business_today
from plugins.sycm import RANK_TREND_BUCKET, TABLES, default_registry
from plugins.sycm.tables import MARKET_RANK_TABLE
from plugins.workbook import parse_workbook


class Colors:
    """ANSI color codes for terminal output."""
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    END = "\033[0m"


def dump(data: Any) -> None:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [d.model_dump(mode="json") if isinstance(d, BaseModel) else d for d in data]
    elif isinstance(data, dict):
        data = {k: v.model_dump(mode="json") if isinstance(v, BaseModel) else v for k, v in data.items()}
    print(json.dumps(data, ensure_ascii=False, indent=2))


def resolve_date(text: str, settings: Settings) -> str:
    return business_today(settings.tz) if text == "today" else text


def summarize(day: DaySeries) -> str:
    filled = sum(1 for s in day.series for v in s.grid if v is not None)
    return f"{day.date}: {len(day.series)} series, {filled} filled bucket(s), {len(day.annotations)} annotated bucket(s)"


async def watch(service: ChartService, settings: Settings, table: str, date: str) -> None:
    realtime = None
    if settings.charts.realtime and settings.store.url and settings.store.anon_key:
        realtime = RealtimeClient(realtime_url(settings.store.url, settings.store.anon_key), [table])
    live = LiveChart(
        service,
        table,
        date,
        realtime=realtime,
        scheduler=Scheduler(settings.tz),
        poll_seconds=settings.charts.poll_seconds,
        on_update=lambda day: print(f"{Colors.BLUE}{summarize(day)}{Colors.END}"),
    )
    await live.start()
    try:
        await asyncio.Event().wait()
    finally:
        await live.stop()


async def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        print(__doc__)
        return 1

    command, rest = args[0].lower(), args[1:]
    settings = load_settings()
    dates = [resolve_date(a, settings) for a in rest]

    if command == "import":
        if not rest:
            print(__doc__)
            return 1
        days = parse_workbook(rest[0])
        for day in days.values():
            print(summarize(day))
        dump(days)
        return 0

    store = open_store(settings)
    state = open_state(settings)
    service = ChartService(store, TABLES, tz=settings.tz, max_visible_metrics=settings.charts.max_visible_metrics)
    try:
        if command == "day" and rest:
            dump(await service.day(dates[0], rest[1:] or None))
        elif command == "overlay" and len(rest) >= 2:
            dump(await service.overlay(rest[0], dates[1:]))
        elif command == "trend" and len(rest) == 3:
            # market rank days are represented by their 19:00 reading
            representative = RANK_TREND_BUCKET if rest[0].startswith(f"{MARKET_RANK_TABLE.category}-") else None
            dump(await service.trend(rest[0], dates[1], dates[2], representative=representative))
        elif command == "template" and rest:
            dump(await service.template(dates))
        elif command == "notes" and len(rest) >= 2:
            dump(await service.notes([rest[0]], dates[1:]))
        elif command == "note" and len(rest) >= 4:
            slot = "" if rest[2] == "-" else rest[2]
            ok = await upsert_note(store, rest[0], dates[1], slot, " ".join(rest[3:]))
            print(f"{Colors.GREEN}Saved{Colors.END}" if ok else f"{Colors.RED}Save failed{Colors.END}")
            return 0 if ok else 2
        elif command == "watch" and rest:
            date = dates[1] if len(rest) > 1 else business_today(settings.tz)
            await watch(service, settings, rest[0], date)
        elif command == "throttle":
            sink = ThrottledSink(default_registry(), store, state, default_minutes=settings.capture.throttle_minutes)
            if rest:
                await sink.set_throttle_minutes(rest[0])
            print(f"Throttle: {(await sink.granularity()).minutes} minutes")
        elif command == "logs":
            log = DiagnosticLog(state)
            if rest and rest[0] == "clear":
                await log.clear()
                print(f"{Colors.GREEN}Diagnostics cleared{Colors.END}")
            else:
                for entry in await log.entries():
                    print(f"{entry.t:%H:%M:%S} [{entry.level}] {entry.msg}")
        elif command == "last-write":
            sink = ThrottledSink(default_registry(), store, state)
            last = await sink.last_write()
            if last:
                dump(last)
            else:
                print(f"{Colors.YELLOW}No write recorded yet{Colors.END}")
        else:
            print(f"{Colors.RED}Unknown command or missing arguments: {' '.join(args)}{Colors.END}")
            print(__doc__)
            return 1
    except (KeyError, ValueError) as e:
        print(f"{Colors.RED}Error: {e}{Colors.END}")
        return 1
    finally:
        await store.close()
        await state.close()
    return 0


def run():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print(f"\n{Colors.YELLOW}Interrupted{Colors.END}")


if __name__ == "__main__":
    run()
