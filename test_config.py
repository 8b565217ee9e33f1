#!/usr/bin/env python3
"""
Tests for settings loading and for wiring settings into the pipeline.
"""

import asyncio
import os
import sys
from datetime import timedelta

import pytest

# Add project root to PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.config import load_settings
from core.infra.store import RestStore, SqliteStore
from core.pipeline import open_store

ENV_VARS = ("SUPABASE_URL", "SUPABASE_ANON_KEY", "CAPTURE_CONFIG", "STATE_DB", "BUSINESS_UTC_OFFSET")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def write(tmp_path, text):
    path = tmp_path / "config.yml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_defaults_when_file_missing(tmp_path):
    settings = load_settings(str(tmp_path / "missing.yml"))
    assert settings.capture.throttle_minutes == 20
    assert settings.charts.max_visible_metrics == 8
    assert settings.tz.utcoffset(None) == timedelta(hours=8)
    assert settings.store.url is None
    assert settings.sources is None


def test_yaml_values(tmp_path):
    path = write(
        tmp_path,
        "utc_offset_hours: 9\n"
        "store:\n"
        "  url: https://example.supabase.co\n"
        "  anon_key: from-file\n"
        "capture:\n"
        "  throttle_minutes: 30\n"
        "  headless: true\n"
        "charts:\n"
        "  poll_seconds: 15\n",
    )
    settings = load_settings(path)
    assert settings.capture.throttle_minutes == 30
    assert settings.capture.headless is True
    assert settings.charts.poll_seconds == 15
    assert settings.store.anon_key == "from-file"
    assert settings.tz.utcoffset(None) == timedelta(hours=9)


def test_environment_wins_over_file(tmp_path, monkeypatch):
    path = write(tmp_path, "store:\n  url: https://file.supabase.co\n  anon_key: from-file\n")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "from-env")
    monkeypatch.setenv("STATE_DB", str(tmp_path / "state.db"))
    monkeypatch.setenv("BUSINESS_UTC_OFFSET", "7")

    settings = load_settings(path)
    assert settings.store.url == "https://file.supabase.co"
    assert settings.store.anon_key == "from-env"
    assert settings.state_db == str(tmp_path / "state.db")
    assert settings.utc_offset_hours == 7


def test_config_path_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("CAPTURE_CONFIG", write(tmp_path, "capture:\n  throttle_minutes: 60\n"))
    assert load_settings().capture.throttle_minutes == 60


@pytest.mark.parametrize(
    "text",
    [
        "capture:\n  throttle_minutes: 15\n",
        "capture: [unclosed\n",
        "- just\n- a list\n",
    ],
)
def test_invalid_config_raises(tmp_path, text):
    with pytest.raises(ValueError):
        load_settings(write(tmp_path, text))


def test_bad_offset_in_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("BUSINESS_UTC_OFFSET", "east")
    with pytest.raises(ValueError):
        load_settings(str(tmp_path / "missing.yml"))


def test_store_selection(tmp_path):
    local = load_settings(write(tmp_path, f"store:\n  local_path: {tmp_path / 'rows.db'}\n"))
    remote = load_settings(str(tmp_path / "missing.yml"))

    async def scenario():
        stores = [open_store(local), open_store(remote)]
        try:
            return [type(s) for s in stores], stores[1].configured
        finally:
            for store in stores:
                await store.close()

    kinds, configured = asyncio.run(scenario())
    assert kinds == [SqliteStore, RestStore]
    assert configured is False


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
