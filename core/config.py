"""
Settings: ``config.yml`` (PyYAML) + ``.env`` (python-dotenv) + environment.

Environment variables win over the file:

* ``SUPABASE_URL`` / ``SUPABASE_ANON_KEY`` – remote row store
* ``CAPTURE_CONFIG``      – path of the YAML file (default ``config.yml``)
* ``STATE_DB``            – local state database
* ``BUSINESS_UTC_OFFSET`` – business timezone offset in hours
"""

import logging
import os
from datetime import timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from .timegrid import DEFAULT_THROTTLE_MINUTES, THROTTLE_OPTIONS, business_tz

logger = logging.getLogger(__name__)


class StoreSettings(BaseModel):
    url: Optional[str] = None
    anon_key: Optional[str] = None
    # a path here selects the local SQLite store instead of the remote one
    local_path: Optional[str] = None


class CaptureSettings(BaseModel):
    throttle_minutes: int = DEFAULT_THROTTLE_MINUTES
    headless: bool = False
    user_data_dir: str = "profile"
    pages: Optional[List[str]] = None

    @field_validator("throttle_minutes")
    @classmethod
    def _allowed_throttle(cls, v: int) -> int:
        if v not in THROTTLE_OPTIONS:
            raise ValueError(f"throttle_minutes must be one of {THROTTLE_OPTIONS}")
        return v


class ChartSettings(BaseModel):
    poll_seconds: int = 60
    realtime: bool = True
    max_visible_metrics: int = 8


class Settings(BaseModel):
    utc_offset_hours: float = 8.0
    state_db: str = "db/state.db"
    store: StoreSettings = Field(default_factory=StoreSettings)
    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    charts: ChartSettings = Field(default_factory=ChartSettings)
    # optional replacement for the built-in metric sources
    sources: Optional[List[Dict[str, Any]]] = None

    @property
    def tz(self) -> timezone:
        return business_tz(self.utc_offset_hours)


def _env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    store = dict(data.get("store") or {})
    if os.getenv("SUPABASE_URL"):
        store["url"] = os.environ["SUPABASE_URL"]
    if os.getenv("SUPABASE_ANON_KEY"):
        store["anon_key"] = os.environ["SUPABASE_ANON_KEY"]
    data["store"] = store

    if os.getenv("STATE_DB"):
        data["state_db"] = os.environ["STATE_DB"]
    if os.getenv("BUSINESS_UTC_OFFSET"):
        try:
            data["utc_offset_hours"] = float(os.environ["BUSINESS_UTC_OFFSET"])
        except ValueError:
            raise ValueError(f"BUSINESS_UTC_OFFSET must be a number, got {os.environ['BUSINESS_UTC_OFFSET']!r}") from None
    return data


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings; a missing file means defaults plus environment."""
    load_dotenv()
    path = Path(config_path or os.getenv("CAPTURE_CONFIG", "config.yml"))

    data: Dict[str, Any] = {}
    if path.exists():
        with path.open(encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a mapping at the top level")
    else:
        logger.warning(f"Config file not found: {path}, using defaults")

    try:
        settings = Settings.model_validate(_env_overrides(data))
    except ValidationError as e:
        raise ValueError(f"Invalid configuration in {path}: {e}") from e

    logger.info(
        "Settings loaded (store=%s, UTC%+g)",
        "local" if settings.store.local_path else ("remote" if settings.store.url else "unconfigured"),
        settings.utc_offset_hours,
    )
    return settings
