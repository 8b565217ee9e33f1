"""
MetricSource registry – which responses carry which metric, and how to read them.

The registry is plain data: every source pairs a :class:`UrlMatcher` with one
tagged extraction strategy (``kind`` = ``scalar`` | ``tree_record`` |
``row_list``).  Strategies are pure functions of the decoded JSON body and
return ``None`` when the body does not carry a usable reading right now.

Adding a metric means adding one :class:`MetricSource`; nothing else in the
pipeline needs to change.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Annotated, Any, Dict, Iterable, Iterator, List, Literal, Optional, Union
from urllib.parse import parse_qs, urlsplit

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)


# --------------------------------------------------------------------------- #
# JSON helpers
# --------------------------------------------------------------------------- #
def dig(data: Any, path: str) -> Any:
    """Walk a dotted path (``data.data.0.value``) through dicts and lists."""
    node = data
    for part in filter(None, path.split(".")):
        if isinstance(node, dict):
            node = node.get(part)
        elif isinstance(node, list) and part.isdigit():
            idx = int(part)
            node = node[idx] if idx < len(node) else None
        else:
            return None
        if node is None:
            return None
    return node


def unwrap(value: Any) -> Any:
    """Upstream wraps most numbers as ``{"value": x}``."""
    if isinstance(value, dict) and "value" in value:
        return value["value"]
    return value


def to_number(value: Any) -> Optional[float]:
    """Finite number or ``None``; numeric strings are accepted, bools are not."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip().replace(",", ""))
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _integral(number: float) -> Union[int, float]:
    return int(number) if number.is_integer() else number


def round_half_up(number: float, decimals: int) -> float:
    factor = 10 ** decimals
    return math.floor(number * factor + 0.5) / factor


# --------------------------------------------------------------------------- #
# Extraction strategies
# --------------------------------------------------------------------------- #
class ScalarStrategy(BaseModel):
    """A single number read from the only row of a list."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["scalar"] = "scalar"
    path: str
    field: str
    require_single: bool = True

    def extract(self, body: Any) -> Any:
        rows = dig(body, self.path)
        if not isinstance(rows, list) or not rows:
            return None
        if self.require_single and len(rows) != 1:
            return None
        row = rows[0]
        if not isinstance(row, dict):
            return None
        value = unwrap(row.get(self.field))
        if value is None:
            return None
        number = to_number(value)
        if number is None:
            return None
        return _integral(number)


class TreeField(BaseModel):
    model_config = ConfigDict(frozen=True)

    column: str
    label: str
    field: str
    decimals: Optional[int] = None


class TreeRecordStrategy(BaseModel):
    """A flat record assembled from labelled nodes of a nested tree."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["tree_record"] = "tree_record"
    path: str
    columns: List[TreeField]
    label_field: str = "pageName"
    children_field: str = "children"

    def find(self, nodes: Any, label: str) -> Optional[Dict[str, Any]]:
        if not isinstance(nodes, list):
            return None
        for node in nodes:
            if not isinstance(node, dict):
                continue
            if unwrap(node.get(self.label_field)) == label:
                return node
            found = self.find(node.get(self.children_field), label)
            if found is not None:
                return found
        return None

    def extract(self, body: Any) -> Optional[Dict[str, Any]]:
        nodes = dig(body, self.path)
        if not isinstance(nodes, list):
            return None

        record: Dict[str, Any] = {}
        for f in self.columns:
            node = self.find(nodes, f.label)
            if node is None:
                return None
            raw = node.get(f.field)
            number = to_number(unwrap(raw)) if raw is not None else 0.0
            if number is not None and f.decimals is not None:
                number = round_half_up(number, f.decimals)
            record[f.column] = _integral(number) if number is not None else None
        return record


class RowField(BaseModel):
    model_config = ConfigDict(frozen=True)

    column: str
    # first path holding a non-null value wins
    paths: List[str]
    numeric: bool = False


class RowListStrategy(BaseModel):
    """One record per row of a list (one row per tracked entity)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["row_list"] = "row_list"
    path: str
    columns: List[RowField]

    def _read(self, row: Dict[str, Any], f: RowField) -> Any:
        value = next(
            (v for v in (unwrap(dig(row, p)) for p in f.paths) if v is not None),
            None,
        )
        if f.numeric:
            number = to_number(value)
            return _integral(number) if number is not None else 0
        return "" if value is None else str(value)

    def extract(self, body: Any) -> Optional[Dict[str, List[Dict[str, Any]]]]:
        rows = dig(body, self.path)
        if not isinstance(rows, list) or not rows:
            return None

        items: List[Dict[str, Any]] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            item = {f.column: self._read(row, f) for f in self.columns}
            if not any(item.values()):
                continue
            items.append(item)
        return {"items": items} if items else None


Extraction = Annotated[
    Union[ScalarStrategy, TreeRecordStrategy, RowListStrategy],
    Field(discriminator="kind"),
]


# --------------------------------------------------------------------------- #
# Sources
# --------------------------------------------------------------------------- #
class UrlMatcher(BaseModel):
    """URL substring match plus optional decoded query-parameter filter."""

    model_config = ConfigDict(frozen=True)

    contains: str
    query: Dict[str, str] = Field(default_factory=dict)

    def __call__(self, url: str) -> bool:
        if self.contains not in url:
            return False
        if not self.query:
            return True
        params = parse_qs(urlsplit(url).query)
        return all(value in params.get(key, []) for key, value in self.query.items())

    def overlaps(self, other: "UrlMatcher") -> bool:
        if self.contains not in other.contains and other.contains not in self.contains:
            return False
        shared = set(self.query) & set(other.query)
        return all(self.query[k] == other.query[k] for k in shared)


class MetricSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    matcher: UrlMatcher
    extractor: Extraction
    table: str
    value_key: Optional[str] = None
    full_record: bool = False
    multi_value: bool = False
    multi_rows: bool = False

    @model_validator(mode="after")
    def _check_shape(self) -> "MetricSource":
        if self.multi_rows and not (self.multi_value and self.extractor.kind == "row_list"):
            raise ValueError(f"{self.id}: multi_rows needs multi_value and a row_list extractor")
        if self.full_record and not self.multi_value:
            raise ValueError(f"{self.id}: full_record needs multi_value")
        if not (self.full_record or self.multi_rows or self.value_key):
            raise ValueError(f"{self.id}: single-value sources need a value_key")
        return self

    def matches(self, url: str) -> bool:
        return self.matcher(url)

    def extract(self, body: Any) -> Any:
        return self.extractor.extract(body)


class SourceRegistry:
    """Ordered, first-match-wins table of metric sources."""

    def __init__(self, sources: Iterable[MetricSource]):
        self._sources = tuple(sources)
        seen: Dict[str, MetricSource] = {}
        for src in self._sources:
            if src.id in seen:
                raise ValueError(f"Duplicate source id: {src.id}")
            for other in seen.values():
                if src.matcher.overlaps(other.matcher):
                    raise ValueError(f"Sources {other.id!r} and {src.id!r} match the same URLs")
            seen[src.id] = src
        self._by_id = seen

    def __iter__(self) -> Iterator[MetricSource]:
        return iter(self._sources)

    def __len__(self) -> int:
        return len(self._sources)

    def get(self, source_id: str) -> MetricSource:
        try:
            return self._by_id[source_id]
        except KeyError:
            raise KeyError(f"Source '{source_id}' not found. Available: {list(self._by_id)}") from None

    def sources_for_table(self, table: str) -> List[MetricSource]:
        return [src for src in self._sources if src.table == table]

    def match(self, url: str) -> Optional[MetricSource]:
        for src in self._sources:
            if src.matches(url):
                return src
        return None

    @classmethod
    def from_config(cls, entries: Iterable[Dict[str, Any]]) -> "SourceRegistry":
        return cls(MetricSource.model_validate(e) for e in entries)


def load_sources(path: Union[str, Path]) -> SourceRegistry:
    """Build a registry from the ``sources:`` list of a YAML file."""
    with Path(path).open(encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    entries = data.get("sources")
    if not isinstance(entries, list):
        raise ValueError(f"No 'sources' list found in {path}")
    registry = SourceRegistry.from_config(entries)
    logger.info("Loaded %d metric source(s) from %s", len(registry), path)
    return registry
