"""
Entry model and normalisation.

Entries arrive from the host's entry store as pydantic models or plain
mappings (camelCase or snake_case).  `normalize_entries` is the only way
entries enter the analytics layer:

  * entries missing a required field (timestamp / painLevel) are excluded
    and counted, never fatal;
  * entries whose fields are present but corrupt raise EngineContractError;
  * the result is always re-sorted by timestamp.

`entries_to_frame` turns the sorted snapshot into the pandas frame every
analytics module works on.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from constants import DAY_NAMES, MONTH_PHASES, NIGHT_LABEL, QOL_ALIASES, TIME_OF_DAY_BUCKETS
from exceptions import EngineContractError

log = logging.getLogger("entries")

REQUIRED_FIELDS = (("timestamp",), ("painLevel", "pain_level"))


def _clean_label(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"label must be a string, got {type(value).__name__}")
    return " ".join(value.strip().lower().split())


def _label_set(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    cleaned = {_clean_label(v) for v in value}
    cleaned.discard("")
    return tuple(sorted(cleaned))


class Medication(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    dose: Optional[str] = None
    timing: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, v: Any) -> str:
        name = _clean_label(v)
        if not name:
            raise ValueError("medication name is empty")
        return name

    @field_validator("dose", "timing", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class Entry(BaseModel):
    """One timestamped pain record.  Immutable once built."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: Optional[Union[int, str]] = None
    timestamp: datetime
    pain_level: int = Field(alias="painLevel", ge=0, le=10)
    locations: Tuple[str, ...] = ()
    symptoms: Tuple[str, ...] = ()
    medications: Tuple[Medication, ...] = ()
    quality_of_life: Dict[str, float] = Field(default_factory=dict, alias="qualityOfLife")
    notes: str = ""
    tags: Tuple[str, ...] = ()
    activities: Tuple[str, ...] = ()
    weather: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _wall_clock(cls, v: datetime) -> datetime:
        # Time-of-day analysis works on the user's local wall clock.
        return v.replace(tzinfo=None)

    @field_validator("pain_level", mode="before")
    @classmethod
    def _pain_level(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("painLevel must be a number, got a boolean")
        return v

    @field_validator("locations", "symptoms", "tags", "activities", mode="before")
    @classmethod
    def _labels(cls, v: Any) -> Tuple[str, ...]:
        return _label_set(v)

    @field_validator("medications", mode="before")
    @classmethod
    def _medications(cls, v: Any) -> Any:
        if v is None:
            return ()
        if isinstance(v, (str, Mapping, Medication)):
            v = [v]
        return tuple({"name": m} if isinstance(m, str) else m for m in v)

    @field_validator("quality_of_life", mode="before")
    @classmethod
    def _quality_of_life(cls, v: Any) -> Dict[str, float]:
        if v is None:
            return {}
        if not isinstance(v, Mapping):
            raise ValueError("qualityOfLife must be a mapping")
        out: Dict[str, float] = {}
        for key, raw in v.items():
            if raw is None:
                continue
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                raise ValueError(f"qualityOfLife[{key!r}] is not numeric")
            val = float(raw)
            if math.isnan(val) or not 0.0 <= val <= 10.0:
                raise ValueError(f"qualityOfLife[{key!r}]={raw!r} is outside 0-10")
            name = _clean_label(key).replace(" ", "_")
            out[QOL_ALIASES.get(name, name)] = val
        return out

    @field_validator("notes", mode="before")
    @classmethod
    def _notes(cls, v: Any) -> str:
        return "" if v is None else v

    @field_validator("weather", mode="before")
    @classmethod
    def _weather(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        return _clean_label(v) or None

    @property
    def medication_names(self) -> Tuple[str, ...]:
        return tuple(sorted({m.name for m in self.medications}))


# ─── Normalisation ────────────────────────────────────────────


def _missing_required(item: Mapping) -> Optional[str]:
    for names in REQUIRED_FIELDS:
        if all(item.get(n) is None for n in names):
            return names[0]
    return None


def _sort_key(entry: Entry):
    # total order over content, so equal timestamps never depend on input order
    return (
        entry.timestamp,
        entry.pain_level,
        "" if entry.id is None else str(entry.id),
        entry.locations,
        entry.symptoms,
        tuple((m.name, m.dose or "", m.timing or "") for m in entry.medications),
        tuple(sorted(entry.quality_of_life.items())),
        entry.tags,
        entry.activities,
        entry.weather or "",
        entry.notes,
    )


def normalize_entries(raw: Optional[Iterable[Any]]) -> Tuple[List[Entry], int]:
    """Validate and sort an entry snapshot.

    Returns (entries sorted by timestamp, number of excluded entries).
    """
    if raw is None:
        return [], 0

    entries: List[Entry] = []
    excluded = 0
    for idx, item in enumerate(raw):
        if isinstance(item, Entry):
            entries.append(item)
            continue
        if not isinstance(item, Mapping):
            raise EngineContractError(
                f"entry is a {type(item).__name__}, expected a mapping or Entry", index=idx
            )
        missing = _missing_required(item)
        if missing:
            log.debug("Excluding entry %d: missing %s", idx, missing)
            excluded += 1
            continue
        try:
            entries.append(Entry.model_validate(item))
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ())) or None
            raise EngineContractError(
                f"corrupt entry field: {first.get('msg', 'invalid value')}", index=idx, field=field
            ) from e

    entries.sort(key=_sort_key)
    if excluded:
        log.info("Excluded %d malformed entries (missing timestamp or pain level)", excluded)
    return entries, excluded


# ─── Frame construction ───────────────────────────────────────


def time_of_day(hour: int) -> str:
    for label, start, end in TIME_OF_DAY_BUCKETS:
        if start <= hour < end:
            return label
    return NIGHT_LABEL


def month_phase(day: int) -> str:
    for label, first, last in MONTH_PHASES:
        if first <= day <= last:
            return label
    return MONTH_PHASES[-1][0]


FRAME_COLUMNS = [
    "ts", "date", "pain", "hour", "dow", "day_name", "tod", "is_weekend",
    "month_phase", "medications", "has_medication", "activities", "tags",
    "symptoms", "weather",
]


def entries_to_frame(entries: List[Entry]) -> pd.DataFrame:
    """One row per entry, in the order given (callers pass sorted entries).

    Quality-of-life metrics become `qol:<name>` columns; absent values are
    NaN, never zero.
    """
    if not entries:
        return pd.DataFrame(columns=FRAME_COLUMNS)

    rows = []
    for e in entries:
        ts = e.timestamp
        row = {
            "ts": ts,
            "pain": float(e.pain_level),
            "hour": ts.hour,
            "dow": ts.weekday(),
            "day_name": DAY_NAMES[ts.weekday()],
            "tod": time_of_day(ts.hour),
            "is_weekend": ts.weekday() >= 5,
            "month_phase": month_phase(ts.day),
            "medications": e.medication_names,
            "has_medication": bool(e.medications),
            "activities": e.activities,
            "tags": e.tags,
            "symptoms": e.symptoms,
            "weather": e.weather,
        }
        for key, val in e.quality_of_life.items():
            row[f"qol:{key}"] = val
        rows.append(row)

    df = pd.DataFrame(rows)
    df["ts"] = pd.to_datetime(df["ts"])
    df["date"] = df["ts"].dt.normalize()
    qol_cols = sorted(c for c in df.columns if c.startswith("qol:"))
    df = df[FRAME_COLUMNS + qol_cols].reset_index(drop=True)
    for c in qol_cols:
        df[c] = df[c].astype(np.float64)
    return df


def qol_columns(df: pd.DataFrame) -> List[str]:
    return [c for c in df.columns if c.startswith("qol:")]


def hours_since(df: pd.DataFrame, origin) -> np.ndarray:
    """Float hours of each row's timestamp relative to `origin`."""
    return ((df["ts"] - pd.Timestamp(origin)) / pd.Timedelta(hours=1)).to_numpy(dtype=np.float64)


def as_frame(entries: Any) -> pd.DataFrame:
    """Accept a prepared frame or any entry collection and return the frame."""
    if isinstance(entries, pd.DataFrame):
        return entries
    normalized, _ = normalize_entries(entries)
    return entries_to_frame(normalized)
