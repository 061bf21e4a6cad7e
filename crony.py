#!/usr/bin/env python3
"""
crony.py

Cron expression evaluator and YAML-driven job scheduler.
"""

from __future__ import annotations

import argparse
import calendar
import logging
import os
import re
import shlex
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple, Union

import yaml


LOG_FILE = "crony.log"
DEFAULT_CONFIG = "crony.yaml"
DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_PREVIEW_COUNT = 5
DAEMON_POLL_SECONDS = 1.0
# One full Gregorian cycle; every feasible day/weekday combination recurs within it.
SEARCH_YEARS = 400

DAY_NAME_TO_CRON = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}
MONTH_NAME_TO_NUM = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}
# February counts 29 so leap days stay reachable.
MAX_DAYS_IN_MONTH = {
    1: 31,
    2: 29,
    3: 31,
    4: 30,
    5: 31,
    6: 30,
    7: 31,
    8: 31,
    9: 30,
    10: 31,
    11: 30,
    12: 31,
}
SHORTHANDS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}
VALUE_RE = re.compile(r"^(?:\d+|[a-z]+)$")
RANGE_RE = re.compile(r"^(\d+|[a-z]+)-(\d+|[a-z]+)$")
STEP_RE = re.compile(r"^(\*|\d+|[a-z]+)/(\d+)$")
UTC_OFFSET_RE = re.compile(r"^([+-])([01]\d|2[0-3]):?([0-5]\d)$")


class CronyError(Exception):
    """Base error for crony."""


class ConfigError(CronyError):
    """Config validation error."""


class JobFailedError(CronyError):
    """A scheduled job finished with a failing script."""


class CronParseError(CronyError, ValueError):
    """Base error for cron expressions that cannot be parsed."""


class MalformedExpressionError(CronParseError):
    """Wrong field count or unknown shorthand."""


class UnsatisfiableScheduleError(MalformedExpressionError):
    """Fields parse on their own but no calendar date satisfies them together."""


class InvalidTokenError(CronParseError):
    """Unrecognized field syntax."""


class InvalidRangeError(CronParseError):
    """Range bounds reversed or outside the field domain."""


class InvalidStepError(CronParseError):
    """Non-positive step or step start outside the field domain."""


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("crony")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logger


logger = setup_logging()
UTC = timezone.utc


# ---------------------------------------------------------------------------
# Interval sets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Value:
    value: int

    @property
    def lo(self) -> int:
        return self.value

    @property
    def hi(self) -> int:
        return self.value


@dataclass(frozen=True)
class Range:
    lo: int
    hi: int

    def __post_init__(self) -> None:
        if self.lo > self.hi:
            raise ValueError(f"Range lower bound {self.lo} exceeds upper bound {self.hi}.")


IntervalElement = Union[Value, Range]


def _touches(lo: int, hi: int, element: IntervalElement) -> bool:
    return element.lo <= hi + 1 and lo <= element.hi + 1


def normalize_elements(elements: Iterable[IntervalElement]) -> Tuple[IntervalElement, ...]:
    """Merge overlapping or adjacent elements into a sorted, disjoint tuple.

    Each pass takes the first pending element as a seed and keeps absorbing any
    pending element that overlaps or touches the grown interval. The scan
    restarts after every absorption, so chains where A meets B and B meets C
    collapse into one A..C range even when A and C are apart.
    """
    pending: List[IntervalElement] = []
    for element in elements:
        if not isinstance(element, (Value, Range)):
            raise TypeError(f"Unsupported interval element: {element!r}")
        pending.append(element)

    merged: List[IntervalElement] = []
    while pending:
        seed = pending.pop(0)
        lo, hi = seed.lo, seed.hi
        absorbed = True
        while absorbed:
            absorbed = False
            for idx, other in enumerate(pending):
                if _touches(lo, hi, other):
                    lo, hi = min(lo, other.lo), max(hi, other.hi)
                    del pending[idx]
                    absorbed = True
                    break
        merged.append(Value(lo) if lo == hi else Range(lo, hi))

    return tuple(sorted(merged, key=lambda element: element.lo))


@dataclass(frozen=True)
class IntervalSet:
    """Sorted, disjoint mixture of single values and closed ranges."""

    elements: Tuple[IntervalElement, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "elements", normalize_elements(self.elements))

    def with_value(self, value: int) -> "IntervalSet":
        return IntervalSet((*self.elements, Value(value)))

    def with_range(self, lo: int, hi: int) -> "IntervalSet":
        return IntervalSet((*self.elements, Range(lo, hi)))

    def __iter__(self) -> Iterator[int]:
        for element in self.elements:
            yield from range(element.lo, element.hi + 1)

    def __bool__(self) -> bool:
        return bool(self.elements)

    def contains(self, value: int) -> bool:
        return any(element.lo <= value <= element.hi for element in self.elements)

    def first_member(self) -> int:
        if not self.elements:
            raise ValueError("Empty interval set has no members.")
        return self.elements[0].lo

    def last_member(self) -> int:
        if not self.elements:
            raise ValueError("Empty interval set has no members.")
        return self.elements[-1].hi

    def next_member_after(self, value: int) -> Optional[int]:
        for element in self.elements:
            if value < element.lo:
                return element.lo
            elif value < element.hi:
                return value + 1
        return None


# ---------------------------------------------------------------------------
# Cron fields
# ---------------------------------------------------------------------------


def _alias_table(names: Mapping[str, int]) -> Mapping[str, int]:
    table = dict(names)
    table.update({name[:3]: number for name, number in names.items()})
    return MappingProxyType(table)


def _no_aliases() -> Mapping[str, int]:
    return MappingProxyType({})


@dataclass(frozen=True)
class FieldDomain:
    name: str
    lo: int
    hi: int
    aliases: Mapping[str, int] = field(default_factory=_no_aliases, compare=False)
    # 0 and 7 both mean Sunday.
    wraps_sunday: bool = False

    def contains(self, value: int) -> bool:
        return self.lo <= value <= self.hi

    def resolve(self, token: str) -> int:
        if token.isdigit():
            return int(token)
        if token in self.aliases:
            return self.aliases[token]
        raise InvalidTokenError(f'Invalid {self.name} token "{token}".')


MINUTE = FieldDomain("minute", 0, 59)
HOUR = FieldDomain("hour", 0, 23)
DAY_OF_MONTH = FieldDomain("day_of_month", 1, 31)
MONTH = FieldDomain("month", 1, 12, aliases=_alias_table(MONTH_NAME_TO_NUM))
DAY_OF_WEEK = FieldDomain("day_of_week", 0, 7, aliases=_alias_table(DAY_NAME_TO_CRON), wraps_sunday=True)


def _expand_token(token: str, domain: FieldDomain) -> List[IntervalElement]:
    if token == "*":
        return [Range(domain.lo, domain.hi)]

    match = STEP_RE.match(token)
    if match:
        start_text, step_text = match.groups()
        step = int(step_text)
        if step < 1:
            raise InvalidStepError(f'Invalid step "{token}" for {domain.name}: step must be >= 1.')
        start = domain.lo if start_text == "*" else domain.resolve(start_text)
        if not domain.contains(start):
            raise InvalidStepError(
                f'Invalid step "{token}" for {domain.name}: start {start} out of bounds {domain.lo}-{domain.hi}.'
            )
        return [Value(value) for value in range(start, domain.hi + 1, step)]

    match = RANGE_RE.match(token)
    if match:
        start = domain.resolve(match.group(1))
        end = domain.resolve(match.group(2))
        if start > end:
            raise InvalidRangeError(f'Invalid range "{token}" for {domain.name}: start exceeds end.')
        if not domain.contains(start) or not domain.contains(end):
            raise InvalidRangeError(
                f'Range "{token}" out of bounds {domain.lo}-{domain.hi} for {domain.name}.'
            )
        return [Range(start, end)]

    if VALUE_RE.match(token):
        value = domain.resolve(token)
        if not domain.contains(value):
            raise InvalidRangeError(
                f'Value "{value}" out of bounds {domain.lo}-{domain.hi} for {domain.name}.'
            )
        return [Value(value)]

    raise InvalidTokenError(f'Invalid {domain.name} token "{token}".')


@dataclass(frozen=True)
class TimeUnitField:
    domain: FieldDomain
    members: IntervalSet
    text: str = "*"

    @classmethod
    def parse(cls, text: str, domain: FieldDomain) -> "TimeUnitField":
        raw = text.strip().lower()
        if not raw:
            raise InvalidTokenError(f"{domain.name} field cannot be empty.")
        elements: List[IntervalElement] = []
        for token in raw.split(","):
            if not token:
                raise InvalidTokenError(f'Empty token in {domain.name} field "{text}".')
            elements.extend(_expand_token(token, domain))
        members = IntervalSet(elements)

        if domain.wraps_sunday:
            has_zero, has_seven = members.contains(0), members.contains(7)
            if has_zero and not has_seven:
                members = members.with_value(7)
            elif has_seven and not has_zero:
                members = members.with_value(0)

        return cls(domain=domain, members=members, text=raw)

    @property
    def is_wildcard(self) -> bool:
        # Only "*" and "*/n"; an explicit "0-6" counts as restricted.
        return self.text.startswith("*")

    def __iter__(self) -> Iterator[int]:
        return iter(self.members)

    def contains(self, value: int) -> bool:
        return self.members.contains(value)

    def first_member(self) -> int:
        return self.members.first_member()

    def next_member_after(self, value: int) -> Optional[int]:
        return self.members.next_member_after(value)


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


def cron_weekday(day: date) -> int:
    """Weekday number as cron counts it: Sunday is 0."""
    return day.isoweekday() % 7


@dataclass(frozen=True)
class CronSchedule:
    minute: TimeUnitField
    hour: TimeUnitField
    day_of_month: TimeUnitField
    month: TimeUnitField
    day_of_week: TimeUnitField
    expression: str = ""
    day_or: bool = False

    @classmethod
    def parse(cls, expression: str, day_or: bool = False) -> "CronSchedule":
        if not isinstance(expression, str):
            raise MalformedExpressionError(f"Cron expression must be a string, got {type(expression).__name__}.")
        text = expression.strip()
        if text.startswith("@"):
            expanded = SHORTHANDS.get(text.lower())
            if expanded is None:
                raise MalformedExpressionError(f'Unknown cron shorthand "{text}".')
            text = expanded

        parts = text.split()
        if len(parts) != 5:
            raise MalformedExpressionError(
                f'Cron expression must have 5 fields, got {len(parts)}: "{expression}".'
            )

        schedule = cls(
            minute=TimeUnitField.parse(parts[0], MINUTE),
            hour=TimeUnitField.parse(parts[1], HOUR),
            day_of_month=TimeUnitField.parse(parts[2], DAY_OF_MONTH),
            month=TimeUnitField.parse(parts[3], MONTH),
            day_of_week=TimeUnitField.parse(parts[4], DAY_OF_WEEK),
            expression=" ".join(parts),
            day_or=day_or,
        )
        schedule._ensure_satisfiable()
        return schedule

    def __str__(self) -> str:
        return self.expression

    def _days_combine_with_or(self) -> bool:
        # Vixie cron only ORs the day fields when both are restricted.
        return self.day_or and not self.day_of_month.is_wildcard and not self.day_of_week.is_wildcard

    def _ensure_satisfiable(self) -> None:
        if self._days_combine_with_or():
            return
        longest = max(MAX_DAYS_IN_MONTH[month] for month in self.month)
        first_day = self.day_of_month.first_member()
        if first_day > longest:
            raise UnsatisfiableScheduleError(
                f'Cron expression "{self.expression}" never fires: '
                f"day {first_day} does not occur in month(s) {self.month.text}."
            )

    def _day_matches(self, day: date) -> bool:
        dom_ok = self.day_of_month.contains(day.day)
        dow_ok = self.day_of_week.contains(cron_weekday(day))
        if self._days_combine_with_or():
            return dom_ok or dow_ok
        return dom_ok and dow_ok

    def _date_matches(self, day: date) -> bool:
        return self.month.contains(day.month) and self._day_matches(day)

    def matches(self, moment: datetime) -> bool:
        return (
            self.minute.contains(moment.minute)
            and self.hour.contains(moment.hour)
            and self._date_matches(moment.date())
        )

    def next_occurrence_after(self, moment: datetime) -> datetime:
        """Return the earliest matching minute strictly after ``moment``.

        Units are tried finest first. A later minute in the current hour wins,
        then a later hour on the current day, and only when both are exhausted
        does the search carry into the day/month/year walk, landing on the
        first hour and minute of the next matching date.
        """
        current = moment.replace(second=0, microsecond=0)

        if self._date_matches(current.date()):
            if self.hour.contains(current.hour):
                minute = self.minute.next_member_after(current.minute)
                if minute is not None:
                    return current.replace(minute=minute)
            hour = self.hour.next_member_after(current.hour)
            if hour is not None:
                return current.replace(hour=hour, minute=self.minute.first_member())

        day = self._next_matching_date(current.date())
        return current.replace(
            year=day.year,
            month=day.month,
            day=day.day,
            hour=self.hour.first_member(),
            minute=self.minute.first_member(),
        )

    def occurrences(self, after: datetime, count: int) -> List[datetime]:
        runs: List[datetime] = []
        cursor = after
        while len(runs) < count:
            cursor = self.next_occurrence_after(cursor)
            runs.append(cursor)
        return runs

    def _next_day_candidate(self, day: int) -> Optional[int]:
        if self._days_combine_with_or():
            return day + 1
        return self.day_of_month.next_member_after(day)

    def _next_month(self, year: int, month: int) -> Tuple[int, int]:
        nxt = self.month.next_member_after(month)
        if nxt is None:
            return year + 1, self.month.first_member()
        return year, nxt

    def _next_matching_date(self, after: date) -> date:
        year, month, day = after.year, after.month, after.day
        if not self.month.contains(month):
            year, month = self._next_month(year, month)
            day = 0

        for _ in range(SEARCH_YEARS * 12):
            month_length = calendar.monthrange(year, month)[1]
            candidate = self._next_day_candidate(day)
            # Days past the end of this month carry into the next one.
            while candidate is not None and candidate <= month_length:
                found = date(year, month, candidate)
                if self._day_matches(found):
                    return found
                candidate = self._next_day_candidate(candidate)
            year, month = self._next_month(year, month)
            day = 0

        raise RuntimeError(
            f'No occurrence of "{self.expression}" within {SEARCH_YEARS} years after {after.isoformat()}.'
        )


def parse(expression: str, day_or: bool = False) -> CronSchedule:
    return CronSchedule.parse(expression, day_or=day_or)


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


class WorkerState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ExecutionEvent:
    started_at: datetime
    next_execution_at: datetime


class ScheduleWorker:
    """Fires ``callback`` at every occurrence of ``schedule`` until cancelled.

    Sleeping happens on ``cancel_event.wait`` so a cancel wakes the worker at
    once. Cancellation is checked before every wait and again before every
    callback; a callback already running is never interrupted.

    A callback that raises is logged, passed to ``on_error`` when given, and
    counted in ``failures``; the worker then moves on to the next occurrence.
    """

    def __init__(
        self,
        schedule: CronSchedule,
        callback: Callable[[ExecutionEvent], Any],
        cancel_event: Optional[threading.Event] = None,
        clock: Optional[Callable[[], datetime]] = None,
        on_error: Optional[Callable[[Exception, ExecutionEvent], Any]] = None,
        utc_offset: timezone = UTC,
        name: Optional[str] = None,
    ):
        self.schedule = schedule
        self.callback = callback
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self.utc_offset = utc_offset
        self.clock = clock or self._now
        self.on_error = on_error
        self.name = name or schedule.expression
        self.state = WorkerState.STOPPED
        self.fired = 0
        self.failures = 0
        self._thread: Optional[threading.Thread] = None

    def _now(self) -> datetime:
        return datetime.now(tz=self.utc_offset)

    def start(self) -> "ScheduleWorker":
        if self._thread is not None:
            raise RuntimeError(f"Worker {self.name} already started.")
        self.state = WorkerState.RUNNING
        self._thread = threading.Thread(target=self.run, daemon=True, name=f"crony-worker-{self.name}")
        self._thread.start()
        return self

    def cancel(self) -> None:
        self.cancel_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self) -> None:
        self.state = WorkerState.RUNNING
        try:
            current = self.schedule.next_occurrence_after(self.clock())
            upcoming = self.schedule.next_occurrence_after(current)
            logger.info("Worker %s started; first execution at %s", self.name, current.isoformat())
            while not self.cancel_event.is_set():
                if not self._wait_until(current):
                    break
                self._fire(ExecutionEvent(started_at=current, next_execution_at=upcoming))
                current, upcoming = upcoming, self.schedule.next_occurrence_after(upcoming)
        finally:
            self.state = WorkerState.STOPPED
            logger.info("Worker %s stopped after %s execution(s)", self.name, self.fired)

    def _wait_until(self, target: datetime) -> bool:
        while True:
            remaining = (target - self.clock()).total_seconds()
            if remaining <= 0:
                return not self.cancel_event.is_set()
            if self.cancel_event.wait(min(remaining, threading.TIMEOUT_MAX)):
                return False

    def _fire(self, event: ExecutionEvent) -> None:
        self.fired += 1
        logger.info(
            "Worker %s executing for %s (next at %s)",
            self.name,
            event.started_at.isoformat(),
            event.next_execution_at.isoformat(),
        )
        try:
            self.callback(event)
        except Exception as exc:
            self.failures += 1
            logger.exception("Worker %s callback failed for %s", self.name, event.started_at.isoformat())
            if self.on_error is not None:
                self.on_error(exc, event)


def start_worker(
    schedule: CronSchedule,
    callback: Callable[[ExecutionEvent], Any],
    cancel_event: Optional[threading.Event] = None,
    **kwargs: Any,
) -> ScheduleWorker:
    return ScheduleWorker(schedule, callback, cancel_event=cancel_event, **kwargs).start()


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScriptSpec:
    path: str
    args: List[str]
    timeout: int
    resolved_path: Path


@dataclass(frozen=True)
class JobSpec:
    name: str
    enabled: bool
    working_dir: Path
    stop_on_failure: bool
    utc_offset: timezone
    schedule: CronSchedule
    scripts: List[ScriptSpec]


@dataclass
class ScriptRunResult:
    script: ScriptSpec
    success: bool
    return_code: int
    duration_seconds: float
    stdout: str
    stderr: str
    error: Optional[str] = None


@dataclass
class JobRunResult:
    job_name: str
    success: bool
    script_results: List[ScriptRunResult]
    started_at: datetime
    ended_at: datetime
    scheduled_for: Optional[datetime]


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_keys(raw: Dict[str, Any], allowed: Set[str], field_path: str) -> None:
    unknown = set(raw.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")


def parse_utc_offset(value: Any, field_path: str) -> timezone:
    text = ensure_str(value, field_path)
    if text.upper() in {"Z", "UTC"}:
        return UTC
    match = UTC_OFFSET_RE.match(text)
    if not match:
        raise ConfigError(f'Error: {field_path} must be a UTC offset like "+02:00", got "{text}".')
    sign, hours, minutes = match.groups()
    delta = timedelta(hours=int(hours), minutes=int(minutes))
    return timezone(-delta if sign == "-" else delta)


def parse_schedule(value: Any, field_path: str, day_or: bool) -> CronSchedule:
    text = ensure_str(value, field_path)
    try:
        return CronSchedule.parse(text, day_or=day_or)
    except CronParseError as exc:
        raise ConfigError(f"Error: {field_path}: {exc}") from exc


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def _resolve_working_dir(value: Any, config_dir: Path, field_path: str) -> Path:
    raw = Path(ensure_str(value, field_path))
    resolved = (raw if raw.is_absolute() else config_dir / raw).resolve()
    if not resolved.is_dir():
        raise ConfigError(f"Error: working directory does not exist at {field_path}: {resolved}")
    return resolved


def _parse_args_list(raw: Any, field_path: str) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return shlex.split(raw)
    if not isinstance(raw, list):
        raise ConfigError(f"Error: {field_path} must be a list or shell-style string.")
    args: List[str] = []
    for idx, arg in enumerate(raw):
        if not isinstance(arg, (str, int, float, bool)):
            raise ConfigError(f"Error: {field_path}[{idx}] must be a scalar value.")
        args.append(str(arg))
    return args


def parse_scripts(raw: Any, field_path: str, working_dir: Path) -> List[ScriptSpec]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"Error: {field_path} must be a non-empty list.")
    scripts: List[ScriptSpec] = []
    for idx, script_raw in enumerate(raw):
        item_path = f"{field_path}[{idx}]"
        if not isinstance(script_raw, dict):
            raise ConfigError(f"Error: {item_path} must be a mapping.")
        ensure_keys(script_raw, {"path", "args", "timeout"}, item_path)

        path_str = ensure_str(script_raw.get("path"), f"{item_path}.path")
        raw_path = Path(path_str)
        resolved = (raw_path if raw_path.is_absolute() else working_dir / raw_path).resolve()
        if not resolved.is_file():
            raise ConfigError(f"Error: Script path does not exist for {item_path}.path: {resolved}")

        scripts.append(
            ScriptSpec(
                path=path_str,
                args=_parse_args_list(script_raw.get("args"), f"{item_path}.args"),
                timeout=ensure_int(script_raw.get("timeout"), f"{item_path}.timeout", DEFAULT_TIMEOUT_SECONDS, 1),
                resolved_path=resolved,
            )
        )
    return scripts


def parse_config(config_path: Path) -> List[JobSpec]:
    payload = _load_config_payload(config_path)
    ensure_keys(payload, {"version", "defaults", "jobs"}, "config")
    config_dir = config_path.parent

    defaults = payload.get("defaults", {}) or {}
    if not isinstance(defaults, dict):
        raise ConfigError("Error: defaults must be a mapping.")
    ensure_keys(defaults, {"working_dir", "stop_on_failure", "utc_offset", "day_or"}, "defaults")

    default_working_dir = _resolve_working_dir(defaults.get("working_dir", "."), config_dir, "defaults.working_dir")
    default_stop_on_failure = ensure_bool(defaults.get("stop_on_failure"), "defaults.stop_on_failure", True)
    default_offset = parse_utc_offset(defaults.get("utc_offset", "+00:00"), "defaults.utc_offset")
    default_day_or = ensure_bool(defaults.get("day_or"), "defaults.day_or", False)

    jobs_raw = payload.get("jobs")
    if not isinstance(jobs_raw, list) or not jobs_raw:
        raise ConfigError("Error: jobs must be a non-empty list.")

    seen_names: Set[str] = set()
    jobs: List[JobSpec] = []
    for idx, job_raw in enumerate(jobs_raw):
        path = f"jobs[{idx}]"
        if not isinstance(job_raw, dict):
            raise ConfigError(f"Error: {path} must be a mapping.")
        ensure_keys(
            job_raw,
            {"name", "enabled", "schedule", "utc_offset", "day_or", "working_dir", "stop_on_failure", "scripts"},
            path,
        )

        name = ensure_str(job_raw.get("name"), f"{path}.name")
        if name in seen_names:
            raise ConfigError(f'Error: Duplicate job name "{name}".')
        seen_names.add(name)

        working_dir = default_working_dir
        if "working_dir" in job_raw:
            working_dir = _resolve_working_dir(job_raw["working_dir"], config_dir, f"{path}.working_dir")
        utc_offset = default_offset
        if "utc_offset" in job_raw:
            utc_offset = parse_utc_offset(job_raw["utc_offset"], f"{path}.utc_offset")
        day_or = ensure_bool(job_raw.get("day_or"), f"{path}.day_or", default_day_or)

        jobs.append(
            JobSpec(
                name=name,
                enabled=ensure_bool(job_raw.get("enabled"), f"{path}.enabled", True),
                working_dir=working_dir,
                stop_on_failure=ensure_bool(
                    job_raw.get("stop_on_failure"), f"{path}.stop_on_failure", default_stop_on_failure
                ),
                utc_offset=utc_offset,
                schedule=parse_schedule(job_raw.get("schedule"), f"{path}.schedule", day_or),
                scripts=parse_scripts(job_raw.get("scripts"), f"{path}.scripts", working_dir),
            )
        )

    return jobs


def filter_jobs(jobs: List[JobSpec], job_name: Optional[str], include_disabled: bool = False) -> List[JobSpec]:
    selected = jobs
    if job_name:
        selected = [job for job in selected if job.name == job_name]
        if not selected:
            raise CronyError(f'Unknown job "{job_name}".')
    if include_disabled:
        return selected
    selected = [job for job in selected if job.enabled]
    if not selected:
        raise CronyError("No enabled jobs selected.")
    return selected


# ---------------------------------------------------------------------------
# Job execution
# ---------------------------------------------------------------------------


def _ensure_aware(value: datetime, tz: timezone) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def next_run_times(job: JobSpec, count: int, now: Optional[datetime] = None) -> List[datetime]:
    local_now = _ensure_aware(now or datetime.now(tz=UTC), job.utc_offset)
    return job.schedule.occurrences(local_now, count)


def is_due_now(job: JobSpec, at: Optional[datetime] = None) -> bool:
    local = _ensure_aware(at or datetime.now(tz=UTC), job.utc_offset)
    return job.schedule.matches(local)


def run_script(
    script: ScriptSpec,
    working_dir: Path,
    env_overrides: Optional[Dict[str, str]] = None,
) -> ScriptRunResult:
    command = [sys.executable, str(script.resolved_path), *script.args]
    env = os.environ.copy()
    if env_overrides:
        env.update(env_overrides)
    started = datetime.now(tz=UTC)

    def elapsed() -> float:
        return (datetime.now(tz=UTC) - started).total_seconds()

    try:
        result = subprocess.run(
            command,
            cwd=str(working_dir),
            capture_output=True,
            text=True,
            timeout=script.timeout,
            check=False,
            env=env,
        )
    except subprocess.TimeoutExpired:
        return ScriptRunResult(
            script=script,
            success=False,
            return_code=-1,
            duration_seconds=elapsed(),
            stdout="",
            stderr=f"Timed out after {script.timeout} seconds.",
            error="timeout",
        )
    except OSError as exc:
        return ScriptRunResult(
            script=script,
            success=False,
            return_code=-2,
            duration_seconds=elapsed(),
            stdout="",
            stderr=str(exc),
            error="exception",
        )
    return ScriptRunResult(
        script=script,
        success=result.returncode == 0,
        return_code=result.returncode,
        duration_seconds=elapsed(),
        stdout=result.stdout or "",
        stderr=result.stderr or "",
    )


def run_job(job: JobSpec, scheduled_for: Optional[datetime] = None) -> JobRunResult:
    started = datetime.now(tz=UTC)
    run_id = f"{job.name}:{started.strftime('%Y%m%d%H%M%S')}-{started.microsecond:06d}"
    if scheduled_for:
        logger.info("[%s] Starting job %s (scheduled_for=%s)", run_id, job.name, scheduled_for.isoformat())
    else:
        logger.info("[%s] Starting job %s", run_id, job.name)

    env = {"CRONY_RUN_ID": run_id, "CRONY_JOB_NAME": job.name}
    if scheduled_for is not None:
        env["CRONY_SCHEDULED_FOR"] = scheduled_for.isoformat()

    script_results: List[ScriptRunResult] = []
    for idx, script in enumerate(job.scripts, start=1):
        logger.info("[%s] [%s/%s] Running %s", run_id, idx, len(job.scripts), script.path)
        result = run_script(script, job.working_dir, {**env, "CRONY_SCRIPT_PATH": str(script.resolved_path)})
        script_results.append(result)

        if result.success:
            logger.info("[%s] Script succeeded: %s (%.2fs)", run_id, script.path, result.duration_seconds)
            continue
        logger.error(
            "[%s] Script failed: %s (code=%s, duration=%.2fs)",
            run_id,
            script.path,
            result.return_code,
            result.duration_seconds,
        )
        if result.stderr:
            logger.error("[%s] stderr: %s", run_id, result.stderr.strip())
        if job.stop_on_failure:
            logger.error("[%s] stop_on_failure=true; aborting remaining scripts.", run_id)
            break

    ended = datetime.now(tz=UTC)
    success = all(result.success for result in script_results)
    logger.info(
        "[%s] Job %s completed with success=%s in %.2fs",
        run_id,
        job.name,
        success,
        (ended - started).total_seconds(),
    )
    return JobRunResult(
        job_name=job.name,
        success=success,
        script_results=script_results,
        started_at=started,
        ended_at=ended,
        scheduled_for=scheduled_for,
    )


def job_callback(job: JobSpec) -> Callable[[ExecutionEvent], None]:
    def execute(event: ExecutionEvent) -> None:
        result = run_job(job, scheduled_for=event.started_at)
        if not result.success:
            raise JobFailedError(f"Job {job.name} failed for run scheduled at {event.started_at.isoformat()}.")

    return execute


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def command_validate(config_path: Path) -> int:
    jobs = parse_config(config_path)
    enabled_count = sum(1 for job in jobs if job.enabled)
    print(f"Config valid: {config_path}")
    print(f"Total jobs: {len(jobs)}")
    print(f"Enabled jobs: {enabled_count}")
    for job in jobs:
        print(f"- {job.name}: {job.schedule.expression} (UTC{_format_offset(job.utc_offset)})")
    return 0


def _format_offset(tz: timezone) -> str:
    offset = tz.utcoffset(None)
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def command_preview(config_path: Path, job_name: Optional[str], count: int, now: Optional[datetime] = None) -> int:
    jobs = filter_jobs(parse_config(config_path), job_name, include_disabled=True)
    now_utc = now or datetime.now(tz=UTC)

    for job in jobs:
        print("=" * 80)
        print(f"Job: {job.name} (enabled={job.enabled})")
        print(f"Cron expression: {job.schedule.expression}")
        print(f"UTC offset: {_format_offset(job.utc_offset)}")
        print("Scripts:")
        for script in job.scripts:
            args_text = " ".join(shlex.quote(arg) for arg in script.args) if script.args else "(none)"
            print(f"- {script.path} | timeout={script.timeout}s | args={args_text}")
        print(f"Next {count} run(s):")
        for run_dt in next_run_times(job, count, now=now_utc):
            print(f"- {run_dt.isoformat()}")
    print("=" * 80)
    return 0


def command_match(expression: str, at: Optional[datetime], count: int, day_or: bool = False) -> int:
    try:
        schedule = CronSchedule.parse(expression, day_or=day_or)
    except CronParseError as exc:
        raise CronyError(f"Error: {exc}") from exc
    moment = at or datetime.now(tz=UTC).replace(second=0, microsecond=0)
    matched = schedule.matches(moment)
    print(f"Cron expression: {schedule.expression}")
    print(f"{moment.isoformat()} matches: {'yes' if matched else 'no'}")
    print(f"Next {count} run(s):")
    for run_dt in schedule.occurrences(moment, count):
        print(f"- {run_dt.isoformat()}")
    return 0


def command_run(config_path: Path, job_name: Optional[str], respect_schedule: bool) -> int:
    jobs = filter_jobs(parse_config(config_path), job_name, include_disabled=False)
    exit_code = 0
    now = datetime.now(tz=UTC)
    for job in jobs:
        if respect_schedule and not is_due_now(job, at=now):
            logger.info("Skipping %s: not due now.", job.name)
            continue
        if not run_job(job).success:
            exit_code = 1
    return exit_code


class FailureLedger:
    """Collects job failures reported by daemon workers, keyed by job name."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.counts: Dict[str, int] = {}

    def hook(self, job_name: str) -> Callable[[Exception, ExecutionEvent], None]:
        def record(exc: Exception, event: ExecutionEvent) -> None:
            with self._lock:
                self.counts[job_name] = self.counts.get(job_name, 0) + 1
                total = self.counts[job_name]
            logger.error(
                "Job %s failed for run at %s (%s failure(s) so far): %s",
                job_name,
                event.started_at.isoformat(),
                total,
                exc,
            )

        return record

    def __bool__(self) -> bool:
        return bool(self.counts)


def command_daemon(
    config_path: Path,
    cancel_event: Optional[threading.Event] = None,
    clock: Optional[Callable[[], datetime]] = None,
    failures: Optional[FailureLedger] = None,
) -> int:
    jobs = filter_jobs(parse_config(config_path), job_name=None, include_disabled=False)
    cancel_event = cancel_event if cancel_event is not None else threading.Event()
    failures = failures if failures is not None else FailureLedger()

    workers = [
        start_worker(
            job.schedule,
            job_callback(job),
            cancel_event,
            clock=clock,
            on_error=failures.hook(job.name),
            utc_offset=job.utc_offset,
            name=job.name,
        )
        for job in jobs
    ]
    logger.info("Starting daemon with %s enabled job(s)", len(workers))
    try:
        while any(worker.is_alive() for worker in workers):
            if cancel_event.wait(DAEMON_POLL_SECONDS):
                break
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    finally:
        cancel_event.set()
        for worker in workers:
            worker.join()
    if failures:
        logger.error("Daemon stopped with failed job(s): %s", ", ".join(sorted(failures.counts)))
        return 1
    return 0


def _parse_at(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f'must be an ISO datetime, got "{value}"') from exc


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="crony cron evaluator and job scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to crony YAML config (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate config and parse schedules")
    validate_parser.add_argument("--config", help=f"Path to config (default: {DEFAULT_CONFIG})")

    preview_parser = subparsers.add_parser("preview", help="Show upcoming runs per job")
    preview_parser.add_argument("--config", help=f"Path to config (default: {DEFAULT_CONFIG})")
    preview_parser.add_argument("--job", help="Preview a single job by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    match_parser = subparsers.add_parser("match", help="Evaluate a cron expression without a config")
    match_parser.add_argument("expression", help='Cron expression, e.g. "*/15 9-17 * * mon-fri"')
    match_parser.add_argument("--at", type=_parse_at, help="ISO timestamp to test (default: now, UTC)")
    match_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")
    match_parser.add_argument(
        "--day-or",
        action="store_true",
        help="OR day-of-month and day-of-week when both are restricted",
    )

    run_parser = subparsers.add_parser("run", help="Run jobs once")
    run_parser.add_argument("--config", help=f"Path to config (default: {DEFAULT_CONFIG})")
    run_parser.add_argument("--job", help="Run one job by name")
    run_parser.add_argument(
        "--respect-schedule",
        action="store_true",
        help="Only run selected job(s) if currently due",
    )

    daemon_parser = subparsers.add_parser("daemon", help="Run one schedule worker per enabled job")
    daemon_parser.add_argument("--config", help=f"Path to config (default: {DEFAULT_CONFIG})")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(getattr(args, "config", None) or DEFAULT_CONFIG).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "preview":
            if args.count <= 0:
                raise CronyError("--count must be >= 1")
            return command_preview(config_path, job_name=args.job, count=args.count)
        if args.command == "match":
            if args.count <= 0:
                raise CronyError("--count must be >= 1")
            return command_match(args.expression, at=args.at, count=args.count, day_or=args.day_or)
        if args.command == "run":
            return command_run(config_path, job_name=args.job, respect_schedule=args.respect_schedule)
        if args.command == "daemon":
            return command_daemon(config_path)
        raise CronyError(f"Unsupported command: {args.command}")
    except CronyError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
