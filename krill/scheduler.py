"""Cron-driven schedule engine with retry, concurrency and missed-run policies.

An executor is a callable taking a Trigger and a threading.Event. The event is
set when the run is cancelled, so a long-running executor should watch it. An
executor reports failure by raising.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Iterable, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from krill.cron import Cron, CronError, parse
from krill.metrics import SCHEDULER_TRIGGERS
from krill.tracing import inc_counter

_MINUTE = timedelta(minutes=1)


class SchedulerError(Exception):
    """Raised for invalid schedules, unknown schedule ids and engine misuse."""


@dataclass(frozen=True)
class ScheduleConfig:
    """Definition of one scheduled job."""

    id: str = ""
    cron_expr: str = ""
    target: str = ""
    payload_template: str = ""
    enabled: bool = False
    timezone: str = ""
    concurrency_policy: str = ""
    missed_run_policy: str = ""
    retry_limit: int = 0
    retry_backoff_ms: int = 0
    tenant: str = ""
    client_id: str = ""
    thread_id: str = ""
    session_mode: str = ""


@dataclass(frozen=True)
class Trigger:
    """The execution payload handed to the executor."""

    schedule_id: str
    target: str
    payload: str
    run_at: datetime
    attempt: int
    tenant: str
    client_id: str
    thread_id: str
    session_mode: str


@dataclass(frozen=True)
class AuditRecord:
    """Observable outcome of a scheduled run attempt."""

    schedule_id: str
    run_at: datetime
    status: str
    attempt: int = 0
    reason: str = ""


@dataclass(frozen=True)
class ScheduleStatus:
    """Current state of one schedule as seen by the control plane."""

    config: ScheduleConfig
    next_run: datetime | None
    running: int
    cancelled: bool
    last_recorded: AuditRecord | None = None


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


Executor = Callable[[Trigger, threading.Event], None]


@dataclass
class _Entry:
    config: ScheduleConfig
    expr: Cron
    loc: tzinfo
    next_run: datetime | None
    running: int = 0
    cancel: threading.Event | None = None


def _default(value: str, fallback: str) -> str:
    return fallback if not value.strip() else value


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _load_zone(name: str) -> tzinfo:
    name = _default(name, "UTC")
    if name == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise SchedulerError(f"unknown time zone {name}") from exc


def _next_run_at(expr: Cron, loc: tzinfo, after: datetime) -> datetime | None:
    found = expr.next(_utc(after).astimezone(loc))
    return None if found is None else _utc(found)


def _normalize(config: ScheduleConfig) -> ScheduleConfig:
    return replace(
        config,
        concurrency_policy=_default(config.concurrency_policy, "allow"),
        missed_run_policy=_default(config.missed_run_policy, "skip"),
        session_mode=_default(config.session_mode, "persistent"),
    )


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class Engine:
    """Evaluates schedules on each tick and dispatches matching triggers."""

    def __init__(
        self,
        schedules: Iterable[ScheduleConfig] = (),
        executor: Executor | None = None,
        logger: logging.Logger | None = None,
        clock: Clock | None = None,
    ) -> None:
        if executor is None:
            raise SchedulerError("executor is required")
        self.clock: Clock = clock if clock is not None else SystemClock()
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self._executor = executor
        self._lock = threading.Condition(threading.Lock())
        self._entries: list[_Entry] = []
        self._audit: list[AuditRecord] = []
        self._active_runs = 0
        self._ticker: threading.Thread | None = None
        self._ticker_stop: threading.Event | None = None
        self._ticker_runs: set[threading.Event] = set()

        now = self.clock.now()
        for config in schedules:
            try:
                expr = parse(config.cron_expr)
            except CronError as exc:
                raise SchedulerError(f"schedule {config.id}: {exc}") from exc
            try:
                loc = _load_zone(config.timezone)
            except SchedulerError as exc:
                raise SchedulerError(f"schedule {config.id} timezone: {exc}") from exc
            self._entries.append(
                _Entry(config=config, expr=expr, loc=loc, next_run=_next_run_at(expr, loc, now - _MINUTE))
            )

    # ─── ticking ──────────────────────────────────────────────────────────

    def start(self, tick: float = 1.0) -> None:
        """Tick in a background thread every `tick` seconds until stop()."""
        if tick <= 0:
            tick = 1.0
        with self._lock:
            if self._ticker is not None:
                raise SchedulerError("engine already started")
            stop = threading.Event()
            self._ticker_stop = stop
            self._ticker = threading.Thread(
                target=self._tick_loop, args=(stop, tick), name="krill-scheduler", daemon=True
            )
            ticker = self._ticker
        ticker.start()

    def stop(self) -> None:
        """Stop the background ticker and cancel the runs it launched."""
        with self._lock:
            ticker, stop = self._ticker, self._ticker_stop
            self._ticker = None
            self._ticker_stop = None
            runs = list(self._ticker_runs)
        if stop is not None:
            stop.set()
        if ticker is not None and ticker is not threading.current_thread():
            ticker.join()
        for cancel in runs:
            cancel.set()

    def _tick_loop(self, stop: threading.Event, tick: float) -> None:
        while not stop.wait(tick):
            self._tick(self.clock.now(), from_ticker=True)

    def tick(self, now: datetime) -> None:
        """Evaluate every enabled schedule against the given time."""
        self._tick(now, from_ticker=False)

    def _tick(self, now: datetime, from_ticker: bool) -> None:
        with self._lock:
            entries = list(self._entries)
        now = _utc(now)
        for entry in entries:
            if entry.config.enabled:
                self._tick_entry(entry, now, from_ticker)

    def _tick_entry(self, entry: _Entry, now: datetime, from_ticker: bool) -> None:
        with self._lock:
            run_at = entry.next_run
            if run_at is None:
                run_at = _next_run_at(entry.expr, entry.loc, now - _MINUTE)
                entry.next_run = run_at
            if run_at is None or run_at > now:
                return
            while entry.next_run is not None and entry.next_run <= now:
                entry.next_run = _next_run_at(entry.expr, entry.loc, entry.next_run)

        missed = now - run_at >= _MINUTE
        if missed and entry.config.missed_run_policy.lower() != "run_once":
            self._record(
                AuditRecord(schedule_id=entry.config.id, run_at=run_at, status="skipped", reason="missed_run_policy")
            )
            return
        self._launch(entry, run_at, from_ticker)

    # ─── runs ─────────────────────────────────────────────────────────────

    def _launch(self, entry: _Entry, run_at: datetime, from_ticker: bool) -> None:
        with self._lock:
            policy = entry.config.concurrency_policy.strip().lower()
            if policy == "forbid" and entry.running > 0:
                skip = True
            else:
                skip = False
                if policy == "replace" and entry.running > 0 and entry.cancel is not None:
                    entry.cancel.set()
                cancel = threading.Event()
                entry.running += 1
                entry.cancel = cancel
                self._active_runs += 1
                if from_ticker:
                    self._ticker_runs.add(cancel)
        if skip:
            self._record(
                AuditRecord(schedule_id=entry.config.id, run_at=run_at, status="skipped", reason="concurrency_forbid")
            )
            return

        inc_counter(SCHEDULER_TRIGGERS, 1, {"schedule_id": entry.config.id})
        threading.Thread(
            target=self._run,
            args=(entry, run_at, cancel),
            name=f"krill-schedule-{entry.config.id}",
            daemon=True,
        ).start()

    def _run(self, entry: _Entry, run_at: datetime, cancel: threading.Event) -> None:
        try:
            self._attempts(entry, run_at, cancel)
        finally:
            with self._lock:
                entry.running -= 1
                if entry.running == 0:
                    entry.cancel = None
                self._ticker_runs.discard(cancel)
                self._active_runs -= 1
                self._lock.notify_all()
            cancel.set()

    def _attempts(self, entry: _Entry, run_at: datetime, cancel: threading.Event) -> None:
        config = entry.config
        max_attempts = max(config.retry_limit + 1, 1)
        for attempt in range(1, max_attempts + 1):
            trigger = Trigger(
                schedule_id=config.id,
                target=config.target,
                payload=config.payload_template,
                run_at=run_at,
                attempt=attempt,
                tenant=config.tenant,
                client_id=_default(config.client_id, "schedule:" + config.id),
                thread_id=_default(config.thread_id, "schedule:" + config.id),
                session_mode=_default(config.session_mode, "persistent"),
            )
            try:
                self._executor(trigger, cancel)
            except Exception as exc:  # executor failures are recorded, not propagated
                reason = _error_text(exc)
            else:
                self._record(AuditRecord(config.id, run_at, "success", attempt))
                return
            if attempt == max_attempts:
                self._record(AuditRecord(config.id, run_at, "failed", attempt, reason))
                return
            self._record(AuditRecord(config.id, run_at, "retry", attempt, reason))
            if config.retry_backoff_ms > 0 and cancel.wait(config.retry_backoff_ms / 1000):
                self._record(AuditRecord(config.id, run_at, "cancelled", attempt, "context canceled"))
                return

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no run is in progress; False if the timeout expired first."""
        with self._lock:
            return self._lock.wait_for(lambda: self._active_runs == 0, timeout)

    # ─── audit ────────────────────────────────────────────────────────────

    def audit(self) -> list[AuditRecord]:
        """Return every audit record in the order it was written."""
        with self._lock:
            return list(self._audit)

    def _record(self, record: AuditRecord) -> None:
        with self._lock:
            self._audit.append(record)

    # ─── control plane ────────────────────────────────────────────────────

    def _find(self, schedule_id: str) -> _Entry | None:
        return next((e for e in self._entries if e.config.id == schedule_id), None)

    def _status_locked(self, entry: _Entry) -> ScheduleStatus:
        last = next((r for r in reversed(self._audit) if r.schedule_id == entry.config.id), None)
        return ScheduleStatus(
            config=entry.config,
            next_run=entry.next_run,
            running=entry.running,
            cancelled=not entry.config.enabled and entry.cancel is not None,
            last_recorded=last,
        )

    def schedule_statuses(self) -> list[ScheduleStatus]:
        with self._lock:
            return [self._status_locked(e) for e in self._entries]

    def schedule_status(self, schedule_id: str) -> ScheduleStatus | None:
        """Return the status of a schedule, or None if it is unknown."""
        with self._lock:
            entry = self._find(schedule_id)
            return None if entry is None else self._status_locked(entry)

    def create_or_update_schedule(self, config: ScheduleConfig) -> ScheduleStatus:
        """Add a schedule, or replace the definition of the one with the same id."""
        if not config.id.strip():
            raise SchedulerError("schedule_id is required")
        try:
            expr = parse(config.cron_expr)
        except CronError as exc:
            raise SchedulerError(str(exc)) from exc
        loc = _load_zone(config.timezone)
        with self._lock:
            next_run = _next_run_at(expr, loc, self.clock.now() - _MINUTE)
            entry = self._find(config.id)
            if entry is None:
                entry = _Entry(config=_normalize(config), expr=expr, loc=loc, next_run=next_run)
                self._entries.append(entry)
            else:
                entry.config = _normalize(config)
                entry.expr = expr
                entry.loc = loc
                entry.next_run = next_run
            return self._status_locked(entry)

    def pause_schedule(self, schedule_id: str) -> ScheduleStatus:
        return self._set_enabled(schedule_id, False)

    def resume_schedule(self, schedule_id: str) -> ScheduleStatus:
        return self._set_enabled(schedule_id, True)

    def _set_enabled(self, schedule_id: str, enabled: bool) -> ScheduleStatus:
        with self._lock:
            entry = self._find(schedule_id)
            if entry is None:
                raise SchedulerError(f"schedule {schedule_id!r} not found")
            entry.config = replace(entry.config, enabled=enabled)
            self._audit.append(
                AuditRecord(
                    schedule_id=schedule_id,
                    run_at=_utc(self.clock.now()),
                    status="updated",
                    reason=f"enabled={'true' if enabled else 'false'}",
                )
            )
            return self._status_locked(entry)

    def cancel_schedule(self, schedule_id: str) -> ScheduleStatus:
        """Disable a schedule and cancel its running attempt, if any."""
        with self._lock:
            entry = self._find(schedule_id)
            if entry is None:
                raise SchedulerError(f"schedule {schedule_id!r} not found")
            entry.config = replace(entry.config, enabled=False)
            if entry.cancel is not None:
                entry.cancel.set()
            self._audit.append(
                AuditRecord(
                    schedule_id=schedule_id,
                    run_at=_utc(self.clock.now()),
                    status="cancelled",
                    reason="control_plane_cancelled",
                )
            )
            return self._status_locked(entry)

    def schedule_history(self, schedule_id: str) -> list[AuditRecord]:
        with self._lock:
            return [r for r in self._audit if r.schedule_id == schedule_id]

    def trigger_now(self, schedule_id: str) -> None:
        """Launch a run of the schedule immediately, regardless of its cron time."""
        with self._lock:
            entry = self._find(schedule_id)
        if entry is None:
            raise SchedulerError(f"schedule {schedule_id!r} not found")
        self._launch(entry, _utc(self.clock.now()), from_ticker=False)