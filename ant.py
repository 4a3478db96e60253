#!/usr/bin/env python3
"""
ant.py

Minimal cron-like scheduler: schedule grammar, SQLite job table and the
daemon that launches due shell commands as detached subprocesses.
"""

from __future__ import annotations

import argparse
import logging
import os
import re
import signal
import sqlite3
import subprocess
import sys
import threading
import time
from contextlib import closing
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml


DEFAULT_CONFIG = "ant.yaml"
DEFAULT_DB_PATH = "ant.db3"
DEFAULT_LOG_DIR = "logs"
DEFAULT_POLL_SECONDS = 1
DEFAULT_SHELL = "bash"
DEFAULT_WATCH_DELAY_SECONDS = 2
DEFAULT_PREVIEW_COUNT = 5
DEFAULT_STORE_TIMEOUT_SECONDS = 5.0
LOG_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_INTERVAL_SECONDS = 100 * 365 * 24 * 60 * 60

DAY_NAME_TO_WEEKDAY = {
    "mon": 0,
    "tue": 1,
    "wed": 2,
    "thu": 3,
    "fri": 4,
    "sat": 5,
    "sun": 6,
}
WEEKDAY_TO_DAY_NAME = {v: k for k, v in DAY_NAME_TO_WEEKDAY.items()}
UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
}
CONFIG_KEYS = {
    "db_path",
    "log_dir",
    "log_file",
    "work_dir",
    "poll_seconds",
    "shell",
    "watch_delay_seconds",
}
REPEAT_MARKER_RE = re.compile(r"^e(?:\s+|$)")
INTERVAL_RE = re.compile(r"^([0-9]+)([smhdw])$")
HHMM_RE = re.compile(r"^[0-9]{4}$")
LEADING_DIGIT_RE = re.compile(r"^[0-9]")

JOB_COLUMNS = "id, schedule, command, pid, next_run, last_run"
CREATE_JOBS_TABLE = """
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    schedule TEXT,
    command TEXT,
    pid INTEGER,
    next_run INTEGER,
    last_run INTEGER
)
"""


class AntError(Exception):
    """Base error for ant."""


class ConfigError(AntError):
    """Config validation error."""


class ParseError(AntError):
    """Malformed schedule text."""

    def __init__(self, message: str, reason: str, token: str = "") -> None:
        super().__init__(message)
        self.reason = reason
        self.token = token


class StoreError(AntError):
    """Job table query or update failed."""


class JobNotFoundError(StoreError):
    """No row with the requested id."""


class LaunchError(AntError):
    """Subprocess could not be started."""


class PersistenceAfterLaunchError(AntError):
    """Subprocess started but its pid could not be recorded."""


class ReconciliationError(AntError):
    """Running marker could not be cleared after the subprocess exited."""


logger = logging.getLogger("ant")


def setup_logging(log_file: Optional[Path] = None) -> logging.Logger:
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as exc:
            raise AntError(f"Error: Failed to open log file {log_file}: {exc}") from exc
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger


class ScheduleKind(Enum):
    SINGLE_RUN = "single_run"
    REPEATING = "repeating"


class ScheduleForm(Enum):
    INTERVAL = "interval"
    WEEKDAY_TIME = "weekday_time"


@dataclass(frozen=True)
class Schedule:
    kind: ScheduleKind
    form: ScheduleForm
    text: str
    interval: Optional[timedelta] = None
    weekday: Optional[int] = None  # datetime.weekday(), Monday == 0
    hour: Optional[int] = None
    minute: Optional[int] = None

    @property
    def repeating(self) -> bool:
        return self.kind is ScheduleKind.REPEATING

    def describe(self) -> str:
        prefix = "Every" if self.repeating else "Once at"
        if self.interval is not None:
            return f"{prefix} interval of {int(self.interval.total_seconds())}s"
        day = WEEKDAY_TO_DAY_NAME.get(self.weekday, "?")
        return f"{prefix} {day} {self.hour:02d}:{self.minute:02d}"


@dataclass
class Job:
    id: int
    schedule: str
    command: str
    pid: int
    next_run: int
    last_run: int

    @classmethod
    def from_row(cls, row: Tuple[Any, ...]) -> "Job":
        job_id, schedule, command, pid, next_run, last_run = row
        return cls(
            id=int(job_id),
            schedule=schedule or "",
            command=command or "",
            pid=int(pid or 0),
            next_run=int(next_run or 0),
            last_run=int(last_run or 0),
        )

    @property
    def running(self) -> bool:
        return self.pid != 0


@dataclass(frozen=True)
class AntConfig:
    db_path: Path
    log_dir: Path
    log_file: Optional[Path]
    work_dir: Path
    poll_seconds: int = DEFAULT_POLL_SECONDS
    shell: str = DEFAULT_SHELL
    watch_delay_seconds: int = DEFAULT_WATCH_DELAY_SECONDS


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def _resolve_path(value: Any, config_dir: Path, field_path: str) -> Path:
    raw = Path(ensure_str(value, field_path)).expanduser()
    resolved = raw if raw.is_absolute() else (config_dir / raw)
    return resolved.resolve()


def _resolve_working_dir(value: Any, config_dir: Path, field_path: str) -> Path:
    resolved = _resolve_path(value, config_dir, field_path)
    if not resolved.exists() or not resolved.is_dir():
        raise ConfigError(f"Error: working directory does not exist at {field_path}: {resolved}")
    return resolved


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


def parse_config_payload(payload: Dict[str, Any], config_dir: Path) -> AntConfig:
    unknown = set(payload.keys()) - CONFIG_KEYS
    if unknown:
        raise ConfigError(f"Error: Unknown config keys: {sorted(unknown)}.")

    log_file_raw = payload.get("log_file")
    return AntConfig(
        db_path=_resolve_path(payload.get("db_path", DEFAULT_DB_PATH), config_dir, "db_path"),
        log_dir=_resolve_path(payload.get("log_dir", DEFAULT_LOG_DIR), config_dir, "log_dir"),
        log_file=_resolve_path(log_file_raw, config_dir, "log_file") if log_file_raw is not None else None,
        work_dir=_resolve_working_dir(payload.get("work_dir", "."), config_dir, "work_dir"),
        poll_seconds=ensure_int(payload.get("poll_seconds"), "poll_seconds", DEFAULT_POLL_SECONDS),
        shell=ensure_str(payload.get("shell", DEFAULT_SHELL), "shell"),
        watch_delay_seconds=ensure_int(
            payload.get("watch_delay_seconds"), "watch_delay_seconds", DEFAULT_WATCH_DELAY_SECONDS
        ),
    )


def load_config(config_path: Path, required: bool = True) -> AntConfig:
    """Load daemon settings; a missing optional file yields the defaults."""
    if not required and not config_path.exists():
        return parse_config_payload({}, config_path.parent)
    return parse_config_payload(_load_config_payload(config_path), config_path.parent)


def parse_interval(value: str) -> Optional[timedelta]:
    match = INTERVAL_RE.match(value)
    if not match:
        if LEADING_DIGIT_RE.match(value) and len(value.split()) == 1:
            raise ParseError(
                f'Error: Invalid interval "{value}", expected <number><s|m|h|d|w>.',
                reason="interval",
                token=value,
            )
        return None
    amount = int(match.group(1))
    if amount <= 0:
        raise ParseError(f'Error: Interval "{value}" must be > 0.', reason="interval", token=value)
    seconds = amount * UNIT_SECONDS[match.group(2)]
    if seconds > MAX_INTERVAL_SECONDS:
        raise ParseError(f'Error: Interval "{value}" is too large.', reason="interval", token=value)
    return timedelta(seconds=seconds)


def parse_weekday(token: str) -> int:
    weekday = DAY_NAME_TO_WEEKDAY.get(token.lower())
    if weekday is None:
        raise ParseError(f'Error: Invalid weekday "{token}".', reason="weekday", token=token)
    return weekday


def parse_hhmm(token: str) -> Tuple[int, int]:
    if not HHMM_RE.match(token):
        raise ParseError(
            f'Error: Invalid time "{token}", expected HHMM (24-hour).', reason="time", token=token
        )
    hour = int(token[:2])
    minute = int(token[2:])
    if hour > 23:
        raise ParseError(f'Error: Invalid hour "{token[:2]}".', reason="hour", token=token[:2])
    if minute > 59:
        raise ParseError(f'Error: Invalid minute "{token[2:]}".', reason="minute", token=token[2:])
    return hour, minute


def parse_schedule(text: str) -> Schedule:
    raw = (text or "").strip()
    kind = ScheduleKind.SINGLE_RUN
    marker = REPEAT_MARKER_RE.match(raw)
    if marker:
        kind = ScheduleKind.REPEATING
        raw = raw[marker.end():].strip()
    if not raw:
        raise ParseError("Error: Schedule is empty.", reason="empty")

    interval = parse_interval(raw)
    if interval is not None:
        return Schedule(kind=kind, form=ScheduleForm.INTERVAL, text=raw, interval=interval)

    parts = raw.split()
    if len(parts) != 2:
        raise ParseError(
            f'Error: Invalid schedule format "{raw}", expected <number><unit> or <weekday> <HHMM>.',
            reason="fields",
            token=raw,
        )
    weekday = parse_weekday(parts[0])
    hour, minute = parse_hhmm(parts[1])
    return Schedule(
        kind=kind,
        form=ScheduleForm.WEEKDAY_TIME,
        text=" ".join(parts),
        weekday=weekday,
        hour=hour,
        minute=minute,
    )


def next_run_after(schedule: Schedule, now: datetime) -> datetime:
    if schedule.interval is not None:
        return now + schedule.interval

    candidate = now.replace(hour=schedule.hour, minute=schedule.minute, second=0, microsecond=0)
    while candidate.weekday() != schedule.weekday:
        candidate += timedelta(days=1)

    if candidate <= now:
        if schedule.repeating:
            candidate += timedelta(days=7)
        else:
            while candidate <= now:
                candidate += timedelta(days=7)
    return candidate


def epoch_next_run(schedule: Schedule, now_epoch: float) -> int:
    now_epoch = int(now_epoch)
    if schedule.interval is not None:
        return now_epoch + int(schedule.interval.total_seconds())
    # Weekday schedules follow the local wall clock.
    return int(next_run_after(schedule, datetime.fromtimestamp(now_epoch)).timestamp())


def next_run_times(schedule: Schedule, count: int, now: Optional[datetime] = None) -> List[datetime]:
    cursor = now or datetime.now()
    runs: List[datetime] = []
    for _ in range(count):
        cursor = next_run_after(schedule, cursor)
        runs.append(cursor)
    return runs


def format_epoch(value: int) -> str:
    return datetime.fromtimestamp(value).strftime(LOG_TIME_FORMAT)


class JobStore:
    """SQLite job table. Each call uses its own connection, so one store can
    be shared by the poller and every completion watcher thread."""

    def __init__(self, db_path: Path, timeout: float = DEFAULT_STORE_TIMEOUT_SECONDS) -> None:
        self.db_path = Path(db_path)
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path), timeout=self.timeout)

    def _read(self, query: str, params: Tuple[Any, ...] = ()) -> List[Tuple[Any, ...]]:
        try:
            with closing(self._connect()) as conn:
                return conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"Error: Job table query failed: {exc}") from exc

    def _write(self, query: str, params: Tuple[Any, ...] = ()) -> sqlite3.Cursor:
        try:
            with closing(self._connect()) as conn:
                with conn:
                    return conn.execute(query, params)
        except sqlite3.Error as exc:
            raise StoreError(f"Error: Job table update failed: {exc}") from exc

    def _update_one(self, job_id: int, query: str, params: Tuple[Any, ...]) -> None:
        cursor = self._write(query, params)
        if cursor.rowcount == 0:
            raise JobNotFoundError(f"Error: Job {job_id} not found.")

    def initialize(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(f"Error: Cannot create database directory for {self.db_path}: {exc}") from exc
        self._write(CREATE_JOBS_TABLE)

    def insert(self, schedule: str, command: str, next_run: int) -> int:
        cursor = self._write(
            "INSERT INTO jobs (schedule, command, next_run, last_run, pid) VALUES (?, ?, ?, 0, 0)",
            (schedule, command, int(next_run)),
        )
        return int(cursor.lastrowid)

    def update_pid_and_last_run(self, job_id: int, pid: int, last_run: int) -> None:
        self._update_one(
            job_id,
            "UPDATE jobs SET pid = ?, last_run = ? WHERE id = ?",
            (pid, int(last_run), job_id),
        )

    def update_next_run(self, job_id: int, next_run: int) -> None:
        self._update_one(job_id, "UPDATE jobs SET next_run = ? WHERE id = ?", (int(next_run), job_id))

    def update_pid(self, job_id: int, pid: int) -> None:
        self._update_one(job_id, "UPDATE jobs SET pid = ? WHERE id = ?", (pid, job_id))

    def select_due(self, now: int) -> List[Job]:
        rows = self._read(
            f"SELECT {JOB_COLUMNS} FROM jobs "
            "WHERE next_run <= ? AND (pid = 0 OR pid IS NULL) ORDER BY id",
            (int(now),),
        )
        return [Job.from_row(row) for row in rows]

    def select_running(self) -> List[Job]:
        rows = self._read(f"SELECT {JOB_COLUMNS} FROM jobs WHERE pid != 0 ORDER BY id")
        return [Job.from_row(row) for row in rows]

    def get(self, job_id: int) -> Job:
        rows = self._read(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,))
        if not rows:
            raise JobNotFoundError(f"Error: Job {job_id} not found.")
        return Job.from_row(rows[0])

    def delete(self, job_id: int) -> None:
        self._write("DELETE FROM jobs WHERE id = ?", (job_id,))

    def select_all(self) -> List[Job]:
        return [Job.from_row(row) for row in self._read(f"SELECT {JOB_COLUMNS} FROM jobs ORDER BY id")]


def open_store(config: AntConfig) -> JobStore:
    store = JobStore(config.db_path)
    store.initialize()
    return store


def _is_process_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def terminate_process_group(pid: int, sig: int = signal.SIGTERM) -> None:
    # Jobs start in their own session, so the group id equals the job pid.
    os.killpg(pid, sig)


def build_watch_script(command: str, delay_seconds: int = DEFAULT_WATCH_DELAY_SECONDS) -> str:
    return f"while true; do\n{command}\nsleep {delay_seconds}\ndone"


class Engine:
    """Poll loop that dispatches due jobs and clears their pid on exit.

    One lock serializes a whole tick (query, launch, persist, reschedule)
    against every completion watcher's pid reset.
    """

    def __init__(
        self,
        store: JobStore,
        config: AntConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.config = config
        self.clock = clock
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._watchers: List[threading.Thread] = []

    def job_log_path(self, job_id: int) -> Path:
        return self.config.log_dir / f"job-{job_id}.log"

    # Poll loop

    def run(self) -> None:
        logger.info("Daemon starting (poll_seconds=%s)", self.config.poll_seconds)
        while not self._stop_event.wait(self.config.poll_seconds):
            self.tick()
        logger.info("Daemon stopped")

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, daemon=True, name="ant-poller")
        self._thread.start()

    def request_stop(self) -> None:
        self._stop_event.set()

    def stop(self, timeout_seconds: Optional[float] = None) -> None:
        self.request_stop()
        if self._thread:
            self._thread.join(timeout=timeout_seconds)
            self._thread = None

    def tick(self) -> int:
        """Dispatch every due job once and return how many were launched."""
        with self._lock:
            now = int(self.clock())
            try:
                due = self.store.select_due(now)
            except StoreError as exc:
                logger.error("Error checking jobs: %s", exc)
                return 0

            launched = 0
            for job in due:
                try:
                    self._dispatch(job, now)
                except (LaunchError, PersistenceAfterLaunchError) as exc:
                    logger.error("Error executing job %s: %s", job.id, exc)
                    continue
                launched += 1
                try:
                    self._reschedule(job, now)
                except (ParseError, StoreError) as exc:
                    logger.error("Error updating job %s schedule: %s", job.id, exc)
            return launched

    # Dispatch

    def _dispatch(self, job: Job, now: int) -> subprocess.Popen:
        logger.info("Executing job %s: %s", job.id, job.command)
        log_path = self.job_log_path(job.id)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_handle = log_path.open("ab")
        except OSError as exc:
            raise LaunchError(f"failed to open log file {log_path}: {exc}") from exc

        with log_handle:
            try:
                process = subprocess.Popen(
                    [self.config.shell, "-c", job.command],
                    cwd=str(self.config.work_dir),
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=log_handle,
                    start_new_session=True,
                )
            except OSError as exc:
                raise LaunchError(f"failed to start process: {exc}") from exc

        try:
            self.store.update_pid_and_last_run(job.id, process.pid, now)
        except StoreError as exc:
            self._kill_orphan(process)
            raise PersistenceAfterLaunchError(f"failed to update job status: {exc}") from exc

        self._start_watcher(job.id, process)
        logger.info("Started job %s with PID %s", job.id, process.pid)
        return process

    def _kill_orphan(self, process: subprocess.Popen) -> None:
        try:
            terminate_process_group(process.pid, signal.SIGKILL)
        except OSError as exc:
            logger.warning("Failed to kill unrecorded process %s: %s", process.pid, exc)
            return
        process.wait()

    def _reschedule(self, job: Job, now: int) -> Optional[int]:
        if job.schedule == "":
            return None
        # Gated on the text only: single-run schedules are re-armed too.
        schedule = parse_schedule(job.schedule)
        next_run = epoch_next_run(schedule, now)
        self.store.update_next_run(job.id, next_run)
        logger.info("Updated job %s next run time to %s", job.id, format_epoch(next_run))
        return next_run

    # Completion

    def _start_watcher(self, job_id: int, process: subprocess.Popen) -> None:
        thread = threading.Thread(
            target=self._watch_completion,
            args=(job_id, process),
            daemon=True,
            name=f"ant-watch-{job_id}",
        )
        self._watchers = [watcher for watcher in self._watchers if watcher.is_alive()]
        self._watchers.append(thread)
        thread.start()

    def _watch_completion(self, job_id: int, process: subprocess.Popen) -> None:
        return_code = process.wait()
        logger.info("Job %s (PID %s) exited with code %s", job_id, process.pid, return_code)
        self._clear_running(job_id)

    def _watch_orphan(self, job_id: int, pid: int) -> None:
        while _is_process_running(pid):
            if self._stop_event.wait(self.config.poll_seconds):
                return
        logger.info("Adopted job %s (PID %s) exited", job_id, pid)
        self._clear_running(job_id)

    def _clear_running(self, job_id: int) -> None:
        with self._lock:
            try:
                self._reset_pid(job_id)
            except ReconciliationError as exc:
                logger.error("%s", exc)

    def _reset_pid(self, job_id: int) -> None:
        try:
            self.store.update_pid(job_id, 0)
        except JobNotFoundError:
            logger.info("Job %s was deleted before its process exited", job_id)
        except StoreError as exc:
            raise ReconciliationError(
                f"Error updating job {job_id} PID after completion: {exc}"
            ) from exc

    def wait_for_completions(self, timeout_seconds: Optional[float] = None) -> None:
        for watcher in list(self._watchers):
            watcher.join(timeout=timeout_seconds)

    def reap_stale(self) -> List[int]:
        """Clear pids left by a previous daemon; adopt the ones still alive."""
        cleared: List[int] = []
        with self._lock:
            for job in self.store.select_running():
                if _is_process_running(job.pid):
                    logger.info("Adopting running job %s (PID %s)", job.id, job.pid)
                    thread = threading.Thread(
                        target=self._watch_orphan,
                        args=(job.id, job.pid),
                        daemon=True,
                        name=f"ant-adopt-{job.id}",
                    )
                    self._watchers.append(thread)
                    thread.start()
                    continue
                logger.warning("Job %s has stale PID %s; marking as not running", job.id, job.pid)
                self.store.update_pid(job.id, 0)
                cleared.append(job.id)
        return cleared

    # Watch jobs

    def create_watch_job(self, command: str) -> Job:
        command = command.strip()
        if not command:
            raise AntError("Error: command must be a non-empty string.")
        script = build_watch_script(command, self.config.watch_delay_seconds)
        with self._lock:
            now = int(self.clock())
            job_id = self.store.insert("", script, now)
            job = self.store.get(job_id)
            self._dispatch(job, now)
            self._reschedule(job, now)
            return self.store.get(job_id)


def create_job(store: JobStore, schedule_text: str, command: str, now: Optional[float] = None) -> Job:
    command = command.strip()
    if not command:
        raise AntError("Error: command must be a non-empty string.")
    schedule = parse_schedule(schedule_text)
    next_run = epoch_next_run(schedule, time.time() if now is None else now)
    job_id = store.insert(schedule_text.strip(), command, next_run)
    return store.get(job_id)


def delete_job(store: JobStore, job_id: int) -> Job:
    job = store.get(job_id)
    if job.running:
        try:
            terminate_process_group(job.pid)
        except OSError as exc:
            logger.warning("Failed to kill process %s for job %s: %s", job.pid, job.id, exc)
    store.delete(job_id)
    logger.info("Deleted job %s", job.id)
    return job


def list_jobs(store: JobStore) -> List[Job]:
    return store.select_all()


def format_job_table(jobs: List[Job]) -> str:
    lines = [
        "ID | Schedule | Command | PID | Next Run | Last Run",
        "-" * 52,
    ]
    for job in jobs:
        last_run = format_epoch(job.last_run) if job.last_run > 0 else "Never"
        lines.append(
            f"{job.id} | {job.schedule} | {job.command} | {job.pid} | {format_epoch(job.next_run)} | {last_run}"
        )
    return "\n".join(lines)


def parse_job_text(text: str) -> Tuple[str, str]:
    """Split "<schedule>: <command>" (or legacy ":<schedule>: <command>")."""
    raw = text.strip()
    if raw.startswith(":"):
        raw = raw[1:]
    schedule_text, sep, command = raw.partition(":")
    if not sep:
        raise AntError('Error: Expected "<schedule>: <command>".')
    schedule_text = schedule_text.strip()
    command = command.strip()
    if not schedule_text or not command:
        raise AntError("Error: Empty schedule or command.")
    return schedule_text, command


def command_add(config: AntConfig, job_text: str, schedule_text: Optional[str] = None) -> int:
    if schedule_text is None:
        schedule_text, command = parse_job_text(job_text)
    else:
        command = job_text
    store = open_store(config)
    job = create_job(store, schedule_text, command)
    print(f"Scheduled job {job.id} to run at {format_epoch(job.next_run)}")
    return 0


def command_watch(config: AntConfig, command: str) -> int:
    store = open_store(config)
    job = Engine(store, config).create_watch_job(command)
    print(f"Started watch job {job.id} with PID {job.pid} at {format_epoch(job.last_run)}")
    return 0


def command_delete(config: AntConfig, job_id: int) -> int:
    store = open_store(config)
    delete_job(store, job_id)
    print(f"Job {job_id} deleted successfully")
    return 0


def command_jobs(config: AntConfig) -> int:
    store = open_store(config)
    print(format_job_table(list_jobs(store)))
    return 0


def command_next(schedule_text: str, count: int) -> int:
    schedule = parse_schedule(schedule_text)
    print(schedule.describe())
    print(f"Next {count} run(s):")
    for run_dt in next_run_times(schedule, count):
        print(f"- {run_dt.strftime(LOG_TIME_FORMAT)}")
    return 0


def command_daemon(config: AntConfig) -> int:
    store = open_store(config)
    engine = Engine(store, config)

    def handle_signal(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s, shutting down...", signal.Signals(signum).name)
        engine.request_stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    engine.reap_stale()
    engine.run()
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="ant: minimal cron-like job scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        help=f"Path to ant YAML config (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    add_parser = subparsers.add_parser("add", help='Schedule a job: ant add "15m: echo hi"')
    add_parser.add_argument("job", nargs="+", help='"<schedule>: <command>", or the command when --schedule is given')
    add_parser.add_argument("--schedule", help='Schedule text; the positional arguments are then the command')

    watch_parser = subparsers.add_parser("watch", help="Run a command in a loop every few seconds")
    watch_parser.add_argument("shell_command", nargs="+", help="Command to repeat")

    delete_parser = subparsers.add_parser("delete", help="Delete a job and kill its process")
    delete_parser.add_argument("job_id", type=int, help="Job id")

    subparsers.add_parser("jobs", help="List jobs")

    next_parser = subparsers.add_parser("next", help="Preview upcoming run times for a schedule")
    next_parser.add_argument("schedule", help='Schedule text, e.g. "e mon 0900"')
    next_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    daemon_parser = subparsers.add_parser("daemon", help="Run scheduler daemon loop")
    daemon_parser.add_argument(
        "--poll-seconds",
        type=int,
        help=f"Polling interval in seconds (default: config or {DEFAULT_POLL_SECONDS})",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()

    try:
        config = load_config(config_path, required=args.config is not None)
        setup_logging(config.log_file)
        if args.command == "add":
            return command_add(config, " ".join(args.job), schedule_text=args.schedule)
        if args.command == "watch":
            return command_watch(config, " ".join(args.shell_command))
        if args.command == "delete":
            return command_delete(config, args.job_id)
        if args.command == "jobs":
            return command_jobs(config)
        if args.command == "next":
            if args.count <= 0:
                raise ConfigError("Error: --count must be >= 1.")
            return command_next(args.schedule, args.count)
        if args.command == "daemon":
            if args.poll_seconds is not None:
                if args.poll_seconds <= 0:
                    raise ConfigError("Error: --poll-seconds must be >= 1.")
                config = replace(config, poll_seconds=args.poll_seconds)
            return command_daemon(config)
        raise AntError(f"Unsupported command: {args.command}")
    except AntError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
