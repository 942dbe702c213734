import os
import re
import copy
import json
import time
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple

# =========================
# Config (ENV)
# =========================
def _env_int(name: str, default: int) -> int:
    try:
        return int((os.getenv(name, str(default)) or str(default)).strip())
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float((os.getenv(name, str(default)) or str(default)).strip())
    except Exception:
        return default


IMPORT_TICK_S = max(_env_float("IMPORT_TICK_S", 1.0), 0.05)
IMPORT_WORKERS = max(_env_int("IMPORT_WORKERS", 8), 1)
JOB_LOG_MAX = 500

UNKNOWN_FAILURE = "An unknown network error occurred"
NO_LIST_VALUES = {"", "no-list"}

ADDRESS_SPLIT_RE = re.compile(r"[\n,;]+")

# gateway: (credentials, email, list_id) -> (ok, payload)
SubmitFn = Callable[[Optional[dict], str, Optional[str]], Tuple[bool, Any]]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_address_list(text: str) -> List[str]:
    """Split pasted input on newlines/commas/semicolons, trim, drop empties.

    Order is kept and duplicates are NOT removed: every entry is submitted.
    """
    if not text:
        return []
    t = text.replace("\r\n", "\n").replace("\r", "\n")
    return [p.strip() for p in ADDRESS_SPLIT_RE.split(t) if p and p.strip()]


def _details_text(payload: Any) -> str:
    try:
        return json.dumps(payload, indent=2, ensure_ascii=False, default=str)
    except Exception:
        return str(payload)


# =========================
# Job Model (in-memory)
# =========================
@dataclass
class JobLog:
    ts: str
    level: str
    message: str


@dataclass
class ImportResult:
    seq: int
    email: str
    status: str  # success | error
    details: str
    ts: str = ""


@dataclass
class ImportJob:
    id: str  # account id
    name: str
    email_list: List[str] = field(default_factory=list)
    delay: int = 0
    list_id: Optional[str] = None
    credentials: Optional[dict] = field(default=None, repr=False)

    results: List[ImportResult] = field(default_factory=list)  # newest first
    current_index: int = 0
    running: bool = False
    paused: bool = False
    countdown: int = 0
    inflight: int = 0

    # epoch seconds
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    paused_at: Optional[float] = None
    total_paused: float = 0.0

    logs: List[JobLog] = field(default_factory=list)

    def log(self, level: str, msg: str):
        self.logs.append(JobLog(ts=now_iso(), level=level, message=msg))
        if len(self.logs) > JOB_LOG_MAX:
            self.logs = self.logs[-(JOB_LOG_MAX // 2):]

    def push_result(self, seq: int, email: str, ok: bool, payload: Any):
        status = "success" if ok else "error"
        self.results.insert(0, ImportResult(seq=seq, email=email, status=status, details=_details_text(payload), ts=now_iso()))
        if not ok:
            msg = payload.get("message") if isinstance(payload, dict) else None
            self.log("ERROR", f"#{seq} {email}: {msg or 'failed'}")

    def finish(self, now: float):
        self.running = False
        self.paused = False
        self.paused_at = None
        self.finished_at = now


# =========================
# Derived (read-only) queries
# =========================
def elapsed_seconds(job: ImportJob, now: float) -> float:
    """Active processing time: wall time since start minus every paused interval."""
    if job.started_at is None:
        return 0.0
    if job.finished_at is not None:
        end = job.finished_at
    elif job.paused and job.paused_at is not None:
        end = job.paused_at
    else:
        end = now
    return max(0.0, float(end) - float(job.started_at) - float(job.total_paused or 0.0))


def progress(job: ImportJob) -> float:
    total = len(job.email_list)
    if not total:
        return 0.0
    return job.current_index / total


def status_label(job: ImportJob) -> Optional[str]:
    total = len(job.email_list)
    if job.running:
        return "Paused" if job.paused else "Processing"
    if job.current_index > 0 and job.current_index >= total:
        return "Finished"
    if 0 < job.current_index < total:
        return "Stopped"
    return None


def success_count(job: ImportJob) -> int:
    return sum(1 for r in job.results if r.status == "success")


def error_count(job: ImportJob) -> int:
    return sum(1 for r in job.results if r.status == "error")


def filter_results(job: ImportJob, status: str = "all") -> List[ImportResult]:
    s = (status or "all").strip().lower()
    if s not in {"success", "error"}:
        return list(job.results)
    return [r for r in job.results if r.status == s]


def export_emails(job: ImportJob, status: str = "all") -> str:
    """Newline-joined addresses of the filtered results (newest first, as shown)."""
    return "\n".join(r.email for r in filter_results(job, status))


def job_to_dict(job: ImportJob, now: float, *, result_filter: str = "all", log_tail: int = 200) -> dict:
    results = filter_results(job, result_filter)
    return {
        "id": job.id,
        "name": job.name,
        "list_id": job.list_id,
        "email_list": list(job.email_list),
        "total": len(job.email_list),
        "current_index": job.current_index,
        "running": job.running,
        "paused": job.paused,
        "delay": job.delay,
        "countdown": job.countdown,
        "inflight": job.inflight,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
        "paused_at": job.paused_at,
        "total_paused": job.total_paused,
        "elapsed_s": elapsed_seconds(job, now),
        "progress": progress(job),
        "status_label": status_label(job),
        "success_count": success_count(job),
        "error_count": error_count(job),
        "result_filter": (result_filter or "all").strip().lower(),
        "results": [r.__dict__ for r in results],
        "logs": [l.__dict__ for l in job.logs[-log_tail:]],
    }


# =========================
# Runner
# =========================
class JobRunner:
    """Owns the account_id -> ImportJob map and advances it one tick at a time.

    Dispatch is strictly sequential per job (one address per tick, in queue
    order); completion is not. Gateway calls run on the executor and settle
    whenever they settle, each one appending a single result tagged with the
    1-based position it was dispatched from. Every mutation of the map or of a
    job goes through self._lock.
    """

    def __init__(
        self,
        submit: SubmitFn,
        *,
        clock: Callable[[], float] = time.time,
        executor: Any = None,
        max_workers: int = IMPORT_WORKERS,
    ):
        self._submit = submit
        self._clock = clock
        if executor is None:
            executor = ThreadPoolExecutor(max_workers=max(int(max_workers or 1), 1), thread_name_prefix="import")
        self._executor = executor
        self._lock = threading.Lock()
        self._jobs: Dict[str, ImportJob] = {}
        self._closed = False

    # ---- ticking ----
    def tick(self) -> int:
        """Advance every running, unpaused job by one step. Returns how many items were dispatched."""
        dispatches: List[Tuple[ImportJob, int, str]] = []
        with self._lock:
            if self._closed:
                return 0
            now = self._clock()
            for job in self._jobs.values():
                if not job.running or job.paused:
                    continue
                if job.countdown > 0:
                    job.countdown -= 1
                    continue
                if job.current_index < len(job.email_list):
                    seq = job.current_index + 1
                    dispatches.append((job, seq, job.email_list[job.current_index]))
                    job.current_index += 1
                    job.countdown = job.delay
                    job.inflight += 1
                    if job.current_index >= len(job.email_list):
                        job.finish(now)
                        job.log("INFO", f"All {len(job.email_list)} addresses dispatched")
                else:
                    job.finish(now)
                    job.log("INFO", f"Finished: {len(job.email_list)} addresses dispatched")

        for job, seq, email in dispatches:
            try:
                self._executor.submit(self._process_item, job, seq, email)
            except Exception as e:
                # Slot is already reserved: settle it as an error so the cursor
                # and the result list stay in step.
                self._record(job, seq, email, False, {"message": str(e) or UNKNOWN_FAILURE, "type": type(e).__name__})
        return len(dispatches)

    def _process_item(self, job: ImportJob, seq: int, email: str) -> None:
        try:
            ok, payload = self._submit(job.credentials, email, job.list_id)
        except Exception as e:
            ok, payload = False, {"message": str(e) or UNKNOWN_FAILURE, "type": type(e).__name__}
        self._record(job, seq, email, ok, payload)

    def _record(self, job: ImportJob, seq: int, email: str, ok: Any, payload: Any) -> None:
        if payload is None:
            payload = {} if ok else {"message": UNKNOWN_FAILURE}
        with self._lock:
            # Bound to the job object it was dispatched from: a replaced or
            # cleared job keeps its late results to itself.
            job.inflight = max(0, job.inflight - 1)
            job.push_result(seq, email, bool(ok), payload)

    # ---- commands ----
    def start(
        self,
        account_id: str,
        name: str,
        emails: str,
        delay: int = 0,
        list_id: Optional[str] = None,
        credentials: Optional[dict] = None,
    ) -> Optional[ImportJob]:
        """Create (or replace) the job for account_id. Empty input is a silent no-op."""
        email_list = parse_address_list(emails)
        if not email_list:
            return None
        try:
            delay_i = max(int(delay or 0), 0)
        except (TypeError, ValueError):
            delay_i = 0
        lid = list_id.strip() if isinstance(list_id, str) else list_id
        if lid in NO_LIST_VALUES:
            lid = None

        job = ImportJob(
            id=account_id,
            name=name,
            email_list=email_list,
            delay=delay_i,
            list_id=lid,
            credentials=dict(credentials) if credentials else None,
            running=True,
            countdown=0,
        )
        with self._lock:
            job.started_at = self._clock()
            replaced = account_id in self._jobs
            self._jobs[account_id] = job
            job.log("INFO", f"Started: {len(email_list)} addresses, delay={delay_i}s" + (" (replaced previous job)" if replaced else ""))
            return copy.deepcopy(job)

    def pause(self, account_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(account_id)
            if not job or not job.running or job.paused:
                return False
            job.paused = True
            job.paused_at = self._clock()
            job.log("WARN", "Paused by user")
            return True

    def resume(self, account_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(account_id)
            if not job or not job.paused or job.paused_at is None:
                return False
            job.total_paused += max(0.0, self._clock() - job.paused_at)
            job.paused = False
            job.paused_at = None
            job.log("INFO", "Resumed by user")
            return True

    def stop(self, account_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(account_id)
            if not job or not job.running:
                return False
            now = self._clock()
            if job.paused and job.paused_at is not None:
                job.total_paused += max(0.0, now - job.paused_at)
            job.finish(now)
            job.log("WARN", f"Stopped by user at {job.current_index}/{len(job.email_list)}")
            return True

    def clear_job_for_account(self, account_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(account_id, None) is not None

    # ---- queries ----
    def get_job(self, account_id: str) -> Optional[ImportJob]:
        with self._lock:
            job = self._jobs.get(account_id)
            return copy.deepcopy(job) if job else None

    def get_all_jobs(self) -> Dict[str, ImportJob]:
        with self._lock:
            return {k: copy.deepcopy(v) for k, v in self._jobs.items()}

    def now(self) -> float:
        return self._clock()

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            self._closed = True
        shutdown = getattr(self._executor, "shutdown", None)
        if shutdown:
            shutdown(wait=wait)


# =========================
# Shared periodic timer
# =========================
class JobTicker:
    """One daemon thread calling runner.tick() every interval; passes never overlap."""

    def __init__(self, runner: JobRunner, interval_s: float = IMPORT_TICK_S):
        self.runner = runner
        self.interval_s = max(float(interval_s or IMPORT_TICK_S), 0.05)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="import-ticker", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.runner.tick()
            except Exception:
                pass

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())
