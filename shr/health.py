from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from typing import Callable

import httpx

from .alerts import notify_restart
from .descriptors import HealthCheck, ProjectDescriptor
from .errors import ProbeFailure, ShrError
from .locking import project_lock
from .reconciler import Reconciler

CheckFn = Callable[[str, float], tuple[bool, str, float | None]]


def check_health(url: str, timeout_s: float = 3.0, transport: httpx.BaseTransport | None = None) -> tuple[bool, str, float | None]:
    """GET a health endpoint once.

    Any status below 400 counts as healthy (same as ``curl -f``).
    Returns (is_healthy, message, latency_ms).
    """
    start = time.monotonic()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
            resp = client.get(url)
        latency_ms = round((time.monotonic() - start) * 1000.0, 2)
        if resp.status_code >= 400:
            return False, f"HTTP {resp.status_code}", latency_ms
        return True, "Healthy", latency_ms
    except httpx.TimeoutException:
        return False, f"Timed out after {timeout_s}s", round((time.monotonic() - start) * 1000.0, 2)
    except httpx.HTTPError as e:
        return False, f"No response: {type(e).__name__}", round((time.monotonic() - start) * 1000.0, 2)


@dataclass(frozen=True)
class ProbeOutcome:
    project: str
    healthy: bool
    attempts: int = 0
    restarted: bool = False
    skipped: bool = False
    message: str = ""


class HealthProbe:
    """One probe run: up to ``retries`` attempts, then a restart."""

    def __init__(
        self,
        reconciler: Reconciler,
        check: CheckFn = check_health,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.reconciler = reconciler
        self.settings = reconciler.settings
        self.journal = reconciler.journal
        self.check = check
        self.sleep = sleep

    def run(self, d: ProjectDescriptor) -> ProbeOutcome:
        if d.health is None:
            return ProbeOutcome(d.name, healthy=True, skipped=True, message="no health check configured")
        if not d.enabled:
            return ProbeOutcome(d.name, healthy=True, skipped=True, message="project is disabled")

        paths = self.reconciler.paths(d.name)
        with project_lock(paths.probe_lock_file, blocking=False) as acquired:
            if not acquired:
                return ProbeOutcome(d.name, healthy=True, skipped=True, message="previous probe still running")
            return self._probe(d, d.health)

    def _probe(self, d: ProjectDescriptor, health: HealthCheck) -> ProbeOutcome:
        url = f"http://127.0.0.1:{d.port}{health.path}"
        retries = health.retries
        last = ""
        for attempt in range(1, retries + 1):
            ok, msg, _ = self.check(url, float(health.timeout))
            if ok:
                self.journal.record_probe(d.name, ok=True, restarted=False)
                return ProbeOutcome(d.name, healthy=True, attempts=attempt, message=msg)
            last = msg
            if attempt < retries:
                self.sleep(self.settings.probe_delay_s)

        failure = ProbeFailure(f"{retries} probe attempts failed ({last}); restarting service", project=d.name, step="probe")
        self.journal.log_event("ERROR", failure.message, project=d.name, step=failure.step)

        restarted = False
        try:
            self.reconciler.restart_service(d.name)
            restarted = True
        except ShrError as e:
            self.journal.log_event("ERROR", f"restart failed: {e.message}", project=d.name, step="restart service")
        self.journal.record_probe(d.name, ok=False, restarted=restarted)
        notify_restart(self.settings, d.name, url, failure.message, restarted)
        return ProbeOutcome(d.name, healthy=False, attempts=retries, restarted=restarted, message=failure.message)


class HealthScheduler:
    """In-process probe scheduler: one timer thread per project with a health check.

    A run that is still in flight when the next one is due causes that next
    run to be skipped, never queued.
    """

    def __init__(self, reconciler: Reconciler, probe: HealthProbe | None = None, jitter_s: float = 30.0):
        self.reconciler = reconciler
        self.probe = probe or HealthProbe(reconciler)
        self.jitter_s = max(0.0, jitter_s)
        self._stop = threading.Event()
        self._threads: dict[str, threading.Thread] = {}
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    def projects(self) -> list[ProjectDescriptor]:
        return [d for d in self.reconciler.store.list() if d.enabled and d.health is not None]

    def start(self) -> list[str]:
        self._stop.clear()
        for d in self.projects():
            thr = self._threads.get(d.name)
            if d.health is None or (thr and thr.is_alive()):
                continue
            interval = float(d.health.interval_s)
            thr = threading.Thread(target=self._loop, args=(d, interval), name=f"probe-{d.name}", daemon=True)
            self._threads[d.name] = thr
            thr.start()
        return sorted(self._threads)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        for thr in self._threads.values():
            thr.join(timeout)
        self._threads.clear()

    def tick(self, d: ProjectDescriptor) -> ProbeOutcome:
        with self._lock:
            if d.name in self._in_flight:
                return ProbeOutcome(d.name, healthy=True, skipped=True, message="previous probe still running")
            self._in_flight.add(d.name)
        try:
            return self.probe.run(d)
        finally:
            with self._lock:
                self._in_flight.discard(d.name)

    @staticmethod
    def next_due(due: float, interval: float, now: float) -> float:
        """Advance past every slot that elapsed while a run was in flight."""
        due += interval
        while due <= now:
            due += interval
        return due

    def _loop(self, d: ProjectDescriptor, interval: float) -> None:
        if self._stop.wait(random.uniform(0, self.jitter_s)):
            return
        due = time.monotonic()
        while not self._stop.is_set():
            try:
                self.tick(d)
            except Exception as e:
                self.reconciler.journal.log_event(
                    "ERROR", f"Probe tick failed: {type(e).__name__}: {e}", project=d.name, step="probe"
                )
            due = self.next_due(due, interval, time.monotonic())
            if self._stop.wait(max(0.0, due - time.monotonic())):
                return
