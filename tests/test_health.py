import threading

import httpx
import pytest

from shr.health import HealthProbe, HealthScheduler, ProbeOutcome, check_health
from shr.locking import project_lock


class ScriptedCheck:
    """Returns queued results; records every URL probed."""

    def __init__(self, *results: bool):
        self.results = list(results)
        self.calls: list[tuple[str, float]] = []

    def __call__(self, url: str, timeout_s: float):
        self.calls.append((url, timeout_s))
        ok = self.results.pop(0) if self.results else False
        return ok, "Healthy" if ok else "HTTP 500", 1.0


@pytest.fixture
def probed(write_descriptor, store):
    write_descriptor("myapp", enabled="yes", port=18080, health_path="/health", health_retries=3, health_timeout=2)
    return store.load("myapp")


def test_restart_after_every_attempt_fails(reconciler, host, probed):
    check = ScriptedCheck(False, False, False)
    sleeps = []
    outcome = HealthProbe(reconciler, check=check, sleep=sleeps.append).run(probed)

    assert len(check.calls) == 3
    assert check.calls[0] == ("http://127.0.0.1:18080/health", 2.0)
    assert sleeps == [0.0, 0.0]  # between attempts only
    assert outcome.healthy is False
    assert outcome.restarted is True
    assert host.restarts["myapp.service"] == 1

    status = reconciler.journal.get_status("myapp")
    assert status.last_probe_ok is False
    assert status.restart_count == 1
    levels = [e["level"] for e in reconciler.journal.latest_events(project="myapp")]
    assert "ERROR" in levels


def test_recovery_within_retries_does_not_restart(reconciler, host, probed):
    check = ScriptedCheck(False, True)
    outcome = HealthProbe(reconciler, check=check, sleep=lambda s: None).run(probed)

    assert outcome.healthy is True
    assert outcome.attempts == 2
    assert host.restarts["myapp.service"] == 0
    assert reconciler.journal.get_status("myapp").last_probe_ok is True


def test_skips_without_health_check_or_when_disabled(reconciler, host, store, write_descriptor):
    write_descriptor("plain", enabled="yes", port=1)
    write_descriptor("parked", enabled="no", port=2, health_path="/health")
    check = ScriptedCheck()
    probe = HealthProbe(reconciler, check=check, sleep=lambda s: None)

    assert probe.run(store.load("plain")).skipped is True
    assert probe.run(store.load("parked")).skipped is True
    assert check.calls == []
    assert sum(host.restarts.values()) == 0


def test_concurrent_probe_is_skipped(reconciler, host, probed):
    check = ScriptedCheck(False, False, False)
    probe = HealthProbe(reconciler, check=check, sleep=lambda s: None)
    with project_lock(reconciler.paths("myapp").probe_lock_file):
        outcome = probe.run(probed)
    assert outcome.skipped is True
    assert check.calls == []
    assert host.restarts["myapp.service"] == 0


def test_failed_restart_is_reported(reconciler, host, probed, monkeypatch):
    from shr.errors import HostOperationError

    def broken(*args):
        raise HostOperationError("systemctl restart exited 1", step="systemctl restart")

    monkeypatch.setattr(host, "systemctl", broken)
    outcome = HealthProbe(reconciler, check=ScriptedCheck(), sleep=lambda s: None).run(probed)
    assert outcome.restarted is False
    assert reconciler.journal.get_status("myapp").restart_count == 0


def test_check_health_status_codes():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/ok":
            return httpx.Response(200)
        if request.url.path == "/moved":
            return httpx.Response(302, headers={"Location": "/ok"})
        return httpx.Response(503)

    transport = httpx.MockTransport(handler)
    assert check_health("http://app/ok", transport=transport)[0] is True
    assert check_health("http://app/moved", transport=transport)[0] is True
    ok, msg, _ = check_health("http://app/down", transport=transport)
    assert ok is False
    assert msg == "HTTP 503"


def test_check_health_connection_refused():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    ok, msg, _ = check_health("http://app/health", transport=httpx.MockTransport(handler))
    assert ok is False
    assert "ConnectError" in msg


@pytest.mark.parametrize(
    "due,now,expected",
    [
        (0.0, 10.0, 60.0),  # on time
        (0.0, 61.0, 120.0),  # one slot overran
        (0.0, 250.0, 300.0),  # several slots skipped, not queued
    ],
)
def test_next_due_skips_elapsed_slots(due, now, expected):
    assert HealthScheduler.next_due(due, 60.0, now) == expected


def test_tick_skips_while_previous_run_in_flight(reconciler, probed):
    started = threading.Event()
    release = threading.Event()

    class SlowProbe:
        def run(self, d):
            started.set()
            release.wait(5)
            return ProbeOutcome(d.name, healthy=True, attempts=1)

    scheduler = HealthScheduler(reconciler, probe=SlowProbe(), jitter_s=0)
    results = []
    worker = threading.Thread(target=lambda: results.append(scheduler.tick(probed)))
    worker.start()
    assert started.wait(5)

    assert scheduler.tick(probed).skipped is True

    release.set()
    worker.join(5)
    assert results[0].skipped is False
    assert scheduler.tick(probed).skipped is False


def test_scheduler_only_watches_enabled_projects_with_health(reconciler, write_descriptor, probed):
    write_descriptor("plain", enabled="yes", port=1)
    write_descriptor("parked", enabled="no", port=2, health_path="/health")
    assert [d.name for d in HealthScheduler(reconciler).projects()] == ["myapp"]


def test_scheduler_runs_each_watched_project(reconciler, write_descriptor, probed):
    write_descriptor("plain", enabled="yes", port=1)
    ran = threading.Event()
    seen = []

    class RecordingProbe:
        def run(self, d):
            seen.append(d.name)
            ran.set()
            return ProbeOutcome(d.name, healthy=True, attempts=1)

    scheduler = HealthScheduler(reconciler, probe=RecordingProbe(), jitter_s=0)
    assert scheduler.start() == ["myapp"]
    assert ran.wait(5)
    scheduler.stop(timeout=5)
    assert set(seen) == {"myapp"}
