"""
Tests for reliability — bounded polling + per-environment run lock.
"""

import json
import os
from pathlib import Path

import pytest

from rollout.core.errors import RunLockError
from rollout.core.models.resource import ProbeResult
from rollout.core.reliability.polling import WaitStatus, next_delay, wait_until
from rollout.core.reliability.run_lock import RunLock, lock_path


def _sequence(*results: ProbeResult):
    """A check returning the given results, then repeating the last one."""
    pending = list(results)
    calls = []

    def check() -> ProbeResult:
        calls.append(1)
        return pending.pop(0) if len(pending) > 1 else pending[0]

    check.calls = calls
    return check


# ── Polling ─────────────────────────────────────────────────────────


class TestWaitUntil:
    def test_ready_on_first_poll_never_sleeps(self, clock):
        result = wait_until(_sequence(ProbeResult.is_ready("up")), timeout=10,
                            clock=clock, sleep=clock.sleep)
        assert result.status == WaitStatus.READY
        assert result.attempts == 1
        assert clock.sleeps == []

    def test_ready_after_pending(self, clock):
        check = _sequence(ProbeResult.pending("a"), ProbeResult.pending("b"),
                          ProbeResult.is_ready("c"))
        result = wait_until(check, timeout=100, interval=1, backoff=2, max_interval=10,
                            clock=clock, sleep=clock.sleep)
        assert result.ready
        assert result.attempts == 3
        assert result.history == ["a", "b", "c"]
        assert len(clock.sleeps) == 2

    def test_degraded_stops_immediately(self, clock):
        result = wait_until(_sequence(ProbeResult.degraded("broken")), timeout=100,
                            clock=clock, sleep=clock.sleep)
        assert result.status == WaitStatus.DEGRADED
        assert result.message == "broken"
        assert result.attempts == 1

    def test_timeout_is_bounded(self, clock):
        check = _sequence(ProbeResult.pending("waiting"))
        result = wait_until(check, timeout=30, interval=1, backoff=1.5, max_interval=8,
                            clock=clock, sleep=clock.sleep)
        assert result.status == WaitStatus.TIMEOUT
        assert clock.now == pytest.approx(30)
        assert result.attempts == len(check.calls)
        assert result.elapsed == pytest.approx(30)

    def test_sleep_never_overshoots_deadline(self, clock):
        wait_until(_sequence(ProbeResult.pending("x")), timeout=5, interval=4,
                   backoff=2, max_interval=60, clock=clock, sleep=clock.sleep)
        assert clock.now <= 5 + 1e-9
        assert all(s <= 5 for s in clock.sleeps)

    def test_on_poll_callback(self, clock):
        seen = []
        wait_until(_sequence(ProbeResult.pending("p"), ProbeResult.is_ready("r")),
                   timeout=10, interval=1, clock=clock, sleep=clock.sleep,
                   on_poll=lambda r, n: seen.append((r.message, n)))
        assert seen == [("p", 1), ("r", 2)]


class TestNextDelay:
    def test_exponential_growth(self):
        assert next_delay(0, 2, 2, 100, jitter=0) == 2
        assert next_delay(1, 2, 2, 100, jitter=0) == 4
        assert next_delay(3, 2, 2, 100, jitter=0) == 16

    def test_capped(self):
        assert next_delay(10, 2, 2, 60, jitter=0) == 60

    def test_jitter_bounds(self):
        for _ in range(50):
            delay = next_delay(0, 10, 1.5, 60, jitter=0.1)
            assert 10 <= delay <= 11


# ── Run lock ────────────────────────────────────────────────────────


class TestRunLock:
    def test_acquire_and_release(self, tmp_path: Path):
        path = lock_path(tmp_path, "dev")
        lock = RunLock(path, "apply-infra")
        lock.acquire()
        assert lock.held
        assert path.is_file()
        owner = json.loads(path.read_text())
        assert owner["pid"] == os.getpid()
        assert owner["action"] == "apply-infra"

        lock.release()
        assert not lock.held
        assert not path.exists()

    def test_live_lock_rejects(self, tmp_path: Path):
        path = lock_path(tmp_path, "dev")
        with RunLock(path, "apply"):
            with pytest.raises(RunLockError, match="holds"):
                RunLock(path, "destroy").acquire()

    def test_stale_lock_reclaimed(self, tmp_path: Path, monkeypatch):
        path = lock_path(tmp_path, "dev")
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"pid": 999999, "action": "apply"}))
        monkeypatch.setattr("rollout.core.reliability.run_lock._pid_alive", lambda pid: False)

        lock = RunLock(path, "destroy")
        lock.acquire()
        assert lock.held
        assert json.loads(path.read_text())["action"] == "destroy"
        lock.release()

    def test_corrupt_lock_treated_as_stale(self, tmp_path: Path):
        path = lock_path(tmp_path, "dev")
        path.parent.mkdir(parents=True)
        path.write_text("not json")
        old = path.stat().st_mtime - 60
        os.utime(path, (old, old))
        with RunLock(path) as lock:
            assert lock.held
        assert not path.exists()

    def test_fresh_empty_lock_is_not_taken(self, tmp_path: Path):
        # An owner that has created the file but not yet written its pid
        path = lock_path(tmp_path, "dev")
        path.parent.mkdir(parents=True)
        path.touch()
        with pytest.raises(RunLockError, match="moments ago"):
            RunLock(path, "destroy").acquire()
        assert path.exists()
        assert path.read_text() == ""

    def test_lock_is_published_whole(self, tmp_path: Path):
        path = lock_path(tmp_path, "dev")
        with RunLock(path, "apply"):
            assert json.loads(path.read_text())["pid"] == os.getpid()
            assert [p.name for p in path.parent.iterdir()] == ["dev.lock"]

    def test_release_without_acquire_is_noop(self, tmp_path: Path):
        path = lock_path(tmp_path, "dev")
        path.parent.mkdir(parents=True)
        path.write_text("{}")
        RunLock(path).release()
        assert path.exists()

    def test_lock_path_per_environment(self, tmp_path: Path):
        assert lock_path(tmp_path, "dev") != lock_path(tmp_path, "prod")
        assert lock_path(tmp_path, "prod").name == "prod.lock"
