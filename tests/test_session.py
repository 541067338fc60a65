"""Tests for the session manager."""

import threading
import time

import pytest

from toolport.errors import NoActiveSession, SessionBusy, SessionDied, SessionStartFailed, UnknownServer
from toolport.session.manager import SessionState


class TestStart:
    def test_start_creates_session_and_record(self, make_runtime, launcher):
        manager = make_runtime().sessions
        handle = manager.start("chrome-devtools")

        assert handle.server == "chrome-devtools"
        assert manager.state("chrome-devtools") == SessionState.ACTIVE
        assert launcher.launches == 1
        record = manager.list_sessions()[0]
        assert record.session_id == handle.session_id

    def test_start_is_idempotent(self, make_runtime, launcher):
        manager = make_runtime().sessions
        first = manager.start("chrome-devtools")
        second = manager.start("chrome-devtools")
        assert first == second
        assert launcher.launches == 1

    def test_start_attaches_across_processes(self, make_runtime, launcher):
        first = make_runtime().sessions.start("chrome-devtools")
        second = make_runtime().sessions.start("chrome-devtools")
        assert first.session_id == second.session_id
        assert launcher.launches == 1

    def test_start_replaces_dead_session(self, make_runtime, factory, launcher):
        manager = make_runtime().sessions
        first = manager.start("chrome-devtools")
        factory.created[-1].kill()

        second = manager.start("chrome-devtools")
        assert second.session_id != first.session_id
        assert launcher.launches == 2
        assert manager.call("chrome-devtools", "current_url").ok

    def test_start_failure_reverts_to_absent(self, make_runtime, launcher):
        manager = make_runtime().sessions
        launcher.fail_next = True
        with pytest.raises(SessionStartFailed):
            manager.start("chrome-devtools")
        assert manager.state("chrome-devtools") == SessionState.ABSENT
        assert manager.list_sessions() == []

    def test_start_unknown_server(self, make_runtime):
        with pytest.raises(UnknownServer):
            make_runtime().sessions.start("github")


class TestCall:
    def test_call_without_start(self, make_runtime):
        with pytest.raises(NoActiveSession):
            make_runtime().sessions.call("chrome-devtools", "current_url")

    def test_state_persists_across_calls(self, make_runtime):
        manager = make_runtime().sessions
        manager.start("chrome-devtools")
        result = manager.call("chrome-devtools", "navigate_page", {"url": "https://example.com"})
        assert result.ok
        assert manager.call("chrome-devtools", "current_url").value == {"url": "https://example.com"}

    def test_call_updates_record(self, make_runtime):
        manager = make_runtime().sessions
        manager.start("chrome-devtools")
        before = manager.list_sessions()[0].last_activity
        manager.call("chrome-devtools", "current_url")
        record = manager.list_sessions()[0]
        assert record.call_count == 1
        assert record.last_activity >= before

    def test_call_from_another_process(self, make_runtime):
        make_runtime().sessions.start("chrome-devtools")
        other = make_runtime().sessions
        result = other.call("chrome-devtools", "navigate_page", {"url": "https://example.com"})
        assert result.ok
        assert result.value == {"url": "https://example.com"}

    def test_remote_error_keeps_session(self, make_runtime):
        manager = make_runtime().sessions
        manager.start("atlassian")
        result = manager.call("atlassian", "createJiraIssue", {"summary": "x"})
        assert result.error_kind == "RemoteToolError"
        assert manager.state("atlassian") == SessionState.ACTIVE

    def test_dead_transport(self, make_runtime, factory):
        manager = make_runtime().sessions
        manager.start("chrome-devtools")
        factory.created[-1].kill()

        with pytest.raises(SessionDied):
            manager.call("chrome-devtools", "current_url")
        with pytest.raises(NoActiveSession):
            manager.call("chrome-devtools", "current_url")
        assert manager.list_sessions() == []

        handle = manager.start("chrome-devtools")
        assert manager.call("chrome-devtools", "current_url").ok
        assert handle.session_id == manager.list_sessions()[0].session_id

    def test_stale_record_in_new_process(self, make_runtime, factory):
        make_runtime().sessions.start("chrome-devtools")
        factory.created[-1].kill()

        other = make_runtime().sessions
        with pytest.raises(SessionDied):
            other.call("chrome-devtools", "current_url")
        with pytest.raises(NoActiveSession):
            other.call("chrome-devtools", "current_url")

    def test_timeout_kills_session(self, make_runtime, factory):
        manager = make_runtime().sessions
        manager.start("chrome-devtools")
        result = manager.call("chrome-devtools", "slow", {"_delay": 1.0}, timeout=0.05)

        assert result.error_kind == "Timeout"
        assert not factory.created[-1].is_running
        with pytest.raises(NoActiveSession):
            manager.call("chrome-devtools", "current_url")


class TestSerialization:
    def _run_concurrently(self, manager, n=2, delay=0.2):
        results, errors = [], []

        def worker():
            try:
                results.append(manager.call("chrome-devtools", "slow", {"_delay": delay}))
            except Exception as exc:  # collected for assertions
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results, errors

    def test_queue_policy_serializes(self, make_runtime, factory):
        manager = make_runtime().sessions
        manager.start("chrome-devtools")
        results, errors = self._run_concurrently(manager, n=3)

        assert errors == []
        assert all(r.ok for r in results)
        assert factory.created[-1].max_in_flight == 1

    def test_fail_policy_reports_busy(self, make_runtime):
        manager = make_runtime(busy_policy="fail").sessions
        manager.start("chrome-devtools")
        results, errors = self._run_concurrently(manager, n=2, delay=0.5)

        assert len(results) == 1 and results[0].ok
        assert len(errors) == 1 and isinstance(errors[0], SessionBusy)

    def test_distinct_sessions_are_independent(self, make_runtime):
        manager = make_runtime().sessions
        manager.start("chrome-devtools")
        manager.start("atlassian")
        assert manager.state("chrome-devtools") == SessionState.ACTIVE
        assert manager.state("atlassian") == SessionState.ACTIVE
        assert len(manager.list_sessions()) == 2


class TestStop:
    def test_stop(self, make_runtime, factory):
        manager = make_runtime().sessions
        manager.start("chrome-devtools")
        assert manager.stop("chrome-devtools") is True
        assert manager.state("chrome-devtools") == SessionState.ABSENT
        assert manager.list_sessions() == []
        assert not factory.created[-1].is_running

    def test_stop_absent_is_noop(self, make_runtime):
        manager = make_runtime().sessions
        assert manager.stop("chrome-devtools") is False
        assert manager.stop("chrome-devtools") is False

    def test_stop_from_another_process(self, make_runtime, factory, launcher):
        make_runtime().sessions.start("chrome-devtools")
        other = make_runtime().sessions
        assert other.stop("chrome-devtools") is True
        assert other.list_sessions() == []
        assert launcher.live == {}
        assert not factory.created[-1].is_running

    def test_stop_with_dead_transport(self, make_runtime, factory):
        make_runtime().sessions.start("chrome-devtools")
        factory.created[-1].kill()
        other = make_runtime().sessions
        assert other.stop("chrome-devtools") is True
        assert other.list_sessions() == []


class TestReconcile:
    def test_reconcile_discards_dead_sessions(self, make_runtime, factory):
        manager = make_runtime().sessions
        manager.start("chrome-devtools")
        manager.start("atlassian")
        chrome = factory.created[0]
        chrome.kill()

        discarded = make_runtime().sessions.reconcile()
        assert discarded == ["chrome-devtools"]
        assert [r.server for r in manager.list_sessions()] == ["atlassian"]

    def test_idle_bound(self, make_runtime):
        make_runtime().sessions.start("chrome-devtools")
        time.sleep(0.05)
        manager = make_runtime(idle_timeout=0.01).sessions
        assert manager.reconcile() == ["chrome-devtools"]
        with pytest.raises(NoActiveSession):
            manager.call("chrome-devtools", "current_url")
