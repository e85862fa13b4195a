import threading

from dbstarter.local.supervisor import readiness
from dbstarter.local.supervisor.readiness import ReadinessObserver, test_instance as check_instance, version_url


def test_version_url():
    assert version_url("10.0.0.1", 4001) == "http://10.0.0.1:4001/_api/version"


def test_observer_reports_ready(stop_event):
    answers = iter([False, False, True])
    ready = threading.Event()
    observer = ReadinessObserver(
        "agent", "http://x/_api/version", stop_event,
        on_ready=ready.set, probe=lambda url, timeout, auth: next(answers), poll_interval=0.01,
    ).start()
    observer.join(timeout=5)
    assert observer.result is True
    assert ready.is_set()


def test_observer_gives_up_after_max_attempts(stop_event):
    calls = []

    def probe(url, timeout, auth):
        calls.append(url)
        return False

    observer = ReadinessObserver("dbserver", "http://x/_api/version", stop_event,
                                 probe=probe, poll_interval=0.001, max_attempts=3).start()
    observer.join(timeout=5)
    assert observer.result is False
    assert len(calls) == 3


def test_cancel_stops_the_observer_promptly(stop_event):
    observer = ReadinessObserver("coordinator", "http://x/_api/version", stop_event,
                                 probe=lambda url, timeout, auth: False, poll_interval=60).start()
    observer.cancel()
    observer.join(timeout=5)
    assert not observer._thread.is_alive()
    assert observer.result is None
    assert observer.cancelled


def test_parent_stop_cancels_without_reporting(stop_event):
    ready = threading.Event()
    stop_event.set()
    observer = ReadinessObserver("agent", "http://x/_api/version", stop_event, on_ready=ready.set,
                                 probe=lambda url, timeout, auth: True).start()
    observer.join(timeout=5)
    assert observer.result is None
    assert not ready.is_set()


def test_instance_up(monkeypatch):
    monkeypatch.setattr(readiness, "probe_version", lambda url, timeout, auth_header="": True)
    assert check_instance("10.0.0.1", 4001, timeout=1)


def test_instance_down_until_timeout(monkeypatch):
    monkeypatch.setattr(readiness, "probe_version", lambda url, timeout, auth_header="": False)
    assert not check_instance("10.0.0.1", 4001, timeout=0.1)


def test_instance_check_aborts_on_stop(monkeypatch, stop_event):
    monkeypatch.setattr(readiness, "probe_version", lambda url, timeout, auth_header="": False)
    stop_event.set()
    assert not check_instance("10.0.0.1", 4001, timeout=60, stop_event=stop_event)
