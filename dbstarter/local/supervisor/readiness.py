import time
import logging
import requests
import threading
from typing import Callable, Optional
import dbstarter.settings as default_settings

log = logging.getLogger(__name__)


def version_url(host: str, port: int) -> str:
    return f"http://{host}:{port}{default_settings.READINESS_PATH}"


def probe_version(url: str, timeout: float, auth_header: str = "",
                  session: Optional[requests.Session] = None) -> bool:
    """
    Sends a single request to the version endpoint of a server.

    :return: True if the server answered with 200 OK.
    """
    headers = {"Authorization": auth_header} if auth_header else {}
    try:
        response = (session or requests).get(url, timeout=timeout, headers=headers)
        return response.status_code == 200
    except requests.exceptions.RequestException as e:
        log.debug(f"Version request to {url} failed: {e}")
        return False


def test_instance(host: str, port: int, timeout: float = default_settings.READINESS_PROBE_TIMEOUT,
                  auth_header: str = "", stop_event: Optional[threading.Event] = None) -> bool:
    """
    Polls the version endpoint of a server until it answers or the timeout expires.

    :param host: The address of the server.
    :param port: The port of the server.
    :param timeout: The total number of seconds to keep trying.
    :param auth_header: Optional authorization header value.
    :param stop_event: Aborts polling when set.
    :return: True if the server is up.
    """
    url = version_url(host, port)
    stop_event = stop_event or threading.Event()
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        if probe_version(url, min(remaining, default_settings.READINESS_REQUEST_TIMEOUT), auth_header):
            return True
        if stop_event.wait(default_settings.READINESS_POLL_INTERVAL):
            return False


class ReadinessObserver:
    """
    Watches a freshly started server until it is ready, in a detached thread.

    The outcome is only logged (and reported through `on_ready`). The observer
    never blocks its caller: `cancel()` returns immediately and the thread
    stops at its next poll.

    :param name: The name of the server (used in log messages).
    :param url: The version endpoint of the server.
    :param parent_stop: The stop signal of the whole service.
    :param on_ready: Called once when the server answered.
    :param auth_header: Optional authorization header value.
    :param probe: The function that performs a single readiness request.
    """

    def __init__(self, name: str, url: str, parent_stop: threading.Event,
                 on_ready: Optional[Callable[[], None]] = None, auth_header: str = "",
                 probe: Callable[..., bool] = probe_version,
                 poll_interval: float = default_settings.READINESS_POLL_INTERVAL,
                 max_attempts: int = default_settings.READINESS_MAX_ATTEMPTS) -> None:
        self.name = name
        self.url = url
        self.parent_stop = parent_stop
        self.on_ready = on_ready
        self.auth_header = auth_header
        self.probe = probe
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.result: Optional[bool] = None
        self._cancelled = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"{name}-readiness")

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set() or self.parent_stop.is_set()

    def start(self) -> "ReadinessObserver":
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._cancelled.set()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def _run(self) -> None:
        for _ in range(self.max_attempts):
            if self.cancelled:
                return
            if self.probe(self.url, default_settings.READINESS_REQUEST_TIMEOUT, self.auth_header):
                if self.cancelled:
                    return
                self.result = True
                log.info(f"{self.name} up and running.")
                if self.on_ready is not None:
                    self.on_ready()
                return
            if self._cancelled.wait(self.poll_interval):
                return
        if not self.cancelled:
            self.result = False
            total = self.max_attempts * self.poll_interval
            log.warning(f"{self.name} not ready after {total:.0f}s!")
