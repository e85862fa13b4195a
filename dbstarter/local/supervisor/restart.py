"""
The restart policy of a single server role.

Each supervision loop drives one `RestartPolicy` through these states:

    STARTING --started--> AWAITING_READY --ready--> RUNNING
    AWAITING_READY / RUNNING --exited--> RESTARTING | GIVEN_UP
    RESTARTING --restart--> STARTING
    STARTING --start_failed--> GIVEN_UP

A run shorter than `failure_uptime` counts as a failure; a longer run resets
the failure counter. Reaching `max_failures` consecutive failures gives up on
the role for good.
"""
import enum
import logging
import threading
from typing import Dict, Tuple
import dbstarter.settings as default_settings

log = logging.getLogger(__name__)


class SupervisorState(enum.Enum):
    STARTING = "starting"
    AWAITING_READY = "awaiting_ready"
    RUNNING = "running"
    RESTARTING = "restarting"
    GIVEN_UP = "given_up"


class Event(enum.Enum):
    STARTED = "started"
    READY = "ready"
    EXITED_SHORT = "exited_short"
    EXITED_LONG = "exited_long"
    FAILURE_LIMIT = "failure_limit"
    RESTART = "restart"
    START_FAILED = "start_failed"


S = SupervisorState
TRANSITIONS: Dict[Tuple[SupervisorState, Event], SupervisorState] = {
    (S.STARTING, Event.STARTED): S.AWAITING_READY,
    (S.STARTING, Event.START_FAILED): S.GIVEN_UP,
    (S.AWAITING_READY, Event.READY): S.RUNNING,
    (S.AWAITING_READY, Event.EXITED_SHORT): S.RESTARTING,
    (S.AWAITING_READY, Event.EXITED_LONG): S.RESTARTING,
    (S.AWAITING_READY, Event.FAILURE_LIMIT): S.GIVEN_UP,
    (S.RUNNING, Event.EXITED_SHORT): S.RESTARTING,
    (S.RUNNING, Event.EXITED_LONG): S.RESTARTING,
    (S.RUNNING, Event.FAILURE_LIMIT): S.GIVEN_UP,
    (S.RESTARTING, Event.RESTART): S.STARTING,
}


class InvalidTransitionError(RuntimeError):
    pass


class RestartPolicy:
    """
    Tracks restarts and consecutive failures for one role. Thread-safe, since
    the readiness observer reports readiness from its own thread.

    :param role: The role this policy belongs to (used in log messages).
    :param failure_uptime: Runs shorter than this many seconds count as a failure.
    :param max_failures: Number of consecutive failures after which the role is given up.
    :param backoff: Seconds to wait before a restart. 0 restarts immediately.
    """

    def __init__(self, role: str, failure_uptime: float = default_settings.RECENT_FAILURE_UPTIME,
                 max_failures: int = default_settings.MAX_RECENT_FAILURES, backoff: float = 0.0) -> None:
        self.role = role
        self.failure_uptime = failure_uptime
        self.max_failures = max_failures
        self.backoff = backoff
        self._lock = threading.Lock()
        self._state = SupervisorState.STARTING
        self._recent_failures = 0
        self._restart = 0

    @property
    def state(self) -> SupervisorState:
        with self._lock:
            return self._state

    @property
    def recent_failures(self) -> int:
        with self._lock:
            return self._recent_failures

    @property
    def restart(self) -> int:
        """The restart generation, 0 for the first start."""
        with self._lock:
            return self._restart

    def _fire(self, event: Event) -> SupervisorState:
        # Caller holds the lock.
        new_state = TRANSITIONS.get((self._state, event))
        if new_state is None:
            raise InvalidTransitionError(f"{self.role}: no transition from {self._state.value} on {event.value}")
        log.debug(f"{self.role}: {self._state.value} --{event.value}--> {new_state.value}")
        self._state = new_state
        return new_state

    def started(self) -> SupervisorState:
        with self._lock:
            return self._fire(Event.STARTED)

    def start_failed(self) -> SupervisorState:
        with self._lock:
            return self._fire(Event.START_FAILED)

    def ready(self) -> SupervisorState:
        """Marks the server as ready. Ignored when it already exited."""
        with self._lock:
            if self._state != SupervisorState.AWAITING_READY:
                return self._state
            return self._fire(Event.READY)

    def exited(self, uptime: float) -> SupervisorState:
        """
        Records the exit of the server after the given uptime.

        :param uptime: Seconds the server was running.
        :return: RESTARTING, or GIVEN_UP when the failure limit is reached.
        """
        with self._lock:
            if uptime < self.failure_uptime:
                self._recent_failures += 1
            else:
                self._recent_failures = 0
            if self._recent_failures >= self.max_failures:
                return self._fire(Event.FAILURE_LIMIT)
            return self._fire(Event.EXITED_SHORT if self._recent_failures else Event.EXITED_LONG)

    def next_attempt(self) -> float:
        """
        Moves on to the next start attempt.

        :return: The number of seconds to wait before starting again.
        """
        with self._lock:
            self._fire(Event.RESTART)
            self._restart += 1
            return self.backoff
