import enum
import logging
import threading
from typing import Dict, Optional
from dbstarter.local.peers import Peers
from dbstarter.local.runner import Process
from dbstarter.local.supervisor.restart import RestartPolicy

log = logging.getLogger(__name__)


class State(enum.Enum):
    START = "start"        # initial state after start
    MASTER = "master"      # finding phase, first instance
    SLAVE = "slave"        # finding phase, further instances
    RUNNING = "running"    # running phase
    STOPPED = "stopped"    # shutdown started, terminal


ALLOWED_TRANSITIONS = {
    State.START: {State.MASTER, State.SLAVE, State.RUNNING, State.STOPPED},
    State.MASTER: {State.RUNNING, State.STOPPED},
    State.SLAVE: {State.RUNNING, State.STOPPED},
    State.RUNNING: {State.STOPPED},
    State.STOPPED: set(),
}


class ServiceState:
    """
    The mutable state of a running service.

    All access goes through the methods below, which hold one lock. Process
    handles are written only by the supervision loop of their role; once
    `close()` has been called, no new handles are accepted so the shutdown
    sequence sees a stable set.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._state = State.START
        self._peers: Optional[Peers] = None
        self._processes: Dict[str, Process] = {}
        self._policies: Dict[str, RestartPolicy] = {}
        self._closed = False

    #* --- Lifecycle ---
    @property
    def state(self) -> State:
        with self._lock:
            return self._state

    def transition(self, new_state: State) -> None:
        with self._lock:
            if new_state == self._state:
                return
            if new_state not in ALLOWED_TRANSITIONS[self._state]:
                raise RuntimeError(f"Invalid state transition {self._state.value} -> {new_state.value}")
            log.debug(f"Service state: {self._state.value} -> {new_state.value}")
            self._state = new_state

    #* --- Peers ---
    @property
    def peers(self) -> Optional[Peers]:
        with self._lock:
            return self._peers

    def set_peers(self, peers: Peers) -> None:
        with self._lock:
            self._peers = peers

    def peers_snapshot(self) -> Optional[Peers]:
        """Returns a copy of the peers that is safe to use without the lock."""
        with self._lock:
            if self._peers is None:
                return None
            return Peers.from_dict(self._peers.to_dict())

    def update_peers(self, update) -> Peers:
        """Applies `update(peers)` under the lock and returns a copy of the result."""
        with self._lock:
            if self._peers is None:
                raise RuntimeError("Peers are not initialized yet")
            update(self._peers)
            return Peers.from_dict(self._peers.to_dict())

    #* --- Process handles ---
    def set_process(self, role: str, process: Process) -> bool:
        """
        Stores the handle of the server running the given role.

        :return: False when the state is closed and the handle was not stored.
        """
        with self._lock:
            if self._closed:
                return False
            self._processes[role] = process
            return True

    def process(self, role: str) -> Optional[Process]:
        with self._lock:
            return self._processes.get(role)

    def processes(self) -> Dict[str, Process]:
        with self._lock:
            return dict(self._processes)

    def close(self) -> Dict[str, Process]:
        """Stops accepting new handles and returns the ones captured so far."""
        with self._lock:
            self._closed = True
            return dict(self._processes)

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    #* --- Restart policies ---
    def policy(self, role: str, factory=None) -> RestartPolicy:
        """Returns the restart policy of the given role, creating it on first use."""
        with self._lock:
            if role not in self._policies:
                self._policies[role] = factory(role) if factory else RestartPolicy(role)
            return self._policies[role]

    def recent_failures(self) -> Dict[str, int]:
        with self._lock:
            return {role: p.recent_failures for role, p in self._policies.items()}
