import time
import logging
from typing import Callable, Dict, Optional
import dbstarter.settings as default_settings
from dbstarter.local.runner import Process, Runner, RunnerError
from dbstarter.local.peers import ROLE_AGENT, ROLE_COORDINATOR, ROLE_DBSERVER

log = logging.getLogger(__name__)


def _terminate(role: str, proc: Optional[Process]) -> None:
    if proc is None:
        return
    try:
        proc.terminate()
        log.debug(f"Terminated {role}.")
    except (RunnerError, OSError) as e:
        log.warning(f"Failed to terminate {role}: {e}")


def _cleanup(role: str, proc: Optional[Process]) -> None:
    if proc is None:
        return
    try:
        proc.cleanup()
    except (RunnerError, OSError) as e:
        log.warning(f"Failed to cleanup {role}: {e}")


def ordered_shutdown(processes: Dict[str, Process], runner: Runner,
                     sleep: Callable[[float], None] = time.sleep,
                     grace_delay: float = default_settings.SHUTDOWN_GRACE_DELAY) -> None:
    """
    Stops all servers in dependency order: coordinator and dbserver first,
    the agent after a grace delay. Cleanup follows the same order and the
    runner itself is cleaned up last.

    This is a best-effort ordering based on fixed delays, not a drain protocol.

    :param processes: The captured process handles, keyed by role.
    :param runner: The runner that started the processes.
    :param sleep: Used for the grace delays.
    :param grace_delay: Seconds between stopping the other servers and the agent.
    """
    log.info("Shutting down services...")
    _terminate(ROLE_COORDINATOR, processes.get(ROLE_COORDINATOR))
    _terminate(ROLE_DBSERVER, processes.get(ROLE_DBSERVER))
    sleep(grace_delay)
    _terminate(ROLE_AGENT, processes.get(ROLE_AGENT))

    _cleanup(ROLE_COORDINATOR, processes.get(ROLE_COORDINATOR))
    _cleanup(ROLE_DBSERVER, processes.get(ROLE_DBSERVER))
    sleep(grace_delay)
    _cleanup(ROLE_AGENT, processes.get(ROLE_AGENT))

    try:
        runner.cleanup()
    except (RunnerError, OSError) as e:
        log.warning(f"Failed to cleanup runner: {e}")
    log.info("All services have been shut down.")


def stop_process(role: str, proc: Process) -> None:
    """Terminates and cleans up a single server, logging failures."""
    _terminate(role, proc)
    _cleanup(role, proc)
