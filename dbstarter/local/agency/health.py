import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence
from dbstarter.local import peers
from dbstarter.local.errors import StarterError
from dbstarter.local.agency.client import AgencyAPI, AgencyConnection, KeyNotFoundError, RedirectError

log = logging.getLogger(__name__)

MAX_AGENT_RESPONSE_TIME = 10  # seconds
INVALID_KEY = ["does-not-exist-70ddb948-59ea-52f3-9a19-baaca18de7ae"]


class AgencyHealthError(StarterError):
    """Base class for violated agency health invariants."""


class AgentNotRespondingError(AgencyHealthError):
    def __init__(self, endpoint: str) -> None:
        super().__init__(f"Agent {endpoint} is not responding")
        self.endpoint = endpoint


class LeadersDisagreeError(AgencyHealthError):
    def __init__(self, endpoints: Sequence[str]) -> None:
        super().__init__(f"Not all agents report the same leader endpoint: {', '.join(endpoints)}")
        self.endpoints = list(endpoints)


class UnexpectedLeaderCountError(AgencyHealthError):
    def __init__(self, count: int) -> None:
        super().__init__(f"Unexpected number of agency leaders: {count}")
        self.count = count


@dataclass
class AgentStatus:
    """The outcome of probing a single agent."""
    is_leader: bool = False
    leader_endpoint: str = ""
    is_responding: bool = False


def _endpoint_of(connection: AgencyConnection) -> str:
    return ",".join(connection.endpoints())


def probe_agent(connection: AgencyConnection, timeout: float = MAX_AGENT_RESPONSE_TIME,
                api_factory: Callable[[AgencyConnection], AgencyAPI] = AgencyAPI) -> AgentStatus:
    """
    Reads a key that is guaranteed not to exist from the given agent.

    A valid read (or "key not found") comes from the leader, a redirect comes
    from a follower and points at the leader. Anything else means the agent
    is not responding properly.
    """
    api = api_factory(connection)
    try:
        api.read_key(INVALID_KEY, timeout=timeout)
    except KeyNotFoundError:
        pass
    except RedirectError as e:
        return AgentStatus(is_leader=False, leader_endpoint=e.location, is_responding=True)
    except Exception as e:
        log.debug(f"Agent {_endpoint_of(connection)} gave an unexpected response: {e}")
        return AgentStatus(is_responding=False)
    return AgentStatus(is_leader=True, leader_endpoint=_endpoint_of(connection), is_responding=True)


def collect_agent_statuses(connections: Sequence[AgencyConnection], timeout: float = MAX_AGENT_RESPONSE_TIME,
                           api_factory: Callable[[AgencyConnection], AgencyAPI] = AgencyAPI) -> List[AgentStatus]:
    """
    Probes all agents concurrently and waits for every probe to finish or time out.

    Probes run in daemon threads, so a probe stuck beyond the deadline is
    abandoned and never holds up the caller or interpreter exit.
    """
    statuses: List[Optional[AgentStatus]] = [None] * len(connections)

    def run_probe(i: int, connection: AgencyConnection) -> None:
        statuses[i] = probe_agent(connection, timeout, api_factory)

    threads = [
        threading.Thread(target=run_probe, args=(i, c), daemon=True, name=f"AgentProbe-{i}")
        for i, c in enumerate(connections)
    ]
    for thread in threads:
        thread.start()
    # All probes run at the same time, so one shared deadline bounds the whole check.
    deadline = time.monotonic() + timeout + 1
    for i, thread in enumerate(threads):
        thread.join(max(0.0, deadline - time.monotonic()))
        if thread.is_alive():
            log.debug(f"Agent {_endpoint_of(connections[i])} did not answer within {timeout}s")
    return [s if s is not None else AgentStatus(is_responding=False) for s in statuses]


def evaluate_agent_statuses(connections: Sequence[AgencyConnection], statuses: Sequence[AgentStatus]) -> None:
    """
    Checks the single-leader invariants over the given probe results.

    :raises AgentNotRespondingError: When any agent did not respond.
    :raises LeadersDisagreeError: When the reported leader endpoints do not share one hostname.
    :raises UnexpectedLeaderCountError: When not exactly one agent answered as leader.
    """
    for connection, status in zip(connections, statuses):
        if not status.is_responding:
            raise AgentNotRespondingError(_endpoint_of(connection))

    leader_endpoints = [s.leader_endpoint for s in statuses]
    for prev, current in zip(leader_endpoints, leader_endpoints[1:]):
        if not peers.is_same_endpoint(prev, current):
            raise LeadersDisagreeError(leader_endpoints)

    no_leaders = sum(1 for s in statuses if s.is_leader)
    if no_leaders != 1:
        raise UnexpectedLeaderCountError(no_leaders)


def are_agents_healthy(connections: Sequence[AgencyConnection], timeout: float = MAX_AGENT_RESPONSE_TIME,
                       api_factory: Callable[[AgencyConnection], AgencyAPI] = AgencyAPI) -> None:
    """
    Performs a health check on all given agents.

    Of the given agents, exactly one must respond as leader and all others
    must redirect to that leader. Returns None when the agency is healthy.

    :param connections: One connection per agent.
    :param timeout: The per-agent response timeout in seconds.
    :param api_factory: Builds the agency API for a connection.
    :raises AgencyHealthError: Describing the violated invariant.
    """
    statuses = collect_agent_statuses(connections, timeout, api_factory)
    evaluate_agent_statuses(connections, statuses)
    log.debug(f"Agency with {len(connections)} agents is healthy")
