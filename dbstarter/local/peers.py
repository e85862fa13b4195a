"""
The peer registry.

Holds the ordered set of starters that take part in a deployment and derives
every server port from a shared base port plus a per-peer port offset.
"""
import socket
import logging
import ipaddress
from urllib.parse import urlparse
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional
from dbstarter.local.errors import ConfigurationError

log = logging.getLogger(__name__)

#* --- Roles & Port Offsets ---
ROLE_AGENT = "agent"
ROLE_COORDINATOR = "coordinator"
ROLE_DBSERVER = "dbserver"

PORT_OFFSET_AGENT = 1
PORT_OFFSET_COORDINATOR = 2
PORT_OFFSET_DBSERVER = 3
PORT_OFFSET_INCREMENT = 5  # {our http server, agent, coordinator, dbserver, reserved}

ROLE_PORT_OFFSETS = {
    ROLE_AGENT: PORT_OFFSET_AGENT,
    ROLE_COORDINATOR: PORT_OFFSET_COORDINATOR,
    ROLE_DBSERVER: PORT_OFFSET_DBSERVER,
}


def normalize_host(address: str) -> str:
    """
    Strips an optional port from the address and maps loopback names to 127.0.0.1.

    :param address: A host name, IP address or host:port string.
    :return: The normalized host.
    """
    host = address
    if address.startswith("["):
        host = address[1:].split("]")[0]
    elif address.count(":") == 1:
        host = address.split(":")[0]
    try:
        if ipaddress.ip_address(host).is_loopback:
            return "127.0.0.1"
    except ValueError:
        if host == "localhost":
            return "127.0.0.1"
    return host


def is_same_endpoint(a: str, b: str) -> bool:
    """
    Returns True when the two given endpoints refer to the same server.

    Endpoints are equal when they are literally identical, or when both parse
    as URLs with the same hostname. Scheme and port are ignored because a
    redirect target may be reported differently from the endpoint used to
    reach that same host.
    """
    if a == b:
        return True
    try:
        host_a = urlparse(a).hostname
        host_b = urlparse(b).hostname
    except ValueError:
        return False
    if host_a is None or host_b is None:
        return False
    return host_a == host_b


def guess_own_address() -> str:
    """Returns the address other hosts most likely use to reach this one."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            # No packets are sent, this only selects the outgoing interface.
            s.connect(("10.255.255.255", 1))
            return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"


@dataclass
class Peer:
    """One starter instance and the servers it runs."""
    id: str
    address: str
    port_offset: int
    data_dir: str = ""
    has_agent: bool = False
    has_dbserver: bool = True
    has_coordinator: bool = True

    def port_for(self, role: str, base_port: int) -> int:
        """Returns the port the given role listens on for this peer."""
        return base_port + self.port_offset + ROLE_PORT_OFFSETS[role]

    def endpoint_for(self, role: str, base_port: int, scheme: str = "tcp") -> str:
        return f"{scheme}://{self.address}:{self.port_for(role, base_port)}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Peer":
        return cls(
            id=str(data["id"]),
            address=str(data["address"]),
            port_offset=int(data.get("port_offset", 0)),
            data_dir=str(data.get("data_dir", "")),
            has_agent=bool(data.get("has_agent", False)),
            has_dbserver=bool(data.get("has_dbserver", True)),
            has_coordinator=bool(data.get("has_coordinator", True)),
        )


@dataclass
class Peers:
    """The ordered set of peers taking part in the deployment."""
    peers: List[Peer] = field(default_factory=list)
    agency_size: int = 3

    def peer_by_id(self, peer_id: str) -> Optional[Peer]:
        for p in self.peers:
            if p.id == peer_id:
                return p
        return None

    def agency_peers(self) -> List[Peer]:
        """Returns the peers that run an agent: the first `agency_size` agency-flagged ones."""
        return [p for p in self.peers if p.has_agent][:self.agency_size]

    def needs_agent(self, peer_id: str) -> bool:
        return any(p.id == peer_id for p in self.agency_peers())

    def agent_count(self) -> int:
        return sum(1 for p in self.peers if p.has_agent)

    def agency_endpoints(self, base_port: int, scheme: str = "tcp") -> List[str]:
        return [p.endpoint_for(ROLE_AGENT, base_port, scheme) for p in self.agency_peers()]

    def is_complete(self) -> bool:
        """True once enough peers joined to form the agency."""
        return len(self.agency_peers()) >= self.agency_size

    def next_port_offset(self, address: str, all_unique: bool = False) -> int:
        """
        Returns the lowest port offset not yet used.

        :param address: The address of the peer that needs an offset.
        :param all_unique: If True, offsets must be unique across all peers, not only per host.
        """
        host = normalize_host(address)
        used = {
            p.port_offset for p in self.peers
            if all_unique or normalize_host(p.address) == host
        }
        offset = 0
        while offset in used:
            offset += PORT_OFFSET_INCREMENT
        return offset

    def add_peer(self, peer_id: str, address: str, data_dir: str = "", port_offset: Optional[int] = None,
                 has_dbserver: bool = True, has_coordinator: bool = True, all_unique: bool = False) -> Peer:
        """
        Appends a new peer. It gets an agent while the agency is not yet complete.

        :return: The newly added peer.
        """
        if self.peer_by_id(peer_id) is not None:
            raise ConfigurationError(f"Peer with id '{peer_id}' already exists")
        if port_offset is None:
            port_offset = self.next_port_offset(address, all_unique)
        peer = Peer(
            id=peer_id,
            address=address,
            port_offset=port_offset,
            data_dir=data_dir,
            has_agent=self.agent_count() < self.agency_size,
            has_dbserver=has_dbserver,
            has_coordinator=has_coordinator,
        )
        Peers(self.peers + [peer], self.agency_size).validate(all_unique)
        self.peers.append(peer)
        log.info(f"Added peer '{peer.id}' at {peer.address} with port offset {peer.port_offset} (agent: {peer.has_agent})")
        return peer

    def validate(self, all_unique: bool = False) -> None:
        """Raises ConfigurationError on duplicate ids or colliding port offsets."""
        ids, slots = set(), set()
        for p in self.peers:
            if p.id in ids:
                raise ConfigurationError(f"Duplicate peer id '{p.id}'")
            ids.add(p.id)
            if p.port_offset % PORT_OFFSET_INCREMENT != 0:
                raise ConfigurationError(f"Port offset {p.port_offset} of peer '{p.id}' is not a multiple of {PORT_OFFSET_INCREMENT}")
            slot = p.port_offset if all_unique else (normalize_host(p.address), p.port_offset)
            if slot in slots:
                raise ConfigurationError(f"Port offset {p.port_offset} of peer '{p.id}' is already in use")
            slots.add(slot)

    def to_dict(self) -> Dict[str, Any]:
        return {"peers": [p.to_dict() for p in self.peers], "agency_size": self.agency_size}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Peers":
        return cls(
            peers=[Peer.from_dict(p) for p in data.get("peers", [])],
            agency_size=int(data.get("agency_size", 3)),
        )
