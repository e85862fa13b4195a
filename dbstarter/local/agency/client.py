"""
A small client for the key/value API of the agency.

Every `AgencyConnection` is bound to the endpoints of a single agent and
remembers the last response it received, so callers can inspect the status
code and the `Location` header of a redirect. Redirects are never followed.
"""
import json
import logging
import requests
import threading
from typing import Any, Dict, List, Optional, Sequence
from dbstarter.local.errors import StatusError, StarterError, parse_response_error, PRECONDITION_FAILED

log = logging.getLogger(__name__)

AGENCY_READ_PATH = "/_api/agency/read"
AGENCY_WRITE_PATH = "/_api/agency/write"
AGENCY_PREFIX = "arango"
TEMPORARY_REDIRECT = 307


class KeyNotFoundError(StarterError):
    """Raised when a key does not exist in the agency."""

    def __init__(self, key: Sequence[str]) -> None:
        super().__init__(f"Key '{'/'.join(key)}' not found")
        self.key = list(key)


class RedirectError(StatusError):
    """Raised when an agent answers with a redirect to the current leader."""

    def __init__(self, location: str) -> None:
        super().__init__(TEMPORARY_REDIRECT, f"Redirected to {location}")
        self.location = location


class PreconditionFailedError(StatusError):
    """Raised when the precondition of a conditional write does not hold."""

    def __init__(self, key: str) -> None:
        super().__init__(PRECONDITION_FAILED, f"Precondition failed for key '{key}'")
        self.key = key


def http_endpoint(endpoint: str) -> str:
    """Maps tcp:// and ssl:// server endpoints to their http(s) equivalent."""
    if endpoint.startswith("tcp://"):
        return "http://" + endpoint[len("tcp://"):]
    if endpoint.startswith("ssl://"):
        return "https://" + endpoint[len("ssl://"):]
    return endpoint


class AgencyConnection:
    """
    An HTTP connection to a single agent.

    :param endpoints: The endpoints of the agent (usually exactly one).
    :param session: An optional `requests.Session` to send requests with.
    :param auth_header: An optional value for the `Authorization` header.
    """

    def __init__(self, endpoints: Sequence[str], session: Optional[requests.Session] = None, auth_header: str = "") -> None:
        if not endpoints:
            raise ValueError("An agency connection needs at least one endpoint")
        self._endpoints = list(endpoints)
        self._session = session or requests.Session()
        self._auth_header = auth_header
        self._lock = threading.Lock()
        self._last_response: Optional[requests.Response] = None

    def endpoints(self) -> List[str]:
        return list(self._endpoints)

    @property
    def last_response(self) -> Optional[requests.Response]:
        with self._lock:
            return self._last_response

    def post(self, path: str, body: Any, timeout: float) -> requests.Response:
        """
        Sends a JSON POST request to the first endpoint of this connection.

        :raises requests.RequestException: When the agent cannot be reached.
        """
        url = http_endpoint(self._endpoints[0]).rstrip("/") + path
        headers = {"Content-Type": "application/json"}
        if self._auth_header:
            headers["Authorization"] = self._auth_header
        response = self._session.post(url, data=json.dumps(body), headers=headers, timeout=timeout, allow_redirects=False)
        with self._lock:
            self._last_response = response
        return response

    def __repr__(self) -> str:
        return f"AgencyConnection({','.join(self._endpoints)})"


class AgencyAPI:
    """Read and conditional-write access to agency keys."""

    def __init__(self, connection: AgencyConnection, timeout: float = 10) -> None:
        self.connection = connection
        self.timeout = timeout

    def _full_key(self, key: Sequence[str]) -> List[str]:
        return [AGENCY_PREFIX] + list(key)

    def _check_response(self, response: requests.Response) -> None:
        if response.status_code == TEMPORARY_REDIRECT:
            location = response.headers.get("Location", "")
            if location:
                raise RedirectError(location)
        if response.status_code >= 300:
            raise parse_response_error(response)

    def read_key(self, key: Sequence[str], timeout: Optional[float] = None) -> Any:
        """
        Reads the value of the given key in the agency.

        :raises KeyNotFoundError: When the key does not exist.
        :raises RedirectError: When the agent is not the leader.
        """
        full_key = self._full_key(key)
        response = self.connection.post(AGENCY_READ_PATH, [["/" + "/".join(full_key)]], timeout or self.timeout)
        self._check_response(response)
        try:
            result = response.json()
        except ValueError as e:
            raise StatusError(response.status_code, f"Invalid agency response: {e}") from e

        value: Any = result[0] if isinstance(result, list) and result else {}
        for part in full_key:
            if not isinstance(value, dict) or part not in value:
                raise KeyNotFoundError(key)
            value = value[part]
        return value

    def _write(self, key: Sequence[str], operation: Dict[str, Any], precondition: Dict[str, Any],
               timeout: Optional[float]) -> None:
        path = "/" + "/".join(self._full_key(key))
        body = [[{path: operation}, {path: precondition}]]
        response = self.connection.post(AGENCY_WRITE_PATH, body, timeout or self.timeout)
        if response.status_code == PRECONDITION_FAILED:
            raise PreconditionFailedError(path)
        self._check_response(response)

    def write_key_if_empty(self, key: Sequence[str], value: Any, ttl: float = 0, timeout: Optional[float] = None) -> None:
        """Writes the given value with the given key only if the key was empty before."""
        operation: Dict[str, Any] = {"op": "set", "new": value}
        if ttl > 0:
            operation["ttl"] = int(ttl)
        self._write(key, operation, {"oldEmpty": True}, timeout)

    def write_key_if_equal_to(self, key: Sequence[str], new_value: Any, old_value: Any, ttl: float = 0,
                              timeout: Optional[float] = None) -> None:
        """Writes the given new value only if the existing value for that key equals the given old value."""
        operation: Dict[str, Any] = {"op": "set", "new": new_value}
        if ttl > 0:
            operation["ttl"] = int(ttl)
        self._write(key, operation, {"old": old_value}, timeout)


def create_agency_connections(endpoints: Sequence[str], auth_header: str = "",
                              session: Optional[requests.Session] = None) -> List[AgencyConnection]:
    """Returns one connection per agent endpoint, sharing a single HTTP session."""
    session = session or requests.Session()
    return [AgencyConnection([endpoint], session=session, auth_header=auth_header) for endpoint in endpoints]
