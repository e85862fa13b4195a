import time
import logging
import requests
from typing import Any, Callable, Dict, List, Optional, Tuple
import dbstarter.settings as default_settings
from dbstarter.local.peers import Peers
from dbstarter.local.errors import StatusError, StarterError, parse_response_error, is_service_unavailable

log = logging.getLogger(__name__)


class RegistrationError(StarterError):
    """Raised when this starter cannot join the master."""


def master_url(master_address: str, default_port: int, path: str) -> str:
    """
    Builds the URL of a control API path on the master.

    :param master_address: "host" or "host:port" of the master.
    :param default_port: Used when the address carries no port.
    """
    address = master_address
    if "://" in address:
        address = address.split("://", 1)[1]
    address = address.rstrip("/")
    if not address.startswith("[") and address.count(":") > 1:
        address = f"[{address}]"  # bare IPv6
    if address.rsplit("]", 1)[-1].find(":") < 0:
        address = f"{address}:{default_port}"
    return f"http://{address}{path}"


def _checked_json(response: requests.Response) -> Dict[str, Any]:
    if response.status_code != 200:
        raise parse_response_error(response)
    return response.json()


def register_with_master(master_address: str, default_port: int, own_address: str, own_id: str,
                         data_dir: str, has_dbserver: bool = True, has_coordinator: bool = True,
                         retries: int = default_settings.REGISTRATION_RETRIES,
                         delay: float = default_settings.REGISTRATION_RETRY_DELAY,
                         session: Optional[requests.Session] = None,
                         sleep: Callable[[float], None] = time.sleep) -> Tuple[str, Peers]:
    """
    Registers this starter with the master.

    Connection problems and 503 answers (master still starting) are retried,
    every other error answer is final.

    :param master_address: "host" or "host:port" of the master.
    :param default_port: The master port used when the address has none.
    :param own_address: Our address; empty lets the master use the address it sees.
    :param own_id: Our id; the master may assign another one.
    :param data_dir: Our data directory.
    :param has_dbserver: Whether we run a dbserver.
    :param has_coordinator: Whether we run a coordinator.
    :param retries: Number of attempts.
    :param delay: Delay in seconds between attempts.
    :return: The id assigned to us and the current peers.
    """
    url = master_url(master_address, default_port, "/hello")
    payload = {
        "id": own_id,
        "address": own_address,
        "data_dir": data_dir,
        "has_dbserver": has_dbserver,
        "has_coordinator": has_coordinator,
    }
    last_error: Optional[Exception] = None
    for attempt in range(retries):
        try:
            response = (session or requests).post(url, json=payload, timeout=default_settings.HTTP_REQUEST_TIMEOUT)
            data = _checked_json(response)
            peers = Peers.from_dict(data)
            assigned_id = str(data.get("id") or own_id)
            log.info(f"Registered with master at '{url}' as '{assigned_id}'.")
            return assigned_id, peers
        except StatusError as e:
            if not is_service_unavailable(e):
                raise RegistrationError(f"Master rejected registration: {e}") from e
            last_error = e
        except (requests.exceptions.RequestException, ValueError) as e:
            last_error = e
        log.debug(
            f"Could not register with master (attempt {attempt + 1}/{retries}): {last_error}. "
            f"Retrying in {delay}s..."
        )
        sleep(delay)

    raise RegistrationError(f"Failed to register with master at '{url}' after {retries} attempts") from last_error


def fetch_peers(master_address: str, default_port: int,
                session: Optional[requests.Session] = None) -> Peers:
    """
    Fetches the current peer list from the master.
    Raises StatusError on error answers and requests exceptions on connection problems.
    """
    url = master_url(master_address, default_port, "/hello")
    response = (session or requests).get(url, timeout=default_settings.HTTP_REQUEST_TIMEOUT)
    return Peers.from_dict(_checked_json(response))


def request_shutdown(address: str, default_port: int, session: Optional[requests.Session] = None) -> bool:
    """
    Asks the starter at the given address to shut down.

    :return: True if the request was accepted.
    """
    url = master_url(address, default_port, "/shutdown")
    try:
        response = (session or requests).post(url, timeout=default_settings.HTTP_REQUEST_TIMEOUT)
        _checked_json(response)
        return True
    except (requests.exceptions.RequestException, StatusError, ValueError) as e:
        log.error(f"Failed to request shutdown at '{url}': {e}")
        return False


def fetch_processes(address: str, default_port: int, session: Optional[requests.Session] = None) -> List[Dict[str, Any]]:
    """Fetches the list of servers run by the starter at the given address."""
    url = master_url(address, default_port, "/process")
    response = (session or requests).get(url, timeout=default_settings.HTTP_REQUEST_TIMEOUT)
    return _checked_json(response).get("servers", [])
