import sys
import signal
import requests
import logging
from typing import Callable, Dict, List

# Basic console logger for messages BEFORE full setup is complete.
# This logger will be replaced by the full setup later.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("console")

import dbstarter.settings as default_settings
from dbstarter.log import setup_logging
from dbstarter.local.config import ServiceConfig, overrides_from_args
from dbstarter.local.errors import StarterError
from dbstarter.local.jwt_token import create_jwt_authorization_header
from dbstarter.local.agency import AgencyHealthError, are_agents_healthy, create_agency_connections
from dbstarter.local.registration import fetch_processes, request_shutdown
from dbstarter.local.supervisor import Service
from dbstarter.local.supervisor.persistence import load_setup


def _load_config(args: List[str]) -> ServiceConfig:
    config = ServiceConfig.from_settings(**overrides_from_args(args))
    setup_logging(logging.DEBUG if config.verbose else logging.INFO, show_server_output=config.verbose)
    return config


def _own_control_address(config: ServiceConfig) -> str:
    """Returns "host:port" of the control API of the starter using this data directory."""
    host = config.own_address or "127.0.0.1"
    port = config.master_port
    setup = load_setup(config.setup_file_path)
    if setup is not None:
        own_id, peers = setup
        my_peer = peers.peer_by_id(own_id)
        if my_peer is not None:
            port += my_peer.port_offset
    return f"{host}:{port}"


def start(args: List[str]) -> int:
    config = _load_config(args)
    config.check_configuration()
    service = Service(config)

    def handle_signal(signum, frame):
        log.info(f"Received signal {signal.Signals(signum).name}, stopping...")
        service.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)
    service.run()
    return 0


def stop(args: List[str]) -> int:
    config = _load_config(args)
    return 0 if request_shutdown(_own_control_address(config), config.master_port) else 1


def status(args: List[str]) -> int:
    config = _load_config(args)
    address = _own_control_address(config)
    try:
        servers = fetch_processes(address, config.master_port)
    except (requests.exceptions.RequestException, StarterError, ValueError) as e:
        log.error(f"Starter at '{address}' is not reachable: {e}")
        return 1
    if not servers:
        print("No servers are running.")
    for server in servers:
        print(f"  {server['type']:<12} {server['ip']}:{server['port']}  (PID: {server['pid']})")
    return 0


def health(args: List[str]) -> int:
    config = _load_config(args)
    setup = load_setup(config.setup_file_path)
    if setup is None:
        log.error(f"No setup found in '{config.data_dir}'. Is the starter running there?")
        return 1
    _, peers = setup
    connections = create_agency_connections(
        peers.agency_endpoints(config.master_port),
        auth_header=create_jwt_authorization_header(config.jwt_secret),
    )
    try:
        are_agents_healthy(connections, default_settings.AGENT_RESPONSE_TIMEOUT)
    except AgencyHealthError as e:
        log.error(f"Agency is not healthy: {e}")
        return 1
    print(f"Agency is healthy ({len(connections)} agents).")
    return 0


def version(args: List[str]) -> int:
    print(f"{default_settings.PROJECT_NAME} {default_settings.PROJECT_VERSION}, build {default_settings.PROJECT_BUILD}")
    return 0


def print_help(args: List[str] = None) -> int:
    print("Usage: dbstarter <command> [--option=value ...] [--verbose]")
    print("Commands:")
    print("  start    Start this peer (as master, or as slave with --join=<host[:port]>)")
    print("  stop     Ask the starter using the data directory to shut down")
    print("  status   List the servers run by the local starter")
    print("  health   Check that the agency has exactly one agreed-upon leader")
    print("  version  Print the version")
    print("Options map to configuration settings, e.g. --agency-size=3 --data-dir=./db --own-address=10.0.0.1")
    return 0


COMMANDS: Dict[str, Callable[[List[str]], int]] = {
    "start": start,
    "stop": stop,
    "status": status,
    "health": health,
    "version": version,
    "help": print_help,
}


def main() -> int:
    """The main entry point for the command line."""
    setup_logging(logging.INFO)

    if len(sys.argv) < 2:
        return print_help()
    command, args = sys.argv[1].lower(), sys.argv[2:]
    if command not in COMMANDS:
        log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
        return 1

    try:
        return COMMANDS[command](args)
    except StarterError as e:
        log.critical(f"{type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
