"""
Everything needed to launch a database server for a given role: its data
directory, the generated configuration file and the command line.
"""
import logging
from pathlib import Path
from typing import List, Tuple
import dbstarter.settings as default_settings
from dbstarter.local.runner import Volume
from dbstarter.local.config import ServiceConfig
from dbstarter.local.peers import Peer, Peers, ROLE_AGENT, ROLE_COORDINATOR, ROLE_DBSERVER

log = logging.getLogger(__name__)

CLUSTER_ROLES = {
    ROLE_DBSERVER: "PRIMARY",
    ROLE_COORDINATOR: "COORDINATOR",
}


def slasher(path: str) -> str:
    """Servers expect forward slashes, also on Windows."""
    return path.replace("\\", "/")


def host_dir_for(config: ServiceConfig, role: str, port: int) -> Path:
    """Returns the data directory of the server with the given role and port."""
    return config.data_dir / f"{role}{port}"


def prepare_host_dir(host_dir: Path) -> None:
    (host_dir / "data").mkdir(parents=True, exist_ok=True)
    (host_dir / "apps").mkdir(parents=True, exist_ok=True)


def write_config_file(host_dir: Path, role: str, port: int, authentication: bool = False) -> bool:
    """
    Writes the server configuration file, unless it already exists.

    An existing file is never overwritten, so manual edits survive restarts.

    :param host_dir: The data directory of the server.
    :param role: One of agent, dbserver or coordinator.
    :param port: The port the server listens on.
    :param authentication: Whether the server requires authentication.
    :return: True if the file was written, False if it already existed.
    """
    conf_path = host_dir / default_settings.SERVER_CONFIG_FILE_NAME
    if conf_path.exists():
        log.debug(f"Config file '{conf_path}' already exists. Leaving it untouched.")
        return False

    threads, v8_contexts = default_settings.ROLE_TUNING[role]
    content = default_settings.ARANGOD_CONFIG_TEMPLATE.format(
        port=port,
        threads=threads,
        authentication="true" if authentication else "false",
        log_level=default_settings.SERVER_LOG_LEVEL,
        v8_contexts=v8_contexts,
    )
    try:
        # 'x' mode fails if another writer created the file in the meantime.
        with conf_path.open("x") as f:
            f.write(content)
    except FileExistsError:
        return False
    log.info(f"Created config file '{conf_path}' for {role}.")
    return True


def write_command_file(host_dir: Path, args: List[str]) -> bool:
    """
    Records the exact command line used to start a server, for diagnostics.
    Like the config file, it is written only once.

    :return: True if the file was written.
    """
    command_path = host_dir / default_settings.SERVER_COMMAND_FILE_NAME
    if command_path.exists():
        return False
    try:
        command_path.write_text(" \\\n".join(args) + "\n")
        command_path.chmod(0o755)
    except OSError as e:
        log.error(f"Failed to write command to '{command_path}': {e}")
        return False
    return True


def build_server_args(config: ServiceConfig, peers: Peers, my_peer: Peer, role: str,
                      host_dir: Path, container_dir: str) -> Tuple[List[str], List[Volume]]:
    """
    Builds the full command line (executable first) for the server with the given role.

    :param config: The service configuration.
    :param peers: The finalized peer set.
    :param my_peer: The peer this starter runs as.
    :param role: One of agent, dbserver or coordinator.
    :param host_dir: The data directory of the server on this host.
    :param container_dir: The same directory as seen by the server.
    :return: The command line and the volumes the server needs.
    """
    port = my_peer.port_for(role, config.master_port)
    my_endpoint = f"tcp://{my_peer.address}:{port}"
    container_path = Path(container_dir)

    volumes = [Volume(host_path=str(host_dir), container_path=container_dir, read_only=False)]

    args: List[str] = []
    if config.rr_path:
        args.append(config.rr_path)
    args += [
        config.arangod_executable,
        "-c", slasher(str(container_path / default_settings.SERVER_CONFIG_FILE_NAME)),
        "--database.directory", slasher(str(container_path / "data")),
        "--javascript.startup-directory", slasher(config.arangod_js_startup),
        "--javascript.app-path", slasher(str(container_path / "apps")),
        "--log.file", slasher(str(container_path / default_settings.SERVER_LOG_FILE_NAME)),
        "--log.force-direct", "false",
    ]
    if config.server_threads:
        args += ["--server.threads", str(config.server_threads)]
    if config.jwt_secret:
        args += ["--server.jwt-secret", config.jwt_secret]

    if role == ROLE_AGENT:
        args += [
            "--agency.activate", "true",
            "--agency.my-address", my_endpoint,
            "--agency.size", str(peers.agency_size),
            "--agency.supervision", "true",
            "--foxx.queues", "false",
            "--server.statistics", "false",
        ]
        for p in peers.agency_peers():
            if p.id != my_peer.id:
                args += ["--agency.endpoint", p.endpoint_for(ROLE_AGENT, config.master_port)]
    else:
        args += [
            "--cluster.my-address", my_endpoint,
            "--cluster.my-role", CLUSTER_ROLES[role],
            "--cluster.my-local-info", my_endpoint,
            "--foxx.queues", "true" if role == ROLE_COORDINATOR else "false",
            "--server.statistics", "true",
        ]
        for endpoint in peers.agency_endpoints(config.master_port):
            args += ["--cluster.agency-endpoint", endpoint]
    return args, volumes


def container_name(config: ServiceConfig, role: str, restart: int, host: str, port: int) -> str:
    """Returns a unique name for one start attempt of a server."""
    prefix = f"{config.docker_container}-" if config.docker_container else ""
    return f"{prefix}{role}-{config.id}-{restart}-{host}-{port}"
