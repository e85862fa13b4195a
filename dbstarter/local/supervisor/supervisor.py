import time
import secrets
import logging
import requests
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple
import setproctitle

import dbstarter.settings as default_settings
from dbstarter.local.config import ServiceConfig
from dbstarter.local.jwt_token import create_jwt_authorization_header
from dbstarter.local.peers import Peer, Peers, ROLE_AGENT, ROLE_COORDINATOR, ROLE_DBSERVER, guess_own_address, normalize_host
from dbstarter.local.registration import RegistrationError, fetch_peers, register_with_master
from dbstarter.local.runner import DockerRunner, Process, ProcessRunner, Runner, RunnerError
from dbstarter.local.errors import (
    ConfigurationError, FatalServiceError, StatusError,
    new_bad_request_error, new_precondition_failed_error, new_service_unavailable_error,
)
from dbstarter.local.supervisor import arangod
from dbstarter.local.supervisor.persistence import load_setup, save_setup
from dbstarter.local.supervisor.readiness import ReadinessObserver, test_instance, version_url
from dbstarter.local.supervisor.restart import RestartPolicy, SupervisorState
from dbstarter.local.supervisor.shutdown import ordered_shutdown, stop_process
from dbstarter.local.supervisor.state import ServiceState, State
from dbstarter.local.supervisor.control_service import create_control_server, run_control_service

log = logging.getLogger(__name__)


def new_peer_id() -> str:
    """Returns a random id of 8 hex characters."""
    return secrets.token_hex(4)


def create_runner(config: ServiceConfig) -> Runner:
    """Creates the runner matching the configured backend."""
    if config.uses_docker:
        log.debug("Using docker runner")
        return DockerRunner(
            config.docker_endpoint, config.docker_image,
            user=config.docker_user,
            gc_delay=config.docker_gc_delay,
            net_host=config.docker_net_host,
            privileged=config.docker_privileged,
        )
    log.debug("Using process runner")
    return ProcessRunner()


class Service:
    """
    Bootstraps this peer (as master or slave), then keeps its servers alive
    until it is stopped.

    The collaborators that touch the outside world can be replaced, which is
    how the tests drive the supervision loops without real servers.

    :param config: The deployment configuration.
    :param runner: The runner to use. Created from the configuration when omitted.
    :param clock: Monotonic clock used to measure server uptime.
    :param sleep: Used for the fixed delays between starting and stopping roles.
    :param observer_factory: Creates the readiness observer of a start attempt.
    :param instance_probe: Checks whether an already running server answers.
    :param serve_control_api: Whether to open the control API port.
    """

    def __init__(self, config: ServiceConfig, runner: Optional[Runner] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 observer_factory: Callable[..., Any] = ReadinessObserver,
                 instance_probe: Callable[..., bool] = test_instance,
                 serve_control_api: bool = True) -> None:
        if config.uses_docker:
            # The server runs from the image, not from this host.
            config = config.replace(
                arangod_executable=default_settings.DOCKER_ARANGOD_EXECUTABLE,
                arangod_js_startup=default_settings.DOCKER_JS_STARTUP,
            )
        self.config = config
        self.runner = runner if runner is not None else create_runner(config)
        self.is_master = not config.master_address
        self.state = ServiceState()
        self.shutdown_signal_received = threading.Event()
        self.auth_header = create_jwt_authorization_header(config.jwt_secret)

        self._clock = clock
        self._sleep = sleep
        self._observer_factory = observer_factory
        self._instance_probe = instance_probe
        self._serve_control_api = serve_control_api
        self._role_threads: Dict[str, threading.Thread] = {}
        self._shutdown_lock = threading.Lock()

    #* --- Lifecycle ---
    def run(self) -> None:
        """Runs the service until it is stopped. Always ends with the ordered shutdown."""
        log.info("=" * 20 + f" {default_settings.PROJECT_NAME} {self.config.project_version} Starting " + "=" * 20)
        try:
            if not self.relaunch():
                if self.is_master:
                    self.start_master()
                else:
                    self.start_slave()
            if not self.shutdown_signal_received.is_set():
                self.start_running()
        finally:
            self.shutdown()

    def stop(self) -> None:
        """Sets the stop flag. All loops observe it at their next iteration."""
        if not self.shutdown_signal_received.is_set():
            log.info("Stop requested.")
        self.shutdown_signal_received.set()

    def _set_title(self) -> None:
        setproctitle.setproctitle(f"{default_settings.PROJECT_NAME} - {self.config.id}")

    def _ensure_id(self) -> None:
        if not self.config.id:
            self.config = self.config.with_id(new_peer_id())
            log.info(f"Generated id '{self.config.id}' for this starter.")
        self._set_title()

    def relaunch(self) -> bool:
        """
        Restores the peers of a previous run from the setup file.

        :return: True when a setup was found; the service then goes straight to running.
        """
        setup = load_setup(self.config.setup_file_path)
        if setup is None:
            return False
        own_id, peers = setup
        if self.config.id and self.config.id != own_id:
            log.warning(f"Configured id '{self.config.id}' differs from the id '{own_id}' in the setup file. Using the latter.")
        self.config = self.config.with_id(own_id)
        self._set_title()
        self.state.set_peers(peers)
        log.info(f"Relaunching '{own_id}' with {len(peers.peers)} known peers from '{self.config.setup_file_path}'.")

        my_peer = peers.peer_by_id(own_id)
        if my_peer is not None:
            self._start_control_service(self.config.master_port + my_peer.port_offset)
        return True

    def start_master(self) -> None:
        """Creates the peer set with ourselves and waits until enough peers have joined."""
        self.state.transition(State.MASTER)
        self._ensure_id()
        peers = Peers(agency_size=self.config.agency_size)
        peers.add_peer(
            self.config.id,
            self.config.own_address or guess_own_address(),
            data_dir=str(self.config.data_dir),
            port_offset=0,
            has_dbserver=self.config.start_dbserver,
            has_coordinator=self.config.start_coordinator,
            all_unique=self.config.all_port_offsets_unique,
        )
        self.state.set_peers(peers)
        self._start_control_service(self.config.master_port)

        if not peers.is_complete():
            log.info(f"Waiting for {self.config.agency_size} peers to join on port {self.config.master_port}...")
        while not self.state.peers_snapshot().is_complete():
            if self.shutdown_signal_received.wait(default_settings.PEER_POLL_INTERVAL):
                return
        log.info("All agency peers have joined.")

    def start_slave(self) -> None:
        """Registers with the master and waits until the peer set is complete."""
        self.state.transition(State.SLAVE)
        self._ensure_id()
        log.info(f"Contacting master at '{self.config.master_address}'...")
        try:
            own_id, peers = register_with_master(
                self.config.master_address, self.config.master_port,
                own_address=self.config.own_address,
                own_id=self.config.id,
                data_dir=str(self.config.data_dir),
                has_dbserver=self.config.start_dbserver,
                has_coordinator=self.config.start_coordinator,
                sleep=self._sleep,
            )
        except RegistrationError as e:
            raise FatalServiceError(str(e)) from e
        if own_id != self.config.id:
            log.info(f"Master assigned id '{own_id}'.")
            self.config = self.config.with_id(own_id)
            self._set_title()
        self.state.set_peers(peers)

        my_peer = peers.peer_by_id(own_id)
        if my_peer is None:
            raise FatalServiceError(f"Master did not include us ('{own_id}') in the peer list")
        self._start_control_service(self.config.master_port + my_peer.port_offset)

        while not peers.is_complete():
            if self.shutdown_signal_received.wait(default_settings.PEER_POLL_INTERVAL):
                return
            try:
                peers = fetch_peers(self.config.master_address, self.config.master_port)
            except (requests.exceptions.RequestException, StatusError, ValueError) as e:
                log.debug(f"Could not fetch peers from master: {e}")
                continue
            self.state.set_peers(peers)
        log.info("All agency peers have joined.")

    def start_running(self) -> None:
        """Starts the supervision loop of every role this peer runs and waits for the stop flag."""
        self.state.transition(State.RUNNING)
        peers = self.state.peers_snapshot()
        my_peer = peers.peer_by_id(self.config.id) if peers else None
        if my_peer is None:
            raise FatalServiceError(f"Cannot find peer information for my ID ('{self.config.id}')")
        save_setup(self.config.setup_file_path, self.config.id, peers)

        if peers.needs_agent(my_peer.id):
            self._start_role_thread(ROLE_AGENT)
        self._sleep(default_settings.ROLE_START_INTERVAL)
        if self.config.start_dbserver and my_peer.has_dbserver:
            self._start_role_thread(ROLE_DBSERVER)
        self._sleep(default_settings.ROLE_START_INTERVAL)
        if self.config.start_coordinator and my_peer.has_coordinator:
            self._start_role_thread(ROLE_COORDINATOR)

        while not self.shutdown_signal_received.wait(default_settings.STOP_POLL_INTERVAL):
            pass

    def shutdown(self) -> None:
        """Stops all servers in order. Runs once; later calls return immediately."""
        with self._shutdown_lock:
            self.shutdown_signal_received.set()
            if self.state.state == State.STOPPED:
                return
            self.state.transition(State.STOPPED)
            processes = self.state.close()
            ordered_shutdown(processes, self.runner, self._sleep, default_settings.SHUTDOWN_GRACE_DELAY)
            for thread in self._role_threads.values():
                thread.join(timeout=default_settings.GRACEFUL_SHUTDOWN_TIMEOUT)

    def _start_control_service(self, port: int) -> None:
        if not self._serve_control_api:
            return
        try:
            server = create_control_server(self, default_settings.CONTROL_API_HOST, port)
        except OSError as e:
            raise FatalServiceError(f"Cannot open control API on port {port}: {e}") from e
        threading.Thread(
            target=run_control_service, args=(self, server), daemon=True, name="ControlServiceThread"
        ).start()

    def _start_role_thread(self, role: str) -> None:
        thread = threading.Thread(target=self.run_server_loop, args=(role,), daemon=True, name=f"{role}-supervisor")
        self._role_threads[role] = thread
        thread.start()

    #* --- Registration (master side) ---
    def register_peer(self, address: str, client_address: str = "", peer_id: str = "", data_dir: str = "",
                      has_dbserver: bool = True, has_coordinator: bool = True) -> Tuple[str, Peers]:
        """
        Adds a peer that says hello. Raises StatusError when the peer cannot be accepted.

        :param address: The address the peer announced; empty to use `client_address`.
        :param client_address: The address the request came from.
        :param peer_id: The id the peer would like to keep.
        :return: The id assigned to the peer and the updated peers.
        """
        state = self.state.state
        if state == State.START:
            raise new_service_unavailable_error("Starter is still starting")
        if not self.is_master or state not in (State.MASTER, State.RUNNING):
            raise new_precondition_failed_error("Not a master")
        address = address or client_address
        if not address:
            raise new_bad_request_error("Missing address")

        assigned: List[str] = []

        def add(peers: Peers) -> None:
            existing = peers.peer_by_id(peer_id) if peer_id else None
            if existing is not None and normalize_host(existing.address) == normalize_host(address) \
                    and existing.data_dir == data_dir:
                log.info(f"Peer '{peer_id}' registered again.")
                assigned.append(existing.id)
                return
            new_id = peer_id if peer_id and existing is None else new_peer_id()
            peers.add_peer(
                new_id, address,
                data_dir=data_dir,
                has_dbserver=has_dbserver,
                has_coordinator=has_coordinator,
                all_unique=self.config.all_port_offsets_unique,
            )
            assigned.append(new_id)

        try:
            peers = self.state.update_peers(add)
        except ConfigurationError as e:
            raise new_bad_request_error(str(e)) from e
        if state == State.RUNNING:
            save_setup(self.config.setup_file_path, self.config.id, peers)
        return assigned[0], peers

    def process_list(self) -> List[Dict[str, Any]]:
        """Describes the servers this peer currently runs."""
        peers = self.state.peers_snapshot()
        my_peer = peers.peer_by_id(self.config.id) if peers else None
        if my_peer is None:
            return []
        result = []
        for role, proc in self.state.processes().items():
            try:
                pid = proc.pid()
            except RunnerError:
                pid = 0
            result.append({
                "type": role,
                "ip": my_peer.address,
                "port": my_peer.port_for(role, self.config.master_port),
                "pid": pid,
            })
        return result

    #* --- Supervision ---
    def _my_peer(self) -> Tuple[Peers, Peer]:
        peers = self.state.peers_snapshot()
        my_peer = peers.peer_by_id(self.config.id) if peers else None
        if my_peer is None:
            raise FatalServiceError(f"Cannot find peer information for my ID ('{self.config.id}')")
        return peers, my_peer

    def _new_policy(self, role: str) -> RestartPolicy:
        return RestartPolicy(
            role,
            failure_uptime=default_settings.RECENT_FAILURE_UPTIME,
            max_failures=default_settings.MAX_RECENT_FAILURES,
            backoff=self.config.restart_backoff_seconds,
        )

    def start_server(self, role: str, restart: int) -> Process:
        """
        Starts the server of the given role, or adopts one that is already running.

        :param role: One of agent, dbserver or coordinator.
        :param restart: The restart generation, part of the instance name.
        :return: The handle of the running server.
        """
        peers, my_peer = self._my_peer()
        port = my_peer.port_for(role, self.config.master_port)
        host_dir = arangod.host_dir_for(self.config, role, port)
        arangod.prepare_host_dir(host_dir)

        log.info(f"Looking for a running instance of {role} on port {port}")
        existing = self.runner.get_running_server(host_dir)
        if existing is not None:
            log.info(f"{role} seems to be running already, checking port {port}...")
            if self._instance_probe(my_peer.address, port, timeout=default_settings.READINESS_PROBE_TIMEOUT,
                                    auth_header=self.auth_header, stop_event=self.shutdown_signal_received):
                log.info(f"{role} is already running on {port}. No need to start anything.")
                return existing
            log.info(f"{role} is not up on port {port}. Terminating existing process and restarting it...")
            try:
                existing.terminate()
            except RunnerError as e:
                log.warning(f"Failed to terminate existing {role}: {e}")

        log.info(f"Starting {role} on port {port}")
        container_dir = self.runner.get_container_dir(host_dir)
        arangod.write_config_file(host_dir, role, port, authentication=bool(self.config.jwt_secret))
        args, volumes = arangod.build_server_args(self.config, peers, my_peer, role, host_dir, container_dir)
        arangod.write_command_file(host_dir, args)
        name = arangod.container_name(self.config, role, restart, my_peer.address, port)
        return self.runner.start(args[0], args[1:], volumes, [port], name, host_dir)

    def run_server_loop(self, role: str) -> None:
        """
        Keeps the server of one role alive until the service stops or the
        role fails too often in a row.
        """
        policy = self.state.policy(role, self._new_policy)
        try:
            _, my_peer = self._my_peer()
        except FatalServiceError as e:
            log.error(str(e))
            return
        port = my_peer.port_for(role, self.config.master_port)

        while not self.shutdown_signal_received.is_set():
            start_time = self._clock()
            try:
                proc = self.start_server(role, policy.restart)
            except (RunnerError, OSError) as e:
                log.error(f"Error while starting {role}: {e}")
                policy.start_failed()
                return
            policy.started()

            if not self.state.set_process(role, proc):
                # Shutdown already captured the handles; this one is ours to stop.
                log.info(f"Service is stopping, terminating freshly started {role}.")
                stop_process(role, proc)
                return

            observer = self._observer_factory(
                name=role,
                url=version_url(my_peer.address, port),
                parent_stop=self.shutdown_signal_received,
                on_ready=policy.ready,
                auth_header=self.auth_header,
            ).start()
            proc.wait()
            observer.cancel()

            uptime = self._clock() - start_time
            new_state = policy.exited(uptime)
            log.info(f"{role} has terminated after {uptime:.1f}s (recent failures: {policy.recent_failures})")
            if self.shutdown_signal_received.is_set():
                break
            if new_state == SupervisorState.GIVEN_UP:
                log.error(f"{role} has failed {policy.recent_failures} times, giving up")
                self.stop()
                break

            delay = policy.next_attempt()
            log.info(f"restarting {role}")
            if delay and self.shutdown_signal_received.wait(delay):
                break

