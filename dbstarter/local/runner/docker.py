import time
import logging
import threading
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence
import dbstarter.settings as default_settings
from dbstarter.local.runner.base import Process, Runner, RunnerError, Volume

log = logging.getLogger(__name__)

HOST_DIR_LABEL = "dbstarter.host-dir"
DOCKER_COMMAND_TIMEOUT = 60  # seconds


def _docker(endpoint: str, *args: str, timeout: Optional[float] = DOCKER_COMMAND_TIMEOUT) -> str:
    """
    Runs a docker CLI command against the given daemon endpoint.

    :return: The stripped standard output of the command.
    :raises RunnerError: When the command fails or times out.
    """
    cmd = ["docker"]
    if endpoint:
        cmd += ["-H", endpoint]
    cmd += list(args)
    log.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=timeout, check=False, text=True)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise RunnerError(f"docker {args[0]} failed: {e}") from e
    if result.returncode != 0:
        raise RunnerError(f"docker {args[0]} failed with exit code {result.returncode}: {result.stderr.strip()}")
    return result.stdout.strip()


class DockerContainer(Process):
    """A server running inside a docker container."""

    def __init__(self, endpoint: str, container_id: str, name: str = "",
                 on_exit: Optional[Callable[[str], None]] = None) -> None:
        self.endpoint = endpoint
        self.container_id = container_id
        self.name = name or container_id
        self._on_exit = on_exit

    def pid(self) -> int:
        try:
            return int(_docker(self.endpoint, "inspect", "--format", "{{.State.Pid}}", self.container_id) or 0)
        except (RunnerError, ValueError):
            return 0

    def wait(self) -> None:
        try:
            _docker(self.endpoint, "wait", self.container_id, timeout=None)
        except RunnerError as e:
            log.warning(f"Waiting for container {self.name} failed: {e}")
        if self._on_exit is not None:
            self._on_exit(self.container_id)

    def terminate(self) -> None:
        _docker(self.endpoint, "stop", "--time", str(default_settings.GRACEFUL_SHUTDOWN_TIMEOUT), self.container_id)

    def cleanup(self) -> None:
        _docker(self.endpoint, "rm", "--force", "--volumes", self.container_id)


class DockerRunner(Runner):
    """
    Runs servers in docker containers through the docker command line client.

    Every restart creates a new container. Exited containers are kept around
    for `gc_delay` seconds (for inspection) and then removed in the background.

    :param endpoint: Where to reach the docker daemon (passed as `-H`).
    :param image: The database image to run.
    :param user: Optional user to run the container as.
    :param gc_delay: Seconds to keep exited containers before removing them.
    :param net_host: Use the host network instead of publishing ports.
    :param privileged: Run containers in privileged mode.
    """

    gc_interval = 30  # seconds between garbage collection passes

    def __init__(self, endpoint: str, image: str, user: str = "", gc_delay: float = 600,
                 net_host: bool = False, privileged: bool = False) -> None:
        self.endpoint = endpoint
        self.image = image
        self.user = user
        self.gc_delay = gc_delay
        self.net_host = net_host
        self.privileged = privileged
        self._lock = threading.Lock()
        self._running: Dict[str, str] = {}   # container id -> name
        self._exited: Dict[str, float] = {}  # container id -> time it exited
        self._stop_gc = threading.Event()
        self._gc_thread: Optional[threading.Thread] = None

    def get_container_dir(self, host_dir: Path) -> str:
        return default_settings.DOCKER_CONTAINER_DATA_DIR

    def get_running_server(self, host_dir: Path) -> Optional[Process]:
        """Finds a running container labelled with the given data directory."""
        output = _docker(
            self.endpoint, "ps", "--quiet",
            "--filter", f"label={HOST_DIR_LABEL}={Path(host_dir)}",
            "--filter", "status=running",
        )
        ids = output.split()
        if not ids:
            return None
        log.debug(f"Found running container {ids[0]} for '{host_dir}'")
        with self._lock:
            self._running[ids[0]] = ids[0]
        return DockerContainer(self.endpoint, ids[0], on_exit=self._container_exited)

    def start(self, command: str, args: Sequence[str], volumes: Sequence[Volume], ports: List[int],
              container_name: str, host_dir: Path) -> Process:
        """Creates and starts a detached container running the given command."""
        # A previous run may have left a container with the same name.
        try:
            _docker(self.endpoint, "rm", "--force", container_name)
        except RunnerError:
            log.debug(f"No previous container named {container_name}")

        run_args = ["run", "--detach", "--name", container_name, "--label", f"{HOST_DIR_LABEL}={Path(host_dir)}"]
        for v in volumes:
            mount = f"{v.host_path}:{v.container_path}"
            run_args += ["--volume", mount + (":ro" if v.read_only else "")]
        if self.net_host:
            run_args += ["--net=host"]
        else:
            for port in ports:
                run_args += ["--publish", f"{port}:{port}"]
        if self.privileged:
            run_args += ["--privileged"]
        if self.user:
            run_args += ["--user", self.user]
        run_args += ["--entrypoint", command, self.image, *args]

        log.info(f"Starting container {container_name} from image {self.image}")
        container_id = _docker(self.endpoint, *run_args)
        with self._lock:
            self._running[container_id] = container_name
        self._ensure_gc_thread()
        return DockerContainer(self.endpoint, container_id, container_name, on_exit=self._container_exited)

    def _container_exited(self, container_id: str) -> None:
        with self._lock:
            self._running.pop(container_id, None)
            self._exited[container_id] = time.monotonic()

    def _ensure_gc_thread(self) -> None:
        if self._gc_thread is not None:
            return
        self._gc_thread = threading.Thread(target=self._gc_loop, daemon=True, name="DockerGCThread")
        self._gc_thread.start()

    def _gc_loop(self) -> None:
        while not self._stop_gc.wait(self.gc_interval):
            self.collect_garbage()

    def collect_garbage(self) -> None:
        """Removes exited containers whose GC delay has passed."""
        now = time.monotonic()
        with self._lock:
            expired = [cid for cid, exited_at in self._exited.items() if now - exited_at >= self.gc_delay]
            for cid in expired:
                del self._exited[cid]
        for cid in expired:
            try:
                _docker(self.endpoint, "rm", "--force", "--volumes", cid)
                log.debug(f"Removed exited container {cid}")
            except RunnerError as e:
                log.warning(f"Failed to remove exited container {cid}: {e}")

    def cleanup(self) -> None:
        """Stops garbage collection and removes every container this runner knows of."""
        self._stop_gc.set()
        with self._lock:
            containers = list(self._running) + list(self._exited)
            self._running.clear()
            self._exited.clear()

        failures = []
        for container_id in containers:
            try:
                _docker(self.endpoint, "rm", "--force", "--volumes", container_id)
            except RunnerError as e:
                failures.append(str(e))
        if failures:
            raise RunnerError(f"Failed to remove {len(failures)} containers: {'; '.join(failures)}")
