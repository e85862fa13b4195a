import os
import sys
import psutil
import logging
import threading
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence
import dbstarter.settings as default_settings
from dbstarter.local.runner.base import Process, Runner, RunnerError, Volume

log = logging.getLogger(__name__)


#* --- Output capture ---
def _read_pipe(pipe, process_name: str, level: int, line_handler: Optional[Callable] = None):
    """Target function for reader threads. Reads and logs lines from a subprocess pipe."""
    proc_logger = logging.getLogger(f"proc.{process_name}")
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            if line_handler:
                line_handler(line)
            else:
                proc_logger.log(level, line)
    except (OSError, ValueError) as e:
        proc_logger.debug(f"Pipe reader for {process_name} stream exited: {e}")
    finally:
        pipe.close()


def log_process_output(process: subprocess.Popen, name: str, line_handler: Optional[Callable] = None):
    """Starts background threads to consume and log a process's stdout/stderr."""
    if process.stdout:
        threading.Thread(target=_read_pipe, args=(process.stdout, name, logging.INFO, line_handler), daemon=True, name=f"{name}-stdout").start()
    if process.stderr:
        threading.Thread(target=_read_pipe, args=(process.stderr, name, logging.WARNING), daemon=True, name=f"{name}-stderr").start()


def _get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific creation flags for subprocess.Popen."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW}
    return {"start_new_session": True}


def _belongs_to(proc: psutil.Process, host_dir: Path) -> bool:
    """True when the process runs in, or was started with arguments pointing into, the given data directory."""
    host_dir = host_dir.resolve()
    try:
        if Path(proc.cwd()).resolve() == host_dir:
            return True
    except psutil.AccessDenied:
        pass
    prefix = str(host_dir)
    return any(arg == prefix or arg.startswith(prefix + os.sep) for arg in proc.cmdline())


#* --- Process handle ---
class NativeProcess(Process):
    """
    A server running as a direct child (or an adopted process found through its PID file).

    :param proc: The psutil handle of the server process.
    :param popen: The Popen object when we started the process ourselves.
    :param pid_file: The PID file written for this process.
    """

    def __init__(self, proc: psutil.Process, popen: Optional[subprocess.Popen] = None, pid_file: Optional[Path] = None):
        self._proc = proc
        self._popen = popen
        self._pid_file = pid_file

    def pid(self) -> int:
        return self._proc.pid

    def wait(self) -> None:
        if self._popen is not None:
            self._popen.wait()
            return
        try:
            self._proc.wait()
        except psutil.NoSuchProcess:
            pass

    def terminate(self) -> None:
        try:
            log.debug(f"Sending SIGTERM to PID {self._proc.pid}")
            self._proc.terminate()
            try:
                self._proc.wait(timeout=default_settings.GRACEFUL_SHUTDOWN_TIMEOUT)
            except psutil.TimeoutExpired:
                log.warning(f"Killing stubborn process PID {self._proc.pid}.")
                self._proc.kill()
        except psutil.NoSuchProcess:
            log.debug(f"Process {self._proc.pid} no longer exists, skipping termination.")
        except psutil.Error as e:
            raise RunnerError(f"Failed to terminate process {self._proc.pid}: {e}") from e

    def cleanup(self) -> None:
        if self._pid_file is None:
            return
        try:
            self._pid_file.unlink(missing_ok=True)
        except OSError as e:
            raise RunnerError(f"Failed to remove PID file '{self._pid_file}': {e}") from e


#* --- Runner ---
class ProcessRunner(Runner):
    """Runs servers as native processes on this host."""

    def __init__(self) -> None:
        self.pid_file_name = default_settings.SERVER_PID_FILE_NAME

    def get_container_dir(self, host_dir: Path) -> str:
        # Native processes see the host file system as is.
        return str(host_dir)

    def get_running_server(self, host_dir: Path) -> Optional[Process]:
        """
        Looks for a live process recorded in the PID file of the given data directory.

        Only a process that belongs to that directory is adopted. A PID that
        was reused by an unrelated process makes the PID file stale, and it
        is removed.
        """
        pid_file = Path(host_dir) / self.pid_file_name
        if not pid_file.exists():
            return None
        try:
            pid = int(pid_file.read_text().strip())
        except (ValueError, OSError):
            log.warning(f"PID file '{pid_file}' is malformed. Ignoring.")
            return None
        if not psutil.pid_exists(pid):
            return None
        try:
            proc = psutil.Process(pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return None
            owned = _belongs_to(proc, Path(host_dir))
        except psutil.Error:
            return None
        if not owned:
            log.warning(f"PID {pid} from '{pid_file}' belongs to another process. Removing stale PID file.")
            try:
                pid_file.unlink(missing_ok=True)
            except OSError as e:
                log.error(f"Failed to remove stale PID file '{pid_file}': {e}")
            return None
        return NativeProcess(proc, pid_file=pid_file)

    def start(self, command: str, args: Sequence[str], volumes: Sequence[Volume], ports: List[int],
              container_name: str, host_dir: Path) -> Process:
        """
        Launches the server process and records its PID in the data directory.

        :param command: The executable to run.
        :param args: The arguments (without the executable).
        :param volumes: Ignored for native processes.
        :param ports: Ignored for native processes.
        :param container_name: Used as the name of the output logger.
        :param host_dir: The data directory of the server, also its working directory.
        """
        log.info(f"Starting process: {command} ...")
        try:
            popen = subprocess.Popen(
                [command, *args],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                cwd=str(host_dir),
                **_get_popen_creation_flags(),
            )
        except OSError as e:
            raise RunnerError(f"Failed to start '{command}': {e}") from e

        log_process_output(popen, container_name)
        pid_file = Path(host_dir) / self.pid_file_name
        try:
            pid_file.write_text(str(popen.pid))
        except OSError as e:
            log.error(f"Failed to write PID file '{pid_file}': {e}")
        log.debug(f"{container_name} started with PID: {popen.pid}")
        return NativeProcess(psutil.Process(popen.pid), popen=popen, pid_file=pid_file)

    def cleanup(self) -> None:
        # PID files are removed by the cleanup of each process handle.
        return None
