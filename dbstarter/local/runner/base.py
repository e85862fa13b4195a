import abc
from pathlib import Path
from dataclasses import dataclass
from typing import List, Optional, Sequence
from dbstarter.local.errors import StarterError


class RunnerError(StarterError):
    """Raised when a runner fails to start, stop or clean up a server."""


@dataclass(frozen=True)
class Volume:
    """A host directory or file made available to a server."""
    host_path: str
    container_path: str
    read_only: bool = False


class Process(abc.ABC):
    """A handle to one running server instance."""

    @abc.abstractmethod
    def pid(self) -> int:
        """Returns the process id of the server (0 when unknown)."""

    @abc.abstractmethod
    def wait(self) -> None:
        """Blocks until the server has terminated."""

    @abc.abstractmethod
    def terminate(self) -> None:
        """Stops the server. Raises RunnerError when that fails."""

    @abc.abstractmethod
    def cleanup(self) -> None:
        """Removes all remains of the server. Raises RunnerError when that fails."""


class Runner(abc.ABC):
    """The backend that starts and locates server processes."""

    @abc.abstractmethod
    def get_container_dir(self, host_dir: Path) -> str:
        """Translates a directory on the host into the path the server sees."""

    @abc.abstractmethod
    def get_running_server(self, host_dir: Path) -> Optional[Process]:
        """Returns the server already running for the given data directory, if any."""

    @abc.abstractmethod
    def start(self, command: str, args: Sequence[str], volumes: Sequence[Volume], ports: List[int],
              container_name: str, host_dir: Path) -> Process:
        """Starts a server and returns its handle. Raises RunnerError on failure."""

    @abc.abstractmethod
    def cleanup(self) -> None:
        """Removes everything this runner created."""
