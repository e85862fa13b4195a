from pathlib import Path
from typing import Callable, List, Optional

from dbstarter.local.runner import Process, Runner, RunnerError


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProcess(Process):
    """A process handle whose wait() returns at once after advancing a fake clock."""

    def __init__(self, name: str = "", calls: Optional[list] = None, clock: Optional[FakeClock] = None,
                 uptime: float = 0.0, pid: int = 4242, fail_terminate: bool = False):
        self.name = name
        self.calls = calls if calls is not None else []
        self.clock = clock
        self.uptime = uptime
        self._pid = pid
        self.fail_terminate = fail_terminate
        self.terminated = False
        self.cleaned_up = False

    def pid(self) -> int:
        return self._pid

    def wait(self) -> None:
        if self.clock is not None:
            self.clock.advance(self.uptime)

    def terminate(self) -> None:
        self.calls.append(("terminate", self.name))
        if self.fail_terminate:
            raise RunnerError(f"cannot terminate {self.name}")
        self.terminated = True

    def cleanup(self) -> None:
        self.calls.append(("cleanup", self.name))
        self.cleaned_up = True


class FakeRunner(Runner):
    """
    Records every start. `process_factory(role, start_index)` builds the handle
    returned for each start.
    """

    def __init__(self, process_factory: Optional[Callable[[str, int], Process]] = None,
                 calls: Optional[list] = None, running: Optional[Process] = None):
        self.process_factory = process_factory or (lambda name, i: FakeProcess(name))
        self.calls = calls if calls is not None else []
        self.running = running
        self.starts: List[dict] = []
        self.cleaned_up = False

    def get_container_dir(self, host_dir: Path) -> str:
        return str(host_dir)

    def get_running_server(self, host_dir: Path) -> Optional[Process]:
        return self.running

    def start(self, command, args, volumes, ports, container_name, host_dir) -> Process:
        self.starts.append({
            "command": command, "args": list(args), "volumes": list(volumes),
            "ports": list(ports), "container_name": container_name, "host_dir": host_dir,
        })
        return self.process_factory(container_name, len(self.starts))

    def cleanup(self) -> None:
        self.calls.append(("cleanup", "runner"))
        self.cleaned_up = True


class FakeObserver:

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.started = False
        self.cancelled = False

    def start(self) -> "FakeObserver":
        self.started = True
        return self

    def cancel(self) -> None:
        self.cancelled = True
