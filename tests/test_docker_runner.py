import subprocess

import pytest

from dbstarter.local.runner import DockerRunner, RunnerError, Volume
from dbstarter.local.runner import docker


class FakeDocker:
    """Records docker CLI calls and answers them from a table of (subcommand -> result)."""

    def __init__(self, answers=None):
        self.calls = []
        self.answers = answers or {}

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        subcommand = cmd[3] if cmd[1] == "-H" else cmd[1]
        returncode, stdout = self.answers.get(subcommand, (0, ""))
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="boom" if returncode else "")

    def find(self, subcommand):
        return [c for c in self.calls if subcommand in c[:4]]


@pytest.fixture
def fake_docker(monkeypatch):
    fake = FakeDocker({"run": (0, "c0ffee\n")})
    monkeypatch.setattr(docker.subprocess, "run", fake)
    return fake


@pytest.fixture
def runner():
    runner = DockerRunner("unix:///var/run/docker.sock", "arangodb/arangodb:3.1", user="1000")
    runner.gc_interval = 3600
    yield runner
    runner._stop_gc.set()


def test_start_runs_a_detached_container(fake_docker, runner, tmp_path):
    proc = runner.start("/usr/sbin/arangod", ["--agency.activate", "true"],
                        [Volume(str(tmp_path), "/data")], [4001], "agent-a-0-10.0.0.1-4001", tmp_path)

    assert proc.container_id == "c0ffee"
    [run] = fake_docker.find("run")
    assert run[:3] == ["docker", "-H", "unix:///var/run/docker.sock"]
    assert "--detach" in run
    assert run[run.index("--volume") + 1] == f"{tmp_path}:/data"
    assert run[run.index("--publish") + 1] == "4001:4001"
    assert run[run.index("--user") + 1] == "1000"
    entrypoint = run.index("--entrypoint")
    assert run[entrypoint + 1:] == ["/usr/sbin/arangod", "arangodb/arangodb:3.1", "--agency.activate", "true"]


def test_host_network_and_read_only_volumes(fake_docker, tmp_path):
    runner = DockerRunner("", "arangodb", net_host=True, privileged=True)
    runner.gc_interval = 3600
    runner.start("arangod", [], [Volume("/etc/ssl", "/ssl", read_only=True)], [4001], "c", tmp_path)
    runner._stop_gc.set()

    [run] = fake_docker.find("run")
    assert run[1] == "run"
    assert "--net=host" in run
    assert "--publish" not in run
    assert "--privileged" in run
    assert "/etc/ssl:/ssl:ro" in run


def test_failed_start_raises(monkeypatch, runner, tmp_path):
    monkeypatch.setattr(docker.subprocess, "run", FakeDocker({"run": (125, "")}))
    with pytest.raises(RunnerError) as excinfo:
        runner.start("arangod", [], [], [4001], "c", tmp_path)
    assert "exit code 125" in str(excinfo.value)


def test_missing_docker_client(monkeypatch, runner, tmp_path):
    def missing(cmd, **kwargs):
        raise FileNotFoundError("docker")

    monkeypatch.setattr(docker.subprocess, "run", missing)
    with pytest.raises(RunnerError):
        runner.start("arangod", [], [], [4001], "c", tmp_path)


def test_get_running_server_filters_on_data_directory(monkeypatch, runner, tmp_path):
    fake = FakeDocker({"ps": (0, "abc123\n")})
    monkeypatch.setattr(docker.subprocess, "run", fake)
    proc = runner.get_running_server(tmp_path)
    assert proc.container_id == "abc123"
    assert f"label={docker.HOST_DIR_LABEL}={tmp_path}" in fake.calls[0]

    monkeypatch.setattr(docker.subprocess, "run", FakeDocker({"ps": (0, "")}))
    assert runner.get_running_server(tmp_path) is None


def test_cleanup_removes_known_containers(fake_docker, runner, tmp_path):
    proc = runner.start("arangod", [], [], [4001], "c", tmp_path)
    proc.wait()
    runner.cleanup()

    removed = [c[-1] for c in fake_docker.find("rm") if "--volumes" in c]
    assert removed == ["c0ffee"]


def test_exited_containers_are_collected_after_the_delay(fake_docker, tmp_path):
    runner = DockerRunner("", "arangodb", gc_delay=0)
    runner.gc_interval = 3600
    proc = runner.start("arangod", [], [], [4001], "c", tmp_path)
    proc.wait()
    runner.collect_garbage()
    runner._stop_gc.set()

    assert ["docker", "rm", "--force", "--volumes", "c0ffee"] in fake_docker.calls


def test_container_handle_commands(fake_docker):
    container = docker.DockerContainer("", "abc")
    fake_docker.answers["inspect"] = (0, "1234\n")
    assert container.pid() == 1234
    container.terminate()
    assert fake_docker.calls[-1][:3] == ["docker", "stop", "--time"]
