from dbstarter.local.peers import ROLE_AGENT, ROLE_COORDINATOR, ROLE_DBSERVER
from dbstarter.local.supervisor import arangod


def _values(args, flag):
    return [args[i + 1] for i, a in enumerate(args) if a == flag]


def test_config_file_is_written_once(tmp_path):
    assert arangod.write_config_file(tmp_path, ROLE_AGENT, 4001)
    conf = tmp_path / "arangod.conf"
    first = conf.read_bytes()
    assert b"endpoint = tcp://0.0.0.0:4001" in first
    assert b"threads = 8" in first
    assert b"v8-contexts = 1" in first

    assert not arangod.write_config_file(tmp_path, ROLE_COORDINATOR, 4002, authentication=True)
    assert conf.read_bytes() == first


def test_config_file_keeps_manual_edits(tmp_path):
    conf = tmp_path / "arangod.conf"
    conf.write_text("# edited by hand\n")
    assert not arangod.write_config_file(tmp_path, ROLE_DBSERVER, 4003)
    assert conf.read_text() == "# edited by hand\n"


def test_config_file_role_tuning(tmp_path):
    arangod.write_config_file(tmp_path, ROLE_COORDINATOR, 4002, authentication=True)
    content = (tmp_path / "arangod.conf").read_text()
    assert "threads = 16" in content
    assert "v8-contexts = 4" in content
    assert "authentication = true" in content
    assert "level = INFO" in content


def test_command_file_is_written_once(tmp_path):
    assert arangod.write_command_file(tmp_path, ["/usr/sbin/arangod", "-c", "x.conf"])
    assert not arangod.write_command_file(tmp_path, ["other"])
    assert (tmp_path / "arangod_command.txt").read_text().startswith("/usr/sbin/arangod")


def test_agent_args_list_the_other_agents(config, three_peers, tmp_path):
    my_peer = three_peers.peer_by_id("peer1")
    args, volumes = arangod.build_server_args(config, three_peers, my_peer, ROLE_AGENT, tmp_path, str(tmp_path))
    assert args[0] == "/usr/sbin/arangod"
    assert _values(args, "--agency.my-address") == ["tcp://10.0.0.1:4001"]
    assert _values(args, "--agency.size") == ["3"]
    assert _values(args, "--agency.activate") == ["true"]
    assert _values(args, "--agency.endpoint") == ["tcp://10.0.0.2:4001", "tcp://10.0.0.3:4001"]
    assert "--cluster.my-role" not in args
    assert volumes[0].host_path == str(tmp_path)


def test_dbserver_args_list_all_agents(config, three_peers, tmp_path):
    my_peer = three_peers.peer_by_id("peer2")
    args, _ = arangod.build_server_args(config, three_peers, my_peer, ROLE_DBSERVER, tmp_path, "/data")
    assert _values(args, "--cluster.my-role") == ["PRIMARY"]
    assert _values(args, "--cluster.my-address") == ["tcp://10.0.0.2:4003"]
    assert _values(args, "--cluster.agency-endpoint") == [
        "tcp://10.0.0.1:4001", "tcp://10.0.0.2:4001", "tcp://10.0.0.3:4001",
    ]
    assert _values(args, "--database.directory") == ["/data/data"]
    assert "--agency.activate" not in args


def test_coordinator_args(config, three_peers, tmp_path):
    my_peer = three_peers.peer_by_id("peer3")
    args, _ = arangod.build_server_args(config, three_peers, my_peer, ROLE_COORDINATOR, tmp_path, "/data")
    assert _values(args, "--cluster.my-role") == ["COORDINATOR"]
    assert _values(args, "--foxx.queues") == ["true"]


def test_optional_flags(config, three_peers, tmp_path):
    config = config.replace(rr_path="/usr/bin/rr", server_threads=6, jwt_secret="s3cret")
    args, _ = arangod.build_server_args(config, three_peers, three_peers.peers[0], ROLE_DBSERVER, tmp_path, "/data")
    assert args[:2] == ["/usr/bin/rr", "/usr/sbin/arangod"]
    assert _values(args, "--server.threads") == ["6"]
    assert _values(args, "--server.jwt-secret") == ["s3cret"]


def test_container_name(config):
    assert arangod.container_name(config, ROLE_AGENT, 2, "10.0.0.1", 4001) == "agent-peer1-2-10.0.0.1-4001"
    named = config.replace(docker_container="starter")
    assert arangod.container_name(named, ROLE_AGENT, 0, "10.0.0.1", 4001) == "starter-agent-peer1-0-10.0.0.1-4001"
