import threading

import pytest
import requests

from dbstarter.local.peers import Peers, ROLE_AGENT
from dbstarter.local.registration import fetch_peers, fetch_processes, register_with_master, request_shutdown
from dbstarter.local.supervisor import Service, State
from dbstarter.local.supervisor.control_service import create_control_server, run_control_service

from fakes import FakeClock, FakeObserver, FakeProcess, FakeRunner


@pytest.fixture
def service(config):
    service = Service(config, runner=FakeRunner(), clock=FakeClock(), sleep=lambda s: None,
                      observer_factory=FakeObserver, serve_control_api=False)
    yield service
    service.stop()


@pytest.fixture
def base_url(service):
    server = create_control_server(service, "127.0.0.1", 0)
    server.timeout = 0.05
    thread = threading.Thread(target=run_control_service, args=(service, server), daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    yield f"http://{host}:{port}"
    service.stop()
    thread.join(timeout=5)


def make_master(service):
    peers = Peers(agency_size=3)
    peers.add_peer("peer1", "10.0.0.1", port_offset=0)
    service.state.set_peers(peers)
    service.state.transition(State.MASTER)


def test_version_and_id(service, base_url):
    assert requests.get(f"{base_url}/version").json() == {"version": "0.9.0", "build": service.config.project_build}
    assert requests.get(f"{base_url}/id").json() == {"id": "peer1"}


def test_hello_before_peers_are_known(base_url):
    response = requests.get(f"{base_url}/hello")
    assert response.status_code == 503
    assert "Error" in response.json()


def test_unknown_path(base_url):
    assert requests.get(f"{base_url}/nope").status_code == 404
    assert requests.post(f"{base_url}/nope").status_code == 404


def test_hello_registers_a_peer(service, base_url):
    make_master(service)
    response = requests.post(f"{base_url}/hello", json={"id": "peer2", "address": "10.0.0.2", "data_dir": "/db"})
    assert response.status_code == 200
    body = response.json()
    assert body["id"] == "peer2"
    assert [p["id"] for p in body["peers"]] == ["peer1", "peer2"]

    assert requests.get(f"{base_url}/hello").json()["peers"][1]["address"] == "10.0.0.2"


def test_hello_without_address_uses_the_client_address(service, base_url):
    make_master(service)
    body = requests.post(f"{base_url}/hello", json={"id": "local"}).json()
    local = [p for p in body["peers"] if p["id"] == "local"][0]
    assert local["address"] == "127.0.0.1"
    assert local["port_offset"] == 0


def test_hello_errors(service, base_url):
    assert requests.post(f"{base_url}/hello", json={"address": "10.0.0.2"}).status_code == 503
    make_master(service)
    response = requests.post(f"{base_url}/hello", data=b"{broken", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert requests.post(f"{base_url}/hello", json=["a"]).status_code == 400


def test_slave_rejects_hello(service, base_url):
    service.is_master = False
    service.state.transition(State.SLAVE)
    response = requests.post(f"{base_url}/hello", json={"address": "10.0.0.2"})
    assert response.status_code == 412
    assert response.json() == {"Error": "Not a master"}


def test_registration_client_against_the_control_api(service, base_url):
    make_master(service)
    address = base_url.split("://")[1]
    own_id, peers = register_with_master(address, 4000, own_address="10.0.0.2", own_id="peer2", data_dir="/db")
    assert own_id == "peer2"
    assert peers.peer_by_id("peer2").has_agent
    assert fetch_peers(address, 4000) == peers


def test_process_list(service, base_url, three_peers):
    service.state.set_peers(three_peers)
    service.state.set_process(ROLE_AGENT, FakeProcess(ROLE_AGENT, pid=99))
    address = base_url.split("://")[1]
    assert fetch_processes(address, 4000) == [{"type": "agent", "ip": "10.0.0.1", "port": 4001, "pid": 99}]


def test_shutdown_sets_the_stop_flag(service, base_url):
    assert request_shutdown(base_url.split("://")[1], 4000)
    assert service.shutdown_signal_received.wait(5)
