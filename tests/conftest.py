import threading

import pytest

from dbstarter.local.config import ServiceConfig
from dbstarter.local.peers import Peers


@pytest.fixture
def config(tmp_path) -> ServiceConfig:
    return ServiceConfig(
        id="peer1",
        agency_size=3,
        master_port=4000,
        data_dir=tmp_path,
        own_address="10.0.0.1",
        arangod_executable="/usr/sbin/arangod",
        arangod_js_startup="/usr/share/arangodb3/js",
    )


@pytest.fixture
def three_peers() -> Peers:
    peers = Peers(agency_size=3)
    peers.add_peer("peer1", "10.0.0.1", port_offset=0)
    peers.add_peer("peer2", "10.0.0.2")
    peers.add_peer("peer3", "10.0.0.3")
    return peers


@pytest.fixture
def stop_event() -> threading.Event:
    return threading.Event()
