import json
import logging
from pathlib import Path
from typing import Optional, Tuple
from dbstarter.local.peers import Peers

log = logging.getLogger(__name__)

SETUP_FORMAT_VERSION = 1


def save_setup(path: Path, own_id: str, peers: Peers) -> None:
    """
    Atomically writes the finalized peer set, so a restarted starter can
    relaunch the same deployment without registering again.

    :param path: The setup file path.
    :param own_id: The id of this peer.
    :param peers: The peers to persist.
    """
    data = {"version": SETUP_FORMAT_VERSION, "id": own_id, **peers.to_dict()}
    temp_path = path.with_suffix(".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with temp_path.open("w") as f:
            json.dump(data, f, indent=4)
        temp_path.replace(path)
    except (IOError, OSError) as e:
        log.error(f"Failed to write setup file '{path}': {e}", exc_info=True)
    finally:
        temp_path.unlink(missing_ok=True)


def load_setup(path: Path) -> Optional[Tuple[str, Peers]]:
    """
    Reads a setup file written by `save_setup`.

    :param path: The setup file path.
    :return: The own id and the peers, or None if there is no valid setup.
    """
    if not path.exists():
        return None
    try:
        with path.open("r") as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        log.warning(f"Could not read setup file '{path}', ignoring it: {e}")
        return None
    if not isinstance(data, dict) or data.get("version") != SETUP_FORMAT_VERSION or not data.get("id"):
        log.warning(f"Setup file '{path}' is malformed or outdated. Ignoring it.")
        return None
    try:
        peers = Peers.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        log.warning(f"Setup file '{path}' contains invalid peers, ignoring it: {e}")
        return None
    return str(data["id"]), peers
