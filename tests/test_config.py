import json
import dataclasses
from pathlib import Path

import pytest

import dbstarter.settings as default_settings
from dbstarter.local.config import ServiceConfig, overrides_from_args
from dbstarter.local.errors import ConfigurationError


def test_from_settings_uses_defaults(tmp_path):
    config = ServiceConfig.from_settings(data_dir=tmp_path)
    assert config.agency_size == default_settings.AGENCY_SIZE
    assert config.master_port == default_settings.MASTER_PORT
    assert config.data_dir == tmp_path.resolve()
    assert config.setup_file_path == tmp_path.resolve() / "setup.json"


def test_overrides_file_only_applies_modifiable_settings(tmp_path):
    (tmp_path / "overrides.json").write_text(json.dumps({
        "SERVER_THREADS": "12",
        "START_COORDINATOR": "false",
        "MASTER_PORT": 9999,
        "NOT_A_SETTING": 1,
    }))
    config = ServiceConfig.from_settings(data_dir=tmp_path)
    assert config.server_threads == 12
    assert config.start_coordinator is False
    assert config.master_port == default_settings.MASTER_PORT


def test_malformed_overrides_file_is_ignored(tmp_path):
    (tmp_path / "overrides.json").write_text("{not json")
    config = ServiceConfig.from_settings(data_dir=tmp_path)
    assert config.server_threads == default_settings.SERVER_THREADS


def test_keyword_overrides_win(tmp_path):
    (tmp_path / "overrides.json").write_text(json.dumps({"SERVER_THREADS": 12}))
    config = ServiceConfig.from_settings(data_dir=tmp_path, server_threads=3, agency_size=1)
    assert config.server_threads == 3
    assert config.agency_size == 1


def test_unknown_keyword_is_rejected(tmp_path):
    with pytest.raises(ConfigurationError):
        ServiceConfig.from_settings(data_dir=tmp_path, no_such_field=1)


def test_config_is_immutable(config):
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.id = "other"
    assert config.with_id("other").id == "other"
    assert config.id == "peer1"


def test_overrides_from_args():
    overrides = overrides_from_args(["--agency-size=5", "--join=10.0.0.1:4000", "--verbose", "--data-dir=/tmp/db",
                                     "--start-coordinator=false"])
    assert overrides == {
        "agency_size": 5,
        "master_address": "10.0.0.1:4000",
        "verbose": True,
        "data_dir": Path("/tmp/db"),
        "start_coordinator": False,
    }


@pytest.mark.parametrize("args", [["--bogus=1"], ["positional"], ["--agency-size"], ["--agency-size=three"]])
def test_bad_args_are_configuration_errors(args):
    with pytest.raises(ConfigurationError):
        overrides_from_args(args)


def test_running_in_docker_requires_docker_backend(config):
    with pytest.raises(ConfigurationError):
        config.replace(running_in_docker=True).check_configuration()


def test_docker_container_requires_own_address(config):
    with pytest.raises(ConfigurationError):
        config.replace(docker_container="starter", own_address="").check_configuration()


def test_missing_executable_is_reported(config, tmp_path):
    with pytest.raises(ConfigurationError):
        config.replace(arangod_executable=str(tmp_path / "no-such-arangod")).check_configuration()


def test_existing_executable_passes(config, tmp_path):
    executable = tmp_path / "arangod"
    executable.write_text("#!/bin/sh\n")
    config.replace(arangod_executable=str(executable)).check_configuration()
