import json
import shutil
import logging
import dataclasses
from pathlib import Path
from typing import Any, Dict, List
from dataclasses import dataclass, field

import dbstarter.settings as default_settings
from dbstarter.local.errors import ConfigurationError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceConfig:
    """
    The immutable deployment configuration, fixed at process start.

    It follows a clear precedence:
    1. Base values from `settings.py` (which reads the environment and `.env`).
    2. Overrides from `<data_dir>/overrides.json` for settings in `MODIFIABLE_SETTINGS`.
    3. Explicit keyword overrides (usually from the command line).
    """
    id: str = ""
    agency_size: int = 3
    arangod_executable: str = "/usr/sbin/arangod"
    arangod_js_startup: str = "/usr/share/arangodb3/js"
    master_port: int = 4000
    rr_path: str = ""
    start_coordinator: bool = True
    start_dbserver: bool = True
    data_dir: Path = field(default_factory=lambda: Path(".").resolve())
    own_address: str = ""
    master_address: str = ""
    verbose: bool = False
    server_threads: int = 0
    all_port_offsets_unique: bool = False
    jwt_secret: str = ""
    restart_backoff_seconds: float = 0.0

    docker_container: str = ""
    docker_endpoint: str = ""
    docker_image: str = ""
    docker_user: str = ""
    docker_gc_delay: float = 600.0
    docker_net_host: bool = False
    docker_privileged: bool = False
    running_in_docker: bool = False

    project_version: str = default_settings.PROJECT_VERSION
    project_build: str = default_settings.PROJECT_BUILD

    @classmethod
    def from_settings(cls, **overrides: Any) -> "ServiceConfig":
        """
        Builds the configuration from the settings module, the overrides file
        and the given keyword overrides.

        :param overrides: Field values that take precedence over everything else.
        :return: A new ServiceConfig.
        """
        values = _load_defaults()
        data_dir = Path(overrides.get("data_dir") or values["data_dir"])
        values.update(_load_overrides(data_dir / default_settings.OVERRIDES_FILE_NAME))
        values.update({k: v for k, v in overrides.items() if v is not None})
        values["data_dir"] = Path(values["data_dir"]).resolve()

        unknown = set(values) - {f.name for f in dataclasses.fields(cls)}
        if unknown:
            raise ConfigurationError(f"Unknown configuration settings: {', '.join(sorted(unknown))}")
        return cls(**values)

    def replace(self, **changes: Any) -> "ServiceConfig":
        """Returns a copy of this configuration with the given fields changed."""
        return dataclasses.replace(self, **changes)

    def with_id(self, new_id: str) -> "ServiceConfig":
        return self.replace(id=new_id)

    @property
    def uses_docker(self) -> bool:
        return bool(self.docker_endpoint and self.docker_image)

    @property
    def setup_file_path(self) -> Path:
        return self.data_dir / default_settings.SETUP_FILE_NAME

    def check_configuration(self) -> None:
        """
        Validates the process-execution backend settings.
        Raises ConfigurationError when the starter cannot run with them.
        """
        if self.agency_size < 1:
            raise ConfigurationError(f"Agency size must be at least 1, got {self.agency_size}")
        if self.docker_container and not self.own_address:
            raise ConfigurationError("OwnAddress must be specified when running in a docker container")
        if self.running_in_docker and not self.uses_docker:
            raise ConfigurationError(
                "When running in docker, you must provide a docker endpoint and a docker image"
            )
        if self.uses_docker:
            if shutil.which("docker") is None:
                raise ConfigurationError("The docker command line client was not found in PATH")
            return

        executable = Path(self.rr_path or self.arangod_executable)
        if not (executable.exists() or shutil.which(str(executable))):
            raise ConfigurationError(f"Server executable not found at '{executable}'")
        log.debug(f"Config Check OK: Found server executable at '{executable}'")


#* --- Settings loading ---
_SETTING_NAMES = {
    "ID": "id",
    "AGENCY_SIZE": "agency_size",
    "ARANGOD_EXECUTABLE": "arangod_executable",
    "ARANGOD_JS_STARTUP": "arangod_js_startup",
    "MASTER_PORT": "master_port",
    "RR_PATH": "rr_path",
    "START_COORDINATOR": "start_coordinator",
    "START_DBSERVER": "start_dbserver",
    "DATA_DIR": "data_dir",
    "OWN_ADDRESS": "own_address",
    "MASTER_ADDRESS": "master_address",
    "VERBOSE": "verbose",
    "SERVER_THREADS": "server_threads",
    "ALL_PORT_OFFSETS_UNIQUE": "all_port_offsets_unique",
    "JWT_SECRET": "jwt_secret",
    "RESTART_BACKOFF_SECONDS": "restart_backoff_seconds",
    "DOCKER_CONTAINER": "docker_container",
    "DOCKER_ENDPOINT": "docker_endpoint",
    "DOCKER_IMAGE": "docker_image",
    "DOCKER_USER": "docker_user",
    "DOCKER_GC_DELAY": "docker_gc_delay",
    "DOCKER_NET_HOST": "docker_net_host",
    "DOCKER_PRIVILEGED": "docker_privileged",
    "RUNNING_IN_DOCKER": "running_in_docker",
}


def _load_defaults() -> Dict[str, Any]:
    """Loads the uppercase attributes from settings.py that map to config fields."""
    return {
        field_name: getattr(default_settings, key)
        for key, field_name in _SETTING_NAMES.items()
        if hasattr(default_settings, key)
    }


def _load_overrides(overrides_path: Path) -> Dict[str, Any]:
    """
    Loads settings from the overrides file.

    Only keys listed in `MODIFIABLE_SETTINGS` are applied.

    :param overrides_path: Path to the overrides JSON file.
    :return: The overrides, keyed by config field name.
    """
    if not overrides_path.exists():
        return {}

    try:
        with overrides_path.open('r') as f:
            overrides = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        log.error(f"Failed to load or parse overrides file '{overrides_path}': {e}")
        return {}

    if not isinstance(overrides, dict):
        log.error(f"Overrides file '{overrides_path}' must contain a JSON object. Ignoring.")
        return {}

    log.info(f"Loading configuration overrides from {overrides_path}")
    result: Dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in _SETTING_NAMES:
            log.warning(f"Override setting '{key}' not found in default settings. Ignoring.")
            continue
        if key not in default_settings.MODIFIABLE_SETTINGS:
            log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
            continue
        result[_SETTING_NAMES[key]] = _coerce(getattr(default_settings, key), value)
        log.debug(f"Overridden setting: {key} = {value}")
    return result


def _coerce(original_value: Any, value: Any) -> Any:
    """Coerces the new value to the type of the default value."""
    if isinstance(original_value, bool):
        return str(value).lower() in ('true', '1', 't', 'yes', 'y')
    if original_value is not None and not isinstance(value, type(original_value)):
        try:
            return type(original_value)(value)
        except (ValueError, TypeError):
            log.warning(f"Could not convert override value '{value}'. Using it as is.")
    return value


#* --- Command line ---
_ARG_ALIASES = {
    "join": "master_address",
    "docker": "docker_image",
}


def overrides_from_args(args: List[str]) -> Dict[str, Any]:
    """
    Turns `--name=value` (or bare `--flag`) arguments into ServiceConfig overrides.
    Dashes in names become underscores, values are coerced to the field's type.

    :param args: The command line arguments after the command.
    :return: The overrides, keyed by config field name.
    """
    defaults = ServiceConfig()
    field_names = {f.name for f in dataclasses.fields(ServiceConfig)}
    result: Dict[str, Any] = {}
    for arg in args:
        if not arg.startswith("--"):
            raise ConfigurationError(f"Unexpected argument '{arg}'")
        name, sep, value = arg[2:].partition("=")
        name = name.replace("-", "_")
        name = _ARG_ALIASES.get(name, name)
        if name not in field_names:
            raise ConfigurationError(f"Unknown option '{arg}'")
        default = getattr(defaults, name)
        if not sep:
            if not isinstance(default, bool):
                raise ConfigurationError(f"Option '--{name}' requires a value")
            value = "true"
        if isinstance(default, bool):
            result[name] = _coerce(default, value)
            continue
        try:
            result[name] = type(default)(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value '{value}' for '--{name}': {e}") from e
    return result
