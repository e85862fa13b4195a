"""
This module contains the default configuration settings for the starter.
It defines paths, ports, supervision thresholds and the templates used to
generate server configuration files. Every uppercase name can be overridden
through the environment (or a `.env` file) and is picked up by
`dbstarter.local.config.ServiceConfig`.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


#* --- Project Info ---
PROJECT_NAME = "dbstarter"
PROJECT_VERSION = "0.9.0"
PROJECT_BUILD = os.getenv("DBSTARTER_BUILD", "dev")

#* --- Identity & Cluster Layout ---
ID = os.getenv("DBSTARTER_ID", "")
AGENCY_SIZE = int(os.getenv("DBSTARTER_AGENCY_SIZE", "3"))
MASTER_PORT = int(os.getenv("DBSTARTER_MASTER_PORT", "4000"))
MASTER_ADDRESS = os.getenv("DBSTARTER_JOIN", "")
OWN_ADDRESS = os.getenv("DBSTARTER_OWN_ADDRESS", "")
START_COORDINATOR = _env_bool("DBSTARTER_START_COORDINATOR", "True")
START_DBSERVER = _env_bool("DBSTARTER_START_DBSERVER", "True")
# If set, all peers get a unique port offset. Otherwise only (address, offset) pairs are unique.
ALL_PORT_OFFSETS_UNIQUE = _env_bool("DBSTARTER_ALL_PORT_OFFSETS_UNIQUE")

#* --- Paths ---
DATA_DIR = pathlib.Path(os.getenv("DBSTARTER_DATA_DIR", ".")).resolve()
ARANGOD_EXECUTABLE = os.getenv("DBSTARTER_ARANGOD", "/usr/sbin/arangod")
ARANGOD_JS_STARTUP = os.getenv("DBSTARTER_JS_STARTUP", "/usr/share/arangodb3/js")
RR_PATH = os.getenv("DBSTARTER_RR", "")
SETUP_FILE_NAME = "setup.json"
OVERRIDES_FILE_NAME = "overrides.json"
SERVER_CONFIG_FILE_NAME = "arangod.conf"
SERVER_COMMAND_FILE_NAME = "arangod_command.txt"
SERVER_LOG_FILE_NAME = "arangod.log"
SERVER_PID_FILE_NAME = "arangod.pid"

#* --- Server Tuning ---
VERBOSE = _env_bool("DBSTARTER_VERBOSE")
SERVER_THREADS = int(os.getenv("DBSTARTER_SERVER_THREADS", "0"))
JWT_SECRET = os.getenv("DBSTARTER_JWT_SECRET", "")

#* --- Docker Settings ---
DOCKER_CONTAINER = os.getenv("DBSTARTER_DOCKER_CONTAINER", "")
DOCKER_ENDPOINT = os.getenv("DBSTARTER_DOCKER_ENDPOINT", "")
DOCKER_IMAGE = os.getenv("DBSTARTER_DOCKER_IMAGE", "")
DOCKER_USER = os.getenv("DBSTARTER_DOCKER_USER", "")
DOCKER_GC_DELAY = float(os.getenv("DBSTARTER_DOCKER_GC_DELAY", "600"))  # seconds
DOCKER_NET_HOST = _env_bool("DBSTARTER_DOCKER_NET_HOST")
DOCKER_PRIVILEGED = _env_bool("DBSTARTER_DOCKER_PRIVILEGED")
RUNNING_IN_DOCKER = _env_bool("DBSTARTER_RUNNING_IN_DOCKER")
DOCKER_ARANGOD_EXECUTABLE = "/usr/sbin/arangod"
DOCKER_JS_STARTUP = "/usr/share/arangodb3/js"
DOCKER_CONTAINER_DATA_DIR = "/data"

#* --- Supervisor Settings ---
RECENT_FAILURE_UPTIME = 30      # seconds; shorter runs count as a failure
MAX_RECENT_FAILURES = 100       # consecutive failures before giving up on a role
RESTART_BACKOFF_SECONDS = float(os.getenv("DBSTARTER_RESTART_BACKOFF", "0"))
ROLE_START_INTERVAL = 1         # seconds between starting the agent, dbserver and coordinator loops
SHUTDOWN_GRACE_DELAY = 3        # seconds between stopping the other servers and the agent
GRACEFUL_SHUTDOWN_TIMEOUT = 10  # seconds before force-killing a native process
STOP_POLL_INTERVAL = 1          # seconds

#* --- Readiness & Health Settings ---
READINESS_PATH = "/_api/version"
READINESS_PROBE_TIMEOUT = 10    # seconds; bound when adopting an existing instance
READINESS_REQUEST_TIMEOUT = 2   # seconds per version request
READINESS_POLL_INTERVAL = 0.5   # seconds
READINESS_MAX_ATTEMPTS = 300    # ~150 seconds in total
AGENT_RESPONSE_TIMEOUT = 10     # seconds per agency member during a health check

#* --- Registration Settings ---
REGISTRATION_RETRIES = 10
REGISTRATION_RETRY_DELAY = 1.0  # seconds
PEER_POLL_INTERVAL = 1.0        # seconds between peer list polls while joining
HTTP_REQUEST_TIMEOUT = 5        # seconds
CONTROL_API_HOST = os.getenv("DBSTARTER_CONTROL_API_HOST", "0.0.0.0")

#* --- MODIFIABLE SETTINGS (Can be changed through overrides.json in the data directory) ---
MODIFIABLE_SETTINGS = {
    "VERBOSE", "SERVER_THREADS",
    "START_COORDINATOR", "START_DBSERVER",
    "DOCKER_GC_DELAY", "RESTART_BACKOFF_SECONDS",
}

#* --- Configuration Templates ---
# Parameters are: port, server threads, authentication, log level, v8-contexts
ARANGOD_CONFIG_TEMPLATE = """# ArangoDB configuration file
#
# This file is auto-generated by dbstarter. It is written once and never overwritten.
#

[server]
endpoint = tcp://0.0.0.0:{port}
threads = {threads}
authentication = {authentication}

[log]
level = {log_level}

[javascript]
v8-contexts = {v8_contexts}
"""

# Per role: (server threads, v8 contexts)
ROLE_TUNING = {
    "agent": (8, 1),
    "dbserver": (4, 4),
    "coordinator": (16, 4),
}
SERVER_LOG_LEVEL = "INFO"
