import json
import logging
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import TYPE_CHECKING, Any
import dbstarter.settings as default_settings
from dbstarter.local.errors import StatusError, error_body, BAD_REQUEST, NOT_FOUND, INTERNAL_SERVER_ERROR, SERVICE_UNAVAILABLE

if TYPE_CHECKING:
    from dbstarter.local.supervisor.supervisor import Service

log = logging.getLogger(__name__)


class ControlServer(HTTPServer):
    """An HTTPServer that knows the service it controls."""

    def __init__(self, address, service: "Service"):
        self.service = service
        super().__init__(address, ControlServiceHandler)


class ControlServiceHandler(BaseHTTPRequestHandler):
    """
    A request handler for the control API of a starter.
    Peers use it to register with the master and to fetch the peer list.
    """

    @property
    def service(self) -> "Service":
        return self.server.service

    def _send_response(self, code: int, content_type: str, body: bytes):
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_json(self, code: int, payload: Any):
        self._send_response(code, "application/json", json.dumps(payload, indent=4).encode("utf-8"))

    def _send_error(self, code: int, message: str):
        self._send_response(code, "application/json", error_body(message))

    def _read_json(self) -> Any:
        content_length = int(self.headers.get("Content-Length") or 0)
        if content_length == 0:
            return {}
        return json.loads(self.rfile.read(content_length))

    def do_GET(self):
        service = self.service
        if self.path == "/version":
            self._send_json(200, {"version": service.config.project_version, "build": service.config.project_build})
        elif self.path == "/id":
            self._send_json(200, {"id": service.config.id})
        elif self.path == "/hello":
            peers = service.state.peers_snapshot()
            if peers is None:
                self._send_error(SERVICE_UNAVAILABLE, "Peers are not known yet")
                return
            self._send_json(200, peers.to_dict())
        elif self.path == "/process":
            self._send_json(200, {"servers": service.process_list()})
        else:
            self._send_error(NOT_FOUND, "Not Found")

    def do_POST(self):
        if self.path == "/hello":
            self._handle_hello()
        elif self.path == "/shutdown":
            log.info("Shutdown requested through the control API.")
            self.service.stop()
            self._send_json(200, {"status": "stopping"})
        else:
            self._send_error(NOT_FOUND, "Not Found")

    def _handle_hello(self):
        try:
            payload = self._read_json()
        except (json.JSONDecodeError, ValueError):
            self._send_error(BAD_REQUEST, "Invalid JSON")
            return
        if not isinstance(payload, dict):
            self._send_error(BAD_REQUEST, "Expected a JSON object")
            return

        try:
            peer_id, peers = self.service.register_peer(
                address=str(payload.get("address") or ""),
                client_address=self.client_address[0],
                peer_id=str(payload.get("id") or ""),
                data_dir=str(payload.get("data_dir") or ""),
                has_dbserver=bool(payload.get("has_dbserver", True)),
                has_coordinator=bool(payload.get("has_coordinator", True)),
            )
        except StatusError as e:
            self._send_error(e.status_code, str(e))
            return
        except Exception as e:
            log.error(f"Error handling hello request in ControlService: {e}", exc_info=True)
            self._send_error(INTERNAL_SERVER_ERROR, str(e))
            return
        self._send_json(200, {"id": peer_id, **peers.to_dict()})

    def log_message(self, format_str: str, *args: Any) -> None:
        """Override to direct HTTP server logs to our application's logger."""
        log.debug("ControlService: " + (format_str % args))


def create_control_server(service: "Service", host: str, port: int) -> ControlServer:
    server = ControlServer((host, port), service)
    # handle_request() returns after this timeout so the stop flag is observed.
    server.timeout = default_settings.STOP_POLL_INTERVAL
    return server


def run_control_service(service: "Service", server: ControlServer) -> None:
    """
    Serves the control API until the service is stopped.
    Meant to run in a dedicated daemon thread.
    """
    host, port = server.server_address[:2]
    log.info(f"Control API service starting on http://{host}:{port}")
    try:
        while not service.shutdown_signal_received.is_set():
            server.handle_request()
    finally:
        log.info("Control API service shutting down.")
        server.server_close()
