"""HTTP server adapter for crash submissions and operator endpoints.

Provides a simple async HTTP server using Python's built-in http.server
module and asyncio. Requests are parsed on the server thread and the
receiver coroutines run on the application's event loop.

Routes:

- ``POST /api/crashes/submit``: SDK submission, authenticated by the
  app's ``X-API-Key``
- ``POST /api/groups/status``: ``{"group_id", "status"}``
- ``POST /api/groups/delete``: ``{"group_id"}``
- ``POST /api/groups/details``: ``{"group_id", "limit"?}``
- ``POST /api/crashes/retrace``: ``{"crash_id"}``
- ``POST /api/apps/reconcile``: ``{"app_id"}``
- ``GET /health``

Operator routes optionally require ``Authorization: Bearer <admin key>``.
"""

import asyncio
import concurrent.futures
import hmac
import json
import logging
from collections.abc import Callable, Coroutine
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from crashbucket.adapters.webhook.receiver import WebhookReceiver
from crashbucket.core.errors import (
    AuthenticationError,
    NotFoundError,
    ReconciliationError,
    SubmissionRejectedError,
)

from ..serialization import reconciliation_to_dict

logger = logging.getLogger(__name__)

MAX_BODY_SIZE = 10 * 1024 * 1024
REQUEST_TIMEOUT_SECONDS = 60

_Route = Callable[[dict[str, Any]], Coroutine[Any, Any, dict[str, Any]]]


class _BadRequest(Exception):
    """Request data is missing a required field."""


def _required(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not value or not isinstance(value, str):
        raise _BadRequest(f"Missing {key}")
    return value


def error_status(error: BaseException) -> int:
    """HTTP status code for an exception raised by the receiver."""
    if isinstance(error, AuthenticationError):
        return 401
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, (_BadRequest, SubmissionRejectedError, ValueError)):
        return 400
    return 500


def make_request_handler(
    receiver: WebhookReceiver,
    event_loop: asyncio.AbstractEventLoop,
    admin_api_key: str | None,
    require_admin_auth: bool,
) -> type[BaseHTTPRequestHandler]:
    """Factory to create a handler class bound to one receiver and loop.

    Args:
        receiver: Receiver for ingestion and operator requests
        event_loop: Event loop the receiver coroutines run on
        admin_api_key: Optional bearer key for operator endpoints
        require_admin_auth: Whether operator endpoints need the key

    Returns:
        A BaseHTTPRequestHandler subclass configured with the dependencies
    """

    operator_routes: dict[str, _Route] = {
        "/api/groups/status": lambda d: receiver.handle_status_request(
            _required(d, "group_id"), _required(d, "status")
        ),
        "/api/groups/delete": lambda d: receiver.handle_delete_request(_required(d, "group_id")),
        "/api/groups/details": lambda d: receiver.handle_details_request(
            _required(d, "group_id"), int(d.get("limit", 20))
        ),
        "/api/crashes/retrace": lambda d: receiver.handle_retrace_request(
            _required(d, "crash_id")
        ),
        "/api/apps/reconcile": lambda d: receiver.handle_reconcile_request(
            _required(d, "app_id")
        ),
    }

    class CrashBucketHTTPHandler(BaseHTTPRequestHandler):
        """HTTP request handler for SDK and operator endpoints."""

        def _check_admin_auth(self) -> bool:
            """Check the bearer key on operator endpoints."""
            if not require_admin_auth:
                return True
            if not admin_api_key:
                return False
            auth_header = self.headers.get("Authorization", "")
            if auth_header.startswith("Bearer "):
                return hmac.compare_digest(auth_header[7:], admin_api_key)
            return False

        def do_POST(self) -> None:
            """Handle POST requests, routing on path."""
            if self.path != "/api/crashes/submit" and self.path not in operator_routes:
                self._send_json(404, {"status": "error", "message": "Not found"})
                return

            content_length = int(self.headers.get("Content-Length", 0))
            if content_length > MAX_BODY_SIZE:
                self._send_json(413, {"status": "error", "message": "Request body too large"})
                return
            body = self.rfile.read(content_length) if content_length > 0 else b""
            try:
                data = json.loads(body) if body else {}
            except json.JSONDecodeError:
                self._send_json(400, {"status": "error", "message": "Invalid JSON body"})
                return
            if not isinstance(data, dict):
                self._send_json(400, {"status": "error", "message": "JSON object expected"})
                return

            if self.path == "/api/crashes/submit":
                api_key = self.headers.get("X-API-Key")
                self._dispatch(lambda: receiver.handle_crash_submission(api_key, data))
                return

            if not self._check_admin_auth():
                self._send_json(401, {"status": "error", "message": "Unauthorized"})
                return
            route = operator_routes[self.path]
            self._dispatch(lambda: route(data))

        def do_GET(self) -> None:
            """Health check is public."""
            if self.path == "/health":
                self._send_json(200, {"status": "healthy"})
            else:
                self._send_json(404, {"status": "error", "message": "Not found"})

        def _dispatch(
            self, make_coro: Callable[[], Coroutine[Any, Any, dict[str, Any]]]
        ) -> None:
            """Run a receiver coroutine on the event loop and answer with its result."""
            try:
                coro = make_coro()
            except (_BadRequest, ValueError) as e:
                self._send_json(400, {"status": "error", "message": str(e)})
                return

            future = asyncio.run_coroutine_threadsafe(coro, event_loop)
            try:
                result = future.result(timeout=REQUEST_TIMEOUT_SECONDS)
            except concurrent.futures.TimeoutError:
                future.cancel()
                logger.error(f"Request to {self.path} timed out")
                self._send_json(500, {"status": "error", "message": "Internal server error"})
                return
            except ReconciliationError as e:
                logger.error(f"Reconciliation incomplete: {e}")
                self._send_json(
                    500,
                    {
                        "status": "error",
                        "message": str(e),
                        "result": reconciliation_to_dict(e.result),
                    },
                )
                return
            except Exception as e:
                code = error_status(e)
                if code == 500:
                    # Log full exception server-side, generic message to client
                    logger.error(f"Error handling request to {self.path}: {e}", exc_info=True)
                    self._send_json(500, {"status": "error", "message": "Internal server error"})
                else:
                    logger.info(f"Rejected request to {self.path}: {e}")
                    self._send_json(code, {"status": "error", "message": str(e)})
                return

            self._send_json(200, result)

        def _send_json(self, code: int, data: dict[str, Any]) -> None:
            """Send a JSON response."""
            payload = json.dumps(data).encode()
            self.send_response(code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, format: str, *args: Any) -> None:
            """Log HTTP request."""
            logger.debug(f"HTTP {self.client_address[0]}: {format % args}")

    return CrashBucketHTTPHandler


class CrashBucketHTTPServer:
    """HTTP server adapter for SDK submissions and operator endpoints."""

    def __init__(
        self,
        receiver: WebhookReceiver,
        host: str = "0.0.0.0",
        port: int = 8080,
        admin_api_key: str | None = None,
        require_admin_auth: bool = False,
    ):
        """Initialize the HTTP server.

        Args:
            receiver: WebhookReceiver instance to handle requests.
            host: Host to listen on (default 0.0.0.0).
            port: Port to listen on (default 8080, 0 picks a free port).
            admin_api_key: Optional bearer key for operator endpoints.
            require_admin_auth: Whether operator endpoints need the key.
        """
        self.receiver = receiver
        self.host = host
        self.port = port
        self.admin_api_key = admin_api_key
        self.require_admin_auth = require_admin_auth
        self.server: ThreadingHTTPServer | None = None
        self._server_task: asyncio.Task[None] | None = None

        if require_admin_auth and not admin_api_key:
            logger.warning(
                "Admin authentication required but no admin key provided. "
                "Operator endpoints will reject every request."
            )

    @property
    def bound_port(self) -> int:
        """Port actually listened on (useful when constructed with port 0)."""
        if self.server is None:
            return self.port
        return self.server.server_address[1]

    async def start(self) -> None:
        """Start the HTTP server."""
        handler_class = make_request_handler(
            receiver=self.receiver,
            event_loop=asyncio.get_running_loop(),
            admin_api_key=self.admin_api_key,
            require_admin_auth=self.require_admin_auth,
        )
        self.server = ThreadingHTTPServer((self.host, self.port), handler_class)
        self.server.daemon_threads = True

        # Run server in a separate thread to avoid blocking
        self._server_task = asyncio.create_task(self._run_server())
        logger.info(
            f"HTTP server listening on {self.host}:{self.bound_port}",
            extra={"admin_auth": self.require_admin_auth},
        )

    async def _run_server(self) -> None:
        """Run the HTTP server loop in a thread pool."""
        if not self.server:
            return
        try:
            await asyncio.to_thread(self.server.serve_forever)
        except asyncio.CancelledError:
            # Normal shutdown
            pass
        except Exception as e:
            logger.error(f"HTTP server error: {e}", exc_info=True)

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self.server:
            await asyncio.to_thread(self.server.shutdown)
            self.server.server_close()
        if self._server_task:
            self._server_task.cancel()
            try:
                await self._server_task
            except asyncio.CancelledError:
                pass
        logger.info("HTTP server stopped")
