from __future__ import annotations

import json
import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable

from .config import ServerConfig
from .errors import FramingError, InternalFailure, ValidationError
from .pipeline import ExecutionPipeline
from .protocol import Request, read_request
from .responses import (
    HTML,
    Response,
    error_response,
    json_response,
    result_payload,
    text_response,
)
from .snippets import DEFAULT_SNIPPET_NAME, SnippetStore

logger = logging.getLogger(__name__)

LISTEN_BACKLOG = 16


class DisconnectWatcher:
    """Cancellation callback that reports whether the client has gone away.

    The socket must be in non-blocking mode while the watcher is in use. Only a
    reset or socket error counts as gone; a peer that half-closes its sending
    side after the request is still waiting for the response.

    Example:
        ```python
        watcher = DisconnectWatcher(conn)
        gone = watcher()
        ```
    """

    def __init__(self, conn: socket.socket) -> None:
        """Watch ``conn`` for a reset by the peer.

        Example:
            ```python
            watcher = DisconnectWatcher(conn)
            ```
        """
        self._conn = conn
        self.disconnected = False

    def __call__(self) -> bool:
        """Peek at the socket without consuming data.

        Example:
            ```python
            if watcher():
                print("client left")
            ```
        """
        if self.disconnected:
            return True
        try:
            self._conn.recv(1, socket.MSG_PEEK)
        except (BlockingIOError, InterruptedError):
            return False
        except OSError:
            self.disconnected = True
        return self.disconnected


class ConnectionHandler:
    """Serve exactly one request per connection, then close it.

    Example:
        ```python
        handler = ConnectionHandler(config, ExecutionPipeline(config), SnippetStore("user_codes"))
        handler.handle(conn)
        ```
    """

    def __init__(
        self,
        config: ServerConfig,
        pipeline: ExecutionPipeline,
        snippets: SnippetStore,
    ) -> None:
        """Wire the handler to its collaborators.

        Example:
            ```python
            handler = ConnectionHandler(ServerConfig(), pipeline, store)
            ```
        """
        self._config = config
        self._pipeline = pipeline
        self._snippets = snippets
        self._routes: dict[tuple[str, str], Callable[[Request, Callable[[], bool] | None], Response | None]] = {
            ("GET", "/"): self._handle_index,
            ("GET", "/index.html"): self._handle_index,
            ("GET", "/health"): self._handle_health,
            ("POST", "/run"): self._handle_run,
            ("GET", "/load"): self._handle_load,
            ("POST", "/save"): self._handle_save,
        }

    def handle(self, conn: socket.socket, address: Any = None) -> None:
        """Read one request from ``conn``, write one response and close it.

        Example:
            ```python
            handler.handle(conn, ("127.0.0.1", 53122))
            ```
        """
        started = time.monotonic()
        try:
            conn.settimeout(self._config.read_timeout_seconds)
            try:
                request = read_request(conn, self._config.max_request_bytes)
            except FramingError as exc:
                logger.info("Rejected request from %s: %s", address, exc)
                conn.sendall(text_response(400, "Bad Request\n").to_bytes())
                return

            watcher: DisconnectWatcher | None = None
            if self._config.cancel_on_disconnect:
                conn.setblocking(False)
                watcher = DisconnectWatcher(conn)
            response = self.dispatch(request, watcher)
            if watcher is not None and watcher.disconnected:
                logger.info("%s %s abandoned by client", request.method, request.path)
                return
            if response is None:
                return

            conn.settimeout(self._config.read_timeout_seconds)
            conn.sendall(response.to_bytes())
            logger.info(
                "%s %s -> %s (%.1f ms)",
                request.method,
                request.path,
                response.status,
                (time.monotonic() - started) * 1000,
            )
        except OSError as exc:
            logger.info("Connection from %s failed: %s", address, exc)
        finally:
            try:
                conn.close()
            except OSError:
                pass

    def dispatch(
        self,
        request: Request,
        cancel: Callable[[], bool] | None = None,
    ) -> Response | None:
        """Route a parsed request and map request-level errors to responses.

        Example:
            ```python
            resp = handler.dispatch(parse_request(raw))
            ```
        """
        route = self._routes.get((request.method, request.path))
        if route is None:
            return text_response(404, "Not Found\n")
        try:
            return route(request, cancel)
        except ValidationError as exc:
            return error_response(400, str(exc))
        except InternalFailure as exc:
            logger.error("Internal failure on %s %s: %s", request.method, request.path, exc)
            return error_response(500, "Internal server error")
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.path)
            return error_response(500, "Internal server error")

    def _handle_index(self, request: Request, cancel: Callable[[], bool] | None) -> Response:
        """Serve the static front page.

        Example:
            ```python
            resp = handler._handle_index(request, None)
            ```
        """
        index = Path(self._config.static_dir) / "index.html"
        try:
            content = index.read_bytes()
        except OSError:
            content = b""
        if not content:
            return text_response(404, "index.html not found.\n")
        return Response(200, HTML, content)

    def _handle_health(self, request: Request, cancel: Callable[[], bool] | None) -> Response:
        """Report liveness.

        Example:
            ```python
            resp = handler._handle_health(request, None)
            ```
        """
        return json_response(200, {"ok": True})

    def _handle_run(self, request: Request, cancel: Callable[[], bool] | None) -> Response:
        """Compile and execute the submitted program.

        Example:
            ```python
            resp = handler._handle_run(request, watcher)
            ```
        """
        try:
            payload = json.loads(request.body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            return error_response(400, f"Invalid JSON: {exc}")
        if not isinstance(payload, dict):
            return error_response(400, "Invalid JSON: expected an object")

        code = payload.get("code", "")
        stdin = payload.get("input", "")
        if not isinstance(code, str) or not code:
            raise ValidationError("Missing 'code'")
        if stdin is None:
            stdin = ""
        if not isinstance(stdin, str):
            raise ValidationError("'input' must be a string")

        result = self._pipeline.execute(code, stdin, cancel)
        return json_response(200, result_payload(result))

    def _handle_load(self, request: Request, cancel: Callable[[], bool] | None) -> Response:
        """Return a stored snippet as plain text.

        Example:
            ```python
            resp = handler._handle_load(request, None)
            ```
        """
        name = request.params.get("name", DEFAULT_SNIPPET_NAME)
        try:
            content = self._snippets.load(name)
        except ValidationError as exc:
            return text_response(400, f"{exc}\n")
        except FileNotFoundError:
            return text_response(404, f"File not found: {name}\n")
        except OSError as exc:
            logger.error("Failed to read snippet %s: %s", name, exc)
            return text_response(500, "Failed to read file.\n")
        return Response(200, "text/plain; charset=utf-8", content)

    def _handle_save(self, request: Request, cancel: Callable[[], bool] | None) -> Response:
        """Store the raw request body under the requested snippet name.

        Example:
            ```python
            resp = handler._handle_save(request, None)
            ```
        """
        name = request.params.get("name", DEFAULT_SNIPPET_NAME)
        try:
            written = self._snippets.save(name, request.body)
        except OSError as exc:
            logger.error("Failed to write snippet %s: %s", name, exc)
            return error_response(500, "Failed to open file for writing.")
        return json_response(200, {"ok": True, "savedAs": name, "bytes": written})


class RunnerServer:
    """Loopback TCP server dispatching each connection to a bounded worker pool.

    Example:
        ```python
        with RunnerServer(ServerConfig(port=8080)) as server:
            server.serve_forever()
        ```
    """

    def __init__(
        self,
        config: ServerConfig,
        *,
        pipeline: ExecutionPipeline | None = None,
        snippets: SnippetStore | None = None,
    ) -> None:
        """Bind the listening socket and create the worker pool.

        Example:
            ```python
            server = RunnerServer(ServerConfig(port=0))
            ```
        """
        self._config = config
        self.handler = ConnectionHandler(
            config,
            pipeline or ExecutionPipeline(config),
            snippets or SnippetStore(config.storage_dir),
        )
        self._socket = socket.create_server(
            (config.host, config.port),
            backlog=LISTEN_BACKLOG,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=config.max_workers,
            thread_name_prefix="safe-cpp-runner",
        )
        # One slot per worker, so waiting clients stay in the listen backlog.
        self._slots = threading.BoundedSemaphore(config.max_workers)
        self._active_lock = threading.Lock()
        self._active = 0
        self._shutdown = threading.Event()
        self._closed = False

    @property
    def server_address(self) -> tuple[str, int]:
        """Return the bound host and port (useful when binding port 0).

        Example:
            ```python
            host, port = server.server_address
            ```
        """
        host, port = self._socket.getsockname()[:2]
        return host, port

    @property
    def active_connections(self) -> int:
        """Return how many accepted connections are being served right now.

        Example:
            ```python
            busy = server.active_connections
            ```
        """
        with self._active_lock:
            return self._active

    def serve_forever(self, poll_interval: float = 0.5) -> None:
        """Accept connections until :meth:`shutdown` is called.

        Example:
            ```python
            threading.Thread(target=server.serve_forever, daemon=True).start()
            ```
        """
        host, port = self.server_address
        logger.info("Serving on http://%s:%s with %s workers", host, port, self._config.max_workers)
        self._socket.settimeout(poll_interval)
        while not self._shutdown.is_set():
            if not self._slots.acquire(timeout=poll_interval):
                continue
            try:
                conn, address = self._socket.accept()
            except socket.timeout:
                self._slots.release()
                continue
            except OSError:
                self._slots.release()
                if self._shutdown.is_set():
                    break
                raise
            with self._active_lock:
                self._active += 1
            self._executor.submit(self._serve_connection, conn, address)
        logger.info("Server stopped")

    def _serve_connection(self, conn: socket.socket, address: Any) -> None:
        """Worker entry point for one accepted connection.

        Example:
            ```python
            server._serve_connection(conn, ("127.0.0.1", 40000))
            ```
        """
        try:
            self.handler.handle(conn, address)
        except Exception:
            logger.exception("Worker failed while serving %s", address)
        finally:
            with self._active_lock:
                self._active -= 1
            self._slots.release()

    def shutdown(self) -> None:
        """Ask :meth:`serve_forever` to return after its current poll.

        Example:
            ```python
            server.shutdown()
            ```
        """
        self._shutdown.set()

    def server_close(self) -> None:
        """Close the listener and wait for in-flight connections to finish.

        Example:
            ```python
            server.server_close()
            ```
        """
        if self._closed:
            return
        self._closed = True
        self._shutdown.set()
        self._socket.close()
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "RunnerServer":
        """Return the server for use in a ``with`` block.

        Example:
            ```python
            with RunnerServer(config) as server:
                ...
            ```
        """
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Close the server when leaving a ``with`` block.

        Example:
            ```python
            server.__exit__(None, None, None)
            ```
        """
        self.server_close()
