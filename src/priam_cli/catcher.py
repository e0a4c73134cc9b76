from __future__ import annotations

import contextlib
import logging
import queue
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Mapping
from urllib import parse as urlparse

LOGGER = logging.getLogger("priam.auth")

DEFAULT_PORT = 8089
DEFAULT_PATH = "/authcodecatcher"

CODE_RECEIVED_MESSAGE = "Authorization code received. Please close this page."
INVALID_RESPONSE_MESSAGE = "Invalid authorization code response from server."
NOT_IN_PROGRESS_MESSAGE = "No authorization in progress."


class AuthorizationCodeError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class RedirectResult:
    state: str
    code: str | None = None
    error: str | None = None


class RedirectCatcher:
    """Local listener that receives the browser redirect of an authorization.

    The grant hands the pending ``state`` to the listener through one
    single-slot queue and receives the outcome through another. Each consumed
    state yields exactly one result.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = DEFAULT_PORT,
        path: str = DEFAULT_PATH,
        redirect_host: str = "localhost",
    ) -> None:
        self.host = host
        self.port = port
        self.path = path
        self.redirect_host = redirect_host
        self._states: queue.Queue[str] = queue.Queue(maxsize=1)
        self._results: queue.Queue[RedirectResult] = queue.Queue(maxsize=1)
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def redirect_uri(self) -> str:
        port = self._server.server_address[1] if self._server else self.port
        return f"http://{self.redirect_host}:{port}{self.path}"

    def ensure_started(self) -> str:
        with self._lock:
            if self._server is None:
                self._server = ThreadingHTTPServer(
                    (self.host, self.port), _make_handler(self)
                )
                self._thread = threading.Thread(
                    target=self._server.serve_forever, daemon=True
                )
                self._thread.start()
                LOGGER.info("auth.catcher started redirect_uri=%s", self.redirect_uri)
        return self.redirect_uri

    def close(self) -> None:
        with self._lock:
            server, thread = self._server, self._thread
            self._server = None
            self._thread = None
        if server is None:
            return
        try:
            server.shutdown()
            server.server_close()
        finally:
            if thread is not None:
                thread.join(timeout=2.0)
            LOGGER.info("auth.catcher stopped")

    def begin(self, state: str) -> None:
        while True:
            try:
                stale = self._results.get_nowait()
            except queue.Empty:
                break
            LOGGER.info("auth.catcher dropped stale result state=%s", stale.state)
        try:
            self._states.put_nowait(state)
        except queue.Full:
            raise RuntimeError("an authorization is already in progress") from None

    def wait(self, state: str, timeout_s: float | None = None) -> str:
        while True:
            try:
                result = self._results.get(timeout=timeout_s)
            except queue.Empty:
                self.cancel(state)
                raise AuthorizationCodeError(
                    "timed out waiting for authorization code from server"
                ) from None
            if result.state != state:
                LOGGER.info("auth.catcher ignored result for state=%s", result.state)
                continue
            if result.code:
                return result.code
            raise AuthorizationCodeError(
                result.error
                or "failed to get authorization code from server. See browser for error message."
            )

    def handle_redirect(self, query: Mapping[str, list[str]]) -> tuple[int, str]:
        try:
            state = self._states.get_nowait()
        except queue.Empty:
            LOGGER.info("auth.catcher redirect with no authorization in progress")
            return 400, NOT_IN_PROGRESS_MESSAGE

        got_state = _first(query, "state")
        code = _first(query, "code")
        error = _first(query, "error")
        if got_state != state or bool(code) == bool(error):
            LOGGER.info("auth.catcher invalid redirect")
            self._deliver(RedirectResult(state=state, error=INVALID_RESPONSE_MESSAGE))
            return 400, INVALID_RESPONSE_MESSAGE

        if code:
            LOGGER.info("auth.catcher code received")
            self._deliver(RedirectResult(state=state, code=code))
            return 200, CODE_RECEIVED_MESSAGE

        description = _first(query, "error_description") or ""
        message = f"Error: {error}\nDescription: {description}\n"
        LOGGER.info("auth.catcher error received error=%s", error)
        reason = f"{error}: {description}" if description else error
        self._deliver(
            RedirectResult(state=state, error=f"authorization failed: {reason}")
        )
        return 200, message

    def _deliver(self, result: RedirectResult) -> None:
        try:
            self._results.put_nowait(result)
        except queue.Full:
            # Only reachable if a previous result was never collected.
            with contextlib.suppress(queue.Empty):
                self._results.get_nowait()
            self._results.put_nowait(result)

    def cancel(self, state: str) -> None:
        """Withdraw ``state`` if it is still pending; a consumed state is left alone."""

        try:
            pending = self._states.get_nowait()
        except queue.Empty:
            return
        if pending != state:
            self._states.put_nowait(pending)


def _first(query: Mapping[str, list[str]], key: str) -> str | None:
    values = query.get(key) or []
    return values[0] if values else None


def _make_handler(catcher: RedirectCatcher) -> type[BaseHTTPRequestHandler]:
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:  # noqa: N802
            req = urlparse.urlsplit(self.path)
            if req.path != catcher.path:
                self.send_response(404)
                self.end_headers()
                return
            status, message = catcher.handle_redirect(urlparse.parse_qs(req.query))
            body = message.encode("utf-8")
            if not body.endswith(b"\n"):
                body += b"\n"
            self.send_response(status)
            self.send_header("Content-Type", "text/plain; charset=utf-8")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args: object) -> None:  # noqa: A003
            return

    return Handler
