from __future__ import annotations

import http.server
import logging
import sys
import threading
import time
import webbrowser
from typing import Any
from urllib.parse import parse_qs, urlparse

import typer

from .errors import ConfigurationError, LoginError

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_TIMEOUT_S = 300
CALLBACK_PATH = "/callback"

_DONE_PAGE = b"<html><body><p>Authorization complete. You can close this window.</p></body></html>"


def _redirect_uri(port: int) -> str:
    return f"http://127.0.0.1:{port}{CALLBACK_PATH}"


def code_from_params(params: dict[str, str], state: str) -> str:
    if params.get("error"):
        detail = params.get("error_description") or params["error"]
        raise LoginError(f"authorization failed: {detail}")
    if params.get("state") != state:
        raise LoginError("authorization state mismatch; start the login again")
    code = params.get("code")
    if not code:
        raise LoginError("authorization response did not include a code")
    return code


def _announce(authorize_url: str) -> None:
    print("Open this URL in your browser to authorize:", file=sys.stderr)
    print(f"\n  {authorize_url}\n", file=sys.stderr)


class LocalCallbackReceiver:
    """
    Receives the OAuth redirect on 127.0.0.1.

    The redirect URI (http://127.0.0.1:<port>/callback) must be registered on the app,
    so the port is fixed by configuration rather than picked at random.
    """

    def __init__(self, port: int, *, open_browser: bool = True, timeout_s: float = DEFAULT_CALLBACK_TIMEOUT_S):
        self.port = port
        self.redirect_uri = _redirect_uri(port)
        self._open_browser = open_browser
        self._timeout_s = timeout_s

    def wait_for_code(self, authorize_url: str, state: str) -> str:
        result: dict[str, str] = {}
        done = threading.Event()

        class Handler(http.server.BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                parsed = urlparse(self.path)
                if parsed.path != CALLBACK_PATH:
                    self.send_error(404)
                    return
                result.update({k: v[0] for k, v in parse_qs(parsed.query).items() if v})
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(_DONE_PAGE)))
                self.end_headers()
                self.wfile.write(_DONE_PAGE)
                done.set()

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug("callback: " + format, *args)

        try:
            server = http.server.HTTPServer(("127.0.0.1", self.port), Handler)
        except OSError as e:
            raise ConfigurationError(
                f"cannot listen on 127.0.0.1:{self.port} for the OAuth redirect ({e}); "
                "set LARK_OAUTH_REDIRECT_PORT or use --no-browser"
            ) from e
        server.timeout = 1
        deadline = time.monotonic() + self._timeout_s

        def serve() -> None:
            while not done.is_set() and time.monotonic() < deadline:
                server.handle_request()

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        try:
            _announce(authorize_url)
            if self._open_browser:
                try:
                    webbrowser.open(authorize_url)
                except webbrowser.Error:
                    logger.debug("could not open a browser", exc_info=True)
            print("Waiting for authorization...", file=sys.stderr)
            if not done.wait(self._timeout_s):
                raise LoginError("timed out waiting for authorization")
        finally:
            done.set()
            thread.join(timeout=2)
            server.server_close()
        return code_from_params(result, state)


class ManualCodeReceiver:
    """For machines without a local browser: the user pastes the redirected URL back."""

    def __init__(self, port: int):
        self.redirect_uri = _redirect_uri(port)

    def wait_for_code(self, authorize_url: str, state: str) -> str:
        _announce(authorize_url)
        raw = typer.prompt("Paste the full URL you were redirected to").strip()
        params = {k: v[0] for k, v in parse_qs(urlparse(raw).query).items() if v}
        return code_from_params(params, state)
