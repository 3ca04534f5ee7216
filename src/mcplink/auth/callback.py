"""OAuth callback listener.

A small Starlette app served by uvicorn that receives the authorization
redirect and pushes ``(code, state)`` onto a queue. It knows nothing about
users or pending flows; the flow coordinator does the correlation.

Some authorization servers return the parameters in the URL fragment, which
browsers never send to the server. When the query string lacks them the
listener serves a page that copies the fragment into the query string and
reloads the same path.
"""

import asyncio
import socket
from typing import Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, PlainTextResponse, Response
from starlette.routing import Route

from ..util.log import Log, Logger
from .errors import CallbackListenerError
from .models import CallbackEvent

CALLBACK_PATH = "/callback"
HEALTH_PATH = "/health"

HTML_SUCCESS = """<!DOCTYPE html>
<html>
<head>
  <title>mcplink - Authorization Successful</title>
  <style>
    body { font-family: system-ui, -apple-system, sans-serif; display: flex; justify-content: center; align-items: center; height: 100vh; margin: 0; background: #1a1a2e; color: #eee; }
    .container { text-align: center; padding: 2rem; }
    h1 { color: #4ade80; margin-bottom: 1rem; }
    p { color: #aaa; }
  </style>
</head>
<body>
  <div class="container">
    <h1>Authorization Received</h1>
    <p>You can close this tab and return to the chat.</p>
  </div>
</body>
</html>"""

HTML_FRAGMENT_REDIRECT = """<!DOCTYPE html>
<html>
<head>
  <title>mcplink - Authenticating</title>
  <style>
    body { font-family: system-ui, -apple-system, sans-serif; display: flex; justify-content: center; align-items: center; height: 100vh; margin: 0; background: #1a1a2e; color: #eee; }
    .container { text-align: center; padding: 2rem; }
    p { color: #aaa; }
  </style>
</head>
<body>
  <div class="container">
    <h1>Completing authentication...</h1>
    <p id="status">Processing, please wait.</p>
  </div>
  <script>
    (function () {
      var query = new URLSearchParams(window.location.search);
      var hash = new URLSearchParams(window.location.hash.substring(1));
      var code = query.get("code") || hash.get("code");
      var state = query.get("state") || hash.get("state");
      if (code && state) {
        window.location.replace(
          window.location.pathname +
            "?code=" + encodeURIComponent(code) +
            "&state=" + encodeURIComponent(state)
        );
        return;
      }
      document.getElementById("status").textContent =
        "Authentication failed: missing code or state parameter. Please retry the login from the chat.";
    })();
  </script>
</body>
</html>"""


class CallbackListener:
    """HTTP endpoint that turns OAuth redirects into queued callback events."""

    def __init__(
        self,
        channel: "asyncio.Queue[CallbackEvent]",
        *,
        host: str = "127.0.0.1",
        port: int = 3000,
        public_host: str = "localhost",
        log: Optional[Logger] = None,
    ) -> None:
        self.channel = channel
        self.host = host
        self.port = port
        self.public_host = public_host
        self._log = log or Log.create({"service": "auth.callback"})
        self._server = None  # uvicorn.Server
        self._serve_task: Optional[asyncio.Task] = None
        self._socket: Optional[socket.socket] = None
        self.app = self._create_app()

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.public_host}:{self.port}{CALLBACK_PATH}"

    async def _handle_callback(self, request: Request) -> Response:
        code = request.query_params.get("code")
        state = request.query_params.get("state")

        if not code or not state:
            self._log.debug("callback without query parameters, serving fragment redirect", {
                "has_code": bool(code),
                "has_state": bool(state),
            })
            return HTMLResponse(HTML_FRAGMENT_REDIRECT)

        self._log.info("received oauth callback", {"state": state})
        self.channel.put_nowait(CallbackEvent(code=code, state=state))
        return HTMLResponse(HTML_SUCCESS)

    async def _handle_health(self, request: Request) -> Response:
        return PlainTextResponse("OK")

    def _create_app(self) -> Starlette:
        routes = [
            Route(CALLBACK_PATH, self._handle_callback, methods=["GET"]),
            Route(HEALTH_PATH, self._handle_health, methods=["GET"]),
        ]
        return Starlette(routes=routes)

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError as e:
            sock.close()
            raise CallbackListenerError(
                f"cannot bind OAuth callback listener to {self.host}:{self.port}: {e}"
            ) from e
        sock.listen(128)
        sock.setblocking(False)
        return sock

    async def start(self) -> None:
        """Bind the port and serve in the background.

        Raises:
            CallbackListenerError: If the port cannot be bound
        """
        if self._server is not None:
            return

        import uvicorn

        sock = self._bind()
        if self.port == 0:
            self.port = sock.getsockname()[1]

        config = uvicorn.Config(self.app, log_level="warning", lifespan="off")
        server = uvicorn.Server(config)
        self._socket = sock
        self._server = server
        self._serve_task = asyncio.create_task(server.serve(sockets=[sock]))

        while not server.started:
            if self._serve_task.done():
                task = self._serve_task
                sock.close()
                self._server = None
                self._serve_task = None
                self._socket = None
                error = "cancelled" if task.cancelled() else task.exception()
                raise CallbackListenerError(f"OAuth callback listener exited during startup: {error}")
            await asyncio.sleep(0.05)

        self._log.info("oauth callback listener started", {
            "host": self.host,
            "port": self.port,
            "redirect_uri": self.redirect_uri,
        })

    async def stop(self) -> None:
        """Stop the listener."""
        if self._server is None:
            return
        self._server.should_exit = True
        if self._serve_task is not None:
            await self._serve_task
        if self._socket is not None:
            self._socket.close()
        self._server = None
        self._serve_task = None
        self._socket = None
        self._log.info("oauth callback listener stopped")

    def is_running(self) -> bool:
        return self._server is not None
