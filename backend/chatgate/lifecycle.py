import asyncio
import socket
import time
from enum import Enum
from typing import Optional

import structlog
import uvicorn

from chatgate.core.config import Settings

logger = structlog.get_logger()


class LifecycleState(str, Enum):
    CREATED = "created"
    LISTENING = "listening"
    DRAINING = "draining"
    STOPPED = "stopped"


_ALLOWED = {
    LifecycleState.CREATED: {LifecycleState.LISTENING, LifecycleState.DRAINING, LifecycleState.STOPPED},
    LifecycleState.LISTENING: {LifecycleState.DRAINING, LifecycleState.STOPPED},
    LifecycleState.DRAINING: {LifecycleState.STOPPED},
    LifecycleState.STOPPED: set(),
}


class LifecycleError(RuntimeError):
    pass


class ServerState:
    """
    Process-wide server state. Written only by the LifecycleManager;
    connections just read `draining`.
    """

    def __init__(self):
        self.state = LifecycleState.CREATED
        self.socket: Optional[socket.socket] = None
        self.created_at = time.time()

    @property
    def draining(self) -> bool:
        return self.state in (LifecycleState.DRAINING, LifecycleState.STOPPED)

    def transition(self, new: LifecycleState) -> None:
        if new == self.state:
            return
        if new not in _ALLOWED[self.state]:
            raise LifecycleError(f"illegal transition {self.state.value} -> {new.value}")
        logger.debug("lifecycle_transition", old=self.state.value, new=new.value)
        self.state = new


class _GatewayServer(uvicorn.Server):
    """uvicorn server whose signal handling is routed to the LifecycleManager."""

    def __init__(self, config: uvicorn.Config, manager: "LifecycleManager"):
        super().__init__(config)
        self._manager = manager

    def handle_exit(self, sig, frame) -> None:
        self._manager.request_shutdown(sig)

    async def startup(self, sockets=None) -> None:
        await super().startup(sockets=sockets)
        if not self.should_exit:
            self._manager._on_started()


class LifecycleManager:
    """
    Owns the listening socket and the uvicorn server for the life of the
    process: Created -> Listening -> Draining -> Stopped.

    Shutdown is cooperative. `request_shutdown` only enqueues a request onto
    the event loop; the loop then stops accepting and lets in-flight responses
    (including event streams) finish, bounded by GRACEFUL_SHUTDOWN_TIMEOUT
    when one is configured.
    """

    def __init__(self, app, settings: Settings, server_state: Optional[ServerState] = None):
        self.app = app
        self.settings = settings
        self.state = server_state or getattr(app.state, "server_state", None) or ServerState()
        self._server: Optional[_GatewayServer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_requested = asyncio.Event()
        self._listening = asyncio.Event()
        self._pending_shutdown = False

    @property
    def port(self) -> Optional[int]:
        if self.state.socket is None:
            return None
        return self.state.socket.getsockname()[1]

    def bind(self) -> socket.socket:
        host, port = self.settings.HOST, self.settings.PORT
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as e:
            sock.close()
            self.state.transition(LifecycleState.STOPPED)
            raise LifecycleError(f"could not bind {host}:{port}: {e}") from e
        sock.set_inheritable(True)
        self.state.socket = sock
        return sock

    async def serve(self) -> None:
        if self.state.state != LifecycleState.CREATED:
            raise LifecycleError(f"server already {self.state.state.value}")

        self._loop = asyncio.get_running_loop()
        if self._pending_shutdown:
            self._shutdown_requested.set()

        sock = self.state.socket or self.bind()
        config = uvicorn.Config(
            self.app,
            host=self.settings.HOST,
            port=self.port or self.settings.PORT,
            log_config=None,
            access_log=self.settings.VERBOSE,
            timeout_graceful_shutdown=self.settings.GRACEFUL_SHUTDOWN_TIMEOUT,
        )
        self._server = _GatewayServer(config, self)

        watcher = asyncio.create_task(self._watch_shutdown())
        try:
            await self._server.serve(sockets=[sock])
        finally:
            watcher.cancel()
            sock.close()
            self.state.transition(LifecycleState.STOPPED)
            logger.info("server_stopped")

        if not self._server.started:
            raise LifecycleError("server failed to start")

    def run(self) -> None:
        """Blocks until the server has drained and stopped."""
        asyncio.run(self.serve())

    async def wait_listening(self) -> None:
        await self._listening.wait()

    def request_shutdown(self, sig=None) -> None:
        """Safe from signal handlers and other threads; only enqueues the request."""
        if self._loop is None:
            self._pending_shutdown = True
            return
        if self._shutdown_requested.is_set():
            # second signal while draining
            self._loop.call_soon_threadsafe(self._force_exit)
            return
        logger.info("shutdown_signal_received", signal=getattr(sig, "name", sig))
        self._loop.call_soon_threadsafe(self._shutdown_requested.set)

    def _on_started(self) -> None:
        self.state.transition(LifecycleState.LISTENING)
        self._listening.set()
        logger.info("server_listening", host=self.settings.HOST, port=self.port)

    def _force_exit(self) -> None:
        logger.warning("forced_shutdown")
        if self._server is not None:
            self._server.force_exit = True

    async def _watch_shutdown(self) -> None:
        await self._shutdown_requested.wait()
        in_flight = len(self._server.server_state.connections) if self._server else 0
        logger.info("server_draining", in_flight=in_flight)
        self.state.transition(LifecycleState.DRAINING)
        # uvicorn closes the listener at once and waits for open connections
        self._server.should_exit = True
