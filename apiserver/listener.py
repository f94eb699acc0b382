"""
HTTP listener backed by uvicorn.

Exposes the listen(port, on_ready) operation used by the bootstrap:
on_ready is called exactly once, after the socket is bound and accepting
connections, and the returned awaitable completes when the server stops.
"""

import asyncio
import contextlib
import logging
from typing import Callable, Iterator, List, Optional

import uvicorn

from apiserver.errors import ListenError


logger = logging.getLogger(__name__)


class ReadyServer(uvicorn.Server):
    """
    uvicorn server that reports when its sockets are bound.

    Signal handling is left to the owner of the event loop, so the
    server neither installs nor re-raises SIGINT/SIGTERM itself.
    """

    def __init__(self, config: uvicorn.Config, on_ready: Callable[[], None]):
        super().__init__(config)
        self._on_ready = on_ready
        self._ready_fired = False

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        pass

    async def startup(self, sockets: Optional[List] = None) -> None:
        try:
            await super().startup(sockets=sockets)
        except SystemExit as e:
            # uvicorn exits the process when it cannot bind
            raise ListenError(
                f"Could not bind {self.config.host}:{self.config.port}"
            ) from e

        if not self.started:
            lifespan = getattr(self, 'lifespan', None)
            if lifespan is not None and lifespan.should_exit:
                raise ListenError(
                    f"Application lifespan startup failed, not binding "
                    f"{self.config.host}:{self.config.port}"
                )
            return

        if not self._ready_fired:
            self._ready_fired = True
            self._on_ready()


class UvicornListener:
    """
    Serves an ASGI application on a TCP port.

    Each listener binds at most once.
    """

    def __init__(self, app, host: str = "0.0.0.0", log_level: str = "info"):
        """
        Initialize listener.

        Args:
            app: ASGI application to serve
            host: Host to bind to (default: 0.0.0.0)
            log_level: uvicorn log level
        """
        self.app = app
        self.host = host
        self.log_level = log_level.lower()
        self.server: Optional[ReadyServer] = None

    def listen(self, port: int, on_ready: Callable[[], None]) -> asyncio.Task:
        """
        Bind and start serving in the background.

        Args:
            port: Port to bind to
            on_ready: Called once the socket accepts connections

        Returns:
            Task that completes when the server exits, or fails with
            ListenError if the port cannot be bound

        Raises:
            RuntimeError: If listen() was already called
        """
        if self.server is not None:
            raise RuntimeError("Listener is already serving")

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=port,
            log_level=self.log_level,
            log_config=None,  # log through the process logging setup
            lifespan="on"
        )
        self.server = ReadyServer(config, on_ready)
        logger.debug(f"Binding listener on {self.host}:{port}")
        return asyncio.create_task(self.server.serve(), name=f"listener:{port}")

    def stop(self):
        """Ask the server to finish in-flight requests and exit."""
        if self.server is not None:
            self.server.should_exit = True
