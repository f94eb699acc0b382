"""
Bootstrap coordinator for the API server.

Orders the two startup side effects:
1. Connect storage
2. Bind the HTTP listener

and signals readiness once the listener accepts connections. With
wait_for_database enabled the listener is only bound after storage is
connected; otherwise both are issued back to back and a later storage
failure terminates the serving process.
"""

import asyncio
import logging
import signal
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from apiserver.app import attach_database, create_app
from apiserver.config import ServerConfig
from apiserver.database import Database, connect_db
from apiserver.errors import (
    ListenError,
    StartupError,
    StartupTimeoutError,
    StorageConnectionError,
)
from apiserver.listener import UvicornListener


logger = logging.getLogger(__name__)

# Readiness is reported on its own logger so LOG_LEVEL cannot hide it
READY_LOGGER = "apiserver.ready"
READY_MESSAGE = "Server is running on port {port}"

ready_logger = logging.getLogger(READY_LOGGER)


class StartupState(str, Enum):
    """Bootstrap lifecycle state."""
    INITIALIZING = "initializing"
    SERVING = "serving"
    FAILED = "failed"


class Listener(Protocol):
    """Request router contract: bind a port and report readiness once."""

    def listen(self, port: int, on_ready: Callable[[], None]) -> Awaitable: ...

    def stop(self) -> None: ...


Connector = Callable[[ServerConfig], Awaitable[Database]]


class Bootstrapper:
    """
    Brings the server up and tracks its startup state.

    Usage:
        bootstrapper = Bootstrapper(config)
        await bootstrapper.start()
        await bootstrapper.wait_until_ready()
        await bootstrapper.serve()
    """

    def __init__(
        self,
        config: ServerConfig,
        connect: Optional[Connector] = None,
        listener: Optional[Listener] = None,
        app=None
    ):
        """
        Initialize bootstrapper.

        Args:
            config: Server configuration
            connect: Storage connector (default: connect_db)
            listener: Request router listener (default: uvicorn serving app)
            app: Application that receives the database (default: new app)
        """
        self.config = config
        self.connect = connect or connect_db
        self.app = app if app is not None else create_app()
        self.listener = listener or UvicornListener(
            self.app, host=config.host, log_level=config.log_level
        )

        self.state = StartupState.INITIALIZING
        self.database: Optional[Database] = None

        self._started = False
        self._stop_requested = False
        self._ready: Optional[asyncio.Future] = None
        self._failure: Optional[asyncio.Future] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._listen_task: Optional[asyncio.Future] = None

    # Startup

    async def start(self):
        """
        Issue storage connect and listener bind, in that order.

        Returns once the listener has been asked to bind, without waiting
        for the bind itself.

        Raises:
            StorageConnectionError: If storage fails while wait_for_database is set
            RuntimeError: If start() was already called
        """
        if self._started:
            raise RuntimeError("Bootstrapper already started")
        self._started = True

        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._failure = loop.create_future()

        logger.info(f"Starting server: {self.config!r}")

        if self.config.wait_for_database:
            self._connect_task = asyncio.ensure_future(self.connect(self.config))
            try:
                database = await self._connect_task
            except asyncio.CancelledError:
                if not self._stop_requested:
                    raise
                logger.info("Startup stopped before storage connected")
                return
            except StorageConnectionError as e:
                self._fail(e)
                raise
            except Exception as e:
                error = StorageConnectionError(f"Storage connection failed: {e!r}")
                self._fail(error)
                raise error from e
            self._on_database(database)
            if self._stop_requested:
                return
        else:
            self._connect_task = asyncio.ensure_future(self.connect(self.config))
            self._connect_task.add_done_callback(self._on_connect_done)

        self._listen_task = asyncio.ensure_future(
            self.listener.listen(self.config.port, self._on_listening)
        )
        self._listen_task.add_done_callback(self._on_listen_done)

    def _on_database(self, database: Database):
        self.database = database
        attach_database(self.app, database)

    def _on_connect_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            self._on_database(task.result())
            return
        if not isinstance(exc, StorageConnectionError):
            error = StorageConnectionError(f"Storage connection failed: {exc!r}")
            error.__cause__ = exc
            exc = error
        self._fail(exc)
        self.listener.stop()

    def _on_listening(self):
        if self._ready.done():
            return
        self.state = StartupState.SERVING
        ready_logger.info(READY_MESSAGE.format(port=self.config.port))
        self._ready.set_result(self.config.port)

    def _on_listen_done(self, task: asyncio.Future):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            if not isinstance(exc, StartupError):
                error = ListenError(f"Listener failed: {exc!r}")
                error.__cause__ = exc
                exc = error
            self._fail(exc)
        elif not self._ready.done():
            self._fail(ListenError("Listener exited before accepting connections"))

    def _fail(self, error: StartupError):
        if self._failure.done():
            return
        self.state = StartupState.FAILED
        logger.error(f"Startup failed ({error.stage}): {error}")
        self._failure.set_result(error)
        if not self._ready.done():
            self._ready.set_exception(error)
            # Retrieved through wait_until_ready() or serve()
            self._ready.exception()

    # Readiness and serving

    @property
    def ready(self) -> asyncio.Future:
        """
        Single-shot future resolved with the bound port.

        Cancelled when a stop is requested before the listener is ready.
        """
        if self._ready is None:
            raise RuntimeError("Bootstrapper not started")
        return self._ready

    async def wait_until_ready(self, timeout: Optional[float] = None) -> Optional[int]:
        """
        Wait until the listener accepts connections.

        Args:
            timeout: Seconds to wait (default: config.startup_timeout)

        Returns:
            Bound port, or None if a stop was requested first

        Raises:
            StartupError: If startup failed or timed out
        """
        if timeout is None:
            timeout = self.config.startup_timeout
        try:
            return await asyncio.wait_for(asyncio.shield(self.ready), timeout)
        except asyncio.CancelledError:
            if self._stop_requested and self.ready.cancelled():
                return None
            raise
        except asyncio.TimeoutError:
            error = StartupTimeoutError(
                f"Listener not ready on port {self.config.port} after {timeout}s"
            )
            self._fail(error)
            self.listener.stop()
            raise error from None

    async def serve(self):
        """
        Run until the listener exits.

        Raises:
            StartupError: If storage or the listener failed
        """
        if self._listen_task is None:
            if self._stop_requested:
                return
            raise RuntimeError("Bootstrapper not started")

        await asyncio.wait(
            {self._listen_task, self._failure},
            return_when=asyncio.FIRST_COMPLETED
        )
        if self._listen_task.done():
            self._on_listen_done(self._listen_task)
        if self._failure.done():
            self.listener.stop()
            # Let the listener finish its shutdown before reporting
            await asyncio.gather(self._listen_task, return_exceptions=True)
            raise self._failure.result()

        await self._listen_task

    def request_stop(self, sig: Optional[signal.Signals] = None):
        """
        Ask the server to stop.

        Safe to call at any point of startup; storage that is still
        connecting is abandoned and the listener is not bound.

        Args:
            sig: Signal that triggered the stop, for logging
        """
        if sig is not None:
            logger.info(f"Received signal {sig.name}, initiating shutdown...")
        if self._stop_requested:
            return
        self._stop_requested = True

        if self._ready is not None and not self._ready.done():
            self._ready.cancel()
        if (
            self._listen_task is None
            and self._connect_task is not None
            and not self._connect_task.done()
        ):
            self._connect_task.cancel()
        self.listener.stop()

    async def shutdown(self):
        """Stop the listener and close storage."""
        logger.info("Shutting down server...")
        self.listener.stop()

        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
            await asyncio.gather(self._connect_task, return_exceptions=True)
        if self._listen_task is not None and not self._listen_task.done():
            await asyncio.gather(self._listen_task, return_exceptions=True)

        if self.database is not None:
            self.database.close()
            attach_database(self.app, None)
        logger.info("Server shutdown complete")


async def run(config: ServerConfig, bootstrapper: Optional[Bootstrapper] = None):
    """
    Start the server and serve until it exits.

    Args:
        config: Server configuration
        bootstrapper: Optional preconfigured bootstrapper

    Raises:
        StartupError: If startup or serving failed
    """
    if bootstrapper is None:
        bootstrapper = Bootstrapper(config)

    loop = asyncio.get_running_loop()
    stop_signals = (signal.SIGINT, signal.SIGTERM)
    for sig in stop_signals:
        loop.add_signal_handler(sig, bootstrapper.request_stop, sig)

    try:
        await bootstrapper.start()
        if config.startup_timeout is not None:
            await bootstrapper.wait_until_ready()
        await bootstrapper.serve()
    finally:
        for sig in stop_signals:
            loop.remove_signal_handler(sig)
        await bootstrapper.shutdown()
