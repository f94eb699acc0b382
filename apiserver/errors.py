"""
Startup errors and process exit codes.

Every error raised while bringing the server up derives from StartupError,
which carries the exit code the entrypoint terminates with.
"""

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_STORAGE_ERROR = 3
EXIT_LISTEN_ERROR = 4
EXIT_STARTUP_TIMEOUT = 5


class StartupError(Exception):
    """Base class for failures that abort startup."""

    exit_code = 1
    stage = "startup"


class ConfigError(StartupError):
    """Invalid configuration value."""

    exit_code = EXIT_CONFIG_ERROR
    stage = "config"


class StorageConnectionError(StartupError):
    """Database could not be opened."""

    exit_code = EXIT_STORAGE_ERROR
    stage = "storage"


class ListenError(StartupError):
    """Listener could not bind its socket."""

    exit_code = EXIT_LISTEN_ERROR
    stage = "listen"


class StartupTimeoutError(StartupError):
    """Listener did not become ready in time."""

    exit_code = EXIT_STARTUP_TIMEOUT
    stage = "listen"
