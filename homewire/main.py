"""Main entry point for homewire.

Initializes logging in two phases (defaults then config-driven), builds
the plugin registry from the configuration, wires the Authorizer and
Dispatcher, and runs the Signal transport with graceful shutdown on
SIGTERM/SIGINT.

Startup is all-or-nothing: a missing owner id, a malformed settings
file or a duplicate command name stops the process with exit code 1
before the transport connects.

Key functions:
    build_gateway: Config -> (registry, dispatcher, transport).
    main: Async entry point.
    run: Synchronous wrapper for the ``homewire`` console script.
"""

import asyncio
import signal
import sys

import structlog

from .logging_config import setup_logging

__version__ = "1.0.0"


def build_gateway(config):
    """Construct every runtime component from a validated Config.

    Raises:
        ConfigurationError: A present plugin section is invalid.
        DuplicateCommand: Two plugins claim the same command name.
    """
    from .bot import SignalTransport
    from .dispatcher import Dispatcher
    from .registry import build_registry, default_factories
    from .security import Authorizer

    factories = default_factories()
    registry = build_registry(
        config.plugin_sections(name for name, _ in factories), factories
    )
    dispatcher = Dispatcher(registry, Authorizer(config.owner_id), config.invocation_timeout)
    transport = SignalTransport(dispatcher, config.signal_api_url, config.signal_account)
    transport.advertise(registry.all_descriptors())
    return registry, dispatcher, transport


async def main() -> int:
    """Main async entry point. Returns the process exit code."""
    # Phase 1: defaults, cache_logger_on_first_use=False
    setup_logging()
    logger = structlog.get_logger("homewire")

    logger.info("homewire_starting", version=__version__)

    # Import here to ensure logging is configured first
    from .config import Config
    from .exceptions import HomewireError

    try:
        config = Config()
        config.validate()
    except HomewireError as e:
        logger.error("startup_failed", error=str(e), error_type=type(e).__name__)
        return 1

    # Phase 2: reconfigure with real config, cache_logger_on_first_use=True
    setup_logging(config)

    try:
        registry, _, transport = build_gateway(config)
    except HomewireError as e:
        logger.error("startup_failed", error=str(e), error_type=type(e).__name__)
        return 1

    await registry.start_all()

    # Setup graceful shutdown
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def handle_shutdown(sig):
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle_shutdown, sig)
        except NotImplementedError:
            # Windows: add_signal_handler not supported.
            if sig == signal.SIGINT:
                signal.signal(
                    signal.SIGINT,
                    lambda s, f: handle_shutdown(signal.SIGINT),
                )

    exit_code = 0
    transport_task = asyncio.create_task(transport.run())
    shutdown_task = asyncio.create_task(shutdown_event.wait())
    try:
        done, _ = await asyncio.wait(
            {transport_task, shutdown_task},
            return_when=asyncio.FIRST_COMPLETED,
        )

        if transport_task in done:
            # The receive loop only returns on its own when it cannot
            # continue (no account, or an unexpected error).
            exit_code = 1
            error = transport_task.exception()
            if error is not None:
                logger.error(
                    "transport_exited",
                    error=str(error),
                    error_type=type(error).__name__,
                )
            else:
                logger.error("transport_exited")
        else:
            transport_task.cancel()
            try:
                await transport_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("gateway_error", error=str(e))
                exit_code = 1
    finally:
        shutdown_task.cancel()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass
        await transport.stop()
        await registry.stop_all()
        logger.info("homewire_stopped", exit_code=exit_code)
    return exit_code

def run():
    """Synchronous entry point for the ``homewire`` console script."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
