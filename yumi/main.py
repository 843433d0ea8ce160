"""Main entry point for yumi.

Initializes logging in two phases (defaults then config-driven),
creates the YumiBot, and runs the async event loop with graceful
shutdown on SIGTERM/SIGINT. Stray task exceptions that reach the
event loop are logged and the process keeps running.

Key functions:
    main: Async entry point -- sets up logging, config, bot, and
        signal handlers, then runs the event loop.
    run: Synchronous wrapper that calls asyncio.run(main()).
"""

import asyncio
import signal

import structlog

from . import __version__
from .logging_config import setup_logging


def install_exception_handler(loop: asyncio.AbstractEventLoop) -> None:
    """Log unhandled exceptions from tasks and callbacks instead of crashing."""
    logger = structlog.get_logger("yumi.bot")

    def handle_exception(loop, context):
        exc = context.get("exception")
        logger.error(
            "unhandled_loop_exception",
            message=context.get("message"),
            error=str(exc) if exc else None,
            exc_type=type(exc).__name__ if exc else None,
        )

    loop.set_exception_handler(handle_exception)


async def main():
    """Main async entry point."""
    # Phase 1: defaults, cache_logger_on_first_use=False
    setup_logging()
    logger = structlog.get_logger("yumi")

    logger.info("yumi_starting", version=__version__)

    # Import here to ensure logging is configured first
    from .bot import YumiBot
    from .config import get_config

    config = get_config()
    config.validate()

    # Phase 2: reconfigure with real config, cache_logger_on_first_use=True
    setup_logging(config)

    bot = YumiBot(config)

    # Setup graceful shutdown
    loop = asyncio.get_running_loop()
    install_exception_handler(loop)
    shutdown_event = asyncio.Event()

    def handle_shutdown(sig):
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle_shutdown, sig)
        except NotImplementedError:
            # Windows: add_signal_handler not supported.
            # Fall back to signal.signal for SIGINT (Ctrl+C).
            if sig == signal.SIGINT:
                signal.signal(
                    signal.SIGINT,
                    lambda s, f: handle_shutdown(signal.SIGINT),
                )

    # Run the bot
    try:
        bot_task = asyncio.create_task(bot.run())

        # Wait for shutdown signal
        await shutdown_event.wait()

        # Cancel the bot task
        bot_task.cancel()
        try:
            await bot_task
        except asyncio.CancelledError:
            pass

    except Exception as e:
        logger.error("bot_error", error=str(e))
        raise
    finally:
        await bot.stop()
        logger.info("yumi_stopped")


def run():
    """Synchronous entry point for the ``yumi`` console script."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
