"""Background housekeeping: prunes the change log and purges expired signals.

Run one per database with the ``roomsync-housekeeper`` console script.
"""
import asyncio
import platform
import signal
from datetime import timedelta

from roomsync.config import Settings
from roomsync.core import RealtimeClient
from roomsync.errors import BackendError
from roomsync.logger import setup_logger
from roomsync.model import SignalMessage, utcnow

logger = setup_logger(name="RoomSync")


async def purge_expired_signals(client, signal_ttl):
    """Delete signal rows nobody consumed within signal_ttl seconds."""
    cutoff_time = utcnow() - timedelta(seconds=signal_ttl)
    removed = await client.delete(SignalMessage.__tablename__, SignalMessage.created_at < cutoff_time)
    if removed:
        logger.info(f"Purged {removed} expired signal(s)")
    return removed


async def run(settings, stop_event):
    server = RealtimeClient.from_settings(settings, is_server=True)
    await server.start()
    logger.info(f"Housekeeper running on {settings.db_path}. Press CTRL+C to stop.")
    try:
        while not stop_event.is_set():
            try:
                await purge_expired_signals(server, settings.signal_ttl)
            except BackendError as e:
                logger.error(f"Signal purge failed: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=settings.signal_ttl / 2)
            except asyncio.TimeoutError:
                pass
    finally:
        logger.info("Shutting down housekeeper...")
        await server.stop()
        server.dispose()


def main():
    settings = Settings.from_env()
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    stop_event = asyncio.Event()

    def shutdown():
        """Gracefully stop the housekeeper."""
        logger.info("Received termination signal. Shutting down...")
        stop_event.set()

    # Check the operating system
    if platform.system() != "Windows":
        # Add signal handlers for Unix-like systems
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown)

    try:
        loop.run_until_complete(run(settings, stop_event))
    except KeyboardInterrupt:
        # Windows has no loop signal handlers
        logger.info("Received KeyboardInterrupt. Shutting down...")
    finally:
        loop.close()
        logger.info("Event loop closed.")


if __name__ == "__main__":
    main()
