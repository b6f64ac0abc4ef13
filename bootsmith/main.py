from logging import Logger
from signal import SIGABRT, SIGINT, SIGQUIT, SIGTERM, signal
from threading import Event

from bootsmith.services.dhcp.server import DHCPServer
from bootsmith.services.logger.logger import MainLogger

logger: Logger = MainLogger.get_logger(service_name="MAIN")
shutdown_event = Event()


def shutdown_handler(signum: int, frame):
    """
    Handles app shutdown calls.
    Args:
        signum (int): The signal number received.
        frame (frame object): Current stack frame.
    """
    logger.info("Received %s.", signum)
    shutdown_event.set()


def register_shutdowns():
    """Registers shutdown handler for common interrupt signals"""
    signal(SIGINT, shutdown_handler)
    signal(SIGTERM, shutdown_handler)
    signal(SIGQUIT, shutdown_handler)
    signal(SIGABRT, shutdown_handler)


def main():
    logger.info("Starting services")
    register_shutdowns()

    DHCPServer.init()
    DHCPServer.start()

    shutdown_event.wait()
    logger.info("Stopping services.")

    DHCPServer.stop()

    logger.info("Shutdown complete.")


if __name__ == "__main__":
    main()
