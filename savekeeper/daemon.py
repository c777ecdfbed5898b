"""
SaveKeeper daemon.

Loads the configured backup jobs, restores interrupted runs from the state
file, serves the remote control protocol over TCP and watches for the
business application. SIGINT/SIGTERM shut everything down; running jobs
finish their current file and are left Paused so the next start can resume
them.
"""
import os
import sys
import signal
import logging
import argparse
import threading

from savekeeper.backup_manager import BackupManager
from savekeeper.events import EventManager
from savekeeper.network.server import SocketServer
from savekeeper.settings import AppSettings

try:
    import setproctitle
except ImportError:
    setproctitle = None  # type: ignore


def setup_logging(log_file_path: str, level: str = "INFO"):
    """Configure the root logger once: a log file plus stdout."""
    os.makedirs(os.path.dirname(log_file_path), exist_ok=True)
    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s')
    logger = logging.getLogger()
    if not logger.handlers:  # Avoid adding handlers multiple times
        logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

        # File Handler (INFO level)
        file_handler = logging.FileHandler(log_file_path)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.INFO)
        logger.addHandler(file_handler)

        # Console Handler
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        console_handler.setLevel(logging.DEBUG)
        logger.addHandler(console_handler)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="savekeeper-daemon", description="Run the SaveKeeper backup daemon.")
    parser.add_argument("--config", help="Path to the configuration file")
    parser.add_argument("--data-dir", help="Directory holding jobs, state and transfer logs")
    parser.add_argument("--host", help="Address the control server listens on")
    parser.add_argument("--port", type=int, help="Port the control server listens on")
    parser.add_argument("--run", nargs="*", metavar="JOB",
                        help="Start these jobs right away (all jobs when no name is given)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    settings = AppSettings(conf_path=args.config, data_dir=args.data_dir)
    settings.ensure_directories()
    setup_logging(settings.LOG_FILE_PATH, settings.get_setting('LogLevel'))

    try:
        # Set process title for easier identification
        if setproctitle:
            setproctitle.setproctitle(f'{settings.APP_NAME} - daemon')
    except Exception:
        pass  # Optional dependency

    shutdown_event = threading.Event()

    def _on_signal(sig, frame):
        logging.info(f"Signal {sig} received: requesting graceful shutdown.")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    manager = BackupManager.create(settings)
    manager.load_jobs()

    event_manager = EventManager()
    event_manager.add_command_listener(manager)

    host = args.host or settings.get_setting('ServerHost')
    port = args.port if args.port is not None else int(settings.get_setting('ServerPort'))
    server = SocketServer(manager.events, event_manager, host=host, port=port)

    try:
        server.start()
        manager.start_business_monitoring()

        if args.run is not None:
            manager.execute_jobs_async(args.run or None)

        logging.info(f"{settings.APP_NAME} {settings.APP_VERSION} daemon running "
                     f"({len(manager.get_jobs())} job(s), control port {server.port})")
        while not shutdown_event.wait(1.0):
            pass
    except OSError as e:
        logging.critical(f"Could not start the control server on {host}:{port}: {e}")
        return 1
    except Exception as e:
        # Full exception logging for unhandled errors
        logging.critical(f"Unhandled exception in daemon main: {e}", exc_info=True)
        return 1
    finally:
        logging.info("Daemon shutting down (begin cleanup).")
        try:
            manager.shutdown(timeout=30)
        except Exception as e:
            logging.warning(f"Error while stopping jobs: {e}")
        server.stop()
        logging.info("Daemon cleanup complete.")

    return 0


if __name__ == "__main__":
    sys.exit(main())
