"""Command-line remote control: `savekeeper-remote [--host H] [--port P] status|start|pause|resume|stop [job ...]`."""
import sys
import logging
import argparse
import threading

from savekeeper.network.client import NetworkClient
from savekeeper.network.message import MessageTypes
from savekeeper.network.server import DEFAULT_PORT

COMMANDS = {
    "start": MessageTypes.START_JOB,
    "pause": MessageTypes.PAUSE_JOB,
    "resume": MessageTypes.RESUME_JOB,
    "stop": MessageTypes.STOP_JOB,
}


def format_state(state: dict) -> str:
    line = (f"{state.get('Name', '?'):<20} {state.get('State', '?'):<10} "
            f"{float(state.get('ProgressPercentage') or 0):6.2f}%  "
            f"{state.get('RemainingFiles', 0)}/{state.get('TotalFiles', 0)} files left")
    if state.get('ErrorMessage'):
        line += f"  ({state['ErrorMessage']})"
    return line


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="savekeeper-remote", description="Control a running SaveKeeper daemon.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--wait", type=float, default=2.0,
                        help="Seconds to wait for state updates after sending")
    parser.add_argument("command", choices=["status"] + sorted(COMMANDS))
    parser.add_argument("jobs", nargs="*")
    return parser.parse_args(argv)


def run(args, client: NetworkClient, out=sys.stdout) -> int:
    if args.command != "status" and not args.jobs:
        print(f"'{args.command}' needs at least one job name", file=sys.stderr)
        return 2

    received = threading.Event()
    errors = []

    def _on_states(states):
        received.set()

    def _on_error(text):
        errors.append(text)
        received.set()

    client.on_job_states = _on_states
    client.on_error = _on_error

    if not client.connect():
        print(f"Could not connect to {client.host}:{client.port}", file=sys.stderr)
        return 1

    try:
        # The server pushes the state list on connect
        received.wait(args.wait)
        if args.command == "status":
            received.clear()
            client.request_status()
            received.wait(args.wait)
        else:
            received.clear()
            client.send_command(COMMANDS[args.command], args.jobs)
            received.wait(args.wait)
    finally:
        client.disconnect()

    for text in errors:
        print(f"error: {text}", file=sys.stderr)
    for state in client.job_states:
        print(format_state(state), file=out)
    return 1 if errors else 0


def main(argv=None):
    logging.basicConfig(level=logging.WARNING, format='%(asctime)s [%(levelname)s] %(message)s')
    args = parse_args(argv)
    client = NetworkClient(args.host, args.port, ping_interval=0)
    return run(args, client)


if __name__ == "__main__":
    sys.exit(main())
