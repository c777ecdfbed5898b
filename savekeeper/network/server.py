import socket
import logging
import threading

from typing import Dict, List, Optional, Tuple

from savekeeper.events import EventManager, JobEventManager
from savekeeper.network.message import (
    MessageFormatError,
    MessageReader,
    MessageTypes,
    NetworkMessage,
)

DEFAULT_PORT = 9000


class ClientConnection:
    """One accepted connection: its socket, peer address and a send lock."""

    def __init__(self, sock: socket.socket, address: Tuple):
        self.sock = sock
        self.address = address
        self.send_lock = threading.Lock()
        self.closed = False

    @property
    def label(self) -> str:
        return f"{self.address[0]}:{self.address[1]}" if len(self.address) >= 2 else str(self.address)

    def send(self, message: NetworkMessage) -> bool:
        with self.send_lock:
            if self.closed:
                return False
            try:
                self.sock.sendall(message.encode())
                return True
            except OSError as e:
                logging.debug(f"[SocketServer] Send to {self.label} failed: {e}")
                return False

    def close(self):
        with self.send_lock:
            if self.closed:
                return
            self.closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()


class SocketServer:
    """
    TCP server exposing job states and job control.

    On accept the full job state list is pushed, then each line received is
    dispatched: status requests are answered with the list, job commands are
    forwarded to the EventManager and their effect arrives through the state
    pushes. Registered as a JobEventManager listener, every published state
    change is pushed to all connected clients.
    """

    accept_timeout = 0.5
    read_timeout = 1.0

    def __init__(self, job_events: JobEventManager, event_manager: EventManager,
                 host: str = "0.0.0.0", port: int = DEFAULT_PORT):
        self.job_events = job_events
        self.event_manager = event_manager
        self.host = host
        self.port = port

        self._server_sock: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._clients: Dict[int, ClientConnection] = {}
        self._clients_lock = threading.Lock()
        self._client_threads: List[threading.Thread] = []
        self.cancel_event = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._accept_thread is not None and self._accept_thread.is_alive()

    def client_count(self) -> int:
        with self._clients_lock:
            return len(self._clients)

    # =============================================================================
    # LIFECYCLE
    # =============================================================================
    def start(self):
        if self.is_running:
            return

        self.cancel_event.clear()
        srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            srv.bind((self.host, self.port))
            srv.listen(16)
        except OSError:
            srv.close()
            raise
        srv.settimeout(self.accept_timeout)

        self._server_sock = srv
        # Port 0 asks the OS for a free port
        self.port = srv.getsockname()[1]

        self.job_events.add_listener(self)
        self._accept_thread = threading.Thread(target=self._accept_loop, name="socket-accept", daemon=True)
        self._accept_thread.start()
        logging.info(f"Socket server listening on {self.host}:{self.port}")

    def stop(self):
        self.cancel_event.set()
        self.job_events.remove_listener(self)

        if self._server_sock is not None:
            try:
                self._server_sock.close()
            except OSError as e:
                logging.debug(f"[SocketServer] Error closing listening socket: {e}")
            self._server_sock = None

        with self._clients_lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()

        if self._accept_thread is not None and self._accept_thread is not threading.current_thread():
            self._accept_thread.join(timeout=5)
        self._accept_thread = None
        for thread in self._client_threads:
            thread.join(timeout=5)
        self._client_threads = []
        logging.info("Socket server stopped")

    def _accept_loop(self):
        while not self.cancel_event.is_set():
            srv = self._server_sock
            if srv is None:
                break
            try:
                conn, address = srv.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self.cancel_event.is_set():
                    logging.error(f"[SocketServer] Accept failed: {e}")
                break

            client = ClientConnection(conn, address)
            thread = threading.Thread(target=self._serve, args=(client,),
                                      name=f"socket-client-{client.label}", daemon=True)
            self._client_threads = [t for t in self._client_threads if t.is_alive()]
            self._client_threads.append(thread)
            thread.start()

    # =============================================================================
    # CONNECTION
    # =============================================================================
    def _serve(self, client: ClientConnection):
        logging.info(f"[SocketServer] Client connected: {client.label}")
        with self._clients_lock:
            self._clients[id(client)] = client

        try:
            client.sock.settimeout(self.read_timeout)
            self._send_states(client)

            reader = MessageReader(client.sock)
            while not self.cancel_event.is_set():
                try:
                    line = reader.read_line()
                except socket.timeout:
                    continue
                except MessageFormatError as e:
                    client.send(NetworkMessage.error(str(e)))
                    continue

                if line is None:
                    break
                if not line.strip():
                    continue
                self._handle_line(client, line)
        except OSError as e:
            if not self.cancel_event.is_set():
                logging.info(f"[SocketServer] Connection {client.label} ended: {e}")
        finally:
            with self._clients_lock:
                self._clients.pop(id(client), None)
            client.close()
            logging.info(f"[SocketServer] Client disconnected: {client.label}")

    def _handle_line(self, client: ClientConnection, line: bytes):
        try:
            message = NetworkMessage.decode(line)
        except MessageFormatError as e:
            logging.warning(f"[SocketServer] Malformed message from {client.label}: {e}")
            client.send(NetworkMessage.error(f"Malformed message: {e}"))
            return

        logging.debug(f"[SocketServer] {message.type} from {client.label}")
        self.dispatch(client, message)

    def dispatch(self, client: ClientConnection, message: NetworkMessage):
        message_type = message.type

        if message_type == MessageTypes.JOB_STATUS_REQUEST:
            self._send_states(client)
        elif message_type in MessageTypes.COMMANDS:
            try:
                names = message.job_names()
            except MessageFormatError as e:
                client.send(NetworkMessage.error(str(e)))
                return
            if not names:
                client.send(NetworkMessage.error(f"{message_type} requires at least one job name"))
                return
            self._forward_command(message_type, names)
        elif message_type == MessageTypes.PING:
            client.send(NetworkMessage.pong())
        elif message_type == MessageTypes.PONG:
            pass
        else:
            client.send(NetworkMessage.error(f"Unknown message type: {message_type}"))

    def _forward_command(self, message_type: str, names: List[str]):
        if message_type == MessageTypes.START_JOB:
            self.event_manager.launch_jobs(names)
        elif message_type == MessageTypes.PAUSE_JOB:
            self.event_manager.pause_jobs(names)
        elif message_type == MessageTypes.RESUME_JOB:
            self.event_manager.resume_jobs(names)
        elif message_type == MessageTypes.STOP_JOB:
            self.event_manager.stop_jobs(names)

    # =============================================================================
    # PUSH
    # =============================================================================
    def _send_states(self, client: ClientConnection):
        client.send(NetworkMessage.status_push(self.job_events.get_all_job_states()))

    def broadcast(self, message: NetworkMessage):
        with self._clients_lock:
            clients = list(self._clients.values())
        for client in clients:
            client.send(message)

    def on_job_state_changed(self, state):
        if self.client_count() == 0:
            return
        self.broadcast(NetworkMessage.status_push(self.job_events.get_all_job_states()))
