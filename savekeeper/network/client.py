import socket
import logging
import threading

from typing import Callable, List, Optional

from savekeeper.network.message import (
    MessageFormatError,
    MessageReader,
    MessageTypes,
    NetworkMessage,
)
from savekeeper.network.server import DEFAULT_PORT


class NetworkClient:
    """
    Remote control client.

    A read thread receives pushes from the server and a timer sends a Ping
    every `ping_interval` seconds. When the connection drops and
    `auto_reconnect` is set, reconnection is attempted with exponential
    backoff (1s, 2s, 4s ... capped at `max_backoff`).
    """

    read_timeout = 1.0

    def __init__(self, host: str = "127.0.0.1", port: int = DEFAULT_PORT,
                 auto_reconnect: bool = False, connect_timeout: float = 5.0,
                 ping_interval: float = 10.0, max_reconnect_attempts: int = 10,
                 max_backoff: float = 30.0):
        self.host = host
        self.port = port
        self.auto_reconnect = auto_reconnect
        self.connect_timeout = connect_timeout
        self.ping_interval = ping_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.max_backoff = max_backoff

        # Callbacks
        self.on_job_states: Optional[Callable[[List[dict]], None]] = None
        self.on_connection_changed: Optional[Callable[[bool], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None
        self.on_message: Optional[Callable[[NetworkMessage], None]] = None

        self.job_states: List[dict] = []
        self._sock: Optional[socket.socket] = None
        self._send_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._connected = False
        self._read_thread: Optional[threading.Thread] = None
        self._ping_timer: Optional[threading.Timer] = None
        self._reconnect_thread: Optional[threading.Thread] = None
        self._closing = threading.Event()

    @property
    def is_connected(self) -> bool:
        with self._state_lock:
            return self._connected

    # =============================================================================
    # CONNECTION
    # =============================================================================
    def connect(self) -> bool:
        if self.is_connected:
            return True

        self._closing.clear()
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.connect_timeout)
        except OSError as e:
            logging.warning(f"[NetworkClient] Could not connect to {self.host}:{self.port}: {e}")
            return False

        sock.settimeout(self.read_timeout)
        with self._state_lock:
            self._sock = sock
            self._connected = True

        self._read_thread = threading.Thread(target=self._read_loop, args=(sock,),
                                             name="network-client-read", daemon=True)
        self._read_thread.start()
        self._schedule_ping()

        logging.info(f"[NetworkClient] Connected to {self.host}:{self.port}")
        self._fire(self.on_connection_changed, True)
        return True

    def disconnect(self):
        """Close the connection without reconnecting."""
        self._closing.set()
        self._close_socket()
        if self._read_thread is not None and self._read_thread is not threading.current_thread():
            self._read_thread.join(timeout=5)
        if self._reconnect_thread is not None and self._reconnect_thread is not threading.current_thread():
            self._reconnect_thread.join(timeout=5)

    def _close_socket(self) -> bool:
        """Mark disconnected; True if this call performed the transition."""
        self._cancel_ping()
        with self._state_lock:
            sock, self._sock = self._sock, None
            was_connected = self._connected
            self._connected = False

        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()

        if was_connected:
            logging.info(f"[NetworkClient] Disconnected from {self.host}:{self.port}")
            self._fire(self.on_connection_changed, False)
        return was_connected

    def _handle_connection_lost(self):
        if not self._close_socket():
            return
        if self.auto_reconnect and not self._closing.is_set():
            self._reconnect_thread = threading.Thread(target=self._reconnect_loop,
                                                      name="network-client-reconnect", daemon=True)
            self._reconnect_thread.start()

    def _reconnect_loop(self):
        delay = 1.0
        for attempt in range(1, self.max_reconnect_attempts + 1):
            logging.info(f"[NetworkClient] Reconnecting in {delay:.0f}s (attempt {attempt}/{self.max_reconnect_attempts})")
            if self._closing.wait(delay):
                return
            if self.connect():
                return
            delay = min(delay * 2, self.max_backoff)
        logging.error(f"[NetworkClient] Giving up after {self.max_reconnect_attempts} reconnection attempts")
        self._fire(self.on_error, "Connection lost and reconnection failed")

    # =============================================================================
    # SENDING
    # =============================================================================
    def send(self, message: NetworkMessage) -> bool:
        with self._state_lock:
            sock = self._sock if self._connected else None
        if sock is None:
            logging.info(f"[NetworkClient] Not connected, {message.type} not sent")
            return False

        try:
            with self._send_lock:
                sock.sendall(message.encode())
            return True
        except OSError as e:
            logging.warning(f"[NetworkClient] Send failed: {e}")
            self._handle_connection_lost()
            return False

    def send_command(self, message_type: str, job_names: List[str]) -> bool:
        if not self.is_connected:
            logging.info(f"[NetworkClient] Not connected, {message_type} for {job_names} not sent")
            return False
        return self.send(NetworkMessage.command(message_type, job_names))

    def request_status(self) -> bool:
        return self.send(NetworkMessage.status_request())

    def _schedule_ping(self):
        if self.ping_interval <= 0 or self._closing.is_set():
            return
        timer = threading.Timer(self.ping_interval, self._ping)
        timer.daemon = True
        self._ping_timer = timer
        timer.start()

    def _ping(self):
        if self.is_connected and self.send(NetworkMessage.ping()):
            self._schedule_ping()

    def _cancel_ping(self):
        timer, self._ping_timer = self._ping_timer, None
        if timer is not None:
            timer.cancel()

    # =============================================================================
    # RECEIVING
    # =============================================================================
    def _read_loop(self, sock: socket.socket):
        reader = MessageReader(sock)
        try:
            while not self._closing.is_set():
                try:
                    line = reader.read_line()
                except socket.timeout:
                    continue
                except MessageFormatError as e:
                    logging.warning(f"[NetworkClient] Dropped oversized message: {e}")
                    continue

                if line is None:
                    break
                if not line.strip():
                    continue
                try:
                    message = NetworkMessage.decode(line)
                except MessageFormatError as e:
                    logging.warning(f"[NetworkClient] Malformed message from server: {e}")
                    continue
                self._dispatch(message)
        except OSError as e:
            if not self._closing.is_set():
                logging.info(f"[NetworkClient] Read failed: {e}")
        finally:
            if self._sock is sock:
                self._handle_connection_lost()

    def _dispatch(self, message: NetworkMessage):
        if message.type == MessageTypes.JOB_STATUS:
            self.job_states = message.job_states()
            self._fire(self.on_job_states, self.job_states)
        elif message.type == MessageTypes.ERROR:
            text = message.payload()
            logging.warning(f"[NetworkClient] Server error: {text}")
            self._fire(self.on_error, str(text))
        elif message.type == MessageTypes.PING:
            self.send(NetworkMessage.pong())
        self._fire(self.on_message, message)

    @staticmethod
    def _fire(callback, *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logging.error(f"[NetworkClient] Callback {callback!r} failed: {e}", exc_info=True)
