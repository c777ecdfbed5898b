import json
import socket
import logging

from datetime import datetime


class NotificationSender:
    """
    Sends human-readable notifications to the desktop UI as JSON lines over
    its UNIX socket. When no UI is listening the message is dropped.
    """

    def __init__(self, socket_path: str, timeout: float = 2):
        self.socket_path = socket_path
        self.timeout = timeout

    def send_message(self, message_data: dict) -> bool:
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(self.timeout)
                sock.connect(self.socket_path)
                sock.sendall((json.dumps(message_data) + "\n").encode("utf-8"))
            return True
        except socket.timeout:
            logging.debug(f"[NotificationSender] Socket timeout after {self.timeout}s")
            return False
        except OSError as e:
            logging.debug(f"[NotificationSender] Failed to send message: {e}")
            return False

    def show_error(self, description: str) -> bool:
        logging.error(description)
        message = {
            "type": "error",
            "title": "Backup error",
            "description": description,
            "timestamp": datetime.now().isoformat()
        }
        return self.send_message(message)

    def show_warning(self, description: str) -> bool:
        logging.warning(description)
        message = {
            "type": "warning",
            "title": "Warning",
            "description": description,
            "timestamp": datetime.now().isoformat()
        }
        return self.send_message(message)

    def show_info(self, description: str) -> bool:
        logging.info(description)
        message = {
            "type": "info",
            "title": "Information",
            "description": description,
            "timestamp": datetime.now().isoformat()
        }
        return self.send_message(message)
