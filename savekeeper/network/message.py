"""
Wire format for the remote control protocol.

Every message is one JSON object on its own line (UTF-8, newline
terminated):

    {"Type": "StartJob", "Data": "[\"docs\"]", "Timestamp": "...", "MessageId": "..."}

`Data` is itself a JSON-encoded string (job names for commands, the job
state list for status pushes, a text for errors) or null. The older command
shape {"CommandType": "LaunchJobs", "JobNames": [...]} is also accepted.
"""
import json
import uuid
import socket

from datetime import datetime
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

MAX_LINE_BYTES = 16 * 1024 * 1024


class MessageTypes:
    JOB_STATUS_REQUEST = "JobStatusRequest"
    JOB_STATUS = "JobStatus"
    START_JOB = "StartJob"
    PAUSE_JOB = "PauseJob"
    RESUME_JOB = "ResumeJob"
    STOP_JOB = "StopJob"
    PING = "Ping"
    PONG = "Pong"
    ERROR = "Error"

    COMMANDS = (START_JOB, PAUSE_JOB, RESUME_JOB, STOP_JOB)
    ALL = (JOB_STATUS_REQUEST, JOB_STATUS, START_JOB, PAUSE_JOB, RESUME_JOB, STOP_JOB, PING, PONG, ERROR)


LEGACY_COMMANDS = {
    "LaunchJobs": MessageTypes.START_JOB,
    "PauseJobs": MessageTypes.PAUSE_JOB,
    "ResumeJobs": MessageTypes.RESUME_JOB,
    "StopJobs": MessageTypes.STOP_JOB,
    "RequestStatusUpdate": MessageTypes.JOB_STATUS_REQUEST,
}


class MessageFormatError(ValueError):
    """Raised when a received line is not a valid protocol message."""


@dataclass
class NetworkMessage:
    type: str
    data: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    # =============================================================================
    # FACTORIES
    # =============================================================================
    @classmethod
    def status_request(cls) -> 'NetworkMessage':
        return cls(MessageTypes.JOB_STATUS_REQUEST)

    @classmethod
    def command(cls, message_type: str, job_names: Iterable[str]) -> 'NetworkMessage':
        if message_type not in MessageTypes.COMMANDS:
            raise ValueError(f"Not a job command: {message_type}")
        return cls(message_type, json.dumps(list(job_names)))

    @classmethod
    def status_push(cls, states) -> 'NetworkMessage':
        return cls(MessageTypes.JOB_STATUS, json.dumps([state.to_dict() for state in states]))

    @classmethod
    def ping(cls) -> 'NetworkMessage':
        return cls(MessageTypes.PING)

    @classmethod
    def pong(cls) -> 'NetworkMessage':
        return cls(MessageTypes.PONG)

    @classmethod
    def error(cls, text: str) -> 'NetworkMessage':
        return cls(MessageTypes.ERROR, json.dumps(text))

    # =============================================================================
    # PAYLOAD
    # =============================================================================
    def payload(self):
        """Decode Data; plain (non-JSON) text is returned as is."""
        if self.data is None:
            return None
        if not isinstance(self.data, str):
            return self.data
        try:
            return json.loads(self.data)
        except json.JSONDecodeError:
            return self.data

    def job_names(self) -> List[str]:
        value = self.payload()
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            raise MessageFormatError(f"Expected a list of job names, got {type(value).__name__}")
        return [str(name).strip() for name in value if str(name).strip()]

    def job_states(self) -> List[dict]:
        value = self.payload()
        if not isinstance(value, list):
            return []
        return [entry for entry in value if isinstance(entry, dict)]

    # =============================================================================
    # ENCODING
    # =============================================================================
    def to_dict(self) -> dict:
        return {
            "Type": self.type,
            "Data": self.data,
            "Timestamp": self.timestamp,
            "MessageId": self.message_id,
        }

    def encode(self) -> bytes:
        return (json.dumps(self.to_dict()) + "\n").encode("utf-8")

    @classmethod
    def from_dict(cls, obj) -> 'NetworkMessage':
        if not isinstance(obj, dict):
            raise MessageFormatError("Message must be a JSON object")

        if "Type" not in obj and "CommandType" in obj:
            return cls._from_legacy(obj)

        message_type = obj.get("Type")
        if not isinstance(message_type, str) or not message_type:
            raise MessageFormatError("Message has no Type")

        data = obj.get("Data")
        if data is not None and not isinstance(data, str):
            data = json.dumps(data)

        message = cls(message_type, data)
        if obj.get("Timestamp"):
            message.timestamp = str(obj["Timestamp"])
        if obj.get("MessageId"):
            message.message_id = str(obj["MessageId"])
        return message

    @classmethod
    def _from_legacy(cls, obj: dict) -> 'NetworkMessage':
        command_type = obj.get("CommandType")
        message_type = LEGACY_COMMANDS.get(command_type, command_type)
        if not isinstance(message_type, str) or not message_type:
            raise MessageFormatError("Command has no CommandType")

        names = list(obj.get("JobNames") or [])
        if obj.get("JobName"):
            names.append(obj["JobName"])
        data = json.dumps(names) if message_type in MessageTypes.COMMANDS else None
        return cls(message_type, data)

    @classmethod
    def decode(cls, line) -> 'NetworkMessage':
        if isinstance(line, bytes):
            try:
                line = line.decode("utf-8")
            except UnicodeDecodeError as e:
                raise MessageFormatError(f"Invalid UTF-8: {e}") from e
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as e:
            raise MessageFormatError(f"Invalid JSON: {e}") from e
        return cls.from_dict(obj)


class MessageReader:
    """Splits a byte stream from a socket into newline-terminated messages."""

    def __init__(self, sock: socket.socket, max_line_bytes: int = MAX_LINE_BYTES):
        self.sock = sock
        self.max_line_bytes = max_line_bytes
        self._buffer = b""

    def read_line(self) -> Optional[bytes]:
        """
        Return the next complete line without its terminator, or None at EOF.
        socket.timeout propagates so callers can check for shutdown and retry.
        """
        while b"\n" not in self._buffer:
            if len(self._buffer) > self.max_line_bytes:
                self._buffer = b""
                raise MessageFormatError("Message exceeds the maximum line length")
            chunk = self.sock.recv(65536)
            if not chunk:
                return None
            self._buffer += chunk

        line, self._buffer = self._buffer.split(b"\n", 1)
        return line.rstrip(b"\r")
