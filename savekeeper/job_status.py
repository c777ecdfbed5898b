from datetime import datetime
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List


class BackupState(Enum):
    WAITING = "Waiting"
    RUNNING = "Running"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    ERROR = "Error"


class BackupType(Enum):
    FULL = "Full"
    DIFFERENTIAL = "Differential"

    @classmethod
    def parse(cls, value) -> 'BackupType':
        """Accept an enum member or its name/value in any case."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for member in cls:
            if text in (member.value.lower(), member.name.lower()):
                return member
        raise ValueError(f"Unknown backup type: {value!r}")


def _parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class JobStatus:
    """Mutable run-time status of one backup job."""
    state: BackupState = BackupState.WAITING
    total_files: int = 0
    total_size: int = 0
    remaining_files: int = 0
    remaining_size: int = 0
    current_source_file: str = ""
    current_target_file: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    encryption_time_ms: int = 0
    processed_files: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    details: str = ""

    @property
    def progress_percentage(self) -> float:
        if self.total_size <= 0:
            return 0.0
        return (self.total_size - self.remaining_size) / self.total_size * 100

    @property
    def transferred_size(self) -> int:
        return self.total_size - self.remaining_size

    @property
    def elapsed_seconds(self) -> float:
        if not self.start_time:
            return 0.0
        end = self.end_time or datetime.now()
        return max((end - self.start_time).total_seconds(), 0.0)

    @property
    def transfer_rate(self) -> float:
        """Bytes per second since the run started."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.transferred_size / elapsed

    def reset(self):
        """Clear counters for a fresh run."""
        self.state = BackupState.WAITING
        self.total_files = 0
        self.total_size = 0
        self.remaining_files = 0
        self.remaining_size = 0
        self.current_source_file = ""
        self.current_target_file = ""
        self.start_time = None
        self.end_time = None
        self.encryption_time_ms = 0
        self.processed_files = []
        self.error_message = None
        self.details = ""

    def set_totals(self, total_files: int, total_size: int):
        self.total_files = total_files
        self.total_size = total_size
        self.remaining_files = total_files
        self.remaining_size = total_size

    def file_done(self, source_path: str, size: int):
        """Record one processed file, keeping the remaining counters non-negative."""
        self.remaining_files = max(self.remaining_files - 1, 0)
        self.remaining_size = max(self.remaining_size - size, 0)
        self.processed_files.append(source_path)


@dataclass(frozen=True)
class JobState:
    """Serializable snapshot of a job and its status at one instant."""
    name: str
    source_path: str
    target_path: str
    type: BackupType
    state: BackupState
    total_files: int = 0
    total_size: int = 0
    remaining_files: int = 0
    remaining_size: int = 0
    current_source_file: str = ""
    current_target_file: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    encryption_time_ms: int = 0
    progress_percentage: float = 0.0
    processed_files: tuple = ()
    error_message: Optional[str] = None
    details: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def capture(cls, job) -> 'JobState':
        status = job.status
        return cls(
            name=job.name,
            source_path=job.source_path,
            target_path=job.target_path,
            type=job.type,
            state=status.state,
            total_files=status.total_files,
            total_size=status.total_size,
            remaining_files=status.remaining_files,
            remaining_size=status.remaining_size,
            current_source_file=status.current_source_file,
            current_target_file=status.current_target_file,
            start_time=status.start_time,
            end_time=status.end_time,
            encryption_time_ms=status.encryption_time_ms,
            progress_percentage=round(status.progress_percentage, 2),
            processed_files=tuple(status.processed_files),
            error_message=status.error_message,
            details=status.details,
        )

    def to_dict(self) -> dict:
        return {
            "Name": self.name,
            "SourcePath": self.source_path,
            "TargetPath": self.target_path,
            "Type": self.type.value,
            "State": self.state.value,
            "TotalFiles": self.total_files,
            "TotalSize": self.total_size,
            "RemainingFiles": self.remaining_files,
            "RemainingSize": self.remaining_size,
            "CurrentSourceFile": self.current_source_file,
            "CurrentTargetFile": self.current_target_file,
            "StartTime": _format_time(self.start_time),
            "EndTime": _format_time(self.end_time),
            "EncryptionTimeMs": self.encryption_time_ms,
            "ProgressPercentage": self.progress_percentage,
            "ProcessedFiles": list(self.processed_files),
            "ErrorMessage": self.error_message,
            "Details": self.details,
            "Timestamp": _format_time(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'JobState':
        return cls(
            name=data["Name"],
            source_path=data.get("SourcePath", ""),
            target_path=data.get("TargetPath", ""),
            type=BackupType.parse(data.get("Type", "Full")),
            state=BackupState(data.get("State", "Waiting")),
            total_files=int(data.get("TotalFiles") or 0),
            total_size=int(data.get("TotalSize") or 0),
            remaining_files=int(data.get("RemainingFiles") or 0),
            remaining_size=int(data.get("RemainingSize") or 0),
            current_source_file=data.get("CurrentSourceFile") or "",
            current_target_file=data.get("CurrentTargetFile") or "",
            start_time=_parse_time(data.get("StartTime")),
            end_time=_parse_time(data.get("EndTime")),
            encryption_time_ms=int(data.get("EncryptionTimeMs") or 0),
            progress_percentage=float(data.get("ProgressPercentage") or 0.0),
            processed_files=tuple(data.get("ProcessedFiles") or ()),
            error_message=data.get("ErrorMessage"),
            details=data.get("Details") or "",
            timestamp=_parse_time(data.get("Timestamp")) or datetime.now(),
        )
