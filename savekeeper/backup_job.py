"""
Backup job: one source tree copied to one target under a Full or
Differential strategy.

Run control
-----------
A job is driven by a single RunControl value guarded by a Condition:

- RUN: the worker keeps processing files.
- PAUSE: the worker parks at its next per-file checkpoint until resumed.
- STOP: the worker exits at its next checkpoint.

Control is only observed between files, never in the middle of a copy.
A pause carries one or more reasons (user, priority, business application,
shutdown). A reason-specific resume only clears its own reason, so a job
paused by the user is not resumed when a priority transfer finishes.

Per-file step
-------------
target = target_path / relpath(file, source_path); copy (overwrite allowed);
encrypt when the extension is configured; decrement remaining counters;
record the file as processed; publish. A copy failure is logged and the loop
continues; encryption failures and a missing key end the run in Error.
"""
import os
import time
import logging
import threading

from datetime import datetime
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List, Set

from savekeeper.errors import (
    BackupError,
    BusinessSoftwareRunningError,
    EncryptionKeyMissingError,
)
from savekeeper.file_system import FileSystemService, has_extension
from savekeeper.job_status import BackupState, BackupType, JobStatus, JobState
from savekeeper.strategies import strategy_for


class RunControl(Enum):
    RUN = "run"
    PAUSE = "pause"
    STOP = "stop"


class PauseReason:
    USER = "user"
    PRIORITY = "priority"
    BUSINESS = "business application"
    SHUTDOWN = "Interrupted by shutdown"


STOPPED_BY_USER = "Job stopped by user"
FAILED_FILE_DURATION_MS = -1


@dataclass
class JobServices:
    """Collaborators shared by every job of one manager."""
    settings: object
    file_system: FileSystemService = field(default_factory=FileSystemService)
    encryption: Optional[object] = None
    monitor: Optional[object] = None
    events: Optional[object] = None
    log_sink: Optional[object] = None
    notifier: Optional[object] = None


class BackupJob:
    def __init__(self, name: str, source_path: str, target_path: str,
                 backup_type, services: JobServices, strategy=None):
        if not name or not str(name).strip():
            raise ValueError("Job name must not be empty")

        self.name = str(name).strip()
        self.source_path = os.path.abspath(os.path.expanduser(source_path))
        self.target_path = os.path.abspath(os.path.expanduser(target_path))
        self.type = BackupType.parse(backup_type)
        self.services = services
        self.status = JobStatus()

        # Set by the parallel execution manager while the job runs under it
        self.coordinator = None

        file_system = services.file_system
        self.strategy = strategy or strategy_for(self.type, file_system)

        self._control = RunControl.RUN
        self._cond = threading.Condition()
        self._pause_reasons: Set[str] = set()
        self._worker_active = False
        self._interrupted = False

        # Retained file list of the current run and the index of the next file
        self._files: List[str] = []
        self._next_index = 0

    def __repr__(self):
        return f"BackupJob({self.name!r}, {self.type.value}, {self.status.state.value})"

    # =============================================================================
    # SERIALIZATION
    # =============================================================================
    def to_dict(self) -> dict:
        return {
            "Name": self.name,
            "SourcePath": self.source_path,
            "TargetPath": self.target_path,
            "Type": self.type.value,
        }

    @classmethod
    def from_dict(cls, data: dict, services: JobServices) -> 'BackupJob':
        return cls(data["Name"], data["SourcePath"], data["TargetPath"],
                   data.get("Type", "Full"), services=services)

    def restore_from(self, state: JobState) -> bool:
        """
        Seed the status from a persisted snapshot so an interrupted run can be
        resumed. Only Paused snapshots are restored.
        """
        if state.state is not BackupState.PAUSED:
            return False

        status = self.status
        status.state = BackupState.PAUSED
        status.total_files = state.total_files
        status.total_size = state.total_size
        status.remaining_files = state.remaining_files
        status.remaining_size = state.remaining_size
        status.start_time = state.start_time
        status.encryption_time_ms = state.encryption_time_ms
        status.processed_files = list(state.processed_files)
        status.details = state.details or PauseReason.SHUTDOWN
        logging.info(f"[{self.name}] Restored paused run ({len(status.processed_files)} files already processed)")
        return True

    # =============================================================================
    # PROPERTIES
    # =============================================================================
    @property
    def is_active(self) -> bool:
        """True while a worker thread is executing this job."""
        with self._cond:
            return self._worker_active

    @property
    def control(self) -> RunControl:
        with self._cond:
            return self._control

    @property
    def pause_reasons(self) -> Set[str]:
        with self._cond:
            return set(self._pause_reasons)

    def target_file_for(self, source_file: str) -> str:
        return os.path.join(self.target_path, os.path.relpath(source_file, self.source_path))

    def pending_files(self) -> List[str]:
        with self._cond:
            return list(self._files[self._next_index:])

    def has_pending_files_with(self, extensions) -> bool:
        return any(has_extension(path, extensions) for path in self.pending_files())

    # =============================================================================
    # CONTROL
    # =============================================================================
    def start(self) -> BackupState:
        """Run the job to completion in the calling thread."""
        return self._execute(resume=False)

    def continue_run(self) -> BackupState:
        """Run again, skipping files already recorded as processed."""
        return self._execute(resume=True)

    def pause(self, reason: str = PauseReason.USER) -> bool:
        with self._cond:
            if not self._worker_active or self._control is RunControl.STOP:
                return False
            if self._control is RunControl.PAUSE:
                self._pause_reasons.add(reason)
                return False
            if self.status.state is not BackupState.RUNNING:
                return False

            self._control = RunControl.PAUSE
            self._pause_reasons.add(reason)
            self.status.state = BackupState.PAUSED
            self.status.details = f"Paused ({reason})"

        logging.info(f"[{self.name}] Paused ({reason})")
        self._publish()
        return True

    def resume(self, reason: Optional[str] = None) -> bool:
        """
        Resume a paused worker. With a reason only that reason is cleared and
        the job continues once no other reason holds it; without one (user
        resume) every reason is cleared.
        """
        with self._cond:
            if not self._worker_active or self._control is not RunControl.PAUSE:
                return False

            if reason is None:
                self._pause_reasons.clear()
            else:
                if reason not in self._pause_reasons:
                    return False
                self._pause_reasons.discard(reason)
            if self._pause_reasons:
                return False

            self._control = RunControl.RUN
            self.status.state = BackupState.RUNNING
            self.status.details = "Resumed"
            self._cond.notify_all()

        logging.info(f"[{self.name}] Resumed")
        self._publish()
        return True

    def stop(self) -> bool:
        with self._cond:
            if not self._worker_active and self.status.state is not BackupState.PAUSED:
                return False
            if self._control is RunControl.STOP:
                return False

            self._control = RunControl.STOP
            self._pause_reasons.clear()
            self.status.state = BackupState.ERROR
            self.status.error_message = STOPPED_BY_USER
            self.status.details = STOPPED_BY_USER
            self.status.end_time = datetime.now()
            self._cond.notify_all()

        logging.info(f"[{self.name}] {STOPPED_BY_USER}")
        self._publish()
        return True

    def interrupt(self, reason: str = PauseReason.SHUTDOWN) -> bool:
        """
        Make the worker exit at its next checkpoint while leaving the job
        Paused, so the run can be resumed later from the state file.
        """
        with self._cond:
            if not self._worker_active or self._control is RunControl.STOP:
                return False

            self._interrupted = True
            self._control = RunControl.STOP
            self._pause_reasons = {reason}
            self.status.state = BackupState.PAUSED
            self.status.details = reason
            self._cond.notify_all()

        logging.info(f"[{self.name}] {reason}")
        self._publish()
        return True

    def should_stop(self) -> bool:
        with self._cond:
            return self._control is RunControl.STOP

    # =============================================================================
    # EXECUTION
    # =============================================================================
    def _execute(self, resume: bool) -> BackupState:
        with self._cond:
            if self._worker_active:
                logging.info(f"[{self.name}] Already running, start ignored")
                return self.status.state
            self._worker_active = True
            self._interrupted = False
            self._control = RunControl.RUN
            self._pause_reasons.clear()

        try:
            self._run(resume)
        except BackupError as e:
            self.fail(e)
        except Exception as e:
            logging.error(f"[{self.name}] Unexpected failure: {e}", exc_info=True)
            self.fail(e)
        finally:
            with self._cond:
                self._worker_active = False
                self._cond.notify_all()

        return self.status.state

    def _run(self, resume: bool):
        status = self.status
        with self._cond:
            # A stop issued right after the worker was claimed keeps its Error
            if self._control is RunControl.STOP:
                return
            already_processed = list(status.processed_files) if resume else []
            previous_start = status.start_time if resume else None
            previous_encryption_ms = status.encryption_time_ms if resume else 0

            status.reset()
            status.start_time = previous_start or datetime.now()
            status.encryption_time_ms = previous_encryption_ms

        monitor = self.services.monitor
        if monitor is not None and monitor.is_business_software_running():
            raise BusinessSoftwareRunningError(
                f"Business software '{monitor.software_name}' is running, backup '{self.name}' was not started")

        with self._cond:
            # A stop issued before the worker got here wins
            if self._control is RunControl.STOP:
                return
            status.state = BackupState.RUNNING
            status.details = "Resumed after restart" if resume else "Started"
        logging.info(f"[{self.name}] {status.details}: {self.source_path} -> {self.target_path} ({self.type.value})")
        self._publish()

        files = self.strategy.get_files(self)

        if already_processed:
            done = set(already_processed)
            for source_file in files:
                if source_file in done:
                    status.file_done(source_file, self._size_or_zero(source_file))
            files = [f for f in files if f not in done]

        with self._cond:
            self._files = files
            self._next_index = 0
        self._publish()

        for source_file in files:
            if self.coordinator is not None:
                self.coordinator.before_file(self, source_file)
            if not self._checkpoint():
                break
            self._process_file(source_file)
            with self._cond:
                self._next_index += 1

        # A pause that landed during the last file parks here until resumed
        self._checkpoint()
        self._finish()

    def _checkpoint(self) -> bool:
        """Park while paused; False once a stop has been requested."""
        with self._cond:
            while self._control is RunControl.PAUSE:
                self._cond.wait()
            return self._control is RunControl.RUN

    def _process_file(self, source_file: str):
        services = self.services
        file_system = services.file_system
        target_file = self.target_file_for(source_file)

        self.status.current_source_file = source_file
        self.status.current_target_file = target_file

        try:
            size = file_system.get_size(source_file)
        except OSError as e:
            self._file_failed(source_file, target_file, 0, e)
            return

        coordinator = self.coordinator
        holds_slot = False
        if coordinator is not None and coordinator.is_large_file(size):
            holds_slot = coordinator.acquire_large_file_slot(self)
            if not holds_slot:
                # Stopped while waiting for a slot
                return

        started = time.monotonic()
        try:
            file_system.copy_file(source_file, target_file)
        except OSError as e:
            self._file_failed(source_file, target_file, size, e)
            return
        finally:
            if holds_slot:
                coordinator.release_large_file_slot(self)
        duration_ms = int((time.monotonic() - started) * 1000)

        encryption_ms = self._encrypt_if_needed(target_file)

        self.status.file_done(source_file, size)
        self._write_log(target_file=target_file, source_file=source_file, size=size,
                        duration_ms=duration_ms, encryption_ms=encryption_ms)
        self._publish()

    def _encrypt_if_needed(self, target_file: str) -> Optional[int]:
        services = self.services
        if services.encryption is None:
            return None

        extensions = services.settings.get_setting('EncryptionExtensions')
        if not services.encryption.should_encrypt(target_file, extensions):
            return None

        key = services.settings.get_setting('EncryptionKey')
        if not key:
            raise EncryptionKeyMissingError(
                f"No encryption key configured, cannot encrypt {os.path.basename(target_file)}")

        elapsed_ms = services.encryption.encrypt_file(target_file, str(key))
        self.status.encryption_time_ms += elapsed_ms
        return elapsed_ms

    def _file_failed(self, source_file: str, target_file: str, size: int, error: Exception):
        logging.error(f"[{self.name}] Failed to copy {source_file}: {error}")
        status = self.status
        status.remaining_files = max(status.remaining_files - 1, 0)
        status.remaining_size = max(status.remaining_size - size, 0)

        self._write_log(target_file=target_file, source_file=source_file, size=size,
                        duration_ms=FAILED_FILE_DURATION_MS, encryption_ms=None,
                        details=f"Copy failed: {error}")
        notifier = self.services.notifier
        if notifier is not None:
            notifier.show_warning(f"{self.name}: could not copy {os.path.basename(source_file)} ({error})")
        self._publish()

    def _finish(self):
        status = self.status
        with self._cond:
            if self._control is not RunControl.RUN:
                # Stop already published Error, interrupt already published Paused
                return
            status.state = BackupState.COMPLETED
            status.end_time = datetime.now()
            status.remaining_files = 0
            status.remaining_size = 0
            status.current_source_file = ""
            status.current_target_file = ""
            status.details = "Completed"

        if self.services.settings.get_setting('MirrorDeletions'):
            self._mirror_deletions()

        logging.info(f"[{self.name}] Completed: {status.total_files} files, "
                     f"{status.total_size} bytes in {status.elapsed_seconds:.1f}s")
        self._publish()

    def _mirror_deletions(self):
        """Remove target files and directories that no longer exist in the source."""
        file_system = self.services.file_system
        if not file_system.is_directory(self.target_path):
            return

        removed = 0
        for target_file in file_system.list_files(self.target_path):
            relative = os.path.relpath(target_file, self.target_path)
            if not file_system.exists(os.path.join(self.source_path, relative)):
                try:
                    file_system.delete_file(target_file)
                    removed += 1
                except OSError as e:
                    logging.warning(f"[{self.name}] Failed to remove {target_file}: {e}")

        for target_dir in file_system.list_directories(self.target_path):
            relative = os.path.relpath(target_dir, self.target_path)
            if not file_system.is_directory(os.path.join(self.source_path, relative)):
                try:
                    file_system.delete_directory(target_dir)
                    removed += 1
                except OSError as e:
                    logging.warning(f"[{self.name}] Failed to remove {target_dir}: {e}")

        if removed:
            logging.info(f"[{self.name}] Removed {removed} entries absent from the source")

    def fail(self, error: Exception):
        with self._cond:
            self._control = RunControl.STOP
            self.status.state = BackupState.ERROR
            self.status.error_message = str(error)
            self.status.details = type(error).__name__
            self.status.end_time = datetime.now()

        logging.error(f"[{self.name}] Backup failed: {error}")
        notifier = self.services.notifier
        if notifier is not None:
            notifier.show_error(f"{self.name}: {error}")
        self._publish()

    # =============================================================================
    # HELPERS
    # =============================================================================
    def _size_or_zero(self, path: str) -> int:
        try:
            return self.services.file_system.get_size(path)
        except OSError:
            return 0

    def _write_log(self, source_file: str, target_file: str, size: int, duration_ms: int,
                   encryption_ms: Optional[int], details: Optional[str] = None):
        log_sink = self.services.log_sink
        if log_sink is None:
            return
        try:
            log_sink.log(datetime.now(), self.name, source_file, target_file,
                         file_size=size, duration_ms=duration_ms,
                         encryption_ms=encryption_ms, details=details)
        except OSError as e:
            logging.error(f"[{self.name}] Failed to write transfer log: {e}")

    def _publish(self):
        events = self.services.events
        if events is not None:
            events.publish(self)
