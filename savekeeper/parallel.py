import logging
import threading

from typing import Dict, Iterable, List, Optional, Set

from savekeeper.backup_job import BackupJob, PauseReason, RunControl
from savekeeper.job_status import BackupState


class ParallelExecutionManager:
    """
    Runs backup jobs on one thread each.

    - a job is never run twice at the same time (active set under a lock)
    - a bounded semaphore caps concurrent large-file transfers across jobs
    - while an active job still has priority-extension files to copy, every
      running job without any is paused; they are resumed once no active job
      has pending priority files
    """

    slot_poll_seconds = 0.2

    def __init__(self, settings):
        self.settings = settings
        self.max_large_transfers = max(int(settings.get_setting('MaxLargeFileTransfers')), 1)

        self._lock = threading.Lock()
        self._priority_lock = threading.RLock()
        self._active: Dict[str, BackupJob] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._priority_paused: Set[str] = set()
        self._large_semaphore = threading.BoundedSemaphore(self.max_large_transfers)
        self._large_in_flight = 0
        self.cancel_event = threading.Event()

    # =============================================================================
    # SCHEDULING
    # =============================================================================
    def execute_jobs_in_parallel(self, jobs: Iterable[BackupJob], wait: bool = True) -> Dict[str, BackupState]:
        """Start one thread per job, skipping jobs already active, and optionally wait."""
        started = []
        for job in jobs:
            thread = self.start_job(job)
            if thread is not None:
                started.append((job, thread))

        if wait:
            for _, thread in started:
                thread.join()

        return {job.name: job.status.state for job, _ in started}

    def start_job(self, job: BackupJob, resume: bool = False) -> Optional[threading.Thread]:
        if self.cancel_event.is_set():
            logging.info(f"Shutdown in progress, not starting job '{job.name}'")
            return None

        with self._lock:
            if job.name in self._active:
                logging.info(f"Job '{job.name}' is already running, skipping")
                return None
            self._active[job.name] = job
            thread = threading.Thread(
                target=self._run_job, args=(job, resume),
                name=f"backup-{job.name}", daemon=True)
            self._threads[job.name] = thread

        thread.start()
        return thread

    def _run_job(self, job: BackupJob, resume: bool):
        job.coordinator = self
        try:
            if resume:
                job.continue_run()
            else:
                job.start()
        except Exception as e:
            logging.error(f"Job '{job.name}' raised: {e}", exc_info=True)
            job.fail(e)
        finally:
            job.coordinator = None
            with self._lock:
                self._active.pop(job.name, None)
                self._threads.pop(job.name, None)
                self._priority_paused.discard(job.name)
            self.rebalance_priorities()

    def is_active(self, name: str) -> bool:
        with self._lock:
            return name in self._active

    def active_jobs(self) -> List[BackupJob]:
        with self._lock:
            return list(self._active.values())

    def wait_all(self, timeout: Optional[float] = None):
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)

    # =============================================================================
    # LARGE FILE THROTTLE
    # =============================================================================
    def large_file_threshold(self) -> int:
        return self.settings.large_file_threshold_bytes()

    def is_large_file(self, size: int) -> bool:
        return size > self.large_file_threshold()

    def can_transfer_large_file(self, size: int) -> bool:
        if not self.is_large_file(size):
            return True
        with self._lock:
            return self._large_in_flight < self.max_large_transfers

    @property
    def large_transfers_in_flight(self) -> int:
        with self._lock:
            return self._large_in_flight

    def acquire_large_file_slot(self, job: BackupJob) -> bool:
        """Block until a large-file slot is free; False if the job is stopped first."""
        logged = False
        while not job.should_stop():
            if self._large_semaphore.acquire(timeout=self.slot_poll_seconds):
                with self._lock:
                    self._large_in_flight += 1
                return True
            if not logged:
                logging.info(f"[{job.name}] Waiting for a large file transfer slot")
                logged = True
        return False

    def release_large_file_slot(self, job: BackupJob):
        with self._lock:
            self._large_in_flight -= 1
        self._large_semaphore.release()

    # =============================================================================
    # PRIORITY PREEMPTION
    # =============================================================================
    def priority_extensions(self) -> List[str]:
        return self.settings.get_setting('ExtensionFilePriority') or []

    def before_file(self, job: BackupJob, source_file: str):
        self.rebalance_priorities()

    def rebalance_priorities(self):
        extensions = self.priority_extensions()
        with self._priority_lock:
            holders = [
                job for job in self.active_jobs()
                if extensions and job.control is RunControl.RUN and job.has_pending_files_with(extensions)
            ]
            if holders:
                self.pause_non_priority_jobs(extensions)
            else:
                self.resume_non_priority_jobs()

    def pause_non_priority_jobs(self, extensions=None):
        extensions = extensions if extensions is not None else self.priority_extensions()
        with self._priority_lock:
            for job in self.active_jobs():
                if job.has_pending_files_with(extensions):
                    continue
                if job.pause(PauseReason.PRIORITY):
                    logging.info(f"[{job.name}] Held back for priority files")
                if PauseReason.PRIORITY in job.pause_reasons:
                    with self._lock:
                        self._priority_paused.add(job.name)

    def resume_non_priority_jobs(self):
        with self._priority_lock:
            with self._lock:
                names = list(self._priority_paused)
                self._priority_paused.clear()
                jobs = [self._active[name] for name in names if name in self._active]
            for job in jobs:
                job.resume(PauseReason.PRIORITY)

    # =============================================================================
    # BULK CONTROL
    # =============================================================================
    def pause_all(self, reason: str) -> List[str]:
        return [job.name for job in self.active_jobs() if job.pause(reason)]

    def resume_all(self, reason: str) -> List[str]:
        return [job.name for job in self.active_jobs() if job.resume(reason)]

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None):
        """Stop scheduling and let running jobs park as Paused after their current file."""
        self.cancel_event.set()
        for job in self.active_jobs():
            job.interrupt(PauseReason.SHUTDOWN)
        if wait:
            self.wait_all(timeout)
        logging.info("Parallel execution manager shut down")
