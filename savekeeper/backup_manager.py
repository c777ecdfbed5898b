import logging
import threading

from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from savekeeper.backup_job import BackupJob, JobServices, PauseReason
from savekeeper.encryption import EncryptionService
from savekeeper.errors import DuplicateJobError, JobNotFoundError
from savekeeper.events import JobEventManager
from savekeeper.job_status import BackupState, BackupType
from savekeeper.logging_service import LoggingService
from savekeeper.monitor import BusinessApplicationMonitor
from savekeeper.notifications import NotificationSender
from savekeeper.parallel import ParallelExecutionManager
from savekeeper.storage import load_json_list, save_json_atomic


class BackupManager:
    """
    Owns the job collection, persists job definitions to the jobs file and
    is the entry point for executing and controlling jobs. It also listens
    for remote commands and for business software transitions.
    """

    def __init__(self, services: JobServices, jobs_file: Optional[str] = None,
                 parallel: Optional[ParallelExecutionManager] = None):
        self.services = services
        self.settings = services.settings
        self.jobs_file = jobs_file
        self.parallel = parallel or ParallelExecutionManager(services.settings)
        self._jobs: "OrderedDict[str, BackupJob]" = OrderedDict()
        self._lock = threading.RLock()

    @classmethod
    def create(cls, settings) -> 'BackupManager':
        """Wire the default services from the application settings."""
        settings.ensure_directories()
        services = JobServices(
            settings=settings,
            encryption=EncryptionService(settings),
            monitor=BusinessApplicationMonitor(settings),
            events=JobEventManager(settings.STATE_FILE),
            log_sink=LoggingService(settings.LOGS_DIR, settings),
            notifier=NotificationSender(settings.UI_SOCKET_PATH),
        )
        return cls(services, jobs_file=settings.JOBS_FILE)

    @property
    def events(self) -> Optional[JobEventManager]:
        return self.services.events

    # =============================================================================
    # JOB COLLECTION
    # =============================================================================
    def add_job(self, name: str, source_path: str, target_path: str, backup_type=BackupType.FULL) -> BackupJob:
        job = BackupJob(name, source_path, target_path, backup_type, self.services)
        with self._lock:
            if job.name in self._jobs:
                raise DuplicateJobError(f"A job named '{job.name}' already exists")
            self._jobs[job.name] = job
            self.save_jobs()

        logging.info(f"Added job '{job.name}' ({job.type.value}): {job.source_path} -> {job.target_path}")
        if self.events is not None:
            self.events.publish(job)
        return job

    def remove_job(self, name: str) -> BackupJob:
        with self._lock:
            job = self._jobs.get(name)
            if job is None:
                raise JobNotFoundError(name)
            job.stop()
            del self._jobs[name]
            self.save_jobs()

        if self.events is not None:
            self.events.remove_job_state(name)
        logging.info(f"Removed job '{name}'")
        return job

    def get_job(self, name: str) -> BackupJob:
        with self._lock:
            job = self._jobs.get(name)
        if job is None:
            raise JobNotFoundError(name)
        return job

    def get_jobs(self) -> List[BackupJob]:
        with self._lock:
            return list(self._jobs.values())

    def job_names(self) -> List[str]:
        with self._lock:
            return list(self._jobs.keys())

    # =============================================================================
    # PERSISTENCE
    # =============================================================================
    def load_jobs(self) -> List[BackupJob]:
        """Load job definitions and restore interrupted runs from the state file."""
        loaded = []
        if self.jobs_file:
            for entry in load_json_list(self.jobs_file):
                try:
                    job = BackupJob.from_dict(entry, self.services)
                except (KeyError, TypeError, ValueError) as e:
                    logging.warning(f"Skipping invalid job definition {entry!r}: {e}")
                    continue
                loaded.append(job)

        states = {}
        if self.events is not None:
            states = {state.name: state for state in self.events.load_states()}

        with self._lock:
            self._jobs = OrderedDict()
            for job in loaded:
                if job.name in self._jobs:
                    logging.warning(f"Duplicate job definition '{job.name}' ignored")
                    continue
                state = states.get(job.name)
                if state is not None:
                    job.restore_from(state)
                self._jobs[job.name] = job

        logging.info(f"Loaded {len(loaded)} job(s)")
        return self.get_jobs()

    def save_jobs(self) -> bool:
        if not self.jobs_file:
            return True
        with self._lock:
            data = [job.to_dict() for job in self._jobs.values()]
        return save_json_atomic(self.jobs_file, data)

    # =============================================================================
    # EXECUTION
    # =============================================================================
    def _resolve(self, names: Optional[Iterable[str]]) -> List[BackupJob]:
        if not names:
            return self.get_jobs()
        jobs = []
        for name in names:
            try:
                jobs.append(self.get_job(name))
            except JobNotFoundError:
                logging.warning(f"Unknown job '{name}' ignored")
        return jobs

    def execute_jobs(self, names: Optional[Iterable[str]] = None, wait: bool = True) -> Dict[str, BackupState]:
        jobs = self._resolve(names)
        if not jobs:
            logging.info("No jobs to execute")
            return {}
        logging.info(f"Executing job(s): {', '.join(job.name for job in jobs)}")
        return self.parallel.execute_jobs_in_parallel(jobs, wait=wait)

    def execute_jobs_async(self, names: Optional[Iterable[str]] = None):
        self.execute_jobs(names, wait=False)

    def pause_jobs(self, names: Optional[Iterable[str]] = None) -> List[str]:
        paused = [job.name for job in self._resolve(names) if job.pause(PauseReason.USER)]
        self.parallel.rebalance_priorities()
        return paused

    def resume_jobs(self, names: Optional[Iterable[str]] = None) -> List[str]:
        resumed = []
        for job in self._resolve(names):
            if self.parallel.is_active(job.name):
                if job.resume():
                    resumed.append(job.name)
            elif job.status.state is BackupState.PAUSED:
                # Paused run without a worker (restored after a restart)
                if self.parallel.start_job(job, resume=True) is not None:
                    resumed.append(job.name)
        return resumed

    def stop_jobs(self, names: Optional[Iterable[str]] = None) -> List[str]:
        stopped = [job.name for job in self._resolve(names) if job.stop()]
        self.parallel.rebalance_priorities()
        return stopped

    # =============================================================================
    # REMOTE COMMANDS
    # =============================================================================
    def on_launch_jobs_requested(self, job_names: List[str]):
        self.execute_jobs_async(job_names)

    def on_pause_jobs_requested(self, job_names: List[str]):
        self.pause_jobs(job_names)

    def on_resume_jobs_requested(self, job_names: List[str]):
        self.resume_jobs(job_names)

    def on_stop_jobs_requested(self, job_names: List[str]):
        self.stop_jobs(job_names)

    # =============================================================================
    # BUSINESS SOFTWARE
    # =============================================================================
    def on_business_software_started(self):
        paused = self.parallel.pause_all(PauseReason.BUSINESS)
        if paused and self.services.notifier is not None:
            self.services.notifier.show_warning(
                f"Business software detected, paused: {', '.join(paused)}")

    def on_business_software_stopped(self):
        resumed = self.parallel.resume_all(PauseReason.BUSINESS)
        if resumed and self.services.notifier is not None:
            self.services.notifier.show_info(
                f"Business software closed, resumed: {', '.join(resumed)}")

    def start_business_monitoring(self):
        monitor = self.services.monitor
        if monitor is None:
            return
        monitor.start_monitoring(self.on_business_software_started, self.on_business_software_stopped)

    def shutdown(self, timeout: Optional[float] = None):
        if self.services.monitor is not None:
            self.services.monitor.stop_monitoring()
        self.parallel.shutdown(wait=True, timeout=timeout)
        logging.info("Backup manager shut down")
