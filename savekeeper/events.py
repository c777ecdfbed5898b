import logging
import threading

from typing import Dict, List, Optional

from savekeeper.job_status import JobState
from savekeeper.storage import load_json_list, save_json_atomic


# =============================================================================
# JOB STATE PROPAGATION
# =============================================================================
class JobEventManager:
    """
    Single publish point for job status changes.

    Each publish captures a JobState snapshot, upserts it by job name,
    rewrites the state file in full and then hands the snapshot to every
    listener in registration order. A listener is either an object with an
    `on_job_state_changed(state)` method or a plain callable; a failing
    listener is logged and does not affect the others.
    """

    def __init__(self, state_file: Optional[str] = None):
        self.state_file = state_file
        self._states: Dict[str, JobState] = {}
        self._listeners: list = []
        self._write_lock = threading.Lock()
        self._listeners_lock = threading.Lock()
        self._notify_lock = threading.RLock()

    def add_listener(self, listener):
        with self._listeners_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener):
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def load_states(self) -> List[JobState]:
        """Seed the in-memory collection from the state file."""
        loaded = []
        if self.state_file:
            for entry in load_json_list(self.state_file):
                try:
                    loaded.append(JobState.from_dict(entry))
                except (KeyError, TypeError, ValueError) as e:
                    logging.warning(f"Skipping invalid state entry {entry!r}: {e}")

        with self._write_lock:
            self._states = {state.name: state for state in loaded}
        return loaded

    def publish(self, job) -> JobState:
        with self._write_lock:
            state = JobState.capture(job)
            self._states[state.name] = state
            self._save_locked()

        self._notify(state.name)
        return state

    def remove_job_state(self, name: str):
        with self._write_lock:
            if self._states.pop(name, None) is not None:
                self._save_locked()

    def get_all_job_states(self) -> List[JobState]:
        with self._write_lock:
            return list(self._states.values())

    def get_job_state(self, name: str) -> Optional[JobState]:
        with self._write_lock:
            return self._states.get(name)

    def _save_locked(self):
        if self.state_file:
            save_json_atomic(self.state_file, [s.to_dict() for s in self._states.values()])

    def _notify(self, name: str):
        with self._notify_lock:
            # Listeners always see the newest snapshot, even when publishes race
            state = self.get_job_state(name)
            if state is None:
                return
            with self._listeners_lock:
                listeners = list(self._listeners)

            for listener in listeners:
                try:
                    callback = getattr(listener, 'on_job_state_changed', listener)
                    callback(state)
                except Exception as e:
                    logging.error(f"Job state listener {listener!r} failed: {e}", exc_info=True)


# =============================================================================
# COMMAND FAN-OUT
# =============================================================================
class EventManager:
    """Delivers remote job commands to every registered command listener."""

    def __init__(self):
        self._listeners: list = []
        self._lock = threading.Lock()

    def add_command_listener(self, listener):
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def launch_jobs(self, job_names: List[str]):
        self._dispatch('on_launch_jobs_requested', job_names)

    def pause_jobs(self, job_names: List[str]):
        self._dispatch('on_pause_jobs_requested', job_names)

    def resume_jobs(self, job_names: List[str]):
        self._dispatch('on_resume_jobs_requested', job_names)

    def stop_jobs(self, job_names: List[str]):
        self._dispatch('on_stop_jobs_requested', job_names)

    def _dispatch(self, method_name: str, job_names: List[str]):
        with self._lock:
            listeners = list(self._listeners)

        logging.info(f"Dispatching {method_name} for {job_names}")
        for listener in listeners:
            handler = getattr(listener, method_name, None)
            if handler is None:
                continue
            try:
                handler(list(job_names))
            except Exception as e:
                logging.error(f"Command listener {listener!r} failed on {method_name}: {e}", exc_info=True)
