import os
import logging
import threading

from typing import Callable, Optional

import psutil


def _process_matches(process_name: str, wanted: str) -> bool:
    """Compare a running process name against the configured software name."""
    stem = os.path.splitext(process_name)[0]
    wanted_stem = os.path.splitext(wanted)[0]

    if stem == wanted_stem:
        return True
    if stem.lower() == wanted_stem.lower():
        return True
    first_word = wanted_stem.split()[0].lower() if wanted_stem.split() else ""
    if first_word and stem.lower() == first_word:
        return True
    return wanted_stem.lower() in process_name.lower()


class BusinessApplicationMonitor:
    """Watches for the configured business application that blocks backups."""

    def __init__(self, settings, poll_interval: Optional[float] = None):
        self.settings = settings
        self._poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._was_running = False

    @property
    def software_name(self) -> Optional[str]:
        name = self.settings.get_setting('BusinessSoftwareName')
        if name is None:
            return None
        name = str(name).strip()
        return name or None

    @property
    def poll_interval(self) -> float:
        if self._poll_interval is not None:
            return self._poll_interval
        return float(self.settings.get_setting('BusinessMonitorInterval'))

    def is_business_software_running(self) -> bool:
        wanted = self.software_name
        if not wanted:
            return False

        for proc in psutil.process_iter(['name']):
            try:
                name = proc.info.get('name') or ""
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if name and _process_matches(name, wanted):
                logging.debug(f"Business software detected: {name} (pid {proc.pid})")
                return True
        return False

    # =============================================================================
    # BACKGROUND WATCH
    # =============================================================================
    def start_monitoring(self, on_started: Callable[[], None], on_stopped: Callable[[], None]):
        """Poll in a daemon thread and report transitions of the business software."""
        if self._thread and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._was_running = False
        self._thread = threading.Thread(
            target=self._watch, args=(on_started, on_stopped),
            name="business-monitor", daemon=True)
        self._thread.start()
        logging.info(f"Business software monitor started ({self.software_name or 'no software configured'})")

    def stop_monitoring(self):
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None

    def poll_once(self, on_started: Callable[[], None], on_stopped: Callable[[], None]):
        """Check once and fire a callback if the running state changed."""
        try:
            running = self.is_business_software_running()
        except psutil.Error as e:
            logging.warning(f"Could not scan processes: {e}")
            return

        if running and not self._was_running:
            logging.info(f"Business software '{self.software_name}' started")
            self._was_running = True
            on_started()
        elif not running and self._was_running:
            logging.info(f"Business software '{self.software_name}' stopped")
            self._was_running = False
            on_stopped()

    def _watch(self, on_started, on_stopped):
        while not self._stop_event.is_set():
            try:
                self.poll_once(on_started, on_stopped)
            except Exception as e:
                logging.error(f"Business monitor callback failed: {e}", exc_info=True)
            self._stop_event.wait(self.poll_interval)
