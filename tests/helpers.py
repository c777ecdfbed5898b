"""Shared fixtures for the test suite: settings, file trees and fakes."""
import os
import time
import threading

from savekeeper.backup_job import BackupJob, JobServices
from savekeeper.encryption import EncryptionService
from savekeeper.events import JobEventManager
from savekeeper.file_system import FileSystemService
from savekeeper.settings import AppSettings


def make_settings(td, **overrides) -> AppSettings:
    """Settings backed by a config path that does not exist, plus overrides."""
    settings = AppSettings(conf_path=os.path.join(td, 'no-config.conf'), data_dir=os.path.join(td, 'data'))
    for key, value in overrides.items():
        settings.set_setting(key, value)
    return settings


def write_file(path, content=b"x"):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    if isinstance(content, str):
        content = content.encode('utf-8')
    with open(path, 'wb') as f:
        f.write(content)
    return path


def make_tree(root, files):
    """files: mapping of relative path -> content (bytes/str) or size (int)."""
    for rel_path, content in files.items():
        if isinstance(content, int):
            content = b"a" * content
        write_file(os.path.join(root, rel_path), content)


def relative_files(root):
    found = set()
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            found.add(os.path.relpath(os.path.join(dirpath, name), root))
    return found


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class RecordingLogSink:
    def __init__(self):
        self.entries = []
        self.lock = threading.Lock()

    def log(self, timestamp, job_name, source_path, target_path, file_size=None,
            duration_ms=None, encryption_ms=None, details=None):
        with self.lock:
            self.entries.append({
                'job': job_name, 'source': source_path, 'target': target_path,
                'size': file_size, 'duration_ms': duration_ms,
                'encryption_ms': encryption_ms, 'details': details,
            })


class RecordingNotifier:
    def __init__(self):
        self.errors, self.warnings, self.infos = [], [], []

    def show_error(self, text):
        self.errors.append(text)

    def show_warning(self, text):
        self.warnings.append(text)

    def show_info(self, text):
        self.infos.append(text)


class RecordingEncryption(EncryptionService):
    """Encryption service that records calls instead of running a tool."""

    def __init__(self, elapsed_ms=5):
        super().__init__()
        self.elapsed_ms = elapsed_ms
        self.calls = []

    def encrypt_file(self, path, key):
        self.calls.append((path, key))
        return self.elapsed_ms


class FakeMonitor:
    def __init__(self, running=False, software_name="Calculator"):
        self.running = running
        self.software_name = software_name

    def is_business_software_running(self):
        return self.running


class GatedFileSystem(FileSystemService):
    """Blocks copies of files whose name contains `gate_on` until released."""

    def __init__(self, gate_on):
        self.gate_on = gate_on
        self.reached = threading.Event()
        self.release = threading.Event()

    def copy_file(self, src_path, final_dst_path):
        if self.gate_on in os.path.basename(src_path):
            self.reached.set()
            self.release.wait(10)
        super().copy_file(src_path, final_dst_path)


class StateRecorder:
    """Job state listener keeping every published snapshot."""

    def __init__(self):
        self.states = []
        self.lock = threading.Lock()

    def on_job_state_changed(self, state):
        with self.lock:
            self.states.append(state)

    def for_job(self, name):
        with self.lock:
            return [s for s in self.states if s.name == name]


def make_services(settings, file_system=None, **kwargs) -> JobServices:
    kwargs.setdefault('events', JobEventManager(os.path.join(settings.DATA_DIR, 'state.json')))
    kwargs.setdefault('log_sink', RecordingLogSink())
    kwargs.setdefault('notifier', RecordingNotifier())
    return JobServices(settings=settings, file_system=file_system or FileSystemService(), **kwargs)


def make_job(td, name='docs', backup_type='Full', services=None, settings=None, source=None, target=None):
    settings = settings or make_settings(td)
    services = services or make_services(settings)
    source = source or os.path.join(td, 'src')
    target = target or os.path.join(td, 'dst')
    return BackupJob(name, source, target, backup_type, services)
