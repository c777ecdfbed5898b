import os
import logging
import threading
import xml.etree.ElementTree as ET

from datetime import datetime
from typing import Optional

from savekeeper.storage import load_json_list, save_json_atomic

LOG_TIME_FORMAT = "%d/%m/%Y %H:%M:%S"


class LoggingService:
    """
    Transfer log: one entry per copied (or failed) file, kept in a daily
    file under the logs directory, either a JSON array or an XML document.
    """

    def __init__(self, logs_dir: str, settings=None, log_format: Optional[str] = None):
        self.logs_dir = logs_dir
        self.settings = settings
        self._log_format = log_format
        self._lock = threading.Lock()

    @property
    def log_format(self) -> str:
        value = self._log_format
        if value is None and self.settings is not None:
            value = self.settings.get_setting('LogFormat')
        value = str(value or 'JSON').upper()
        return value if value in ('JSON', 'XML') else 'JSON'

    def daily_log_path(self, when: Optional[datetime] = None) -> str:
        when = when or datetime.now()
        extension = 'xml' if self.log_format == 'XML' else 'json'
        return os.path.join(self.logs_dir, f"{when.strftime('%Y-%m-%d')}.{extension}")

    @staticmethod
    def build_entry(timestamp: datetime, job_name: str, source_path: str, target_path: str,
                    file_size=None, duration_ms=None, encryption_ms=None, details=None) -> dict:
        return {
            "Name": job_name,
            "FileSource": source_path,
            "FileTarget": target_path,
            "FileSize": file_size,
            "FileTransferTime": duration_ms,
            "EncryptionTime": encryption_ms,
            "Details": details,
            "time": timestamp.strftime(LOG_TIME_FORMAT),
        }

    def log(self, timestamp: datetime, job_name: str, source_path: str, target_path: str,
            file_size=None, duration_ms=None, encryption_ms=None, details=None):
        entry = self.build_entry(timestamp, job_name, source_path, target_path,
                                 file_size, duration_ms, encryption_ms, details)
        path = self.daily_log_path(timestamp)

        with self._lock:
            os.makedirs(self.logs_dir, exist_ok=True)
            if path.endswith('.xml'):
                self._append_xml(path, entry)
            else:
                self._append_json(path, entry)

    def _append_json(self, path: str, entry: dict):
        entries = load_json_list(path)
        entries.append(entry)
        if not save_json_atomic(path, entries):
            raise OSError(f"Could not write transfer log {path}")

    def _append_xml(self, path: str, entry: dict):
        root = None
        if os.path.exists(path):
            try:
                root = ET.parse(path).getroot()
            except ET.ParseError as e:
                logging.error(f"Transfer log {path} is corrupt, starting a new document: {e}")
        if root is None or root.tag != 'Logs':
            root = ET.Element('Logs')

        node = ET.SubElement(root, 'Log')
        for key, value in entry.items():
            child = ET.SubElement(node, key)
            child.text = "" if value is None else str(value)

        tree = ET.ElementTree(root)
        ET.indent(tree)
        tmp_path = f"{path}.tmp_{os.getpid()}"
        try:
            tree.write(tmp_path, encoding='utf-8', xml_declaration=True)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
