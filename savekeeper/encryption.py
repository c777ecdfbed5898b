import os
import time
import shutil
import logging
import threading
import subprocess

from typing import Iterable, Optional

from savekeeper.errors import EncryptionFailedError, EncryptionToolMissingError
from savekeeper.file_system import has_extension


class EncryptionService:
    """
    Encrypts copied files in place by running an external executable as
    `<tool> <file> <key>`. The tool is single-instance, so every call in the
    process goes through one lock.
    """

    _tool_lock = threading.Lock()

    def __init__(self, settings=None, tool_path: Optional[str] = None, timeout: Optional[float] = None):
        self.settings = settings
        self._tool_path = tool_path
        self.timeout = timeout

    @property
    def tool_path(self) -> str:
        if self._tool_path:
            return self._tool_path
        if self.settings is not None:
            return self.settings.get_setting('EncryptionToolPath')
        return 'cryptosoft'

    @staticmethod
    def should_encrypt(path: str, extensions: Optional[Iterable[str]]) -> bool:
        return has_extension(path, extensions)

    def _resolve_tool(self) -> str:
        tool = self.tool_path
        if os.path.sep in tool:
            if os.path.isfile(tool) and os.access(tool, os.X_OK):
                return tool
        else:
            found = shutil.which(tool)
            if found:
                return found
        raise EncryptionToolMissingError(f"Encryption tool not found: {tool}")

    def encrypt_file(self, path: str, key: str) -> int:
        """Encrypt `path` with `key` and return the elapsed time in milliseconds."""
        tool = self._resolve_tool()

        with self._tool_lock:
            started = time.monotonic()
            try:
                result = subprocess.run(
                    [tool, path, key],
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except FileNotFoundError as e:
                raise EncryptionToolMissingError(f"Encryption tool not found: {tool}") from e
            except subprocess.TimeoutExpired as e:
                raise EncryptionFailedError(f"Encryption of {path} timed out after {self.timeout}s") from e
            elapsed_ms = int((time.monotonic() - started) * 1000)

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise EncryptionFailedError(
                f"Encryption of {path} failed with exit code {result.returncode}: {stderr}")

        logging.debug(f"Encrypted {path} in {elapsed_ms} ms")
        return elapsed_ms
