import os
import logging
import configparser

from typing import Optional, List


# Maps the setting keys used across the engine to their INI location.
SETTING_LOCATIONS = {
    'BusinessSoftwareName': ('BUSINESS', 'software_name'),
    'BusinessMonitorInterval': ('BUSINESS', 'poll_seconds'),
    'EncryptionKey': ('ENCRYPTION', 'key'),
    'EncryptionExtensions': ('ENCRYPTION', 'extensions'),
    'EncryptionToolPath': ('ENCRYPTION', 'tool_path'),
    'ExtensionFilePriority': ('PRIORITY', 'extensions'),
    'LargeFileSizeThresholdKB': ('TRANSFER', 'large_file_threshold_kb'),
    'MaxLargeFileTransfers': ('TRANSFER', 'max_large_transfers'),
    'MirrorDeletions': ('BACKUP', 'mirror_deletions'),
    'LogFormat': ('LOGGING', 'format'),
    'LogLevel': ('LOGGING', 'level'),
    'ServerHost': ('NETWORK', 'host'),
    'ServerPort': ('NETWORK', 'port'),
}

DEFAULT_SETTINGS = {
    'BusinessSoftwareName': None,
    'BusinessMonitorInterval': 2.0,
    'EncryptionKey': None,
    'EncryptionExtensions': [],
    'EncryptionToolPath': 'cryptosoft',
    'ExtensionFilePriority': [],
    'LargeFileSizeThresholdKB': 1000000.0,
    'MaxLargeFileTransfers': 1,
    'MirrorDeletions': False,
    'LogFormat': 'JSON',
    'LogLevel': 'INFO',
    'ServerHost': '0.0.0.0',
    'ServerPort': 9000,
}

LIST_SETTINGS = {'EncryptionExtensions', 'ExtensionFilePriority'}


class AppSettings:
    def __init__(self, conf_path: Optional[str] = None, data_dir: Optional[str] = None):
        self.APP_NAME: str = "SaveKeeper"
        self.APP_NAME_CLOSE_LOWER: str = self.APP_NAME.lower().replace(" ", "")
        self.APP_VERSION: str = "0.3.0"

        # Paths
        self.CONF_PATH = conf_path or os.environ.get(
            'SAVEKEEPER_CONFIG',
            os.path.expanduser(f"~/.config/{self.APP_NAME_CLOSE_LOWER}/config.conf"))
        self.DATA_DIR = data_dir or os.environ.get(
            'SAVEKEEPER_DATA_DIR',
            os.path.expanduser(f"~/.local/share/{self.APP_NAME_CLOSE_LOWER}"))

        self.JOBS_FILE: str = os.path.join(self.DATA_DIR, "jobs.json")
        self.STATE_FILE: str = os.path.join(self.DATA_DIR, "state.json")
        self.LOGS_DIR: str = os.path.join(self.DATA_DIR, "logs")
        self.LOG_FILE_PATH: str = os.path.join(self.DATA_DIR, f"{self.APP_NAME_CLOSE_LOWER}.log")
        self.UI_SOCKET_PATH: str = os.path.join(
            os.environ.get("XDG_RUNTIME_DIR", "/tmp"), f"{self.APP_NAME_CLOSE_LOWER}-ui.sock")

        # Values set in memory take precedence over the config file
        self._overrides = {}

        self.CONF = configparser.ConfigParser()
        self.CONF.read(self.CONF_PATH)

    def ensure_directories(self):
        """Ensure the data and log directories exist."""
        try:
            os.makedirs(self.DATA_DIR, exist_ok=True)
            os.makedirs(self.LOGS_DIR, exist_ok=True)
        except OSError as e:
            logging.error(f"Error creating data directories: {e}")

    # =============================================================================
    # DATABASE HANDLER
    # =============================================================================
    def get_database_value(self, section, option):
        """Get value from configuration file."""
        try:
            if not os.path.exists(self.CONF_PATH):
                return None

            # Re-read config to get latest values
            temp_conf = configparser.ConfigParser()
            read_ok = temp_conf.read(self.CONF_PATH)
            if read_ok:
                self.CONF = temp_conf

            if not self.CONF.has_section(section) or not self.CONF.has_option(section, option):
                return None

            value = self.CONF.get(section, option)
            return self._convert_to_python_type(value)

        except configparser.Error as e:
            logging.error(f"Error reading config: {e}")
            return None

    def _convert_to_python_type(self, value):
        """Convert string config values to Python types."""
        if value.lower() in ('true', 'yes'):
            return True
        elif value.lower() in ('false', 'no'):
            return False
        elif value.lower() in ('none', 'null', ''):
            return None
        return value

    # =============================================================================
    # SETTING LOOKUPS
    # =============================================================================
    def get_setting(self, key: str):
        """
        Look up a setting by key.

        In-memory overrides win, then the config file, then the built-in
        default. List settings are returned as lists of strings; numeric and
        boolean settings are coerced to the type of their default.
        """
        if key in self._overrides:
            return self._overrides[key]

        value = None
        location = SETTING_LOCATIONS.get(key)
        if location:
            value = self.get_database_value(*location)

        if value is None:
            return DEFAULT_SETTINGS.get(key)

        if key in LIST_SETTINGS:
            return self._split_list(value)

        default = DEFAULT_SETTINGS.get(key)
        if isinstance(default, bool):
            return self._to_bool(key, value, default)
        if default is None:
            return value
        try:
            return type(default)(value)
        except (TypeError, ValueError):
            logging.warning(f"Invalid value for {key}: {value!r}, using default {default!r}")
            return default

    def set_setting(self, key: str, value):
        """Override a setting in memory for the lifetime of this instance."""
        self._overrides[key] = value

    @staticmethod
    def _to_bool(key: str, value, default: bool) -> bool:
        if isinstance(value, bool):
            return value
        state = configparser.ConfigParser.BOOLEAN_STATES.get(str(value).strip().lower())
        if state is None:
            logging.warning(f"Invalid value for {key}: {value!r}, using default {default!r}")
            return default
        return state

    @staticmethod
    def _split_list(value) -> List[str]:
        if isinstance(value, (list, tuple, set)):
            return [str(v).strip() for v in value if str(v).strip()]
        return [part.strip() for part in str(value).split(',') if part.strip()]

    # =============================================================================
    # CALCULATIONS
    # =============================================================================
    def large_file_threshold_bytes(self) -> int:
        """Large-file threshold in bytes (the config stores kilobytes)."""
        return int(float(self.get_setting('LargeFileSizeThresholdKB')) * 1024)
