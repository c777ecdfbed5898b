import os
import json
import logging
import tempfile


def load_json_list(path: str) -> list:
    """Load a JSON array from disk, returning an empty list when unreadable."""
    if not os.path.exists(path):
        return []

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logging.error(f"Error loading {path}: {e}")
        return []

    if not isinstance(data, list):
        logging.warning(f"Ignoring {path}: expected a JSON array, got {type(data).__name__}")
        return []
    return data


def save_json_atomic(path: str, data) -> bool:
    """Save data as JSON with an atomic write (temp file, fsync, replace)."""
    tmp_path = None
    try:
        directory = os.path.dirname(path) or "."
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}_tmp_", dir=directory)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_path, path)
        return True

    except (OSError, TypeError, ValueError) as e:
        logging.error(f"Failed to save {path}: {e}")
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass
        return False
