import os
import uuid
import shutil
import hashlib
import logging

from typing import List, Iterable, Optional, Set


def normalize_extensions(extensions: Optional[Iterable[str]]) -> Set[str]:
    """Lower-case extension set with a leading dot ("TXT" -> ".txt")."""
    normalized = set()
    for ext in extensions or ():
        if ext is None:
            continue
        ext = str(ext).strip().lower()
        if not ext:
            continue
        normalized.add(ext if ext.startswith('.') else f".{ext}")
    return normalized


def has_extension(path: str, extensions: Optional[Iterable[str]]) -> bool:
    normalized = normalize_extensions(extensions)
    if not normalized:
        return False
    return os.path.splitext(path)[1].lower() in normalized


class FileSystemService:
    """Directory listing, atomic file copy and content hashing."""

    chunk_size = 64 * 1024

    # =============================================================================
    # LISTING
    # =============================================================================
    def list_files(self, root: str) -> List[str]:
        """Every file under root, recursively, in a deterministic order."""
        files = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for name in sorted(filenames):
                files.append(os.path.join(dirpath, name))
        return files

    def list_directories(self, root: str) -> List[str]:
        """Every directory under root (root excluded), deepest first."""
        directories = []
        for dirpath, dirnames, _ in os.walk(root):
            dirnames.sort()
            for name in dirnames:
                directories.append(os.path.join(dirpath, name))
        directories.sort(key=lambda p: p.count(os.sep), reverse=True)
        return directories

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def is_file(self, path: str) -> bool:
        return os.path.isfile(path)

    def is_directory(self, path: str) -> bool:
        return os.path.isdir(path)

    def get_size(self, path: str) -> int:
        return os.path.getsize(path)

    # =============================================================================
    # FILE UTILITIES
    # =============================================================================
    def calculate_sha256(self, file_path: str) -> str:
        """Calculates the SHA256 hash of a file in chunks."""
        hasher = hashlib.sha256()
        with open(file_path, 'rb') as file:
            while chunk := file.read(self.chunk_size):
                hasher.update(chunk)
        return hasher.hexdigest()

    def copy_file(self, src_path: str, final_dst_path: str) -> None:
        """
        Copy a file to a temporary path next to the destination and then
        atomically rename it, so the destination is never left incomplete.
        Missing parent directories are created and an existing destination
        is overwritten. Raises OSError on failure; the temp file is removed.
        """
        os.makedirs(os.path.dirname(final_dst_path), exist_ok=True)

        if os.path.isdir(final_dst_path):
            logging.warning(f"Destination path is a directory, removing: {final_dst_path}")
            shutil.rmtree(final_dst_path)

        temp_dst_path = f"{final_dst_path}.tmp_{os.getpid()}_{uuid.uuid4().hex}"
        logging.debug(f"Copying FILE {src_path} to temporary path {temp_dst_path}")

        try:
            with open(src_path, 'rb') as fr, open(temp_dst_path, 'wb') as fw:
                while chunk := fr.read(self.chunk_size):
                    fw.write(chunk)
                fw.flush()
                os.fsync(fw.fileno())

            # Preserve metadata
            try:
                shutil.copystat(src_path, temp_dst_path)
            except OSError as e:
                logging.warning(f"Could not copy file metadata for {src_path}: {e}")

            os.replace(temp_dst_path, final_dst_path)
            logging.debug(f"Atomic commit successful for {final_dst_path}")
        except OSError:
            if os.path.exists(temp_dst_path):
                try:
                    os.remove(temp_dst_path)
                except OSError as cleanup_error:
                    logging.warning(f"Could not remove temp file {temp_dst_path}: {cleanup_error}")
            raise

    def delete_file(self, path: str) -> None:
        os.remove(path)

    def delete_directory(self, path: str) -> None:
        shutil.rmtree(path)
