import logging

from typing import List

from savekeeper.errors import SourceMissingError
from savekeeper.file_system import FileSystemService
from savekeeper.job_status import BackupType


class BackupFileStrategy:
    """Decides which source files a job transfers and fills in its totals."""

    def __init__(self, file_system: FileSystemService):
        self.file_system = file_system

    def get_files(self, job) -> List[str]:
        if not self.file_system.is_directory(job.source_path):
            raise SourceMissingError(f"Source directory does not exist: {job.source_path}")

        selected = []
        total_size = 0
        for source_file in self.file_system.list_files(job.source_path):
            if not self.should_copy(source_file, job.target_file_for(source_file)):
                continue
            try:
                total_size += self.file_system.get_size(source_file)
            except OSError as e:
                logging.warning(f"[{job.name}] Cannot stat {source_file}, skipping: {e}")
                continue
            selected.append(source_file)

        job.status.set_totals(len(selected), total_size)
        return selected

    def should_copy(self, source_file: str, target_file: str) -> bool:
        raise NotImplementedError


class FullBackupStrategy(BackupFileStrategy):
    def should_copy(self, source_file: str, target_file: str) -> bool:
        return True


class DifferentialBackupStrategy(BackupFileStrategy):
    """Select files missing at the target or whose SHA-256 differs."""

    def should_copy(self, source_file: str, target_file: str) -> bool:
        if not self.file_system.is_file(target_file):
            return True
        try:
            return (self.file_system.calculate_sha256(source_file)
                    != self.file_system.calculate_sha256(target_file))
        except OSError as e:
            logging.warning(f"Failed to hash {source_file}, selecting it for copy: {e}")
            return True


def strategy_for(backup_type: BackupType, file_system: FileSystemService) -> BackupFileStrategy:
    if backup_type is BackupType.DIFFERENTIAL:
        return DifferentialBackupStrategy(file_system)
    return FullBackupStrategy(file_system)
