"""
Tests for file selection: Full and Differential strategies and the
file-system service they rely on.
"""
import os
import shutil
import tempfile
import unittest

from savekeeper.errors import SourceMissingError
from savekeeper.file_system import FileSystemService, has_extension, normalize_extensions
from savekeeper.strategies import (
    DifferentialBackupStrategy,
    FullBackupStrategy,
    strategy_for,
)
from savekeeper.job_status import BackupType

from helpers import make_job, make_tree, relative_files


class StrategyTests(unittest.TestCase):

    # ------------------------------------------------------------------
    # Full: every file at any depth
    # ------------------------------------------------------------------
    def test_full_selects_every_file_recursively(self):
        """Full returns all files, nested ones included, and fills totals."""
        with tempfile.TemporaryDirectory() as td:
            src = os.path.join(td, 'src')
            make_tree(src, {'a.txt': 10, 'sub/b.txt': 20, 'sub/deeper/c.bin': 30})
            job = make_job(td)

            files = FullBackupStrategy(FileSystemService()).get_files(job)

            self.assertEqual({os.path.relpath(f, src) for f in files},
                             {'a.txt', os.path.join('sub', 'b.txt'), os.path.join('sub', 'deeper', 'c.bin')})
            self.assertEqual(job.status.total_files, 3)
            self.assertEqual(job.status.total_size, 60)
            self.assertEqual(job.status.remaining_files, 3)
            self.assertEqual(job.status.remaining_size, 60)

    # ------------------------------------------------------------------
    # Listing order is deterministic
    # ------------------------------------------------------------------
    def test_listing_order_is_sorted(self):
        """Files come out in sorted walk order regardless of creation order."""
        with tempfile.TemporaryDirectory() as td:
            src = os.path.join(td, 'src')
            make_tree(src, {'z.txt': 1, 'b/2.txt': 1, 'a.txt': 1, 'b/1.txt': 1})

            files = FileSystemService().list_files(src)

            self.assertEqual([os.path.relpath(f, src) for f in files],
                             ['a.txt', 'z.txt', os.path.join('b', '1.txt'), os.path.join('b', '2.txt')])

    # ------------------------------------------------------------------
    # Differential: identical tree selects nothing
    # ------------------------------------------------------------------
    def test_differential_rerun_selects_nothing(self):
        """After a full copy, a differential pass finds no differences."""
        with tempfile.TemporaryDirectory() as td:
            src, dst = os.path.join(td, 'src'), os.path.join(td, 'dst')
            make_tree(src, {'a.txt': 'one', 'sub/b.txt': 'two'})
            shutil.copytree(src, dst)
            job = make_job(td, backup_type='Differential')

            files = DifferentialBackupStrategy(FileSystemService()).get_files(job)

            self.assertEqual(files, [])
            self.assertEqual(job.status.total_files, 0)
            self.assertEqual(job.status.total_size, 0)

    # ------------------------------------------------------------------
    # Differential: a one-byte change selects exactly that file
    # ------------------------------------------------------------------
    def test_differential_one_byte_change_selects_one_file(self):
        """Hash comparison picks up a single changed byte, same size and all."""
        with tempfile.TemporaryDirectory() as td:
            src, dst = os.path.join(td, 'src'), os.path.join(td, 'dst')
            make_tree(src, {'a.txt': 'hello', 'b.txt': 'world'})
            shutil.copytree(src, dst)
            with open(os.path.join(src, 'b.txt'), 'w') as f:
                f.write('worle')
            job = make_job(td, backup_type='Differential')

            files = DifferentialBackupStrategy(FileSystemService()).get_files(job)

            self.assertEqual([os.path.basename(f) for f in files], ['b.txt'])
            self.assertEqual(job.status.total_size, 5)

    # ------------------------------------------------------------------
    # Differential: missing targets are selected
    # ------------------------------------------------------------------
    def test_differential_selects_files_missing_at_target(self):
        with tempfile.TemporaryDirectory() as td:
            src, dst = os.path.join(td, 'src'), os.path.join(td, 'dst')
            make_tree(src, {'a.txt': 'a'})
            make_tree(dst, {})
            os.makedirs(dst, exist_ok=True)
            job = make_job(td, backup_type='Differential')

            files = DifferentialBackupStrategy(FileSystemService()).get_files(job)

            self.assertEqual([os.path.basename(f) for f in files], ['a.txt'])

    def test_differential_asks_its_file_system_about_targets(self):
        """Target existence goes through the injected service, not the local disk."""
        with tempfile.TemporaryDirectory() as td:
            src, dst = os.path.join(td, 'src'), os.path.join(td, 'dst')
            make_tree(src, {'a.txt': 'a', 'b.txt': 'b'})
            shutil.copytree(src, dst)
            hidden = os.path.join(dst, 'b.txt')

            class HidingFileSystem(FileSystemService):
                def __init__(self):
                    self.checked = []

                def is_file(self, path):
                    self.checked.append(path)
                    return path != hidden and super().is_file(path)

            file_system = HidingFileSystem()
            job = make_job(td, backup_type='Differential')

            files = DifferentialBackupStrategy(file_system).get_files(job)

            self.assertEqual([os.path.basename(f) for f in files], ['b.txt'])
            self.assertEqual(sorted(file_system.checked), [os.path.join(dst, 'a.txt'), hidden])

    # ------------------------------------------------------------------
    # Source missing
    # ------------------------------------------------------------------
    def test_missing_source_raises(self):
        """Both strategies refuse a source directory that does not exist."""
        with tempfile.TemporaryDirectory() as td:
            job = make_job(td)
            for strategy in (FullBackupStrategy(FileSystemService()),
                             DifferentialBackupStrategy(FileSystemService())):
                with self.assertRaises(SourceMissingError):
                    strategy.get_files(job)

    # ------------------------------------------------------------------
    # Three file scenario totals
    # ------------------------------------------------------------------
    def test_three_file_totals(self):
        """1 KB + 2 KB + 500 KB adds up to 503 KB."""
        with tempfile.TemporaryDirectory() as td:
            make_tree(os.path.join(td, 'src'), {'one.dat': 1024, 'two.dat': 2048, 'big.dat': 500 * 1024})
            job = make_job(td)

            FullBackupStrategy(FileSystemService()).get_files(job)

            self.assertEqual(job.status.total_files, 3)
            self.assertEqual(job.status.total_size, 503 * 1024)

    def test_strategy_for_type(self):
        fs = FileSystemService()
        self.assertIsInstance(strategy_for(BackupType.FULL, fs), FullBackupStrategy)
        self.assertIsInstance(strategy_for(BackupType.DIFFERENTIAL, fs), DifferentialBackupStrategy)


class FileSystemServiceTests(unittest.TestCase):

    # ------------------------------------------------------------------
    # Atomic copy
    # ------------------------------------------------------------------
    def test_copy_creates_directories_and_overwrites(self):
        """copy_file creates parents, overwrites and leaves no temp files."""
        with tempfile.TemporaryDirectory() as td:
            fs = FileSystemService()
            src = os.path.join(td, 'src.txt')
            with open(src, 'w') as f:
                f.write('new content')
            dst = os.path.join(td, 'deep', 'er', 'dst.txt')
            os.makedirs(os.path.dirname(dst))
            with open(dst, 'w') as f:
                f.write('old')

            fs.copy_file(src, dst)

            with open(dst) as f:
                self.assertEqual(f.read(), 'new content')
            self.assertEqual(relative_files(os.path.dirname(dst)), {'dst.txt'})
            self.assertEqual(fs.calculate_sha256(src), fs.calculate_sha256(dst))

    def test_copy_missing_source_raises_and_cleans_up(self):
        with tempfile.TemporaryDirectory() as td:
            fs = FileSystemService()
            dst = os.path.join(td, 'out', 'dst.txt')
            with self.assertRaises(OSError):
                fs.copy_file(os.path.join(td, 'missing.txt'), dst)
            self.assertEqual(relative_files(os.path.join(td, 'out')), set())

    def test_list_directories_deepest_first(self):
        with tempfile.TemporaryDirectory() as td:
            os.makedirs(os.path.join(td, 'a', 'b', 'c'))
            dirs = FileSystemService().list_directories(td)
            self.assertEqual([os.path.relpath(d, td) for d in dirs],
                             [os.path.join('a', 'b', 'c'), os.path.join('a', 'b'), 'a'])

    def test_extension_helpers(self):
        self.assertEqual(normalize_extensions(['TXT', '.Docx', ' ', None]), {'.txt', '.docx'})
        self.assertTrue(has_extension('/x/report.TXT', ['txt']))
        self.assertFalse(has_extension('/x/archive.txt.bin', ['.txt']))
        self.assertFalse(has_extension('/x/a.txt', []))
        self.assertFalse(has_extension('/x/a.txt', None))


if __name__ == '__main__':
    unittest.main()
