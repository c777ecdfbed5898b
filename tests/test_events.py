"""
Tests for state persistence and event propagation, and for the backup
manager that owns the job collection.
"""
import os
import json
import time
import tempfile
import threading
import unittest

from unittest import mock

from savekeeper.backup_manager import BackupManager
from savekeeper.errors import DuplicateJobError, JobNotFoundError
from savekeeper.events import EventManager, JobEventManager
from savekeeper.job_status import BackupState, BackupType, JobState

from helpers import (
    GatedFileSystem,
    StateRecorder,
    make_job,
    make_services,
    make_settings,
    make_tree,
    relative_files,
    wait_until,
)


class JobEventManagerTests(unittest.TestCase):

    # ------------------------------------------------------------------
    # Publish: upsert by name and rewrite the state file
    # ------------------------------------------------------------------
    def test_publish_upserts_and_writes_state_file(self):
        with tempfile.TemporaryDirectory() as td:
            state_file = os.path.join(td, 'state.json')
            events = JobEventManager(state_file)
            job = make_job(td, services=make_services(make_settings(td), events=events))

            events.publish(job)
            job.status.state = BackupState.RUNNING
            events.publish(job)

            with open(state_file, encoding='utf-8') as f:
                data = json.load(f)
            self.assertEqual(len(data), 1)
            self.assertEqual(data[0]['Name'], 'docs')
            self.assertEqual(data[0]['State'], 'Running')
            self.assertEqual(events.get_job_state('docs').state, BackupState.RUNNING)

    # ------------------------------------------------------------------
    # Round trip through the state file
    # ------------------------------------------------------------------
    def test_state_file_round_trip_keeps_name_state_and_totals(self):
        with tempfile.TemporaryDirectory() as td:
            state_file = os.path.join(td, 'state.json')
            make_tree(os.path.join(td, 'src'), {'a.txt': 10, 'b.txt': 22})
            events = JobEventManager(state_file)
            job = make_job(td, services=make_services(make_settings(td), events=events))
            job.start()

            reloaded = JobEventManager(state_file).load_states()

            self.assertEqual(len(reloaded), 1)
            state = reloaded[0]
            self.assertEqual(state.name, 'docs')
            self.assertEqual(state.state, BackupState.COMPLETED)
            self.assertEqual(state.total_files, 2)
            self.assertEqual(state.total_size, 32)
            self.assertEqual(state.progress_percentage, 100.0)
            self.assertEqual(len(state.processed_files), 2)

    def test_json_keys_are_pascal_case(self):
        with tempfile.TemporaryDirectory() as td:
            job = make_job(td)
            keys = set(JobState.capture(job).to_dict())
            self.assertEqual(keys, {
                'Name', 'SourcePath', 'TargetPath', 'Type', 'State', 'TotalFiles', 'TotalSize',
                'RemainingFiles', 'RemainingSize', 'CurrentSourceFile', 'CurrentTargetFile',
                'StartTime', 'EndTime', 'EncryptionTimeMs', 'ProgressPercentage',
                'ProcessedFiles', 'ErrorMessage', 'Details', 'Timestamp',
            })

    def test_invalid_state_entries_are_skipped(self):
        with tempfile.TemporaryDirectory() as td:
            state_file = os.path.join(td, 'state.json')
            with open(state_file, 'w', encoding='utf-8') as f:
                json.dump([{'Name': 'ok', 'State': 'Paused', 'Type': 'Full'},
                           {'State': 'Running'},
                           {'Name': 'bad', 'State': 'Exploded'}], f)

            states = JobEventManager(state_file).load_states()

            self.assertEqual([s.name for s in states], ['ok'])

    # ------------------------------------------------------------------
    # Listener fan-out
    # ------------------------------------------------------------------
    def test_listeners_are_called_in_order_and_isolated(self):
        """A failing listener is logged and the following listener still runs."""
        with tempfile.TemporaryDirectory() as td:
            events = JobEventManager()
            job = make_job(td, services=make_services(make_settings(td), events=events))
            calls = []

            def first(state):
                calls.append('first')
                raise RuntimeError("listener failure")

            recorder = StateRecorder()
            events.add_listener(first)
            events.add_listener(lambda state: calls.append('second'))
            events.add_listener(recorder)

            with self.assertLogs(level='ERROR'):
                events.publish(job)

            self.assertEqual(calls, ['first', 'second'])
            self.assertEqual(len(recorder.states), 1)

    def test_remove_job_state(self):
        with tempfile.TemporaryDirectory() as td:
            state_file = os.path.join(td, 'state.json')
            events = JobEventManager(state_file)
            job = make_job(td, services=make_services(make_settings(td), events=events))
            events.publish(job)

            events.remove_job_state('docs')

            self.assertEqual(events.get_all_job_states(), [])
            with open(state_file, encoding='utf-8') as f:
                self.assertEqual(json.load(f), [])

    # ------------------------------------------------------------------
    # Concurrent publishes of the same job
    # ------------------------------------------------------------------
    def test_slow_publish_cannot_overwrite_a_newer_state(self):
        """A Running snapshot delayed mid-publish never lands after the Error that followed it."""
        with tempfile.TemporaryDirectory() as td:
            state_file = os.path.join(td, 'state.json')
            events = JobEventManager(state_file)
            recorder = StateRecorder()
            events.add_listener(recorder)
            job = make_job(td, services=make_services(make_settings(td), events=events))
            reached, gate = threading.Event(), threading.Event()
            original_capture = JobState.capture

            def slow_capture(captured_job):
                state = original_capture(captured_job)
                if threading.current_thread().name == 'running-publish':
                    reached.set()
                    gate.wait(5)
                return state

            with mock.patch.object(JobState, 'capture', slow_capture):
                job.status.state = BackupState.RUNNING
                first = threading.Thread(target=events.publish, args=(job,), name='running-publish')
                first.start()
                self.assertTrue(reached.wait(5))

                job.status.state = BackupState.ERROR
                job.status.error_message = "Job stopped by user"
                second = threading.Thread(target=events.publish, args=(job,), name='error-publish')
                second.start()
                time.sleep(0.1)

                gate.set()
                first.join(5)
                second.join(5)

            with open(state_file, encoding='utf-8') as f:
                self.assertEqual(json.load(f)[0]['State'], 'Error')
            self.assertEqual(events.get_job_state('docs').state, BackupState.ERROR)
            self.assertEqual(recorder.for_job('docs')[-1].state, BackupState.ERROR)


class EventManagerTests(unittest.TestCase):

    def test_commands_reach_every_listener(self):
        received = []

        class Listener:
            def __init__(self, label):
                self.label = label

            def on_launch_jobs_requested(self, names):
                received.append((self.label, 'launch', names))

            def on_stop_jobs_requested(self, names):
                received.append((self.label, 'stop', names))

        class Broken:
            def on_launch_jobs_requested(self, names):
                raise ValueError("broken listener")

        manager = EventManager()
        manager.add_command_listener(Broken())
        manager.add_command_listener(Listener('a'))
        manager.add_command_listener(Listener('b'))

        with self.assertLogs(level='ERROR'):
            manager.launch_jobs(['docs'])
        manager.stop_jobs(['docs'])
        manager.pause_jobs(['docs'])

        self.assertEqual(received, [
            ('a', 'launch', ['docs']), ('b', 'launch', ['docs']),
            ('a', 'stop', ['docs']), ('b', 'stop', ['docs']),
        ])


class BackupManagerTests(unittest.TestCase):

    def _manager(self, td, **settings_overrides):
        settings = make_settings(td, **settings_overrides)
        services = make_services(settings, events=JobEventManager(os.path.join(td, 'data', 'state.json')))
        return BackupManager(services, jobs_file=os.path.join(td, 'data', 'jobs.json'))

    # ------------------------------------------------------------------
    # Job collection and jobs file
    # ------------------------------------------------------------------
    def test_add_and_remove_jobs_persist_the_jobs_file(self):
        with tempfile.TemporaryDirectory() as td:
            manager = self._manager(td)
            manager.add_job('docs', os.path.join(td, 'src'), os.path.join(td, 'dst'), 'Full')
            manager.add_job('photos', os.path.join(td, 'p'), os.path.join(td, 'q'), BackupType.DIFFERENTIAL)

            with open(manager.jobs_file, encoding='utf-8') as f:
                data = json.load(f)
            self.assertEqual([d['Name'] for d in data], ['docs', 'photos'])
            self.assertEqual(data[1]['Type'], 'Differential')
            self.assertEqual(set(data[0]), {'Name', 'SourcePath', 'TargetPath', 'Type'})

            manager.remove_job('docs')

            with open(manager.jobs_file, encoding='utf-8') as f:
                self.assertEqual([d['Name'] for d in json.load(f)], ['photos'])
            self.assertIsNone(manager.events.get_job_state('docs'))

    def test_duplicate_and_unknown_names(self):
        with tempfile.TemporaryDirectory() as td:
            manager = self._manager(td)
            manager.add_job('docs', td, td)
            with self.assertRaises(DuplicateJobError):
                manager.add_job('docs', td, td)
            with self.assertRaises(JobNotFoundError):
                manager.get_job('nope')
            with self.assertRaises(JobNotFoundError):
                manager.remove_job('nope')

    def test_load_jobs_restores_paused_runs(self):
        """A run left Paused by a shutdown is restored and resumable after reload."""
        with tempfile.TemporaryDirectory() as td:
            src, dst = os.path.join(td, 'src'), os.path.join(td, 'dst')
            make_tree(src, {'a.txt': 1, 'b.txt': 2, 'c.txt': 3})
            first = self._manager(td)
            job = first.add_job('docs', src, dst)
            job.status.state = BackupState.PAUSED
            job.status.set_totals(3, 6)
            job.status.file_done(os.path.join(src, 'a.txt'), 1)
            first.events.publish(job)

            second = self._manager(td)
            loaded = second.load_jobs()

            self.assertEqual([j.name for j in loaded], ['docs'])
            restored = second.get_job('docs')
            self.assertEqual(restored.status.state, BackupState.PAUSED)
            self.assertEqual(restored.status.processed_files, [os.path.join(src, 'a.txt')])

            self.assertEqual(second.resume_jobs(['docs']), ['docs'])
            second.parallel.wait_all(5)

            self.assertEqual(restored.status.state, BackupState.COMPLETED)
            self.assertEqual(relative_files(dst), {'b.txt', 'c.txt'})

    # ------------------------------------------------------------------
    # Execution entry points
    # ------------------------------------------------------------------
    def test_execute_jobs_by_name(self):
        with tempfile.TemporaryDirectory() as td:
            manager = self._manager(td)
            for name in ('one', 'two'):
                make_tree(os.path.join(td, name), {'f.txt': 4})
                manager.add_job(name, os.path.join(td, name), os.path.join(td, f'{name}-dst'))

            results = manager.execute_jobs(['two', 'missing'])

            self.assertEqual(results, {'two': BackupState.COMPLETED})
            self.assertEqual(manager.get_job('one').status.state, BackupState.WAITING)

    def test_remote_commands_drive_the_manager(self):
        with tempfile.TemporaryDirectory() as td:
            manager = self._manager(td)
            make_tree(os.path.join(td, 'src'), {'f.txt': 4})
            manager.add_job('docs', os.path.join(td, 'src'), os.path.join(td, 'dst'))
            commands = EventManager()
            commands.add_command_listener(manager)

            commands.launch_jobs(['docs'])

            job = manager.get_job('docs')
            self.assertTrue(wait_until(lambda: job.status.state is BackupState.COMPLETED))

    def test_business_software_pauses_and_resumes_running_jobs(self):
        with tempfile.TemporaryDirectory() as td:
            settings = make_settings(td)
            fs = GatedFileSystem('a.txt')
            services = make_services(settings, file_system=fs)
            manager = BackupManager(services)
            make_tree(os.path.join(td, 'src'), {'a.txt': 1, 'b.txt': 1})
            job = manager.add_job('docs', os.path.join(td, 'src'), os.path.join(td, 'dst'))
            manager.execute_jobs_async(['docs'])
            self.assertTrue(fs.reached.wait(5))

            manager.on_business_software_started()
            self.assertEqual(job.status.state, BackupState.PAUSED)
            self.assertEqual(len(services.notifier.warnings), 1)

            fs.release.set()
            manager.on_business_software_stopped()
            manager.parallel.wait_all(5)
            self.assertEqual(job.status.state, BackupState.COMPLETED)


if __name__ == '__main__':
    unittest.main()
