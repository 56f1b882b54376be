import configparser
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

from warpsync.errors import ConflictError, NotFoundError, SSHConnectionError
from warpsync.recovery import StateRecoveryService
from warpsync.scanner import ConfigJobRepository, ScanCandidate
from warpsync.scheduler import JobScheduler, JobStatus, SchedulerConfig
from tests.mocks.factories import FakeClock

JOBS_INI = """
[job:tv]
host = seedbox
username = media
remote_path = /downloads/tv
local_path = /media/tv
scan_interval = 15

[job:films]
host = seedbox
username = media
remote_path = /downloads/films
local_path = /media/films
scan_interval = 60
auto_queue = false

[job:paused]
host = seedbox
username = media
remote_path = /a
local_path = /b
enabled = false
"""


def _files(*names, size=1):
    return [ScanCandidate(file_id=n, relative_path=n, size=size) for n in names]


class ScriptedScanner:
    """Scanner double: job id -> candidates, an exception, or a generator function."""

    def __init__(self, results=None):
        self.results = results or {}
        self.scanned = []

    def scan(self, job, abort_event=None):
        self.scanned.append(job.job_id)
        result = self.results.get(job.job_id, [])
        if isinstance(result, Exception):
            raise result
        if callable(result):
            yield from result(job, abort_event)
            return
        yield from result


class InlineExecutor:
    def submit(self, fn, *args):
        fn(*args)


class TestSchedulerConfig(unittest.TestCase):

    def test_out_of_range_values_are_clamped(self):
        config = SchedulerConfig(check_interval=1, max_concurrent_scans=50, scan_timeout=5,
                                 error_retry_delay=0, max_error_count=0, health_check_interval=1)
        self.assertEqual(config.check_interval, 5)
        self.assertEqual(config.max_concurrent_scans, 10)
        self.assertEqual(config.scan_timeout, 60)
        self.assertEqual(config.error_retry_delay, 30)
        self.assertEqual(config.max_error_count, 1)
        self.assertEqual(config.health_check_interval, 30)

    def test_config_file_and_environment(self):
        parser = configparser.ConfigParser()
        parser.read_string("[SCHEDULER]\ncheck_interval = 10\nmax_concurrent_scans = 4\nscan_timeout = soon\n")
        config = SchedulerConfig.from_config(parser, environ={"WS_SCHEDULER_MAX_CONCURRENT_SCANS": "2"})
        self.assertEqual(config.check_interval, 10)
        self.assertEqual(config.max_concurrent_scans, 2)
        self.assertEqual(config.scan_timeout, 600)

    def test_defaults_without_section(self):
        config = SchedulerConfig.from_config(configparser.ConfigParser(), environ={})
        self.assertEqual(config, SchedulerConfig())


class SchedulerTestCase(unittest.TestCase):

    def setUp(self):
        parser = configparser.ConfigParser(interpolation=None)
        parser.read_string(JOBS_INI)
        self.repository = ConfigJobRepository(parser)
        self.clock = FakeClock()
        self.queue = MagicMock()
        self.queue.add_batch.side_effect = lambda batch: [f"id-{r.file_id}" for r in batch]
        self.queue.get_stats.return_value = {"queued": 4}
        self.config = SchedulerConfig(check_interval=5, max_concurrent_scans=2, scan_timeout=60,
                                      error_retry_delay=30, max_error_count=2)

    def build(self, results=None, executor=None, recovery=None):
        self.scanner = ScriptedScanner(results)
        self.scheduler = JobScheduler(self.repository, self.scanner, self.queue, self.config,
                                      recovery=recovery, executor=executor or InlineExecutor(), clock=self.clock)
        self.scheduler.refresh_jobs()
        return self.scheduler

    def job(self, job_id):
        return next(j for j in self.scheduler.get_scheduled_jobs() if j.job_id == job_id)


class TestScanning(SchedulerTestCase):

    def test_only_enabled_jobs_are_scheduled(self):
        scheduler = self.build()
        self.assertEqual({j.job_id for j in scheduler.get_scheduled_jobs()}, {"tv", "films"})

    def test_due_jobs_are_scanned_and_rescheduled(self):
        scheduler = self.build({"tv": _files("a", "b")})
        start = self.clock.now

        self.assertEqual(scheduler.tick(), 2)
        tv = self.job("tv")
        self.assertEqual(tv.status, JobStatus.ACTIVE)
        self.assertFalse(tv.is_scanning)
        self.assertEqual(tv.last_scan, start)
        self.assertEqual(tv.next_scan, start + 15 * 60)
        self.assertEqual(self.repository.get_job("tv").last_scan, start)
        self.assertEqual(self.queue.add_batch.call_count, 1)
        self.assertEqual(scheduler.get_stats().total_scans_completed, 2)

        self.assertEqual(scheduler.tick(), 0)
        self.clock.advance(15 * 60)
        self.assertEqual(scheduler.tick(), 1)
        self.assertEqual(self.scanner.scanned, ["tv", "films", "tv"])

    def test_candidates_are_admitted_in_batches(self):
        scheduler = self.build({"tv": _files(*[f"f{i}" for i in range(120)])})
        executions = []
        self.queue.add_batch.side_effect = lambda batch: executions.append(len(batch)) or [r.file_id for r in batch]
        scheduler.trigger_job_scan("tv")
        self.assertEqual(executions, [50, 50, 20])

    def test_directories_and_manual_jobs_are_not_queued(self):
        candidates = _files("a") + [ScanCandidate(file_id="dir", relative_path="dir", size=0, is_directory=True)]
        scheduler = self.build({"tv": candidates, "films": _files("movie")})
        tv = scheduler.trigger_job_scan("tv")
        films = scheduler.trigger_job_scan("films")
        self.assertEqual((tv.files_scanned, tv.files_queued), (2, 1))
        self.assertEqual((films.files_scanned, films.files_queued), (1, 0))
        self.assertEqual(films.status, "completed")

    def test_admitted_requests_carry_job_paths(self):
        scheduler = self.build({"tv": _files("Show/e1.mkv")})
        scheduler.trigger_job_scan("tv")
        request = self.queue.add_batch.call_args.args[0][0]
        self.assertEqual(request.source, "/downloads/tv/Show/e1.mkv")
        self.assertEqual(request.job_id, "tv")

    def test_recovery_pauses_ticks(self):
        recovery = MagicMock()
        recovery.outside_recovery.return_value.__enter__.return_value = False
        scheduler = self.build(recovery=recovery)
        self.assertEqual(scheduler.tick(), 0)
        self.assertEqual(self.scanner.scanned, [])

    def test_recovery_started_mid_tick_is_refused(self):
        recovery = StateRecoveryService(MagicMock(), MagicMock(), MagicMock(), MagicMock(), lock_wait=0.1)
        refused = []

        def scan_then_recover(job, abort_event):
            try:
                recovery.perform_system_recovery()
            except ConflictError:
                refused.append(job.job_id)
            yield from _files("a")

        scheduler = self.build({"tv": scan_then_recover, "films": scan_then_recover}, recovery=recovery)
        self.assertEqual(scheduler.tick(), 2)
        self.assertEqual(sorted(refused), ["films", "tv"])
        self.assertFalse(recovery.is_recovering())
        self.assertFalse(recovery.recovery_lock.locked())


class TestErrorPolicy(SchedulerTestCase):

    def test_failed_scan_is_retried_after_delay(self):
        scheduler = self.build({"tv": SSHConnectionError("Could not connect to media@seedbox:22")})
        scheduler.trigger_job_scan("tv")
        tv = self.job("tv")
        self.assertEqual(tv.error_count, 1)
        self.assertEqual(tv.status, JobStatus.ACTIVE)
        self.assertEqual(tv.next_scan, self.clock.now + 30)
        self.assertTrue(tv.last_error.startswith("Connection error"))
        self.assertEqual(scheduler.get_stats().total_scans_failed, 1)

    def test_repeated_failures_suspend_job_until_reset(self):
        scheduler = self.build({"tv": RuntimeError("listing failed")})
        scheduler.trigger_job_scan("tv")
        self.clock.advance(31)
        scheduler.tick()
        tv = self.job("tv")
        self.assertEqual(tv.status, JobStatus.ERROR)
        self.assertEqual(tv.last_error, "Scan error: listing failed")

        self.clock.advance(3600)
        scheduler.tick()
        self.assertEqual(self.scanner.scanned.count("tv"), 2)
        self.assertEqual(scheduler.get_stats().error_jobs, 1)

        reset = scheduler.reset_job("tv")
        self.assertEqual(reset.status, JobStatus.ACTIVE)
        self.assertEqual(reset.error_count, 0)
        self.scanner.results["tv"] = []
        scheduler.tick()
        self.assertEqual(self.job("tv").status, JobStatus.ACTIVE)
        self.assertEqual(self.scanner.scanned.count("tv"), 3)

    def test_success_clears_error_count(self):
        scheduler = self.build({"tv": RuntimeError("flaky")})
        scheduler.trigger_job_scan("tv")
        self.scanner.results["tv"] = []
        scheduler.trigger_job_scan("tv")
        self.assertEqual(self.job("tv").error_count, 0)
        self.assertIsNone(self.job("tv").last_error)

    def test_refresh_keeps_error_state(self):
        scheduler = self.build({"tv": RuntimeError("flaky")})
        scheduler.trigger_job_scan("tv")
        scheduler.refresh_jobs()
        self.assertEqual(self.job("tv").error_count, 1)

    def test_unknown_job(self):
        scheduler = self.build()
        with self.assertRaises(NotFoundError):
            scheduler.trigger_job_scan("nope")
        with self.assertRaises(NotFoundError):
            scheduler.reset_job("nope")


class TestConcurrentScans(SchedulerTestCase):

    def blocking_scan(self):
        started = threading.Event()

        def scan(job, abort_event):
            started.set()
            abort_event.wait(5)
            return iter(())

        scan.started = started
        return scan

    def threaded(self, results):
        executor = ThreadPoolExecutor(max_workers=4)
        self.addCleanup(executor.shutdown, wait=True)
        return self.build(results, executor=executor)

    def test_scan_cap_and_conflicts(self):
        tv, films = self.blocking_scan(), self.blocking_scan()
        self.config.max_concurrent_scans = 1
        scheduler = self.threaded({"tv": tv, "films": films})

        self.assertEqual(scheduler.tick(), 1)
        self.assertTrue(tv.started.wait(5))
        self.assertEqual([e.job_id for e in scheduler.get_running_executions()], ["tv"])
        with self.assertRaises(ConflictError):
            scheduler.trigger_job_scan("tv")
        with self.assertRaises(ConflictError):
            scheduler.trigger_job_scan("films")
        self.assertEqual(scheduler.get_stats().scanning_jobs, 1)
        scheduler.stop()

    def test_scan_timeout(self):
        """An overrunning scan is aborted, counted as failed and frees its scan slot."""
        tv = self.blocking_scan()
        scheduler = self.threaded({"tv": tv})
        execution = scheduler.trigger_job_scan("tv")
        self.assertTrue(tv.started.wait(5))

        self.clock.advance(61)
        scheduler.tick()
        self.assertEqual(execution.status, "timeout")
        self.assertTrue(execution.error.startswith("Timeout"))
        self.assertTrue(execution.abort_event.is_set())
        self.assertEqual(self.job("tv").error_count, 1)

        execution.future.result(timeout=5)
        tv_job = self.job("tv")
        self.assertFalse(tv_job.is_scanning)
        self.assertEqual(tv_job.next_scan, self.clock.now + 30)
        self.assertIsNone(self.repository.get_job("tv").last_scan)


class TestReporting(SchedulerTestCase):

    def test_stats(self):
        scheduler = self.build()
        scheduler.tick()
        stats = scheduler.get_stats()
        self.assertEqual(stats.total_jobs, 2)
        self.assertEqual(stats.active_jobs, 2)
        self.assertEqual(stats.next_scan_in, 15 * 60)
        self.assertEqual(stats.total_scans_completed, 2)

    def test_health_check(self):
        scheduler = self.build()
        health = scheduler.health_check()
        self.assertEqual(health.status, "error")
        self.assertIn("Scheduler is not running", health.issues)
        self.assertEqual(health.queue_size, 4)
        self.assertIn("percentage", health.memory_usage)
        self.assertEqual(scheduler.get_stats().last_health_check, self.clock.now)

    def test_start_and_stop(self):
        scheduler = self.build({"tv": _files("a")})
        self.config.check_interval = 3600
        scheduler.start()
        try:
            self.assertTrue(scheduler.is_running)
            deadline = time.monotonic() + 5
            while "tv" not in self.scanner.scanned and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            scheduler.stop()
        self.assertFalse(scheduler.is_running)
        self.assertIn("tv", self.scanner.scanned)


if __name__ == '__main__':
    unittest.main()
