import logging
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from warpsync import __version__
from warpsync.concurrency import JobConcurrencyController
from warpsync.errors import ConflictError, NotFoundError
from warpsync.events import EventBus, RecentEvents
from warpsync.models import TransferStatus
from warpsync.state_manager import TransferStateManager
from warpsync.store import TransferStore
from warpsync.transfer_queue import TransferQueue
from warpsync.web_server import WebUILogHandler, create_app
from tests.mocks.factories import make_request
from tests.mocks.mock_runner import FakeRunner, ImmediateExecutor

REQUEST = {
    "job_id": "tv", "file_id": "ep1", "source": "/downloads/tv/ep1.mkv", "destination": "/media/tv/ep1.mkv",
    "ssh_target": {"host": "seedbox", "username": "media", "password": "hunter2"}, "priority": "high",
}


class WebServerTestCase(unittest.TestCase):
    """Real queue and state manager; scheduler, pool and recovery are mocks."""

    def setUp(self):
        self.store = TransferStore()
        events = EventBus()
        self.recent = RecentEvents()
        events.subscribe(self.recent)
        self.state = TransferStateManager(self.store, events)
        controller = JobConcurrencyController(lambda job_id: None)
        self.queue = TransferQueue(self.state, controller, FakeRunner(), max_queue_size=2,
                                   executor=ImmediateExecutor())

        self.scheduler = MagicMock()
        self.scheduler.get_stats.return_value.to_dict.return_value = {"total_jobs": 1}
        self.scheduler.get_running_executions.return_value = []
        self.recovery = MagicMock()
        self.recovery.is_recovering.return_value = False
        self.pool = MagicMock()
        self.pool.get_pool_stats.return_value = {"targets": 0}
        self.log_handler = WebUILogHandler(capacity=3)

        self.service = SimpleNamespace(queue=self.queue, state_manager=self.state, controller=controller,
                                       pool=self.pool, scheduler=self.scheduler, recovery=self.recovery,
                                       recent_events=self.recent, log_handler=self.log_handler)
        self.client = TestClient(create_app(self.service))


class TestTransferEndpoints(WebServerTestCase):

    def test_add_and_get_transfer(self):
        response = self.client.post("/api/transfers", json=REQUEST)
        self.assertEqual(response.status_code, 201)
        transfer_id = response.json()["transfer_id"]

        body = self.client.get(f"/api/transfers/{transfer_id}").json()
        self.assertEqual(body["status"], "queued")
        self.assertEqual(body["priority"], "HIGH")
        self.assertEqual(body["filename"], "ep1.mkv")
        self.assertNotIn("password", body["ssh_target"])

    def test_invalid_request_is_400_with_details(self):
        response = self.client.post("/api/transfers", json=dict(REQUEST, source=""))
        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertTrue(body["error"].startswith("Validation error"))
        self.assertIn("source", body["details"])

    def test_full_queue_is_503(self):
        self.queue.add(make_request(file_id="a"))
        self.queue.add(make_request(file_id="b"))
        response = self.client.post("/api/transfers", json=REQUEST)
        self.assertEqual(response.status_code, 503)

    def test_unknown_transfer_is_404(self):
        self.assertEqual(self.client.get("/api/transfers/missing").status_code, 404)
        self.assertEqual(self.client.delete("/api/transfers/missing").status_code, 404)

    def test_cancel_queued_then_conflict(self):
        transfer_id = self.queue.add(make_request())
        response = self.client.delete(f"/api/transfers/{transfer_id}")
        self.assertEqual(response.json(), {"transfer_id": transfer_id, "cancelled": True})
        self.assertEqual(self.store.get(transfer_id).status, TransferStatus.CANCELLED)

        again = self.client.delete(f"/api/transfers/{transfer_id}")
        self.assertEqual(again.status_code, 409)
        self.assertIn("cancelled", again.json()["error"])

    def test_list_with_filters(self):
        self.queue.add(make_request(job_id="tv", file_id="a"))
        self.queue.add(make_request(job_id="films", file_id="b"))
        body = self.client.get("/api/transfers", params={"job_id": "tv", "status": "queued,scheduled"}).json()
        self.assertEqual(body["total"], 1)
        self.assertEqual(body["transfers"][0]["file_id"], "a")

        limited = self.client.get("/api/transfers", params={"limit": 1}).json()
        self.assertEqual((limited["total"], len(limited["transfers"])), (2, 1))

    def test_unknown_status_filter_is_400(self):
        response = self.client.get("/api/transfers", params={"status": "sleeping"})
        self.assertEqual(response.status_code, 400)


class TestServiceEndpoints(WebServerTestCase):

    def test_status(self):
        self.queue.add(make_request())
        body = self.client.get("/api/status").json()
        self.assertEqual(body["version"], __version__)
        self.assertEqual(body["queue"]["queued"], 1)
        self.assertEqual(body["scheduler"], {"total_jobs": 1})
        self.assertFalse(body["recovering"])

    def test_queue_and_pool_stats(self):
        stats = self.client.get("/api/queue/stats").json()
        self.assertIn("concurrency", stats)
        self.assertEqual(self.client.get("/api/pool/stats").json(), {"targets": 0})

    def test_job_actions(self):
        self.scheduler.trigger_job_scan.return_value.to_dict.return_value = {"job_id": "tv", "status": "running"}
        response = self.client.post("/api/jobs/tv/scan")
        self.assertEqual(response.status_code, 202)
        self.scheduler.trigger_job_scan.assert_called_once_with("tv")

        self.scheduler.trigger_job_scan.side_effect = ConflictError("Job tv is already being scanned")
        self.assertEqual(self.client.post("/api/jobs/tv/scan").status_code, 409)

        self.scheduler.reset_job.side_effect = NotFoundError("Unknown job: nope")
        response = self.client.post("/api/jobs/nope/reset")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "Not found: Unknown job: nope")

    def test_recovery_endpoints(self):
        self.recovery.validate_state_consistency.return_value = {"consistent": True, "issues": []}
        self.recovery.perform_system_recovery.return_value.to_dict.return_value = {"orphaned_transfers": 2}
        self.recovery.health_check.return_value = {"status": "healthy"}
        self.scheduler.health_check.return_value.to_dict.return_value = {"status": "healthy"}

        self.assertTrue(self.client.get("/api/recovery/consistency").json()["consistent"])
        self.assertEqual(self.client.post("/api/recovery").json(), {"orphaned_transfers": 2})
        self.assertEqual(self.client.get("/api/health").json()["recovery"], {"status": "healthy"})

    def test_recent_events(self):
        self.queue.add(make_request())
        events = self.client.get("/api/events").json()["events"]
        self.assertTrue(events)
        self.assertEqual(events[-1]["job_id"], "job1")


def test_log_handler_keeps_most_recent_lines():
    handler = WebUILogHandler(capacity=2)
    handler.setFormatter(logging.Formatter('%(message)s'))
    log = logging.getLogger("warpsync.tests.web")
    log.addHandler(handler)
    log.propagate = False
    try:
        for i in range(3):
            log.warning(f"line {i}")
    finally:
        log.removeHandler(handler)
    assert handler.snapshot() == ["line 1", "line 2"]
    assert handler.snapshot(limit=1) == ["line 2"]


if __name__ == '__main__':
    unittest.main()
