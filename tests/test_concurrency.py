import threading
import unittest
from unittest.mock import MagicMock

from warpsync.concurrency import JobConcurrencyController, SlotHolder
from tests.mocks.factories import FakeClock


class TestJobConcurrencyController(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.limits = {"tv": 2, "films": 1}
        self.provider = MagicMock(side_effect=lambda job_id: self.limits.get(job_id))
        self.controller = JobConcurrencyController(self.provider, default_max=3, settings_ttl=60, clock=self.clock)

    def test_lowest_free_slot_is_granted(self):
        self.assertEqual(self.controller.try_acquire_slot("tv", "t1"), 0)
        self.assertEqual(self.controller.try_acquire_slot("tv", "t2"), 1)
        self.assertIsNone(self.controller.try_acquire_slot("tv", "t3"))

        self.assertTrue(self.controller.release_slot("tv", 0))
        self.assertEqual(self.controller.try_acquire_slot("tv", "t3"), 0)

    def test_jobs_are_independent(self):
        self.assertEqual(self.controller.try_acquire_slot("films"), 0)
        self.assertIsNone(self.controller.try_acquire_slot("films"))
        self.assertEqual(self.controller.try_acquire_slot("tv"), 0)

    def test_unknown_job_uses_default(self):
        for expected in range(3):
            self.assertEqual(self.controller.try_acquire_slot("music"), expected)
        self.assertIsNone(self.controller.try_acquire_slot("music"))

    def test_double_release_is_reported(self):
        slot = self.controller.try_acquire_slot("tv", "t1")
        self.assertTrue(self.controller.release_slot("tv", slot))
        self.assertFalse(self.controller.release_slot("tv", slot))
        self.assertFalse(self.controller.release_slot("nope", 0))
        self.assertEqual(self.controller.active_count(), 0)

    def test_release_checks_expected_holder(self):
        slot = self.controller.try_acquire_slot("tv", "old")
        self.controller.release_slot("tv", slot)
        self.assertEqual(self.controller.try_acquire_slot("tv", "new"), slot)

        self.assertFalse(self.controller.release_slot("tv", slot, expected_holder="old"))
        self.assertEqual(self.controller.active_count("tv"), 1)
        self.assertTrue(self.controller.release_slot("tv", slot, expected_holder="new"))
        self.assertEqual(self.controller.active_count("tv"), 0)

    def test_settings_are_cached(self):
        self.controller.get_job_max("tv")
        self.controller.get_job_max("tv")
        self.assertEqual(self.provider.call_count, 1)

        self.clock.advance(61)
        self.limits["tv"] = 5
        self.assertEqual(self.controller.get_job_max("tv"), 5)
        self.assertEqual(self.provider.call_count, 2)

        self.limits["tv"] = 1
        self.controller.invalidate_cache("tv")
        self.assertEqual(self.controller.get_job_max("tv"), 1)
        stats = self.controller.get_cache_stats()
        self.assertEqual(stats["cache_hits"], 1)
        self.assertEqual(stats["cache_misses"], 3)

    def test_provider_failure_falls_back_to_default(self):
        controller = JobConcurrencyController(MagicMock(side_effect=RuntimeError("db down")), default_max=2)
        self.assertEqual(controller.get_job_max("tv"), 2)

    def test_release_by_transfer_and_restore(self):
        self.controller.try_acquire_slot("tv", "t1")
        self.controller.try_acquire_slot("tv", "t2")
        self.assertTrue(self.controller.release_slot_by_transfer("t1"))
        self.assertFalse(self.controller.release_slot_by_transfer("t1"))
        self.assertEqual(self.controller.occupied_slots(), [SlotHolder("tv", 1, "t2")])

        self.assertTrue(self.controller.restore_slot("tv", 0, "t9"))
        self.assertFalse(self.controller.restore_slot("tv", 0, "other"))
        self.assertEqual(self.controller.clear_all_slots(), 2)
        self.assertEqual(self.controller.occupied_slots(), [])

    def test_cache_stats_breakdown(self):
        self.controller.try_acquire_slot("tv", "t1")
        stats = self.controller.get_cache_stats()
        self.assertEqual(stats["total_active_jobs"], 1)
        self.assertEqual(stats["total_active_transfers"], 1)
        self.assertEqual(stats["job_breakdown"]["tv"], {"active": 1, "max": 2, "slots": [0]})

    def test_concurrent_acquisition_never_exceeds_cap(self):
        """Racing threads never hold more than the cap or share a slot index."""
        controller = JobConcurrencyController(default_max=4)
        granted = []
        lock = threading.Lock()
        barrier = threading.Barrier(16)

        def worker(n):
            barrier.wait()
            slot = controller.try_acquire_slot("job", f"t{n}")
            if slot is not None:
                with lock:
                    granted.append(slot)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(sorted(granted), [0, 1, 2, 3])
        self.assertEqual(controller.active_count("job"), 4)


if __name__ == '__main__':
    unittest.main()
