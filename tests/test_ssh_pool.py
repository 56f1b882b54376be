import threading
import time
import unittest
from unittest.mock import MagicMock, patch

import paramiko

from warpsync.errors import SSHConnectionError
from warpsync.ssh_manager import SSHConnectionPool
from tests.mocks.factories import FakeClock, make_target


def _live_client():
    client = MagicMock()
    client.get_transport.return_value.is_active.return_value = True
    return client


class TestSSHConnectionPool(unittest.TestCase):

    def setUp(self):
        self.target = make_target(password="testpass")

    @patch('warpsync.ssh_manager.paramiko.SSHClient')
    def test_basic_reuse(self, mock_ssh_client):
        """Test that connections are reused from the pool."""
        mock_ssh_instance = _live_client()
        mock_ssh_client.return_value = mock_ssh_instance
        pool = SSHConnectionPool(max_per_target=3)

        with pool.connection(self.target) as first:
            pass
        with pool.connection(self.target) as second:
            pass

        self.assertIs(first, second)
        mock_ssh_instance.connect.assert_called_once()
        kwargs = mock_ssh_instance.connect.call_args.kwargs
        self.assertEqual(kwargs["hostname"], "seedbox")
        self.assertEqual(kwargs["password"], "testpass")
        self.assertFalse(kwargs["look_for_keys"])
        pool.close_all()

    @patch('warpsync.ssh_manager.paramiko.SSHClient')
    def test_pool_size_limit(self, mock_ssh_client):
        """Test that a full target times out instead of opening another session."""
        mock_ssh_client.side_effect = lambda: _live_client()
        pool = SSHConnectionPool(max_per_target=1, acquire_timeout=0.1)

        with pool.connection(self.target):
            with self.assertRaises(SSHConnectionError):
                with pool.connection(self.target):
                    pass
        self.assertEqual(mock_ssh_client.call_count, 1)
        pool.close_all()

    @patch('warpsync.ssh_manager.paramiko.SSHClient')
    def test_waiter_receives_released_connection(self, mock_ssh_client):
        mock_ssh_client.side_effect = lambda: _live_client()
        pool = SSHConnectionPool(max_per_target=1, acquire_timeout=5)
        held = pool.acquire(self.target)
        result = {}

        def waiter():
            result["conn"] = pool.acquire(self.target)

        thread = threading.Thread(target=waiter)
        thread.start()
        time.sleep(0.1)
        pool.release(held)
        thread.join(timeout=5)

        self.assertIs(result["conn"], held)
        pool.release(result["conn"])
        pool.close_all()

    @patch('warpsync.ssh_manager.paramiko.SSHClient')
    def test_cancelled_waiter_gives_up_early(self, mock_ssh_client):
        mock_ssh_client.side_effect = lambda: _live_client()
        pool = SSHConnectionPool(max_per_target=1, acquire_timeout=30)
        held = pool.acquire(self.target)
        cancel_event = threading.Event()
        errors = []

        def waiter():
            try:
                pool.acquire(self.target, cancel_event=cancel_event)
            except SSHConnectionError as e:
                errors.append(str(e))

        thread = threading.Thread(target=waiter)
        thread.start()
        time.sleep(0.1)
        started = time.monotonic()
        cancel_event.set()
        thread.join(timeout=5)

        self.assertFalse(thread.is_alive())
        self.assertLess(time.monotonic() - started, 2)
        self.assertEqual(len(errors), 1)
        self.assertIn("Cancelled while waiting", errors[0])
        self.assertEqual(pool.get_pool_stats()["in_use"], 1)
        pool.release(held)
        pool.close_all()

    @patch('warpsync.ssh_manager.paramiko.SSHClient')
    def test_dead_connection_removal(self, mock_ssh_client):
        """Test that dead connections are replaced transparently."""
        first_client, second_client = _live_client(), _live_client()
        mock_ssh_client.side_effect = [first_client, second_client]
        pool = SSHConnectionPool(max_per_target=1)

        with pool.connection(self.target) as conn:
            pass
        first_client.get_transport.return_value.is_active.return_value = False

        with pool.connection(self.target) as replacement:
            self.assertIsNot(replacement, conn)
            self.assertIs(replacement.client, second_client)
        first_client.close.assert_called()
        self.assertEqual(pool.get_pool_stats()["total"], 1)
        pool.close_all()

    @patch('warpsync.ssh_manager.paramiko.SSHClient')
    def test_targets_are_isolated_by_credential(self, mock_ssh_client):
        mock_ssh_client.side_effect = lambda: _live_client()
        pool = SSHConnectionPool(max_per_target=1, acquire_timeout=0.1)
        other = make_target(password="different")

        with pool.connection(self.target) as a, pool.connection(other) as b:
            self.assertIsNot(a, b)
        stats = pool.get_pool_stats()
        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["in_use"], 0)
        self.assertEqual(stats["available"], 2)
        pool.close_all()

    @patch('warpsync.ssh_manager.paramiko.SSHClient')
    def test_authentication_failure(self, mock_ssh_client):
        client = MagicMock()
        client.connect.side_effect = paramiko.AuthenticationException("denied")
        mock_ssh_client.return_value = client
        pool = SSHConnectionPool(max_per_target=1)

        with self.assertRaises(SSHConnectionError) as ctx:
            pool.acquire(self.target)
        self.assertIn("Authentication failed", str(ctx.exception))
        client.close.assert_called_once()
        self.assertEqual(pool.get_pool_stats()["total"], 0)

    @patch('warpsync.ssh_manager.paramiko.SSHClient')
    def test_connection_refused_frees_capacity(self, mock_ssh_client):
        broken = MagicMock()
        broken.connect.side_effect = OSError("Connection refused")
        mock_ssh_client.side_effect = [broken, _live_client()]
        pool = SSHConnectionPool(max_per_target=1)

        with self.assertRaises(SSHConnectionError):
            pool.acquire(self.target)
        conn = pool.acquire(self.target)
        self.assertTrue(conn.in_use)
        pool.release(conn)
        pool.close_all()

    @patch('warpsync.ssh_manager.paramiko.SSHClient')
    def test_idle_sweep(self, mock_ssh_client):
        clock = FakeClock()
        mock_ssh_client.side_effect = lambda: _live_client()
        pool = SSHConnectionPool(max_per_target=2, min_per_target=1, max_idle_time=30, clock=clock)

        a = pool.acquire(self.target)
        b = pool.acquire(self.target)
        pool.release(a)
        pool.release(b)
        clock.advance(31)

        self.assertEqual(pool.sweep_idle(), 1)
        self.assertEqual(pool.get_pool_stats()["available"], 1)
        a.client.close.assert_called_once()

    @patch('warpsync.ssh_manager.paramiko.SSHClient')
    def test_expired_connection_closed_on_release(self, mock_ssh_client):
        clock = FakeClock()
        mock_ssh_client.side_effect = lambda: _live_client()
        pool = SSHConnectionPool(max_lifetime=60, clock=clock)

        conn = pool.acquire(self.target)
        clock.advance(61)
        pool.release(conn)
        conn.client.close.assert_called_once()
        self.assertEqual(pool.get_pool_stats()["total"], 0)

    @patch('warpsync.ssh_manager.paramiko.SSHClient')
    def test_double_release_is_ignored(self, mock_ssh_client):
        mock_ssh_client.side_effect = lambda: _live_client()
        pool = SSHConnectionPool()
        conn = pool.acquire(self.target)
        pool.release(conn)
        pool.release(conn)
        self.assertEqual(pool.get_pool_stats()["available"], 1)

    @patch('warpsync.ssh_manager.paramiko.SSHClient')
    def test_closed_pool_refuses_checkout(self, mock_ssh_client):
        mock_ssh_client.side_effect = lambda: _live_client()
        pool = SSHConnectionPool()
        borrowed = pool.acquire(self.target)
        pool.close_all()

        with self.assertRaises(SSHConnectionError):
            pool.acquire(self.target)
        pool.release(borrowed)
        borrowed.client.close.assert_called_once()


if __name__ == '__main__':
    unittest.main()
