import unittest

from warpsync.errors import ValidationError
from warpsync.models import (RsyncOptions, SSHTarget, Transfer, TransferPriority, TransferRequest, TransferStatus,
                             TransferType)
from tests.mocks.factories import make_request, make_target


class TestEnums(unittest.TestCase):

    def test_priority_parse(self):
        self.assertIs(TransferPriority.parse("urgent"), TransferPriority.URGENT)
        self.assertIs(TransferPriority.parse(" High "), TransferPriority.HIGH)
        self.assertIs(TransferPriority.parse(0), TransferPriority.LOW)
        self.assertIs(TransferPriority.parse("1"), TransferPriority.NORMAL)
        self.assertGreater(TransferPriority.URGENT, TransferPriority.LOW)

    def test_priority_parse_rejects_unknown(self):
        for value in ("critical", 7, True, None):
            with self.assertRaises(ValidationError, msg=repr(value)):
                TransferPriority.parse(value)

    def test_type_parse(self):
        self.assertIs(TransferType.parse("SYNC"), TransferType.SYNC)
        with self.assertRaises(ValidationError):
            TransferType.parse("mirror")


class TestSSHTarget(unittest.TestCase):

    def test_password_hidden_from_repr(self):
        target = make_target(password="s3cret")
        self.assertNotIn("s3cret", repr(target))

    def test_fingerprint_changes_with_credential(self):
        """Different credentials for the same host never share a pool key."""
        a = make_target(password="one")
        b = make_target(password="two")
        self.assertNotEqual(a.fingerprint, b.fingerprint)
        self.assertEqual(a.fingerprint, make_target(password="one").fingerprint)
        self.assertNotIn("one", a.fingerprint)

    def test_validate(self):
        make_target().validate()
        with self.assertRaises(ValidationError) as ctx:
            SSHTarget(host="", username="", port=70000).validate()
        self.assertEqual(set(ctx.exception.details), {"host", "username", "port"})


class TestTransferRequest(unittest.TestCase):

    def test_validate_collects_every_problem(self):
        request = make_request(job_id="", source=" ", size=-1, ssh_target=make_target(host=""))
        with self.assertRaises(ValidationError) as ctx:
            request.validate()
        details = ctx.exception.details
        self.assertIn("job_id", details)
        self.assertIn("source", details)
        self.assertIn("size", details)
        self.assertIn("ssh_target.host", details)

    def test_from_dict(self):
        request = TransferRequest.from_dict({
            "job_id": "tv", "file_id": "abc", "source": "/r/a", "destination": "/l/a",
            "ssh_target": {"host": "h", "username": "u", "port": "2022"},
            "type": "upload", "priority": "high", "size": "42",
            "rsync_options": {"bwlimit": 10},
        })
        request.validate()
        self.assertEqual(request.ssh_target.port, 2022)
        self.assertIs(request.type, TransferType.UPLOAD)
        self.assertIs(request.priority, TransferPriority.HIGH)
        self.assertEqual(request.size, 42)
        self.assertEqual(request.rsync_options.bwlimit, 10)

    def test_from_dict_rejects_unknown_rsync_option(self):
        with self.assertRaises(ValidationError):
            TransferRequest.from_dict({"job_id": "j", "rsync_options": {"rm_rf": True}})

    def test_rsync_option_types_are_checked_at_admission(self):
        request = TransferRequest.from_dict({
            "job_id": "tv", "file_id": "abc", "source": "/r/a", "destination": "/l/a",
            "ssh_target": {"host": "h", "username": "u"},
            "rsync_options": {"exclude": "*.tmp", "bwlimit": "fast", "delete": "yes", "max_size": 5},
        })
        with self.assertRaises(ValidationError) as ctx:
            request.validate()
        details = ctx.exception.details
        self.assertEqual(set(details), {"rsync_options.exclude", "rsync_options.bwlimit",
                                        "rsync_options.delete", "rsync_options.max_size"})

    def test_rsync_options_must_be_a_mapping(self):
        with self.assertRaises(ValidationError) as ctx:
            TransferRequest.from_dict({"job_id": "j", "rsync_options": ["--delete"]})
        self.assertIn("rsync_options", ctx.exception.details)

        request = make_request(rsync_options="--delete")
        with self.assertRaises(ValidationError) as ctx:
            request.validate()
        self.assertIn("rsync_options", ctx.exception.details)
        self.assertEqual(RsyncOptions(exclude=["*.tmp"], bwlimit=100).validate(), {})

    def test_missing_target(self):
        request = TransferRequest.from_dict({"job_id": "j", "file_id": "f", "source": "/a", "destination": "/b"})
        with self.assertRaises(ValidationError) as ctx:
            request.validate()
        self.assertIn("ssh_target", ctx.exception.details)


class TestTransfer(unittest.TestCase):

    def test_from_request_defaults(self):
        transfer = Transfer.from_request(make_request(), default_max_retries=5, now=100.0)
        self.assertEqual(transfer.status, TransferStatus.QUEUED)
        self.assertEqual(transfer.max_retries, 5)
        self.assertEqual(transfer.queued_at, 100.0)
        self.assertEqual(transfer.last_activity, 100.0)
        self.assertEqual(transfer.filename, "file1")
        self.assertIsInstance(transfer.rsync_options, RsyncOptions)

    def test_explicit_max_retries_wins(self):
        transfer = Transfer.from_request(make_request(max_retries=0), default_max_retries=5)
        self.assertEqual(transfer.max_retries, 0)

    def test_history_is_bounded(self):
        transfer = Transfer.from_request(make_request())
        for i in range(15):
            transfer.record_history(TransferStatus.QUEUED, float(i))
        self.assertEqual(len(transfer.state_history), 10)
        self.assertEqual(transfer.state_history[0]["at"], 5.0)

    def test_dict_round_trip_preserves_enums(self):
        transfer = Transfer.from_request(make_request(priority=TransferPriority.URGENT,
                                                      ssh_target=make_target(password="pw")))
        transfer.status = TransferStatus.TRANSFERRING
        restored = Transfer.from_dict(transfer.to_dict())
        self.assertEqual(restored, transfer)

    def test_public_dict_strips_password(self):
        transfer = Transfer.from_request(make_request(ssh_target=make_target(password="pw")))
        public = transfer.to_public_dict()
        self.assertNotIn("password", public["ssh_target"])
        self.assertEqual(public["priority"], "NORMAL")
        self.assertEqual(public["status"], "queued")
        self.assertEqual(public["filename"], "file1")

    def test_last_activity_uses_progress(self):
        transfer = Transfer.from_request(make_request(), now=100.0)
        transfer.last_progress_at = 250.0
        self.assertEqual(transfer.last_activity, 250.0)


if __name__ == '__main__':
    unittest.main()
