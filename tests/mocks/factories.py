from warpsync.models import SSHTarget, TransferPriority, TransferRequest


def make_target(**overrides) -> SSHTarget:
    values = dict(host="seedbox", username="media")
    values.update(overrides)
    return SSHTarget(**values)


def make_request(job_id="job1", file_id="file1", priority=TransferPriority.NORMAL, **overrides) -> TransferRequest:
    values = dict(
        job_id=job_id,
        file_id=file_id,
        source=f"/remote/{job_id}/{file_id}",
        destination=f"/tmp/warpsync-tests/{job_id}/{file_id}",
        ssh_target=make_target(),
        priority=priority,
        size=1024,
    )
    values.update(overrides)
    return TransferRequest(**values)


class FakeClock:
    """Manually advanced time source."""
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
