"""warpsync: bounded-concurrency, crash-tolerant rsync orchestration over SSH."""

__version__ = "1.4.0"
