"""
Analysis Queue

A durable job queue for long-running analysis tasks: deduplicated
submission, lease-based claiming with heartbeats, exponential-backoff
retry with dead-lettering, lease-expiry crash recovery, cooperative
cancellation and per-job logs.
"""

__version__ = "1.0.0"
