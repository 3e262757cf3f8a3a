"""Delivery of delta records and session aggregates to the metrics collector."""

from agentmeter.sync.client import RecordOutcome, RemoteSyncClient, SyncOutcome, SyncReport, SyncService

__all__ = ["RecordOutcome", "RemoteSyncClient", "SyncOutcome", "SyncReport", "SyncService"]
