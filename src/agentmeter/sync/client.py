"""HTTP client for the remote metrics collector.

Delivery is best-effort. ``RemoteSyncClient.send`` never raises for
network or HTTP failures; every record comes back with a ``SyncOutcome``
so callers can tell "will retry" from "gave up". ``SyncService`` applies
those outcomes to the per-session delta log and SyncState.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from agentmeter.config import MetricsConfig
from agentmeter.errors import SyncError
from agentmeter.metrics.delta_log import DeltaLog
from agentmeter.metrics.session_store import SessionStore
from agentmeter.metrics.sync_state import SyncStateManager
from agentmeter.models import MetricDelta, SessionAggregate, SyncStatus
from agentmeter.sync.aggregator import aggregate_deltas
from agentmeter.sync.sanitize import sanitize_aggregate, sanitize_delta

logger = logging.getLogger(__name__)

DELTAS_ENDPOINT = "/v1/metrics/deltas"
AGGREGATE_ENDPOINT = "/v1/metrics"


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    TERMINAL_FAILURE = "terminal_failure"


@dataclass
class RecordOutcome:
    record_id: str
    outcome: SyncOutcome
    error: str | None = None


def classify_status(status_code: int) -> SyncOutcome:
    """Map an HTTP status to an outcome: 5xx and 429 are worth retrying."""
    if status_code < 400:
        return SyncOutcome.SUCCESS
    if status_code == 429 or status_code >= 500:
        return SyncOutcome.TRANSIENT_FAILURE
    return SyncOutcome.TERMINAL_FAILURE


class RemoteSyncClient:
    """Async client for the collector API.

    Example:
        client = RemoteSyncClient(api_url="https://metrics.example.com", api_key="...")
        outcomes = await client.send(deltas)
        await client.aclose()
    """

    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        cookies: dict[str, str] | None = None,
        batch_size: int = 50,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not api_url:
            raise SyncError("Collector URL is required", retryable=False)
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.cookies = cookies or {}
        self.batch_size = max(batch_size, 1)
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                timeout=self.timeout,
                headers=headers,
                cookies=self.cookies,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, endpoint: str, payload: dict[str, Any]) -> httpx.Response:
        """POST JSON, raising SyncError with retryability on any failure."""
        try:
            response = await self._get_client().post(endpoint, json=payload)
        except httpx.TimeoutException as e:
            raise SyncError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise SyncError(f"Cannot connect to {self.api_url}: {e}") from e

        outcome = classify_status(response.status_code)
        if outcome != SyncOutcome.SUCCESS:
            try:
                detail = response.json().get("error", response.text)
            except ValueError:
                detail = response.text
            raise SyncError(
                f"Collector returned {response.status_code}: {detail}",
                status_code=response.status_code,
                retryable=outcome == SyncOutcome.TRANSIENT_FAILURE,
            )
        return response

    def _batch_outcomes(self, batch: list[MetricDelta], response: httpx.Response) -> list[RecordOutcome]:
        """Per-record outcomes from the body, defaulting to success."""
        try:
            body = response.json()
        except ValueError:
            body = None
        results = body.get("results") if isinstance(body, dict) else None
        by_id = {}
        if isinstance(results, list):
            for item in results:
                if isinstance(item, dict) and item.get("record_id"):
                    by_id[item["record_id"]] = item

        outcomes = []
        for delta in batch:
            item = by_id.get(delta.record_id)
            if item is None or item.get("status", "ok") in ("ok", "success", "accepted"):
                outcomes.append(RecordOutcome(delta.record_id, SyncOutcome.SUCCESS))
            elif item.get("retryable", False):
                outcomes.append(RecordOutcome(delta.record_id, SyncOutcome.TRANSIENT_FAILURE, item.get("error")))
            else:
                outcomes.append(RecordOutcome(delta.record_id, SyncOutcome.TERMINAL_FAILURE, item.get("error")))
        return outcomes

    async def send(self, deltas: list[MetricDelta], session_id: str | None = None) -> list[RecordOutcome]:
        """Submit deltas in batches.

        A transient failure stops the remaining batches (they are reported
        transient too, without being sent); a terminal failure only affects
        its own batch.
        """
        outcomes: list[RecordOutcome] = []
        for start in range(0, len(deltas), self.batch_size):
            batch = deltas[start:start + self.batch_size]
            payload = {
                "session_id": session_id or batch[0].session_id,
                "records": [d.to_dict() for d in batch],
            }
            try:
                response = await self._post(DELTAS_ENDPOINT, payload)
            except SyncError as e:
                if e.retryable:
                    logger.warning(f"Metrics sync failed, will retry later: {e}")
                    outcomes.extend(
                        RecordOutcome(d.record_id, SyncOutcome.TRANSIENT_FAILURE, str(e))
                        for d in deltas[start:]
                    )
                    break
                logger.warning(f"Metrics batch rejected: {e}")
                outcomes.extend(RecordOutcome(d.record_id, SyncOutcome.TERMINAL_FAILURE, str(e)) for d in batch)
                continue
            outcomes.extend(self._batch_outcomes(batch, response))
        return outcomes

    async def send_aggregate(self, aggregate: SessionAggregate) -> SyncOutcome:
        try:
            await self._post(AGGREGATE_ENDPOINT, aggregate.to_dict())
        except SyncError as e:
            logger.warning(f"Session aggregate for branch {aggregate.branch} not sent: {e}")
            return SyncOutcome.TRANSIENT_FAILURE if e.retryable else SyncOutcome.TERMINAL_FAILURE
        return SyncOutcome.SUCCESS


@dataclass
class SyncReport:
    """What a sync_pending call did."""
    synced: list[str] = field(default_factory=list)
    retrying: list[str] = field(default_factory=list)
    gave_up: list[str] = field(default_factory=list)


class SyncService:
    """Applies collector outcomes to a session's delta log and SyncState."""

    def __init__(self, config: MetricsConfig, client: RemoteSyncClient, store: SessionStore | None = None):
        self.config = config
        self.client = client
        self.store = store or SessionStore(config.sessions_dir)

    @classmethod
    def from_config(cls, config: MetricsConfig, transport: httpx.AsyncBaseTransport | None = None):
        """Build a service, or None when no collector is configured."""
        if not config.sync_enabled:
            return None
        client = RemoteSyncClient(
            api_url=config.api_url,
            api_key=config.api_key,
            cookies=config.upstream_cookies,
            batch_size=config.sync_batch_size,
            timeout=config.sync_timeout,
            transport=transport,
        )
        return cls(config, client)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def sync_pending(self, session_id: str) -> SyncReport:
        """Send pending deltas for a session and record the outcomes."""
        report = SyncReport()
        delta_log = DeltaLog(self.config.metrics_dir, session_id)
        pending = delta_log.pending(self.config.sync_max_attempts)
        if not pending:
            logger.debug(f"No pending deltas for {session_id[:8]}")
            return report

        excluded = self.config.exclude_errors_from_tools
        outcomes = await self.client.send([sanitize_delta(d, excluded) for d in pending], session_id)
        by_id = {o.record_id: o for o in outcomes}

        now = time.time()
        last_error = None
        for delta in pending:
            outcome = by_id.get(delta.record_id) or RecordOutcome(
                delta.record_id, SyncOutcome.TRANSIENT_FAILURE, "No outcome reported"
            )
            delta.sync_attempts += 1
            if outcome.outcome == SyncOutcome.SUCCESS:
                delta.sync_status = SyncStatus.SYNCED
                delta.synced_at = now
                delta.sync_error = None
                report.synced.append(delta.record_id)
                continue

            delta.sync_status = SyncStatus.FAILED
            delta.sync_error = outcome.error
            last_error = outcome.error
            if outcome.outcome == SyncOutcome.TERMINAL_FAILURE or delta.sync_attempts >= self.config.sync_max_attempts:
                # Leaves pending() for good, so this warning fires once per record
                delta.sync_attempts = max(delta.sync_attempts, self.config.sync_max_attempts)
                report.gave_up.append(delta.record_id)
                logger.warning(
                    f"Giving up on delta {delta.record_id} for {session_id[:8]} "
                    f"after {delta.sync_attempts} attempts: {outcome.error}"
                )
            else:
                report.retrying.append(delta.record_id)

        delta_log.update(pending)

        manager = SyncStateManager(session_id, self.store)
        manager.mark_synced(report.synced)
        manager.mark_failed(report.gave_up, last_error or "sync failed")

        if report.synced:
            await self._send_aggregates(session_id, [d for d in pending if d.record_id in set(report.synced)])

        logger.info(
            f"Sync for {session_id[:8]}: {len(report.synced)} synced, "
            f"{len(report.retrying)} retrying, {len(report.gave_up)} given up"
        )
        return report

    async def _send_aggregates(self, session_id: str, deltas: list[MetricDelta]) -> None:
        session = self.store.load(session_id)
        if session is None:
            return
        for aggregate in aggregate_deltas(deltas, session):
            await self.client.send_aggregate(sanitize_aggregate(aggregate, self.config.exclude_errors_from_tools))
