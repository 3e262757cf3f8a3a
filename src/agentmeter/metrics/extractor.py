"""Incremental extraction of MetricDelta records from a session file.

Wraps an adapter with the watermark strategy it declares:

- LINE: parse only lines after the stored offset.
- HASH: skip the pass when the file hash is unchanged, otherwise re-parse
  everything and rely on the dedup set.
- OBJECT: re-parse everything; ids in the watermark join the dedup set.

The extractor never persists anything. Callers commit the returned deltas
to SyncState first and only then advance the watermark.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from agentmeter.errors import AdapterError
from agentmeter.metrics.adapters.base import MetricsAdapter
from agentmeter.metrics.watermark import decode_object_ids, encode_object_ids, file_hash
from agentmeter.models import MetricDelta, Watermark, WatermarkType

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    """Outcome of one extraction pass.

    ``new_watermark`` is None when the watermark must stay where it is
    (skipped pass or whole-file parse failure).
    """
    deltas: list[MetricDelta] = field(default_factory=list)
    watermark_type: WatermarkType | None = None
    new_watermark: str | None = None
    last_line: int = 0
    prompts_attached: list[str] = field(default_factory=list)
    skipped: bool = False
    error: str | None = None


class IncrementalExtractor:
    """Turns new session-file content into deltas for one CLI session."""

    def __init__(
        self,
        adapter: MetricsAdapter,
        session_id: str,
        agent_session_id: str = "",
        git_branch: str | None = None,
    ):
        self.adapter = adapter
        self.session_id = session_id
        self.agent_session_id = agent_session_id
        self.git_branch = git_branch

    def extract(
        self,
        path: Path,
        watermark: Watermark | None,
        dedup_set: set[str],
        attached_prompts: set[str],
        *,
        final: bool = False,
    ) -> ExtractionResult:
        """Extract deltas for content past the watermark.

        Args:
            path: Session file to read.
            watermark: Current watermark, or None for a full pass.
            dedup_set: Record ids already emitted.
            attached_prompts: Prompt texts already attached to a delta.
            final: Session has ended; flush records still awaiting results.
        """
        path = Path(path)
        strategy = self.adapter.watermark_strategy
        if not path.exists():
            logger.debug(f"Session file {path} does not exist yet")
            return ExtractionResult(watermark_type=strategy, skipped=True)

        if watermark is not None and watermark.type != strategy:
            logger.warning(
                f"Watermark type {watermark.type.value} does not match {strategy.value} "
                f"for {path.name}, starting over"
            )
            watermark = None

        start_line = 0
        processed = set(dedup_set)
        current_hash = None

        if strategy == WatermarkType.LINE and watermark is not None:
            try:
                start_line = max(int(watermark.value), 0)
            except ValueError:
                start_line = 0
        elif strategy == WatermarkType.HASH:
            try:
                current_hash = file_hash(path)
            except OSError as e:
                logger.warning(f"Cannot hash {path.name}: {e}")
                return ExtractionResult(watermark_type=strategy, skipped=True, error=str(e))
            if watermark is not None and watermark.value == current_hash and not final:
                logger.debug(f"{path.name} unchanged since last pass")
                return ExtractionResult(watermark_type=strategy, new_watermark=current_hash)
        elif strategy == WatermarkType.OBJECT and watermark is not None:
            processed |= decode_object_ids(watermark.value)

        try:
            parsed = self.adapter.parse_incremental_metrics(
                path, processed, set(attached_prompts), start_line=start_line, final=final
            )
        except AdapterError as e:
            logger.warning(f"Extraction of {path.name} aborted, watermark unchanged: {e}")
            return ExtractionResult(watermark_type=strategy, skipped=True, error=str(e))

        if strategy == WatermarkType.LINE and parsed.last_line < start_line:
            # File shrank below the watermark (truncated or replaced); re-read it
            logger.info(f"{path.name} is shorter than its watermark, re-reading from the start")
            try:
                parsed = self.adapter.parse_incremental_metrics(
                    path, processed, set(attached_prompts), start_line=0, final=final
                )
            except AdapterError as e:
                logger.warning(f"Extraction of {path.name} aborted, watermark unchanged: {e}")
                return ExtractionResult(watermark_type=strategy, skipped=True, error=str(e))
            start_line = 0

        deltas = []
        for delta in parsed.deltas:
            if delta.record_id in processed:
                continue
            delta.session_id = self.session_id
            delta.agent_session_id = delta.agent_session_id or self.agent_session_id
            delta.git_branch = delta.git_branch or self.git_branch
            deltas.append(delta)

        if strategy == WatermarkType.LINE:
            new_watermark = str(max(parsed.last_line, start_line))
        elif strategy == WatermarkType.HASH:
            new_watermark = current_hash
        else:
            previous = decode_object_ids(watermark.value) if watermark else set()
            new_watermark = encode_object_ids(previous | parsed.seen_ids)

        if deltas:
            logger.info(f"Extracted {len(deltas)} deltas from {path.name} for {self.session_id[:8]}")
        return ExtractionResult(
            deltas=deltas,
            watermark_type=strategy,
            new_watermark=new_watermark,
            last_line=parsed.last_line,
            prompts_attached=parsed.prompts,
        )
