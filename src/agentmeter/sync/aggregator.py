"""Roll delta records up into per-branch session aggregates."""

import logging
import time

from agentmeter.models import FileOperationType, MetricDelta, MetricsSession, SessionAggregate

logger = logging.getLogger(__name__)

UNKNOWN_BRANCH = "unknown"


def _errors_for(delta: MetricDelta) -> dict[str, list[str]]:
    if not delta.api_error_message:
        return {}
    failed = [name for name, status in delta.tool_status.items() if status.get("failure", 0) > 0]
    return {name: [delta.api_error_message] for name in failed or ["api"]}


def aggregate_deltas(deltas: list[MetricDelta], session: MetricsSession) -> list[SessionAggregate]:
    """Group deltas by git branch and total them.

    The branch can change mid-session, so one aggregate is produced per
    branch seen, in first-seen order.
    """
    by_branch: dict[str, SessionAggregate] = {}
    end = session.end_time or time.time()
    duration_ms = max(int((end - session.start_time) * 1000), 0)

    for delta in deltas:
        branch = delta.git_branch or session.git_branch or UNKNOWN_BRANCH
        agg = by_branch.get(branch)
        if agg is None:
            agg = SessionAggregate(
                session_id=session.session_id,
                agent=session.agent_name,
                provider=session.provider,
                branch=branch,
                repository=session.working_directory,
                session_duration_ms=duration_ms,
            )
            by_branch[branch] = agg

        agg.record_count += 1
        if delta.user_prompt:
            agg.total_user_prompts += 1
        agg.total_input_tokens += delta.tokens.input
        agg.total_output_tokens += delta.tokens.output
        agg.total_cache_creation_tokens += delta.tokens.cache_creation
        agg.total_cache_read_tokens += delta.tokens.cache_read

        agg.total_tool_calls += sum(delta.tools.values())
        for status in delta.tool_status.values():
            agg.successful_tool_calls += status.get("success", 0)
            agg.failed_tool_calls += status.get("failure", 0)

        for op in delta.file_operations:
            if op.type == FileOperationType.WRITE:
                agg.files_created += 1
            elif op.type == FileOperationType.EDIT:
                agg.files_modified += 1
            elif op.type == FileOperationType.DELETE:
                agg.files_deleted += 1
            agg.total_lines_added += op.lines_added
            agg.total_lines_removed += op.lines_removed

        for model in delta.models:
            if model not in agg.models:
                agg.models.append(model)

        for tool_name, messages in _errors_for(delta).items():
            agg.errors.setdefault(tool_name, []).extend(messages)
            agg.had_errors = True

    aggregates = list(by_branch.values())
    logger.debug(f"Aggregated {len(deltas)} deltas into {len(aggregates)} branch aggregates")
    return aggregates
