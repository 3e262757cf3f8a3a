"""Tests for per-branch session aggregation."""

from agentmeter.models import FileOperation, FileOperationType, MetricDelta, MetricsSession, TokenUsage
from agentmeter.sync.aggregator import UNKNOWN_BRANCH, aggregate_deltas


def _session(**kwargs):
    defaults = dict(
        session_id="sess-1",
        agent_name="claude",
        provider="anthropic",
        working_directory="/work/app",
        start_time=100.0,
        end_time=160.0,
    )
    defaults.update(kwargs)
    return MetricsSession(**defaults)


def _delta(record_id, branch=None, **kwargs):
    return MetricDelta(
        record_id=record_id,
        session_id="sess-1",
        agent_session_id="abc",
        timestamp=1.0,
        git_branch=branch,
        **kwargs,
    )


class TestAggregateDeltas:
    """Tests for aggregate_deltas."""

    def test_totals(self):
        first = _delta(
            "a",
            tokens=TokenUsage(input=10, output=5, cache_creation=2, cache_read=1),
            models=["claude-sonnet-4"],
            user_prompt="fix it",
            file_operations=[
                FileOperation(FileOperationType.WRITE, path="a.py", lines_added=10),
                FileOperation(FileOperationType.EDIT, path="b.py", lines_added=2, lines_removed=1),
                FileOperation(FileOperationType.READ, path="c.py"),
            ],
        )
        first.record_tool("Write", True)
        first.record_tool("Edit", True)
        second = _delta("b", tokens=TokenUsage(input=3, output=4), models=["claude-sonnet-4", "claude-haiku"])
        second.record_tool("Bash", False)
        second.api_error_message = "exit 1"

        [agg] = aggregate_deltas([first, second], _session(git_branch="main"))

        assert agg.branch == "main"
        assert agg.record_count == 2
        assert agg.total_user_prompts == 1
        assert agg.total_input_tokens == 13
        assert agg.total_output_tokens == 9
        assert agg.total_cache_creation_tokens == 2
        assert agg.total_cache_read_tokens == 1
        assert agg.total_tool_calls == 3
        assert agg.successful_tool_calls == 2
        assert agg.failed_tool_calls == 1
        assert agg.files_created == 1
        assert agg.files_modified == 1
        assert agg.total_lines_added == 12
        assert agg.total_lines_removed == 1
        assert agg.models == ["claude-sonnet-4", "claude-haiku"]
        assert agg.errors == {"Bash": ["exit 1"]}
        assert agg.had_errors is True
        assert agg.session_duration_ms == 60000
        assert agg.repository == "/work/app"

    def test_one_aggregate_per_branch(self):
        deltas = [_delta("a", "main"), _delta("b", "feature"), _delta("c", "main")]
        aggregates = aggregate_deltas(deltas, _session())
        assert [(a.branch, a.record_count) for a in aggregates] == [("main", 2), ("feature", 1)]

    def test_branch_falls_back_to_session_then_unknown(self):
        assert aggregate_deltas([_delta("a")], _session(git_branch="dev"))[0].branch == "dev"
        assert aggregate_deltas([_delta("a")], _session())[0].branch == UNKNOWN_BRANCH

    def test_api_error_without_failed_tool(self):
        delta = _delta("a")
        delta.api_error_message = "overloaded"
        [agg] = aggregate_deltas([delta], _session())
        assert agg.errors == {"api": ["overloaded"]}

    def test_empty(self):
        assert aggregate_deltas([], _session()) == []
