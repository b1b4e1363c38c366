from __future__ import annotations

from datetime import datetime, timedelta, timezone

from agentz_mcp.metadata import BASELINE_SYSTEM_TOKENS, MetadataAggregator, ToolSpec, ToolTaxonomy
from agentz_mcp.models import (
    AgentType,
    SessionStatus,
    TextChunk,
    ThinkingChunk,
    TokenUsage,
    ToolResultChunk,
    UserMessageChunk,
    make_chunk,
    make_tool_use,
)


def _at(seconds: float) -> datetime:
    return datetime(2025, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=seconds)


def _readme_session():
    return [
        UserMessageChunk(content="Create README.md", timestamp=_at(0)),
        TextChunk(content="Creating the file", timestamp=_at(1)),
        make_tool_use("Write", {"file_path": "README.md", "content": "# Title\n\nBody\n"}, timestamp=_at(2)),
        ToolResultChunk(content="File written", timestamp=_at(3)),
    ]


def test_fold_detects_created_file() -> None:
    metadata = MetadataAggregator().fold(
        _readme_session(),
        agent_type=AgentType.CLAUDE,
        ended_at=_at(4),
        final_status=SessionStatus.COMPLETED,
    )

    assert len(metadata.edited_files) == 1
    edit = metadata.edited_files[0]
    assert edit.path == "README.md"
    assert edit.operation == "create"
    assert edit.tool_used == "Write"
    assert edit.size_bytes == len("# Title\n\nBody\n")
    assert edit.lines_changed == 3
    assert metadata.tool_stats.by_type["write"] == 1
    assert metadata.tool_stats.by_tool == {"Write": 1}
    assert metadata.duration_ms == 4000


def test_fold_is_deterministic() -> None:
    aggregator = MetadataAggregator()
    chunks = _readme_session()

    first = aggregator.fold(chunks, agent_type="claude", ended_at=_at(4), final_status="completed")
    second = aggregator.fold(list(chunks), agent_type="claude", ended_at=_at(4), final_status="completed")

    assert first == second


def test_turns_split_on_user_messages() -> None:
    chunks = [
        UserMessageChunk(content="first", timestamp=_at(0)),
        TextChunk(content="one", timestamp=_at(1)),
        make_tool_use("Read", {"file_path": "a.py"}, timestamp=_at(2)),
        UserMessageChunk(content="second", timestamp=_at(5)),
        make_tool_use("Edit", {"file_path": "a.py", "old_string": "a\n", "new_string": "b\nc\n"}, timestamp=_at(6)),
        make_tool_use("Edit", {"file_path": "a.py", "old_string": "x", "new_string": "y"}, timestamp=_at(7)),
    ]

    metadata = MetadataAggregator().fold(chunks, ended_at=_at(9), final_status=SessionStatus.CANCELLED)

    assert [turn.status for turn in metadata.turns] == ["completed", "cancelled"]
    assert metadata.turns[0].duration_ms == 5000
    assert metadata.turns[0].tool_calls_by_type["read"] == 1
    assert metadata.turns[1].edited_files_count == 2
    assert metadata.turns[1].unique_edited_files_count == 1
    assert metadata.turns[1].ended_at == _at(9)
    assert metadata.edited_files[0].lines_changed == 3
    assert metadata.user_message_count == 2
    assert metadata.assistant_message_count == 1
    assert metadata.message_count == 3


def test_last_turn_stays_open_while_running() -> None:
    metadata = MetadataAggregator().fold(_readme_session(), final_status=SessionStatus.WORKING)

    assert metadata.turns[-1].status == "in_progress"
    assert metadata.turns[-1].ended_at is None


def test_output_before_first_prompt_opens_a_turn() -> None:
    chunks = [TextChunk(content="banner", timestamp=_at(0)), UserMessageChunk(content="go", timestamp=_at(1))]

    metadata = MetadataAggregator().fold(chunks)

    assert len(metadata.turns) == 2


def test_output_metrics_estimate_tokens() -> None:
    chunks = [
        TextChunk(content="abcde"),
        ThinkingChunk(content="abc"),
        ToolResultChunk(content="x" * 9),
    ]

    metrics = MetadataAggregator().fold(chunks).output_metrics

    assert metrics.total_characters == 8
    assert metrics.estimated_output_tokens == 2 + 1
    assert metrics.tool_result_characters == 9
    assert metrics.estimated_tool_result_tokens == 3
    assert metrics.chunk_counts == {"text": 1, "thinking": 1, "tool_result": 1}


def test_context_window_prefers_reported_usage() -> None:
    aggregator = MetadataAggregator()

    estimated = aggregator.fold([TextChunk(content="x" * 40)], agent_type=AgentType.CODEX)
    reported = aggregator.fold(
        [TextChunk(content="x" * 40)],
        agent_type=AgentType.CODEX,
        token_usage=TokenUsage(input=1000, output=500),
    )

    assert estimated.context_window.estimated_tokens == BASELINE_SYSTEM_TOKENS + 10
    assert estimated.context_window.model_limit == 128_000
    assert reported.context_window.estimated_tokens == BASELINE_SYSTEM_TOKENS + 1500
    assert reported.context_window.utilization_percent == round(3500 / 128_000 * 100, 2)


def test_apply_patch_reports_each_file() -> None:
    patch = "\n".join(
        [
            "*** Begin Patch",
            "*** Add File: docs/new.md",
            "+hello",
            "+world",
            "*** Update File: src/app.py",
            "@@",
            "-old",
            "+new",
            "*** Delete File: legacy.py",
            "*** End Patch",
        ]
    )

    edits = MetadataAggregator().edited_files([make_tool_use("apply_patch", {"input": patch})])

    assert [(edit.path, edit.operation) for edit in edits] == [
        ("docs/new.md", "create"),
        ("src/app.py", "edit"),
        ("legacy.py", "delete"),
    ]
    assert edits[0].size_bytes == len("hello\n") + len("world\n")
    assert edits[1].lines_changed == 2
    assert edits[2].lines_changed is None


def test_malformed_entries_are_skipped() -> None:
    chunks = [
        {"type": "text", "content": "ok"},
        {"type": "nonsense"},
        make_chunk("tool_use", "not json"),
        make_tool_use("Write", {"content": "no path"}),
    ]

    metadata = MetadataAggregator().fold(chunks)

    assert metadata.output_metrics.chunk_counts == {"text": 1, "tool_use": 2}
    assert metadata.edited_files == []
    assert metadata.tool_stats.by_tool == {"unknown": 1, "Write": 1}


def test_custom_taxonomy_classifies_unknown_tools() -> None:
    taxonomy = ToolTaxonomy().merged({"scribble": ToolSpec(bucket="write", operation="edit")})

    edits = MetadataAggregator(taxonomy).edited_files([make_tool_use("scribble", {"path": "notes.txt"})])

    assert [(edit.path, edit.operation, edit.tool_used) for edit in edits] == [("notes.txt", "edit", "scribble")]


def test_empty_stream_folds_to_defaults() -> None:
    metadata = MetadataAggregator().fold([])

    assert metadata.turns == []
    assert metadata.duration_ms is None
    assert metadata.context_window.estimated_tokens == BASELINE_SYSTEM_TOKENS
