import pytest

from helpers import usage_record, write_jsonl

from usage_ledger.analyzer import UsageLedger
from usage_ledger.combined import calculate_totals, combine, normalize_codex_daily, parse_sources
from usage_ledger.config import ConfigurationError, LedgerSettings
from usage_ledger.models import CodexUsage, UnifiedUsage


def claude_day(date, cost=1.0, total=1000, models=("claude-sonnet-4",)):
    return UnifiedUsage(
        source="claude",
        input_tokens=total // 2,
        output_tokens=total // 4,
        cache_read_tokens=total // 4,
        total_tokens=total,
        cost_usd=cost,
        models=list(models),
        date=date,
    )


def codex_day(date, cost=0.5, total=300):
    return UnifiedUsage(
        source="codex",
        input_tokens=total - 100,
        output_tokens=100,
        cache_read_tokens=50,
        total_tokens=total,
        cost_usd=cost,
        models=["gpt-5"],
        date=date,
    )


def test_totals_add_cost_but_keep_tokens_per_source():
    rows = combine({"claude": [claude_day("2025-01-15", 1.25)], "codex": [codex_day("2025-01-15", 0.5)]})
    totals = calculate_totals(rows)

    assert totals.cost_usd == 1.75
    assert [s.source for s in totals.by_source] == ["claude", "codex"]
    assert totals.by_source[0].total_tokens == 1000
    assert totals.by_source[1].total_tokens == 300
    assert "totalTokens" not in totals.to_dict()


def test_no_rows_no_totals():
    assert calculate_totals([]) is None


def test_rows_with_same_key_and_source_are_merged():
    rows = combine(
        {
            "claude": [claude_day("2025-01-15", 1.0), claude_day("2025-01-15", 2.0, models=("claude-opus-4",))],
            "codex": [codex_day("2025-01-15")],
        }
    )
    assert [(r.key, r.source) for r in rows] == [("2025-01-15", "claude"), ("2025-01-15", "codex")]
    assert rows[0].cost_usd == 3.0
    assert rows[0].total_tokens == 2000
    assert rows[0].models == ["claude-sonnet-4", "claude-opus-4"]


@pytest.mark.parametrize(
    "order, expected",
    [
        ("asc", [("2025-01-14", "codex"), ("2025-01-15", "claude"), ("2025-01-15", "codex")]),
        ("desc", [("2025-01-15", "claude"), ("2025-01-15", "codex"), ("2025-01-14", "codex")]),
    ],
)
def test_sorted_by_key_then_source(order, expected):
    rows = combine(
        {"codex": [codex_day("2025-01-15"), codex_day("2025-01-14")], "claude": [claude_day("2025-01-15")]},
        order=order,
    )
    assert [(r.key, r.source) for r in rows] == expected


def test_session_rows_sorted_by_last_activity():
    first = UnifiedUsage(source="codex", session_id="b", last_activity="2025-01-15T09:00:00+00:00")
    second = UnifiedUsage(source="claude", session_id="a", last_activity="2025-01-15T10:00:00+00:00")
    rows = combine({"claude": [second], "codex": [first]})
    assert [r.session_id for r in rows] == ["b", "a"]


def test_codex_normalization_keeps_cached_within_input():
    row = CodexUsage(key="2025-01-15", input_tokens=100, cached_input_tokens=40, output_tokens=10, total_tokens=110)
    unified = normalize_codex_daily(row)
    assert unified.cache_read_tokens == 40
    assert unified.cache_creation_tokens == 0
    assert unified.total_tokens == 110
    assert unified.to_dict()["date"] == "2025-01-15"


def test_mismatched_source_is_rejected():
    with pytest.raises(ValueError):
        combine({"codex": [claude_day("2025-01-15")]})


def test_parse_sources():
    assert parse_sources(None) == ["claude", "codex"]
    assert parse_sources(" codex , claude,codex") == ["codex", "claude"]
    with pytest.raises(ConfigurationError):
        parse_sources("claude,gemini")


def test_missing_codex_directory_is_skipped(tmp_path):
    root = tmp_path / "claude"
    write_jsonl(root / "projects" / "proj" / "a.jsonl", [usage_record("2025-01-15T10:00:00Z", cost=0.5)])
    settings = LedgerSettings(cost_mode="display", timezone="UTC")

    with UsageLedger(settings, claude_paths=[root]) as ledger:
        rows, totals = ledger.combined_report("daily")

    assert [(r.key, r.source) for r in rows] == [("2025-01-15", "claude")]
    assert totals.cost_usd == 0.5
    assert [s.source for s in totals.by_source] == ["claude"]


def test_unknown_report_kind_is_rejected():
    with UsageLedger(LedgerSettings(cost_mode="display")) as ledger:
        with pytest.raises(ConfigurationError):
            ledger.combined_report("weekly")
