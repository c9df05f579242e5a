from helpers import usage_record, utc, write_jsonl

from usage_ledger.analyzer import UsageLedger
from usage_ledger.billing import CostMode
from usage_ledger.config import LedgerSettings
from usage_ledger.loader import get_earliest_timestamp, load_usage_entries, sort_files_by_timestamp
from usage_ledger.parser import Deduplicator, ParseStats


def test_earliest_timestamp_is_first_valid_line(tmp_path):
    path = write_jsonl(
        tmp_path / "a.jsonl",
        [
            "garbage",
            {"type": "summary"},
            {"timestamp": "not a date"},
            usage_record("2025-01-15T12:00:00Z"),
            usage_record("2025-01-15T08:00:00Z"),
        ],
    )
    assert get_earliest_timestamp(path) == utc(2025, 1, 15, 12)


def test_sort_files_by_timestamp(tmp_path):
    late = write_jsonl(tmp_path / "late.jsonl", [usage_record("2025-01-16T00:00:00Z")])
    none = write_jsonl(tmp_path / "none.jsonl", ["{}"])
    early = write_jsonl(tmp_path / "early.jsonl", [usage_record("2025-01-14T00:00:00Z")])
    tie = write_jsonl(tmp_path / "tie.jsonl", [usage_record("2025-01-16T00:00:00Z")])

    files = [(late, tmp_path), (none, tmp_path), (early, tmp_path), (tie, tmp_path)]
    ordered = [path.name for path, _ in sort_files_by_timestamp(files)]
    assert ordered == ["early.jsonl", "late.jsonl", "tie.jsonl", "none.jsonl"]


def test_duplicate_in_later_file_is_dropped(tmp_path):
    base = tmp_path / "projects"
    first = write_jsonl(
        base / "proj" / "a.jsonl",
        [usage_record("2025-01-15T10:00:00Z", 100, 50, message_id="m1", request_id="r1", cost=0.1)],
    )
    second = write_jsonl(
        base / "proj" / "b.jsonl",
        [
            usage_record("2025-01-15T11:00:00Z", 200, 100, message_id="m1", request_id="r1", cost=0.2),
            usage_record("2025-01-15T11:30:00Z", 1, 1),
        ],
    )
    stats = ParseStats()
    entries = load_usage_entries(
        [(first, base), (second, base)], CostMode.DISPLAY, None, Deduplicator(), stats
    )

    assert [(e.event.input_tokens, e.cost) for e in entries] == [(100, 0.1), (1, 0.0)]
    assert stats.duplicate_lines == 1
    assert entries[0].project == "proj"
    assert entries[0].session_id == "a"


def make_claude_tree(tmp_path):
    root = tmp_path / "claude"
    write_jsonl(
        root / "projects" / "proj" / "later.jsonl",
        [usage_record("2025-01-15T11:00:00Z", 200, 100, message_id="m1", request_id="r1")],
    )
    write_jsonl(
        root / "projects" / "proj" / "earlier.jsonl",
        [usage_record("2025-01-15T10:00:00Z", 100, 50, message_id="m1", request_id="r1")],
    )
    return root


def test_daily_aggregate_keeps_first_duplicate(tmp_path):
    root = make_claude_tree(tmp_path)
    settings = LedgerSettings(cost_mode="display", timezone="UTC")
    with UsageLedger(settings, claude_paths=[root]) as ledger:
        report = ledger.daily_report()

    assert len(report) == 1
    assert report[0].bucket == "2025-01-15"
    assert report[0].input_tokens == 100
    assert report[0].output_tokens == 50


def test_rerunning_yields_identical_aggregates(tmp_path):
    root = make_claude_tree(tmp_path)
    settings = LedgerSettings(cost_mode="display", timezone="UTC")

    results = []
    for _ in range(2):
        with UsageLedger(settings, claude_paths=[root]) as ledger:
            results.append([row.to_dict() for row in ledger.daily_report()])
    assert results[0] == results[1]


def test_empty_tree_gives_empty_report(tmp_path, pricing):
    root = tmp_path / "claude"
    (root / "projects").mkdir(parents=True)
    settings = LedgerSettings(cost_mode="calculate", timezone="UTC")
    with UsageLedger(settings, claude_paths=[root], pricing_source=pricing) as ledger:
        assert ledger.daily_report() == []
    assert pricing._pricing is None


def test_unreadable_file_is_skipped(tmp_path):
    base = tmp_path / "projects"
    good = write_jsonl(base / "proj" / "good.jsonl", [usage_record("2025-01-15T10:00:00Z")])
    bad = base / "proj" / "bad.jsonl"
    bad.write_bytes(b"\xff\xfe\x00invalid utf-8")
    stats = ParseStats()
    entries = load_usage_entries([(bad, base), (good, base)], CostMode.DISPLAY, None, Deduplicator(), stats)
    assert len(entries) == 1
    assert stats.unreadable_files == 1


def test_bad_reset_time_does_not_abort_loading(tmp_path):
    base = tmp_path / "projects"
    error_line = usage_record("2025-01-15T10:00:00Z", input_tokens=0, output_tokens=0)
    error_line["isApiErrorMessage"] = True
    error_line["message"]["content"] = [{"type": "text", "text": "Claude AI usage limit reached|99999999999999999999"}]
    path = write_jsonl(base / "proj" / "a.jsonl", [error_line, usage_record("2025-01-15T10:05:00Z", 100, 50)])

    entries = load_usage_entries([(path, base)], CostMode.DISPLAY, None, Deduplicator(), ParseStats())
    assert [e.event.input_tokens for e in entries] == [0, 100]
    assert entries[0].event.usage_limit_reset_time is None
