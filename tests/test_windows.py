from datetime import timedelta, timezone
from zoneinfo import ZoneInfo

from helpers import make_entry, utc

from usage_ledger.windows import SessionWindowBuilder, build_session_windows, summarize_windows_by_month


def assert_no_overlap(windows):
    ordered = sorted(windows, key=lambda w: w.slot_start)
    for current, following in zip(ordered, ordered[1:]):
        assert current.slot_end <= following.slot_start


def test_events_are_grouped_by_calendar_slot():
    entries = [
        make_entry(utc(2025, 1, 15, 0, 10), 10, cost=0.1, session_id="a"),
        make_entry(utc(2025, 1, 15, 4, 59), 20, cost=0.2, session_id="b"),
        make_entry(utc(2025, 1, 15, 5, 0), 30, cost=0.3, session_id="a"),
        make_entry(utc(2025, 1, 15, 23, 0), 40, cost=0.4, session_id="a"),
    ]
    windows = build_session_windows(entries, timezone.utc, window_hours=5)

    assert [w.window_id for w in windows] == ["2025-01-15-00", "2025-01-15-05", "2025-01-15-20"]
    first = windows[0]
    assert first.start_time == utc(2025, 1, 15, 0, 10)
    assert first.end_time == utc(2025, 1, 15, 4, 59)
    assert first.slot_start == utc(2025, 1, 15, 0)
    assert first.slot_end == utc(2025, 1, 15, 5)
    assert first.input_tokens == 30
    assert first.message_count == 2
    assert first.conversation_count == 2
    assert sum(w.message_count for w in windows) == len(entries)
    assert_no_overlap(windows)


def test_last_slot_of_day_ends_at_midnight():
    entries = [make_entry(utc(2025, 1, 15, 21), 10), make_entry(utc(2025, 1, 16, 0, 30), 20)]
    windows = build_session_windows(entries, timezone.utc, window_hours=5)

    assert [w.window_id for w in windows] == ["2025-01-15-20", "2025-01-16-00"]
    assert windows[0].slot_end == utc(2025, 1, 16, 0)
    assert windows[1].slot_start == utc(2025, 1, 16, 0)
    assert windows[1].start_time == utc(2025, 1, 16, 0, 30)
    assert_no_overlap(windows)


def test_window_id_uses_report_timezone():
    entries = [make_entry(utc(2025, 1, 15, 23, 0))]
    windows = build_session_windows(entries, ZoneInfo("Asia/Tokyo"), window_hours=5)
    # 东京时间 1月16日 08:00
    assert windows[0].window_id == "2025-01-16-05"
    assert windows[0].slot_start == utc(2025, 1, 15, 20)


def test_dst_fall_back_walks_forward_instead_of_overlapping():
    tz = ZoneInfo("America/New_York")
    # 2024-11-03 01:30 出现两次：先是 EDT (05:30Z)，再是 EST (06:30Z)
    entries = [
        make_entry(utc(2024, 11, 3, 5, 30), 10),
        make_entry(utc(2024, 11, 3, 6, 30), 20),
    ]
    windows = build_session_windows(entries, tz, window_hours=1)

    assert len(windows) == 2
    assert windows[0].window_id == "2024-11-03-01"
    assert windows[0].slot_start == utc(2024, 11, 3, 5)
    # 同一个ID对应不同时刻，从名义时间段 06:00Z 顺延一个窗口长度
    assert windows[1].slot_start == utc(2024, 11, 3, 7)
    assert windows[1].window_id == "2024-11-03-02"
    assert_no_overlap(windows)
    assert sum(w.message_count for w in windows) == 2


def test_builder_walks_past_overlapping_slot():
    builder = SessionWindowBuilder(timezone.utc, window_hours=5)
    first = builder.add(make_entry(utc(2025, 1, 15, 1)))
    # 手工制造一个与下一个时间段重叠的窗口
    first.slot_end = utc(2025, 1, 15, 7)
    second = builder.add(make_entry(utc(2025, 1, 15, 6)))

    assert second.slot_start == utc(2025, 1, 15, 10)
    assert second.start_time == utc(2025, 1, 15, 10)
    assert second.window_id == "2025-01-15-10"


def test_monthly_summary_quota_and_averages():
    entries = [
        make_entry(utc(2025, 1, 10, 1), 100, cost=1.0),
        make_entry(utc(2025, 1, 10, 7), 300, cost=3.0),
        make_entry(utc(2025, 2, 1, 1), 50, cost=0.5),
    ]
    windows = build_session_windows(entries, timezone.utc, 5)
    summaries = summarize_windows_by_month(windows, session_limit=4, now=utc(2025, 3, 1), order="asc")

    jan = summaries[0]
    assert jan.month == "2025-01"
    assert jan.total_sessions == 2
    assert jan.remaining_sessions == 2
    assert jan.utilization_percent == 50.0
    assert jan.cost == 4.0
    assert jan.average_cost_per_session == 2.0
    assert jan.average_tokens_per_session == 200.0
    assert jan.current_session.has_active_session is False


def test_remaining_sessions_never_negative():
    entries = [make_entry(utc(2025, 1, d, 1)) for d in range(1, 5)]
    windows = build_session_windows(entries, timezone.utc, 5)
    summary = summarize_windows_by_month(windows, session_limit=3, now=utc(2025, 3, 1))[0]
    assert summary.total_sessions == 4
    assert summary.remaining_sessions == 0
    assert abs(summary.utilization_percent - 400 / 3) < 1e-9


def test_current_session_time_remaining():
    entries = [make_entry(utc(2025, 1, 15, 1)), make_entry(utc(2025, 1, 15, 11))]
    windows = build_session_windows(entries, timezone.utc, 5)
    now = utc(2025, 1, 15, 12, 30)
    current = summarize_windows_by_month(windows, now=now)[0].current_session

    assert current.has_active_session is True
    assert current.window_id == "2025-01-15-10"
    assert current.time_remaining_ms == int(timedelta(hours=2, minutes=30).total_seconds() * 1000)
