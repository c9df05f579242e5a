"""
会话窗口：按日历对齐的固定时长配额窗口

窗口ID由本地日期和向下取整到 window_hours 的小时组成（YYYY-MM-DD-HH）。
一天的最后一个时间段在本地午夜截止，不与次日的第一个时间段重叠。
夏令时切换可能让同一个ID对应不同的实际时刻，或让两个窗口的时间段重叠，
这时新窗口向后顺延整数个窗口长度，直到找到空闲的时间段。
"""

import logging
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Dict, Iterable, List, Optional, Set

from .models import CurrentSession, LedgerEntry, MonthlyWindowSummary, SessionWindow

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_HOURS = 5
DEFAULT_SESSION_LIMIT = 50


def window_id_for(slot_start: datetime, tz: tzinfo) -> str:
    local = slot_start.astimezone(tz)
    return f"{local:%Y-%m-%d}-{local.hour:02d}"


class SessionWindowBuilder:
    """把按时间排序的事件分配到会话窗口"""

    def __init__(self, tz: tzinfo, window_hours: int = DEFAULT_WINDOW_HOURS):
        self.tz = tz
        self.window_hours = window_hours
        self.window_length = timedelta(hours=window_hours)
        self._windows: Dict[str, SessionWindow] = {}
        self._conversations: Dict[str, Set[str]] = {}

    def nominal_slot_start(self, ts: datetime) -> datetime:
        local = ts.astimezone(self.tz)
        hour = (local.hour // self.window_hours) * self.window_hours
        slot_local = local.replace(hour=hour, minute=0, second=0, microsecond=0)
        return slot_local.astimezone(timezone.utc)

    def slot_end_for(self, slot_start: datetime) -> datetime:
        """时间段结束时间，不跨过本地日期的午夜"""
        local = slot_start.astimezone(self.tz)
        midnight = datetime.combine(local.date() + timedelta(days=1), time(0), tzinfo=self.tz)
        return min(slot_start + self.window_length, midnight.astimezone(timezone.utc))

    def _overlaps_other(self, slot_start: datetime) -> bool:
        slot_end = self.slot_end_for(slot_start)
        for window in self._windows.values():
            if window.slot_start == slot_start:
                continue
            if window.slot_start < slot_end and slot_start < window.slot_end:
                return True
        return False

    def _find_window(self, ts: datetime) -> SessionWindow:
        slot_start = self.nominal_slot_start(ts)
        # 每个已有窗口最多挡住两次顺延
        for _ in range(2 * len(self._windows) + 1):
            window_id = window_id_for(slot_start, self.tz)
            existing = self._windows.get(window_id)
            if existing is not None:
                if existing.slot_start == slot_start:
                    return existing
            elif not self._overlaps_other(slot_start):
                window = SessionWindow(
                    window_id=window_id,
                    slot_start=slot_start,
                    slot_end=self.slot_end_for(slot_start),
                )
                self._windows[window_id] = window
                self._conversations[window_id] = set()
                return window
            logger.debug(f"窗口 {window_id} 的时间段已被占用，向后顺延")
            slot_start += self.window_length
        raise RuntimeError(f"无法为 {ts.isoformat()} 分配会话窗口")

    def add(self, entry: LedgerEntry) -> SessionWindow:
        ts = entry.timestamp
        window = self._find_window(ts)
        # 顺延后的窗口可能晚于事件时间，起止时间限制在时间段内
        clamped = min(max(ts, window.slot_start), window.slot_end)
        if window.start_time is None or clamped < window.start_time:
            window.start_time = clamped
        if window.end_time is None or clamped > window.end_time:
            window.end_time = clamped

        window.add_event(entry.event, entry.cost)
        window.message_count += 1
        conversations = self._conversations[window.window_id]
        conversations.add(entry.session_key)
        window.conversation_count = len(conversations)
        return window

    def build(self) -> List[SessionWindow]:
        return sorted(self._windows.values(), key=lambda w: w.slot_start)


def build_session_windows(
    entries: Iterable[LedgerEntry], tz: tzinfo, window_hours: int = DEFAULT_WINDOW_HOURS
) -> List[SessionWindow]:
    builder = SessionWindowBuilder(tz, window_hours)
    for entry in sorted(entries, key=lambda e: e.timestamp):
        builder.add(entry)
    return builder.build()


def _current_session(windows: List[SessionWindow], now: datetime) -> CurrentSession:
    if not windows:
        return CurrentSession()
    latest = max(windows, key=lambda w: w.start_time)
    if latest.slot_start <= now < latest.slot_end:
        remaining = latest.slot_end - now
        return CurrentSession(
            has_active_session=True,
            time_remaining_ms=int(remaining.total_seconds() * 1000),
            window_id=latest.window_id,
        )
    return CurrentSession(window_id=latest.window_id)


def summarize_windows_by_month(
    windows: Iterable[SessionWindow],
    session_limit: int = DEFAULT_SESSION_LIMIT,
    now: Optional[datetime] = None,
    order: str = "desc",
) -> List[MonthlyWindowSummary]:
    """按窗口ID所在月份汇总配额使用情况"""
    now = now or datetime.now(timezone.utc)
    by_month: Dict[str, List[SessionWindow]] = {}
    for window in windows:
        by_month.setdefault(window.window_id[:7], []).append(window)

    summaries = []
    for month, month_windows in by_month.items():
        month_windows.sort(key=lambda w: w.slot_start)
        total = len(month_windows)
        summary = MonthlyWindowSummary(
            month=month,
            total_sessions=total,
            session_limit=session_limit,
            remaining_sessions=max(0, session_limit - total),
            utilization_percent=100.0 * total / session_limit if session_limit > 0 else 0.0,
            windows=month_windows,
            current_session=_current_session(month_windows, now),
        )
        for window in month_windows:
            summary.add_stats(window)
        summary.average_cost_per_session = summary.cost / total
        summary.average_tokens_per_session = summary.total_tokens / total
        summaries.append(summary)

    return sorted(summaries, key=lambda s: s.month, reverse=(order == "desc"))
