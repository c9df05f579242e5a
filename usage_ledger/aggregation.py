"""
按模型和时间桶聚合用量记录
"""

import logging
import re
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Dict, Iterable, List, Optional, Sequence, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import WEEK_DAYS, ConfigurationError
from .models import BucketUsage, LedgerEntry, ModelBreakdown, SessionUsage, TokenStats

logger = logging.getLogger(__name__)

SYNTHETIC_MODEL = "<synthetic>"
GROUP_SEPARATOR = "\x00"

_DATE_ARG_PATTERN = re.compile(r"^(\d{4})-?(\d{2})-?(\d{2})$")

T = TypeVar("T")


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """时区名称转换为 tzinfo，未指定时使用本机时区"""
    if not name:
        return datetime.now().astimezone().tzinfo
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"无效的时区: {name}") from e


def format_date(ts: datetime, tz: tzinfo) -> str:
    return ts.astimezone(tz).strftime("%Y-%m-%d")


def format_month(ts: datetime, tz: tzinfo) -> str:
    return ts.astimezone(tz).strftime("%Y-%m")


def week_start(ts: datetime, tz: tzinfo, start_of_week: str = "sunday") -> str:
    """返回所在周第一天的日期"""
    local_date = ts.astimezone(tz).date()
    start_index = WEEK_DAYS.index(start_of_week)
    # date.weekday() 以周一为0，这里换算成以周日为0
    day = (local_date.weekday() + 1) % 7
    shift = (day - start_index + 7) % 7
    return (local_date - timedelta(days=shift)).strftime("%Y-%m-%d")


def normalize_date_arg(value: Optional[str]) -> Optional[str]:
    """接受 YYYYMMDD 或 YYYY-MM-DD，统一为 YYYY-MM-DD"""
    if value is None:
        return None
    match = _DATE_ARG_PATTERN.match(value.strip())
    if not match:
        raise ConfigurationError(f"无效的日期: {value}（格式应为 YYYYMMDD 或 YYYY-MM-DD）")
    normalized = "-".join(match.groups())
    try:
        datetime.strptime(normalized, "%Y-%m-%d")
    except ValueError as e:
        raise ConfigurationError(f"无效的日期: {value}") from e
    return normalized


def filter_entries(
    entries: Iterable[LedgerEntry],
    tz: tzinfo,
    since: Optional[str] = None,
    until: Optional[str] = None,
    project: Optional[str] = None,
) -> List[LedgerEntry]:
    """按本地日期范围（闭区间）和项目过滤"""
    since = normalize_date_arg(since)
    until = normalize_date_arg(until)
    result = []
    for entry in entries:
        if project is not None and entry.project != project:
            continue
        if since is not None or until is not None:
            day = format_date(entry.timestamp, tz)
            if since is not None and day < since:
                continue
            if until is not None and day > until:
                continue
        result.append(entry)
    return result


def sort_by(items: Sequence[T], key: Callable[[T], object], order: str = "desc") -> List[T]:
    return sorted(items, key=key, reverse=(order == "desc"))


def aggregate_by_model(entries: Iterable[LedgerEntry]) -> List[ModelBreakdown]:
    """按模型汇总，按成本降序排列，排除 <synthetic>"""
    breakdowns: Dict[str, ModelBreakdown] = {}
    for entry in entries:
        model = entry.model
        if not model or model == SYNTHETIC_MODEL:
            continue
        if model not in breakdowns:
            breakdowns[model] = ModelBreakdown(model_name=model)
        breakdowns[model].add_event(entry.event, entry.cost)
    return sorted(breakdowns.values(), key=lambda b: b.cost, reverse=True)


def calculate_totals(entries: Iterable[LedgerEntry]) -> TokenStats:
    totals = TokenStats()
    for entry in entries:
        totals.add_event(entry.event, entry.cost)
    return totals


def sum_stats(items: Iterable[TokenStats]) -> TokenStats:
    totals = TokenStats()
    for item in items:
        totals.add_stats(item)
    return totals


def extract_unique_models(entries: Iterable[LedgerEntry]) -> List[str]:
    return sorted({e.model for e in entries if e.model and e.model != SYNTHETIC_MODEL})


def group_entries(entries: Iterable[LedgerEntry], key_fn: Callable[[LedgerEntry], str]) -> Dict[str, List[LedgerEntry]]:
    groups: Dict[str, List[LedgerEntry]] = {}
    for entry in entries:
        groups.setdefault(key_fn(entry), []).append(entry)
    return groups


def _build_bucket(bucket: str, entries: List[LedgerEntry], project: Optional[str] = None) -> BucketUsage:
    usage = BucketUsage(bucket=bucket, project=project)
    usage.add_stats(calculate_totals(entries))
    usage.models_used = extract_unique_models(entries)
    usage.model_breakdowns = aggregate_by_model(entries)
    return usage


def build_bucket_report(
    entries: Iterable[LedgerEntry],
    key_fn: Callable[[LedgerEntry], str],
    group_by_project: bool = False,
    order: str = "desc",
) -> List[BucketUsage]:
    """按桶键分组；group_by_project 时键为 桶\\x00项目"""
    if group_by_project:
        groups = group_entries(entries, lambda e: f"{key_fn(e)}{GROUP_SEPARATOR}{e.project}")
    else:
        groups = group_entries(entries, key_fn)

    buckets = []
    for key, group in groups.items():
        if group_by_project:
            bucket, project = key.split(GROUP_SEPARATOR, 1)
            buckets.append(_build_bucket(bucket, group, project))
        else:
            buckets.append(_build_bucket(key, group))

    # 同一时间桶内项目名始终升序
    buckets.sort(key=lambda b: b.project or "")
    return sort_by(buckets, lambda b: b.bucket, order)


def build_daily_report(
    entries: Iterable[LedgerEntry], tz: tzinfo, group_by_project: bool = False, order: str = "desc"
) -> List[BucketUsage]:
    return build_bucket_report(entries, lambda e: format_date(e.timestamp, tz), group_by_project, order)


def build_weekly_report(
    entries: Iterable[LedgerEntry],
    tz: tzinfo,
    start_of_week: str = "sunday",
    group_by_project: bool = False,
    order: str = "desc",
) -> List[BucketUsage]:
    return build_bucket_report(entries, lambda e: week_start(e.timestamp, tz, start_of_week), group_by_project, order)


def build_monthly_report(
    entries: Iterable[LedgerEntry], tz: tzinfo, group_by_project: bool = False, order: str = "desc"
) -> List[BucketUsage]:
    return build_bucket_report(entries, lambda e: format_month(e.timestamp, tz), group_by_project, order)


def build_project_report(entries: Iterable[LedgerEntry]) -> List[BucketUsage]:
    """按项目分组，按成本降序"""
    groups = group_entries(entries, lambda e: e.project)
    buckets = [_build_bucket(project, group, project) for project, group in groups.items()]
    return sorted(buckets, key=lambda b: (-b.cost, b.bucket))


def build_session_report(
    entries: Iterable[LedgerEntry],
    tz: tzinfo,
    order: str = "desc",
    since: Optional[str] = None,
    until: Optional[str] = None,
) -> List[SessionUsage]:
    """按 项目路径/会话ID 分组，日期过滤作用于会话的最后活动日期"""
    since = normalize_date_arg(since)
    until = normalize_date_arg(until)
    sessions = []
    for group in group_entries(entries, lambda e: e.session_key).values():
        first = group[0]
        last_timestamp = max(e.timestamp for e in group)
        last_activity = format_date(last_timestamp, tz)
        if since is not None and last_activity < since:
            continue
        if until is not None and last_activity > until:
            continue

        usage = SessionUsage(
            bucket=first.session_key,
            project=first.project,
            session_id=first.session_id,
            project_path=first.project_path,
            last_activity=last_activity,
            last_timestamp=last_timestamp,
            versions=sorted({e.event.version for e in group if e.event.version}),
        )
        usage.add_stats(calculate_totals(group))
        usage.models_used = extract_unique_models(group)
        usage.model_breakdowns = aggregate_by_model(group)
        sessions.append(usage)

    return sort_by(sessions, lambda s: s.last_timestamp, order)
