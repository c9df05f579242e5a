"""
计费区块：以活动为锚点的浮动时长区块

第一条记录把区块起点定在所在整点，区块长度固定；落在区块结束之后的记录开启新区块。
空闲时间达到阈值时插入一个不含记录的空档区块，保证时间线上没有无声的空洞。
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from .aggregation import SYNTHETIC_MODEL
from .models import BillingBlock, BurnRate, LedgerEntry, Projection, TokenStats

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_DURATION_HOURS = 5
DEFAULT_RECENT_DAYS = 3

# 燃烧速率指示阈值（每分钟输入+输出Token）
BURN_RATE_MODERATE = 500
BURN_RATE_HIGH = 1000


def floor_to_hour(ts: datetime) -> datetime:
    return ts.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def _block_id(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _create_block(start: datetime, entries: List[LedgerEntry], duration: timedelta) -> BillingBlock:
    block = BillingBlock(
        id=_block_id(start),
        start_time=start,
        end_time=start + duration,
        actual_end_time=entries[-1].timestamp,
        entries=entries,
    )
    counts = TokenStats()
    models: List[str] = []
    reset_time: Optional[datetime] = None
    for entry in entries:
        counts.add_event(entry.event, entry.cost)
        if entry.model and entry.model != SYNTHETIC_MODEL and entry.model not in models:
            models.append(entry.model)
        entry_reset = entry.event.usage_limit_reset_time
        if entry_reset is not None and (reset_time is None or entry_reset > reset_time):
            reset_time = entry_reset
    block.token_counts = counts
    block.cost_usd = counts.cost
    block.models = models
    block.usage_limit_reset_time = reset_time
    return block


def _create_gap_block(start: datetime, end: datetime) -> BillingBlock:
    return BillingBlock(id=f"gap-{_block_id(start)}", start_time=start, end_time=end, is_gap=True)


def identify_billing_blocks(
    entries: Iterable[LedgerEntry],
    duration_hours: float = DEFAULT_BLOCK_DURATION_HOURS,
    now: Optional[datetime] = None,
    gap_threshold_hours: Optional[float] = None,
) -> List[BillingBlock]:
    """把记录划分为计费区块

    Args:
        entries: 用量记录，不要求已排序
        duration_hours: 区块长度
        now: 判断活跃区块使用的当前时间，默认取系统时间
        gap_threshold_hours: 插入空档区块的空闲时长阈值（含等于），默认与区块长度相同

    Returns:
        按时间排序的区块列表，最多只有最后一个区块是活跃的
    """
    now = now or datetime.now(timezone.utc)
    duration = timedelta(hours=duration_hours)
    gap_threshold = timedelta(hours=gap_threshold_hours) if gap_threshold_hours is not None else duration

    sorted_entries = sorted(entries, key=lambda e: e.timestamp)
    if not sorted_entries:
        return []

    blocks: List[BillingBlock] = []
    current_start: Optional[datetime] = None
    current_entries: List[LedgerEntry] = []

    for entry in sorted_entries:
        ts = entry.timestamp
        if current_start is None:
            current_start = floor_to_hour(ts)
            current_entries = [entry]
            continue

        if ts < current_start + duration:
            current_entries.append(entry)
            continue

        closed = _create_block(current_start, current_entries, duration)
        blocks.append(closed)
        # 区块短于一小时时，整点可能落在上一个区块之内
        new_start = max(floor_to_hour(ts), closed.end_time)

        idle = ts - closed.actual_end_time
        if idle >= gap_threshold:
            blocks.append(_create_gap_block(closed.actual_end_time, ts))
        elif new_start > closed.end_time:
            # 空闲未达阈值，但两个区块之间仍有未覆盖的时间
            blocks.append(_create_gap_block(closed.end_time, new_start))

        current_start = new_start
        current_entries = [entry]

    last = _create_block(current_start, current_entries, duration)
    last.is_active = now < last.end_time
    blocks.append(last)
    return blocks


def find_active_block(blocks: List[BillingBlock]) -> Optional[BillingBlock]:
    for block in reversed(blocks):
        if block.is_active:
            return block
    return None


def calculate_burn_rate(block: BillingBlock, now: Optional[datetime] = None) -> Optional[BurnRate]:
    """计算活跃区块的燃烧速率，非活跃区块、空档区块或尚未开始计时时返回None"""
    if block.is_gap or not block.is_active or not block.entries:
        return None
    now = now or datetime.now(timezone.utc)
    elapsed_minutes = (now - block.start_time).total_seconds() / 60
    if elapsed_minutes <= 0:
        return None

    counts = block.token_counts
    return BurnRate(
        tokens_per_minute=counts.total_tokens / elapsed_minutes,
        tokens_per_minute_for_indicator=(counts.input_tokens + counts.output_tokens) / elapsed_minutes,
        cost_per_hour=block.cost_usd / elapsed_minutes * 60,
    )


def project_block_usage(block: BillingBlock, now: Optional[datetime] = None) -> Optional[Projection]:
    """按当前燃烧速率推算整个区块结束时的用量"""
    now = now or datetime.now(timezone.utc)
    burn_rate = calculate_burn_rate(block, now)
    if burn_rate is None:
        return None

    duration_minutes = (block.end_time - block.start_time).total_seconds() / 60
    remaining_minutes = max(0.0, (block.end_time - now).total_seconds() / 60)
    return Projection(
        total_tokens=round(burn_rate.tokens_per_minute * duration_minutes),
        total_cost=round(burn_rate.cost_per_hour / 60 * duration_minutes, 2),
        remaining_minutes=round(remaining_minutes),
    )


def burn_rate_severity(burn_rate: BurnRate) -> str:
    rate = burn_rate.tokens_per_minute_for_indicator
    if rate >= BURN_RATE_HIGH:
        return "high"
    if rate >= BURN_RATE_MODERATE:
        return "moderate"
    return "normal"


def calculate_per_model_costs(block: BillingBlock) -> Dict[str, Dict[str, float]]:
    """区块内按模型统计成本、Token（输入+输出）和记录数"""
    breakdown: Dict[str, Dict[str, float]] = {}
    if block.is_gap:
        return breakdown
    for entry in block.entries:
        model = entry.model or "unknown"
        stats = breakdown.setdefault(model, {"cost_usd": 0.0, "total_tokens": 0, "entries": 0})
        stats["cost_usd"] += entry.cost
        stats["total_tokens"] += entry.event.input_tokens + entry.event.output_tokens
        stats["entries"] += 1
    return breakdown


def filter_recent_blocks(
    blocks: Iterable[BillingBlock], days: int = DEFAULT_RECENT_DAYS, now: Optional[datetime] = None
) -> List[BillingBlock]:
    """保留最近几天开始的区块以及活跃区块"""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=days)
    return [block for block in blocks if block.start_time >= cutoff or block.is_active]
