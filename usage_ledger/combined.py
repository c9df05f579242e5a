"""
跨工具统一格式与合并

各工具的 total_tokens 口径不同：Claude 把缓存Token累加进总数，Codex 的缓存是输入的一部分。
归一化时原样保留各自的总数，合计时只有成本可以跨工具相加。
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import ConfigurationError
from .models import BucketUsage, CodexUsage, CombinedTotals, SessionUsage, SourceTotals, UnifiedUsage

logger = logging.getLogger(__name__)

SOURCE_ORDER = ("claude", "codex")


def _source_rank(source: str) -> int:
    return SOURCE_ORDER.index(source) if source in SOURCE_ORDER else len(SOURCE_ORDER)


def _from_claude(row: BucketUsage, **key) -> UnifiedUsage:
    return UnifiedUsage(
        source="claude",
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        cache_creation_tokens=row.cache_creation_tokens,
        cache_read_tokens=row.cache_read_tokens,
        total_tokens=row.total_tokens,
        cost_usd=row.cost,
        models=list(row.models_used),
        **key,
    )


def normalize_claude_daily(row: BucketUsage) -> UnifiedUsage:
    return _from_claude(row, date=row.bucket)


def normalize_claude_monthly(row: BucketUsage) -> UnifiedUsage:
    return _from_claude(row, month=row.bucket)


def normalize_claude_session(row: SessionUsage) -> UnifiedUsage:
    last = row.last_timestamp.isoformat() if row.last_timestamp is not None else row.last_activity
    return _from_claude(row, session_id=row.session_id, display_name=row.project_path, last_activity=last)


def _from_codex(row: CodexUsage, **key) -> UnifiedUsage:
    return UnifiedUsage(
        source="codex",
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        cache_creation_tokens=0,
        cache_read_tokens=min(row.cached_input_tokens, row.input_tokens),
        total_tokens=row.total_tokens,
        cost_usd=row.cost,
        models=list(row.models),
        **key,
    )


def normalize_codex_daily(row: CodexUsage) -> UnifiedUsage:
    return _from_codex(row, date=row.key)


def normalize_codex_monthly(row: CodexUsage) -> UnifiedUsage:
    return _from_codex(row, month=row.key)


def normalize_codex_session(row: CodexUsage) -> UnifiedUsage:
    last = row.last_activity.isoformat() if row.last_activity is not None else None
    return _from_codex(row, session_id=row.key, display_name=row.key, last_activity=last)


def _merge_into(target: UnifiedUsage, row: UnifiedUsage) -> None:
    target.input_tokens += row.input_tokens
    target.output_tokens += row.output_tokens
    target.cache_creation_tokens += row.cache_creation_tokens
    target.cache_read_tokens += row.cache_read_tokens
    target.total_tokens += row.total_tokens
    target.cost_usd += row.cost_usd
    for model in row.models:
        if model not in target.models:
            target.models.append(model)
    if row.last_activity is not None and (target.last_activity is None or row.last_activity > target.last_activity):
        target.last_activity = row.last_activity


def combine(rows_by_source: Dict[str, Iterable[UnifiedUsage]], order: str = "asc") -> List[UnifiedUsage]:
    """按 (键, 来源) 合并各工具的行，再按键和来源优先级排序

    会话行按最后活动时间排序，日/月行按日期排序；降序时同一键内来源顺序不变。
    """
    merged: Dict[Tuple[str, str], UnifiedUsage] = {}
    for source, rows in rows_by_source.items():
        for row in rows:
            if row.source != source:
                raise ValueError(f"来源不一致: {row.source} != {source}")
            key = (row.key, row.source)
            if key in merged:
                _merge_into(merged[key], row)
            else:
                merged[key] = row

    def primary(row: UnifiedUsage) -> str:
        return (row.last_activity or "") if row.session_id is not None else row.key

    by_source = sorted(merged.values(), key=lambda r: _source_rank(r.source))
    return sorted(by_source, key=primary, reverse=(order == "desc"))


def calculate_totals(rows: Iterable[UnifiedUsage]) -> Optional[CombinedTotals]:
    """按来源汇总Token，只有成本跨来源相加；没有数据时返回None"""
    by_source: Dict[str, SourceTotals] = {}
    for row in rows:
        totals = by_source.setdefault(row.source, SourceTotals(source=row.source))
        totals.input_tokens += row.input_tokens
        totals.output_tokens += row.output_tokens
        totals.cache_creation_tokens += row.cache_creation_tokens
        totals.cache_read_tokens += row.cache_read_tokens
        totals.total_tokens += row.total_tokens
        totals.cost_usd += row.cost_usd

    if not by_source:
        return None
    ordered = sorted(by_source.values(), key=lambda s: _source_rank(s.source))
    return CombinedTotals(cost_usd=sum(s.cost_usd for s in ordered), by_source=ordered)


def parse_sources(value: Optional[str], available: Sequence[str] = SOURCE_ORDER) -> List[str]:
    """解析逗号分隔的来源列表，空值表示全部来源"""
    if value is None or not value.strip():
        return list(available)

    sources: List[str] = []
    invalid: List[str] = []
    for item in (part.strip() for part in value.split(",")):
        if not item:
            continue
        if item not in available:
            invalid.append(item)
        elif item not in sources:
            sources.append(item)

    if invalid:
        raise ConfigurationError(f"未知的来源: {', '.join(invalid)}（可选: {', '.join(available)}）")
    return sources
