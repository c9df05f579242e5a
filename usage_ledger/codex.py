"""
Codex 会话日志的加载与统计

Codex 只记录累计的 token_count 事件，模型名来自之前的 turn_context 记录。
缓存输入Token是输入Token的一部分，因此总Token不叠加缓存。
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import tzinfo
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .aggregation import format_date, format_month, normalize_date_arg
from .billing import CostMode, PricingSource
from .locator import CODEX_SESSIONS_DIR_NAME, glob_usage_files
from .models import CodexEvent, CodexUsage
from .parser import parse_timestamp, read_usage_file

logger = logging.getLogger(__name__)

USAGE_FIELDS = ("input_tokens", "cached_input_tokens", "output_tokens", "reasoning_output_tokens", "total_tokens")


def _ensure_number(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def normalize_raw_usage(value: Any) -> Optional[Dict[str, int]]:
    if not isinstance(value, dict):
        return None
    input_tokens = _ensure_number(value.get("input_tokens"))
    cached = value.get("cached_input_tokens")
    if cached is None:
        cached = value.get("cache_read_input_tokens")
    output_tokens = _ensure_number(value.get("output_tokens"))
    reasoning = _ensure_number(value.get("reasoning_output_tokens"))
    total = _ensure_number(value.get("total_tokens"))
    return {
        "input_tokens": input_tokens,
        "cached_input_tokens": _ensure_number(cached),
        "output_tokens": output_tokens,
        "reasoning_output_tokens": reasoning,
        "total_tokens": total if total > 0 else input_tokens + output_tokens + reasoning,
    }


def subtract_raw_usage(current: Dict[str, int], previous: Optional[Dict[str, int]]) -> Dict[str, int]:
    """累计值之差，负数按0处理"""
    previous = previous or {}
    return {name: max(current[name] - previous.get(name, 0), 0) for name in USAGE_FIELDS}


def extract_model(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    info = payload.get("info")
    candidates = []
    if isinstance(info, dict):
        metadata = info.get("metadata")
        candidates.extend([info.get("model"), info.get("model_name")])
        if isinstance(metadata, dict):
            candidates.append(metadata.get("model"))
    candidates.append(payload.get("model"))
    metadata = payload.get("metadata")
    if isinstance(metadata, dict):
        candidates.append(metadata.get("model"))
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate
    return None


def parse_codex_lines(lines: Iterable[str], session_id: str) -> List[CodexEvent]:
    """解析一个会话文件，返回Token增量事件"""
    events: List[CodexEvent] = []
    previous_totals: Optional[Dict[str, int]] = None
    current_model: Optional[str] = None

    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict):
            continue

        entry_type = entry.get("type")
        if entry_type == "turn_context":
            model = extract_model(entry.get("payload"))
            if model is not None:
                current_model = model
            continue
        if entry_type != "event_msg":
            continue

        payload = entry.get("payload")
        if not isinstance(payload, dict) or payload.get("type") != "token_count":
            continue
        timestamp = parse_timestamp(entry.get("timestamp"))
        if timestamp is None:
            continue

        info = payload.get("info")
        info = info if isinstance(info, dict) else {}
        last_usage = normalize_raw_usage(info.get("last_token_usage"))
        total_usage = normalize_raw_usage(info.get("total_token_usage"))

        raw = last_usage
        if raw is None and total_usage is not None:
            raw = subtract_raw_usage(total_usage, previous_totals)
        if total_usage is not None:
            previous_totals = total_usage
        if raw is None:
            continue

        if not any(raw[name] for name in USAGE_FIELDS[:4]):
            continue

        model = extract_model(payload) or current_model
        if model is None:
            logger.debug(f"跳过缺少模型信息的 Codex 记录: {session_id} {timestamp.isoformat()}")
            continue

        total = raw["total_tokens"]
        if total <= 0:
            total = raw["input_tokens"] + raw["output_tokens"] + raw["reasoning_output_tokens"]
        events.append(
            CodexEvent(
                timestamp=timestamp,
                model=model,
                session_id=session_id,
                input_tokens=raw["input_tokens"],
                cached_input_tokens=min(raw["cached_input_tokens"], raw["input_tokens"]),
                output_tokens=raw["output_tokens"],
                reasoning_output_tokens=raw["reasoning_output_tokens"],
                total_tokens=total,
            )
        )
    return events


def load_codex_events(roots: Sequence[Path]) -> List[CodexEvent]:
    """读取所有 Codex 会话文件，返回按时间排序的事件"""
    files = glob_usage_files(roots, CODEX_SESSIONS_DIR_NAME)
    if not files:
        return []

    with ThreadPoolExecutor(max_workers=min(8, len(files))) as executor:
        contents = list(executor.map(lambda item: read_usage_file(item[0]), files))

    events: List[CodexEvent] = []
    for (path, base_dir), lines in zip(files, contents):
        if lines is None:
            continue
        session_id = path.relative_to(base_dir).with_suffix("").as_posix()
        events.extend(parse_codex_lines(lines, session_id))

    events.sort(key=lambda e: e.timestamp)
    logger.info(f"共加载 {len(events)} 条 Codex 用量记录")
    return events


def calculate_codex_cost(event: CodexEvent, pricing_source: Optional[PricingSource]) -> float:
    """未缓存输入、缓存输入和输出分别计价；缺少缓存价格时按输入价格计算"""
    if pricing_source is None:
        return 0.0
    pricing = pricing_source.get_model_pricing(event.model)
    if pricing is None:
        return 0.0
    input_rate = pricing.input_cost_per_token or 0.0
    cached_rate = pricing.cache_read_input_token_cost
    if cached_rate is None:
        cached_rate = input_rate
    output_rate = pricing.output_cost_per_token or 0.0
    non_cached = max(event.input_tokens - event.cached_input_tokens, 0)
    return non_cached * input_rate + event.cached_input_tokens * cached_rate + event.output_tokens * output_rate


def build_codex_report(
    events: Iterable[CodexEvent],
    key_fn: Callable[[CodexEvent], str],
    mode: CostMode,
    pricing_source: Optional[PricingSource],
) -> List[CodexUsage]:
    mode = CostMode(mode)
    rows: Dict[str, CodexUsage] = {}
    for event in events:
        key = key_fn(event)
        if key not in rows:
            rows[key] = CodexUsage(key=key)
        # Codex 日志没有记录成本，display 模式下按0计
        cost = 0.0 if mode is CostMode.DISPLAY else calculate_codex_cost(event, pricing_source)
        rows[key].add_event(event, cost)
    return list(rows.values())


def filter_codex_events(
    events: Iterable[CodexEvent], tz: tzinfo, since: Optional[str] = None, until: Optional[str] = None
) -> List[CodexEvent]:
    since = normalize_date_arg(since)
    until = normalize_date_arg(until)
    result = []
    for event in events:
        day = format_date(event.timestamp, tz)
        if since is not None and day < since:
            continue
        if until is not None and day > until:
            continue
        result.append(event)
    return result


def build_codex_daily_report(events, tz: tzinfo, mode: CostMode, pricing_source, order: str = "desc"):
    rows = build_codex_report(events, lambda e: format_date(e.timestamp, tz), mode, pricing_source)
    return sorted(rows, key=lambda r: r.key, reverse=(order == "desc"))


def build_codex_monthly_report(events, tz: tzinfo, mode: CostMode, pricing_source, order: str = "desc"):
    rows = build_codex_report(events, lambda e: format_month(e.timestamp, tz), mode, pricing_source)
    return sorted(rows, key=lambda r: r.key, reverse=(order == "desc"))


def build_codex_session_report(events, mode: CostMode, pricing_source, order: str = "desc"):
    rows = build_codex_report(events, lambda e: e.session_id, mode, pricing_source)
    # 每一行至少有一条事件，last_activity 不会为空
    return sorted(rows, key=lambda r: r.last_activity, reverse=(order == "desc"))
