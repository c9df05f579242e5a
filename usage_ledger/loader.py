"""
加载流程：按时间排序文件、解析、去重并计算成本
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .billing import CostMode, PricingSource, resolve_cost
from .locator import describe_file
from .models import LedgerEntry
from .parser import Deduplicator, ParseStats, iter_usage_events, parse_timestamp, read_usage_file

logger = logging.getLogger(__name__)

MAX_SCAN_WORKERS = 8


def get_earliest_timestamp(path: Path) -> Optional[datetime]:
    """从上到下扫描文件，返回第一个可解析的时间戳"""
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(data, dict):
                    continue
                ts = parse_timestamp(data.get("timestamp"))
                if ts is not None:
                    return ts
    except (OSError, UnicodeDecodeError) as e:
        logger.debug(f"无法读取文件 {path} 的时间戳: {e}")
    return None


def sort_files_by_timestamp(files: Sequence[Tuple[Path, Path]]) -> List[Tuple[Path, Path]]:
    """按最早时间戳升序排序，没有时间戳的文件排在最后，相同时间戳保持发现顺序"""
    if not files:
        return []
    workers = min(MAX_SCAN_WORKERS, len(files))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        timestamps = list(executor.map(lambda item: get_earliest_timestamp(item[0]), files))

    def sort_key(index: int):
        ts = timestamps[index]
        return (ts is None, ts.timestamp() if ts is not None else 0.0)

    order = sorted(range(len(files)), key=sort_key)
    return [files[i] for i in order]


def load_usage_entries(
    files: Sequence[Tuple[Path, Path]],
    mode: CostMode,
    pricing_source: Optional[PricingSource],
    deduplicator: Deduplicator,
    stats: Optional[ParseStats] = None,
) -> List[LedgerEntry]:
    """按已排序的文件顺序解析事件，去重后计算成本

    文件内容并发读取，解析和去重按文件顺序串行进行，保证先出现的记录保留。
    """
    if not files:
        return []

    workers = min(MAX_SCAN_WORKERS, len(files))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        contents = list(executor.map(lambda item: read_usage_file(item[0]), files))

    entries: List[LedgerEntry] = []
    for (path, base_dir), lines in zip(files, contents):
        if lines is None:
            if stats is not None:
                stats.unreadable_files += 1
            continue
        project, project_path, session_id = describe_file(path, base_dir)
        for event in iter_usage_events(lines, stats):
            if deduplicator.is_duplicate(event):
                if stats is not None:
                    stats.duplicate_lines += 1
                continue
            entries.append(
                LedgerEntry(
                    event=event,
                    cost=resolve_cost(event, mode, pricing_source),
                    file=path,
                    project=project,
                    project_path=project_path,
                    session_id=session_id,
                )
            )

    logger.info(f"共加载 {len(entries)} 条用量记录")
    return entries
