import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from .models import UsageEvent

logger = logging.getLogger(__name__)

USAGE_LIMIT_MESSAGE = "Claude AI usage limit reached"
USAGE_LIMIT_RESET_PATTERN = re.compile(r"\|(\d+)")


@dataclass
class ParseStats:
    """一次运行中解析情况的计数"""

    total_lines: int = 0
    skipped_lines: int = 0
    duplicate_lines: int = 0
    unreadable_files: int = 0

    @property
    def accepted_lines(self) -> int:
        return self.total_lines - self.skipped_lines - self.duplicate_lines


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"字段类型应为字符串: {value!r}")
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """解析ISO-8601时间戳，统一转换为UTC；无时区信息时按UTC处理"""
    if not isinstance(value, str) or not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _token_count(usage: Dict, key: str, required: bool) -> int:
    value = usage.get(key)
    if value is None:
        if required:
            raise ValueError(f"缺少字段 usage.{key}")
        return 0
    if not _is_number(value):
        raise TypeError(f"usage.{key} 不是数字: {value!r}")
    return int(value)


def parse_usage_limit_reset_time(data: Dict) -> Optional[datetime]:
    """从API错误消息中提取用量限制的重置时间"""
    if data.get("isApiErrorMessage") is not True:
        return None
    message = data.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return None
    for item in content:
        text = item.get("text") if isinstance(item, dict) else None
        if not isinstance(text, str) or USAGE_LIMIT_MESSAGE not in text:
            continue
        match = USAGE_LIMIT_RESET_PATTERN.search(text)
        if match:
            try:
                return datetime.fromtimestamp(int(match.group(1)), tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                logger.debug(f"无效的用量限制重置时间: {match.group(1)}")
                return None
    return None


def parse_usage_record(data: Any) -> UsageEvent:
    """校验一条已解码的记录并转换为 UsageEvent

    结构不符合要求时抛出 ValueError 或 TypeError。
    """
    if not isinstance(data, dict):
        raise TypeError("记录不是JSON对象")

    timestamp = parse_timestamp(data.get("timestamp"))
    if timestamp is None:
        raise ValueError(f"无效的时间戳: {data.get('timestamp')!r}")

    message = data.get("message")
    if not isinstance(message, dict):
        raise ValueError("缺少 message 对象")
    usage = message.get("usage")
    if not isinstance(usage, dict):
        raise ValueError("缺少 message.usage 对象")

    cost = data.get("costUSD")
    if cost is not None and not _is_number(cost):
        raise TypeError(f"costUSD 不是数字: {cost!r}")

    return UsageEvent(
        timestamp=timestamp,
        input_tokens=_token_count(usage, "input_tokens", required=True),
        output_tokens=_token_count(usage, "output_tokens", required=True),
        cache_creation_tokens=_token_count(usage, "cache_creation_input_tokens", required=False),
        cache_read_tokens=_token_count(usage, "cache_read_input_tokens", required=False),
        session_id=_optional_str(data.get("sessionId")),
        message_id=_optional_str(message.get("id")),
        request_id=_optional_str(data.get("requestId")),
        model=_optional_str(message.get("model")),
        version=_optional_str(data.get("version")),
        cost_usd=float(cost) if cost is not None else None,
        usage_limit_reset_time=parse_usage_limit_reset_time(data),
    )


def parse_usage_line(line: str) -> Optional[UsageEvent]:
    """解析一行JSONL，无效行返回None"""
    line = line.strip()
    if not line:
        return None
    try:
        return parse_usage_record(json.loads(line))
    except (json.JSONDecodeError, ValueError, TypeError) as e:
        logger.debug(f"跳过无效记录: {e}")
        return None


def read_usage_file(path: Path) -> Optional[List[str]]:
    """读取文件的全部行，无法读取时记录警告并返回None"""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.readlines()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"无法读取文件 {path}: {e}")
        return None


def iter_usage_events(lines: Iterable[str], stats: Optional[ParseStats] = None) -> Iterator[UsageEvent]:
    for line in lines:
        if not line.strip():
            continue
        if stats is not None:
            stats.total_lines += 1
        event = parse_usage_line(line)
        if event is None:
            if stats is not None:
                stats.skipped_lines += 1
            continue
        yield event


class Deduplicator:
    """记录已处理的 message_id:request_id，生命周期为一次运行"""

    def __init__(self):
        self._seen: Set[str] = set()

    def __len__(self) -> int:
        return len(self._seen)

    def is_duplicate(self, event: UsageEvent) -> bool:
        """检查并标记：首次出现返回False，之后返回True；缺少ID的事件永不去重"""
        key = event.dedup_key
        if key is None:
            return False
        if key in self._seen:
            return True
        self._seen.add(key)
        return False
