from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class UsageEvent:
    """单条JSONL记录解析后的用量事件"""

    timestamp: datetime
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    request_id: Optional[str] = None
    model: Optional[str] = None
    version: Optional[str] = None
    cost_usd: Optional[float] = None
    usage_limit_reset_time: Optional[datetime] = None

    @property
    def dedup_key(self) -> Optional[str]:
        # 两个ID缺一不可，否则不参与去重
        if self.message_id is None or self.request_id is None:
            return None
        return f"{self.message_id}:{self.request_id}"

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.cache_creation_tokens + self.cache_read_tokens


@dataclass(frozen=True)
class LedgerEntry:
    """已去重并计算成本的事件，附带来源文件信息"""

    event: UsageEvent
    cost: float
    file: Path
    project: str
    project_path: str
    session_id: str

    @property
    def timestamp(self) -> datetime:
        return self.event.timestamp

    @property
    def model(self) -> Optional[str]:
        return self.event.model

    @property
    def session_key(self) -> str:
        return f"{self.project_path}/{self.session_id}"


@dataclass
class TokenStats:
    """Token与成本累加器"""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.cache_creation_tokens + self.cache_read_tokens

    def add_event(self, event: UsageEvent, cost: float) -> None:
        self.input_tokens += event.input_tokens
        self.output_tokens += event.output_tokens
        self.cache_creation_tokens += event.cache_creation_tokens
        self.cache_read_tokens += event.cache_read_tokens
        self.cost += cost

    def add_stats(self, other: "TokenStats") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_creation_tokens += other.cache_creation_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cost += other.cost

    def token_dict(self) -> Dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheCreationTokens": self.cache_creation_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "totalTokens": self.total_tokens,
            "totalCost": self.cost,
        }


@dataclass
class ModelBreakdown(TokenStats):
    """单个模型的用量统计"""

    model_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {"modelName": self.model_name}
        data.update(self.token_dict())
        data["cost"] = data.pop("totalCost")
        return data


@dataclass
class BucketUsage(TokenStats):
    """按日/周/月/项目分组的统计数据"""

    bucket: str = ""
    models_used: List[str] = field(default_factory=list)
    model_breakdowns: List[ModelBreakdown] = field(default_factory=list)
    project: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"bucket": self.bucket}
        data.update(self.token_dict())
        data["modelsUsed"] = list(self.models_used)
        data["modelBreakdowns"] = [b.to_dict() for b in self.model_breakdowns]
        if self.project is not None:
            data["project"] = self.project
        return data


@dataclass
class SessionUsage(BucketUsage):
    """按会话分组的统计数据"""

    session_id: str = ""
    project_path: str = ""
    last_activity: str = ""
    last_timestamp: Optional[datetime] = None
    versions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "sessionId": self.session_id,
                "projectPath": self.project_path,
                "lastActivity": self.last_activity,
                "versions": list(self.versions),
            }
        )
        return data


@dataclass
class SessionWindow(TokenStats):
    """按日历对齐的固定时长配额窗口"""

    window_id: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    slot_start: Optional[datetime] = None
    slot_end: Optional[datetime] = None
    message_count: int = 0
    conversation_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "windowId": self.window_id,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
        }
        data.update(self.token_dict())
        data["messageCount"] = self.message_count
        data["conversationCount"] = self.conversation_count
        return data


@dataclass
class CurrentSession:
    has_active_session: bool = False
    time_remaining_ms: int = 0
    window_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasActiveSession": self.has_active_session,
            "timeRemainingMs": self.time_remaining_ms,
            "windowId": self.window_id,
        }


@dataclass
class MonthlyWindowSummary(TokenStats):
    """月度配额窗口汇总"""

    month: str = ""
    total_sessions: int = 0
    session_limit: int = 0
    remaining_sessions: int = 0
    utilization_percent: float = 0.0
    average_cost_per_session: float = 0.0
    average_tokens_per_session: float = 0.0
    windows: List[SessionWindow] = field(default_factory=list)
    current_session: CurrentSession = field(default_factory=CurrentSession)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "month": self.month,
            "totalSessions": self.total_sessions,
            "sessionLimit": self.session_limit,
            "remainingSessions": self.remaining_sessions,
            "utilizationPercent": self.utilization_percent,
        }
        data.update(self.token_dict())
        data["averageCostPerSession"] = self.average_cost_per_session
        data["averageTokensPerSession"] = self.average_tokens_per_session
        data["currentSession"] = self.current_session.to_dict()
        data["windows"] = [w.to_dict() for w in self.windows]
        return data


@dataclass
class BillingBlock:
    """以活动为锚点的浮动计费区块"""

    id: str
    start_time: datetime
    end_time: datetime
    actual_end_time: Optional[datetime] = None
    is_active: bool = False
    is_gap: bool = False
    entries: List[LedgerEntry] = field(default_factory=list)
    token_counts: TokenStats = field(default_factory=TokenStats)
    cost_usd: float = 0.0
    models: List[str] = field(default_factory=list)
    usage_limit_reset_time: Optional[datetime] = None

    @property
    def total_tokens(self) -> int:
        return self.token_counts.total_tokens

    def to_dict(self) -> Dict[str, Any]:
        counts = self.token_counts
        return {
            "id": self.id,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "actualEndTime": _iso(self.actual_end_time),
            "isActive": self.is_active,
            "isGap": self.is_gap,
            "entries": len(self.entries),
            "tokenCounts": {
                "inputTokens": counts.input_tokens,
                "outputTokens": counts.output_tokens,
                "cacheCreationInputTokens": counts.cache_creation_tokens,
                "cacheReadInputTokens": counts.cache_read_tokens,
            },
            "totalTokens": self.total_tokens,
            "costUSD": self.cost_usd,
            "models": list(self.models),
            "usageLimitResetTime": _iso(self.usage_limit_reset_time),
        }


@dataclass
class BurnRate:
    tokens_per_minute: float
    tokens_per_minute_for_indicator: float
    cost_per_hour: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokensPerMinute": self.tokens_per_minute,
            "tokensPerMinuteForIndicator": self.tokens_per_minute_for_indicator,
            "costPerHour": self.cost_per_hour,
        }


@dataclass
class Projection:
    total_tokens: int
    total_cost: float
    remaining_minutes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalTokens": self.total_tokens,
            "totalCost": self.total_cost,
            "remainingMinutes": self.remaining_minutes,
        }


@dataclass
class UnifiedUsage:
    """跨工具统一格式，total_tokens保留各工具自己的口径"""

    source: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    models: List[str] = field(default_factory=list)
    date: Optional[str] = None
    month: Optional[str] = None
    session_id: Optional[str] = None
    display_name: Optional[str] = None
    last_activity: Optional[str] = None

    @property
    def key(self) -> str:
        for value in (self.date, self.month, self.session_id):
            if value is not None:
                return value
        return ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"source": self.source}
        for name, value in (("date", self.date), ("month", self.month), ("sessionId", self.session_id)):
            if value is not None:
                data[name] = value
        if self.session_id is not None:
            data["displayName"] = self.display_name
            data["lastActivity"] = self.last_activity
        data.update(
            {
                "inputTokens": self.input_tokens,
                "outputTokens": self.output_tokens,
                "cacheCreationTokens": self.cache_creation_tokens,
                "cacheReadTokens": self.cache_read_tokens,
                "totalTokens": self.total_tokens,
                "costUSD": self.cost_usd,
                "models": list(self.models),
            }
        )
        return data


@dataclass
class SourceTotals:
    source: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheCreationTokens": self.cache_creation_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "totalTokens": self.total_tokens,
            "costUSD": self.cost_usd,
        }


@dataclass
class CombinedTotals:
    """跨工具合计：只有成本可以相加"""

    cost_usd: float = 0.0
    by_source: List[SourceTotals] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"costUSD": self.cost_usd, "bySource": [s.to_dict() for s in self.by_source]}


@dataclass(frozen=True)
class CodexEvent:
    """Codex 会话日志中的一次 token_count 增量"""

    timestamp: datetime
    model: str
    session_id: str
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0
    reasoning_output_tokens: int = 0
    total_tokens: int = 0


@dataclass
class CodexUsage:
    """Codex 按日/月/会话的统计，缓存Token包含在输入Token之内"""

    key: str
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0
    reasoning_output_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    models: Dict[str, int] = field(default_factory=dict)
    last_activity: Optional[datetime] = None

    def add_event(self, event: CodexEvent, cost: float) -> None:
        self.input_tokens += event.input_tokens
        self.cached_input_tokens += event.cached_input_tokens
        self.output_tokens += event.output_tokens
        self.reasoning_output_tokens += event.reasoning_output_tokens
        self.total_tokens += event.total_tokens
        self.cost += cost
        self.models[event.model] = self.models.get(event.model, 0) + event.total_tokens
        if self.last_activity is None or event.timestamp > self.last_activity:
            self.last_activity = event.timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "inputTokens": self.input_tokens,
            "cachedInputTokens": self.cached_input_tokens,
            "outputTokens": self.output_tokens,
            "reasoningOutputTokens": self.reasoning_output_tokens,
            "totalTokens": self.total_tokens,
            "costUSD": self.cost,
            "models": dict(self.models),
            "lastActivity": _iso(self.last_activity),
        }
