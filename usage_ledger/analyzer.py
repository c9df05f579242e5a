"""
用量分析器

UsageLedger 表示一次运行：定位文件、按时间排序、解析去重、计算成本，再生成各类报告。
去重集合和定价缓存都属于这次运行，不在模块级别共享。
"""

import contextlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from . import aggregation, blocks, codex, combined, windows
from .billing import CostMode, PricingSource, create_pricing_source
from .config import ConfigurationError, LedgerSettings
from .loader import load_usage_entries, sort_files_by_timestamp
from .locator import get_claude_paths, get_codex_paths, glob_usage_files
from .models import (
    BillingBlock,
    BucketUsage,
    BurnRate,
    CodexEvent,
    CombinedTotals,
    LedgerEntry,
    MonthlyWindowSummary,
    Projection,
    SessionUsage,
    UnifiedUsage,
)
from .parser import Deduplicator, ParseStats

logger = logging.getLogger(__name__)

REPORT_KINDS = ("daily", "monthly", "session")


class UsageLedger:
    """一次运行的用量分析器"""

    def __init__(
        self,
        settings: Optional[LedgerSettings] = None,
        claude_paths: Optional[Sequence[Path]] = None,
        codex_paths: Optional[Sequence[Path]] = None,
        pricing_source: Optional[PricingSource] = None,
        now: Optional[datetime] = None,
    ):
        self.settings = settings or LedgerSettings()
        self.tz = aggregation.resolve_timezone(self.settings.timezone)
        self.cost_mode = CostMode(self.settings.cost_mode)
        self.now = now
        self.claude_paths = list(claude_paths) if claude_paths else None
        self.codex_paths = list(codex_paths) if codex_paths else None
        self._pricing_source = pricing_source
        self._open_pricing: Optional[PricingSource] = None
        self.stats = ParseStats()
        self.deduplicator = Deduplicator()
        self._entries: Optional[List[LedgerEntry]] = None
        self._codex_events: Optional[List[CodexEvent]] = None

    def __enter__(self) -> "UsageLedger":
        if self.cost_mode is not CostMode.DISPLAY:
            self._open_pricing = self._create_pricing_source()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._open_pricing is not None:
            self._open_pricing.close()
            self._open_pricing = None

    def current_time(self) -> datetime:
        return self.now or datetime.now(timezone.utc)

    def _create_pricing_source(self) -> PricingSource:
        return self._pricing_source or create_pricing_source(
            self.settings.pricing_source,
            offline=self.settings.offline,
            offline_table=self.settings.pricing,
        )

    @contextlib.contextmanager
    def pricing_scope(self) -> Iterator[Optional[PricingSource]]:
        """本次运行使用的定价来源；display 模式不需要定价

        在 with UsageLedger(...) 内使用运行级的定价来源，否则临时创建并在离开作用域时释放。
        """
        if self.cost_mode is CostMode.DISPLAY:
            yield None
        elif self._open_pricing is not None:
            yield self._open_pricing
        else:
            with self._create_pricing_source() as source:
                yield source

    def load_entries(self) -> List[LedgerEntry]:
        """加载本次运行的全部 Claude 用量记录，结果在运行内缓存"""
        if self._entries is not None:
            return self._entries

        roots = self.claude_paths or get_claude_paths()
        self.stats = ParseStats()
        self.deduplicator = Deduplicator()
        with self.pricing_scope() as pricing:
            files = sort_files_by_timestamp(glob_usage_files(roots))
            if not files:
                logger.warning("未找到任何用量文件")
                self._entries = []
                return self._entries
            self._entries = load_usage_entries(files, self.cost_mode, pricing, self.deduplicator, self.stats)

        logger.info(
            f"解析 {self.stats.total_lines} 行，跳过 {self.stats.skipped_lines} 行无效记录，"
            f"{self.stats.duplicate_lines} 行重复记录"
        )
        return self._entries

    def _filtered(
        self, since: Optional[str] = None, until: Optional[str] = None, project: Optional[str] = None
    ) -> List[LedgerEntry]:
        return aggregation.filter_entries(self.load_entries(), self.tz, since, until, project)

    def daily_report(self, since=None, until=None, project=None, group_by_project=False) -> List[BucketUsage]:
        entries = self._filtered(since, until, project)
        return aggregation.build_daily_report(entries, self.tz, group_by_project, self.settings.order)

    def weekly_report(self, since=None, until=None, project=None, group_by_project=False) -> List[BucketUsage]:
        entries = self._filtered(since, until, project)
        return aggregation.build_weekly_report(
            entries, self.tz, self.settings.start_of_week, group_by_project, self.settings.order
        )

    def monthly_report(self, since=None, until=None, project=None, group_by_project=False) -> List[BucketUsage]:
        entries = self._filtered(since, until, project)
        return aggregation.build_monthly_report(entries, self.tz, group_by_project, self.settings.order)

    def project_report(self, since=None, until=None, project=None) -> List[BucketUsage]:
        return aggregation.build_project_report(self._filtered(since, until, project))

    def session_report(self, since=None, until=None, project=None) -> List[SessionUsage]:
        entries = self._filtered(project=project)
        return aggregation.build_session_report(entries, self.tz, self.settings.order, since, until)

    def blocks_report(self, since=None, until=None, project=None, recent_days: Optional[int] = None) -> List[BillingBlock]:
        result = blocks.identify_billing_blocks(
            self._filtered(since, until, project),
            duration_hours=self.settings.block_duration_hours,
            now=self.current_time(),
            gap_threshold_hours=self.settings.gap_threshold_hours,
        )
        if recent_days is not None:
            result = blocks.filter_recent_blocks(result, recent_days, self.current_time())
        if self.settings.order == "desc":
            result.reverse()
        return result

    def active_block(self, project=None) -> Tuple[Optional[BillingBlock], Optional[BurnRate], Optional[Projection]]:
        """当前活跃区块及其燃烧速率和推算用量"""
        active = blocks.find_active_block(self.blocks_report(project=project))
        if active is None:
            return None, None, None
        now = self.current_time()
        return active, blocks.calculate_burn_rate(active, now), blocks.project_block_usage(active, now)

    def windows_report(self, since=None, until=None, project=None) -> List[MonthlyWindowSummary]:
        session_windows = windows.build_session_windows(
            self._filtered(since, until, project), self.tz, self.settings.window_hours
        )
        return windows.summarize_windows_by_month(
            session_windows, self.settings.session_limit, self.current_time(), self.settings.order
        )

    def load_codex_events(self) -> List[CodexEvent]:
        if self._codex_events is None:
            roots = self.codex_paths or get_codex_paths()
            self._codex_events = codex.load_codex_events(roots)
        return self._codex_events

    def codex_report(self, kind: str, since=None, until=None):
        events = codex.filter_codex_events(self.load_codex_events(), self.tz, since, until)
        order = self.settings.order
        with self.pricing_scope() as pricing:
            if kind == "daily":
                return codex.build_codex_daily_report(events, self.tz, self.cost_mode, pricing, order)
            if kind == "monthly":
                return codex.build_codex_monthly_report(events, self.tz, self.cost_mode, pricing, order)
            if kind == "session":
                return codex.build_codex_session_report(events, self.cost_mode, pricing, order)
        raise ValueError(f"未知的报告类型: {kind}")

    def _unified_rows(self, source: str, kind: str, since=None, until=None) -> List[UnifiedUsage]:
        if source == "claude":
            if kind == "daily":
                return [combined.normalize_claude_daily(r) for r in self.daily_report(since, until)]
            if kind == "monthly":
                return [combined.normalize_claude_monthly(r) for r in self.monthly_report(since, until)]
            return [combined.normalize_claude_session(r) for r in self.session_report(since, until)]

        rows = self.codex_report(kind, since, until)
        if kind == "daily":
            return [combined.normalize_codex_daily(r) for r in rows]
        if kind == "monthly":
            return [combined.normalize_codex_monthly(r) for r in rows]
        return [combined.normalize_codex_session(r) for r in rows]

    def combined_report(
        self, kind: str = "daily", sources: Optional[Sequence[str]] = None, since=None, until=None
    ) -> Tuple[List[UnifiedUsage], Optional[CombinedTotals]]:
        """多个工具的统一报告；某个工具没有数据目录时记录警告并跳过"""
        if kind not in REPORT_KINDS:
            raise ConfigurationError(f"合并报告不支持的类型: {kind}（可选: {', '.join(REPORT_KINDS)}）")
        rows_by_source: Dict[str, List[UnifiedUsage]] = {}
        for source in sources or combined.SOURCE_ORDER:
            try:
                rows_by_source[source] = self._unified_rows(source, kind, since, until)
            except ConfigurationError as e:
                logger.warning(f"跳过来源 {source}: {e}")
        rows = combined.combine(rows_by_source, self.settings.order)
        return rows, combined.calculate_totals(rows)

    def export_json(self, data: Any, output_path: Path) -> None:
        """导出报告为JSON文件"""
        export_data = {
            "analysis_timestamp": self.current_time().isoformat(),
            "cost_mode": self.cost_mode.value,
            "report": data,
        }
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(export_data, f, ensure_ascii=False, indent=2)
        logger.info(f"已导出JSON: {output_path}")
