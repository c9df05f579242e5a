"""
Rich格式的报告输出
"""

from datetime import datetime, tzinfo
from typing import List, Optional, Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from .aggregation import sum_stats
from .blocks import burn_rate_severity
from .models import (
    BillingBlock,
    BucketUsage,
    BurnRate,
    CombinedTotals,
    MonthlyWindowSummary,
    Projection,
    SessionUsage,
    UnifiedUsage,
)

console = Console()

SEVERITY_STYLES = {"normal": "green", "moderate": "yellow", "high": "red"}


def format_number(num: int) -> str:
    """格式化数字显示"""
    if num >= 1_000_000:
        return f"{num/1_000_000:.1f}M"
    elif num >= 1_000:
        return f"{num/1_000:.1f}K"
    else:
        return str(num)


def format_cost(cost: float) -> str:
    return f"${cost:.2f}"


def format_time(ts: Optional[datetime], tz: tzinfo) -> str:
    if ts is None:
        return "-"
    return ts.astimezone(tz).strftime("%Y-%m-%d %H:%M")


def _new_table(title: str) -> Table:
    return Table(title=title, box=box.ROUNDED, show_header=True, header_style="bold cyan")


def _add_token_columns(table: Table) -> None:
    table.add_column("Input", style="bright_blue", justify="right", min_width=8)
    table.add_column("Output", style="yellow", justify="right", min_width=8)
    table.add_column("Cache Write", style="bright_magenta", justify="right", min_width=8)
    table.add_column("Cache Read", style="magenta", justify="right", min_width=8)
    table.add_column("Total Tokens", style="white", justify="right", min_width=8)
    table.add_column("Cost", style="green", justify="right", min_width=8)


def _token_cells(stats) -> List[str]:
    return [
        format_number(stats.input_tokens),
        format_number(stats.output_tokens),
        format_number(stats.cache_creation_tokens),
        format_number(stats.cache_read_tokens),
        format_number(stats.total_tokens),
        format_cost(stats.cost),
    ]


def print_empty(message: str = "No usage data found.", out: Console = console) -> None:
    out.print(f"[yellow]{message}[/yellow]")


def render_bucket_table(
    rows: Sequence[BucketUsage], title: str, bucket_label: str, breakdown: bool = False, out: Console = console
) -> None:
    """日/周/月/项目报告"""
    if not rows:
        print_empty(out=out)
        return

    show_project = any(r.project is not None and r.project != r.bucket for r in rows)
    table = _new_table(title)
    table.add_column(bucket_label, style="cyan", no_wrap=True)
    if show_project:
        table.add_column("Project", style="cyan", no_wrap=False, max_width=35)
    table.add_column("Models", style="orange3", no_wrap=False, max_width=30)
    _add_token_columns(table)

    for row in rows:
        prefix = [row.bucket] + ([row.project or ""] if show_project else [])
        table.add_row(*prefix, ", ".join(row.models_used), *_token_cells(row))
        if breakdown:
            for model in row.model_breakdowns:
                pad = [""] * len(prefix)
                table.add_row(*pad, f"  └ {model.model_name}", *_token_cells(model), style="dim")

    table.add_section()
    pad = [""] * (2 if show_project else 1)
    pad[0] = "Total"
    table.add_row(*pad, "", *_token_cells(sum_stats(rows)), style="bold")

    out.print("\n")
    out.print(table)


def render_session_table(rows: Sequence[SessionUsage], out: Console = console) -> None:
    if not rows:
        print_empty(out=out)
        return

    table = _new_table("Usage by Session")
    table.add_column("Session", style="cyan", no_wrap=False, max_width=40)
    table.add_column("Project", style="cyan", no_wrap=False, max_width=35)
    table.add_column("Models", style="orange3", no_wrap=False, max_width=30)
    _add_token_columns(table)
    table.add_column("Last Activity", style="white", justify="center")

    for row in rows:
        table.add_row(
            row.session_id, row.project_path, ", ".join(row.models_used), *_token_cells(row), row.last_activity
        )

    table.add_section()
    table.add_row("Total", "", "", *_token_cells(sum_stats(rows)), "", style="bold")

    out.print("\n")
    out.print(table)


def render_blocks_table(
    blocks: Sequence[BillingBlock],
    tz: tzinfo,
    burn_rate: Optional[BurnRate] = None,
    projection: Optional[Projection] = None,
    out: Console = console,
) -> None:
    if not blocks:
        print_empty(out=out)
        return

    table = _new_table("Billing Blocks")
    table.add_column("Start", style="cyan", no_wrap=True)
    table.add_column("Last Activity", style="cyan", no_wrap=True)
    table.add_column("Status", style="white", justify="center")
    table.add_column("Models", style="orange3", no_wrap=False, max_width=30)
    table.add_column("Tokens", style="white", justify="right")
    table.add_column("Cost", style="green", justify="right")

    for block in blocks:
        if block.is_gap:
            hours = (block.end_time - block.start_time).total_seconds() / 3600
            table.add_row(
                format_time(block.start_time, tz), format_time(block.end_time, tz),
                f"gap ({hours:.1f}h)", "", "", "", style="dim",
            )
            continue
        status = "[bold green]ACTIVE[/bold green]" if block.is_active else ""
        table.add_row(
            format_time(block.start_time, tz),
            format_time(block.actual_end_time, tz),
            status,
            ", ".join(block.models),
            format_number(block.total_tokens),
            format_cost(block.cost_usd),
        )

    out.print("\n")
    out.print(table)

    if burn_rate is not None:
        severity = burn_rate_severity(burn_rate)
        style = SEVERITY_STYLES[severity]
        out.print(
            f"Burn rate: [{style}]{burn_rate.tokens_per_minute_for_indicator:,.0f} tokens/min ({severity})[/{style}]"
            f", {format_cost(burn_rate.cost_per_hour)}/hour"
        )
    if projection is not None:
        out.print(
            f"Projected: {format_number(projection.total_tokens)} tokens, {format_cost(projection.total_cost)}"
            f" ({projection.remaining_minutes} min remaining)"
        )


def render_windows_table(summaries: Sequence[MonthlyWindowSummary], tz: tzinfo, out: Console = console) -> None:
    if not summaries:
        print_empty(out=out)
        return

    table = _new_table("Session Windows by Month")
    table.add_column("Month", style="cyan", no_wrap=True)
    table.add_column("Sessions", style="white", justify="right")
    table.add_column("Remaining", style="white", justify="right")
    table.add_column("Utilization", style="yellow", justify="right")
    table.add_column("Tokens", style="white", justify="right")
    table.add_column("Cost", style="green", justify="right")
    table.add_column("Avg Cost", style="green", justify="right")

    for summary in summaries:
        table.add_row(
            summary.month,
            f"{summary.total_sessions}/{summary.session_limit}",
            str(summary.remaining_sessions),
            f"{summary.utilization_percent:.1f}%",
            format_number(summary.total_tokens),
            format_cost(summary.cost),
            format_cost(summary.average_cost_per_session),
        )

    out.print("\n")
    out.print(table)

    for summary in summaries:
        current = summary.current_session
        if current.has_active_session:
            minutes = current.time_remaining_ms // 60000
            out.print(f"Current session {current.window_id}: {minutes // 60}h {minutes % 60}m remaining")


def render_combined_table(
    rows: Sequence[UnifiedUsage], totals: Optional[CombinedTotals], kind: str, out: Console = console
) -> None:
    if not rows:
        print_empty(out=out)
        return

    labels = {"daily": "Date", "monthly": "Month", "session": "Session"}
    table = _new_table(f"Combined {kind.capitalize()} Usage")
    table.add_column(labels.get(kind, "Key"), style="cyan", no_wrap=False, max_width=40)
    table.add_column("Source", style="orange3")
    table.add_column("Input", style="bright_blue", justify="right")
    table.add_column("Output", style="yellow", justify="right")
    table.add_column("Cache Write", style="bright_magenta", justify="right")
    table.add_column("Cache Read", style="magenta", justify="right")
    table.add_column("Total Tokens", style="white", justify="right")
    table.add_column("Cost", style="green", justify="right")

    for row in rows:
        table.add_row(
            row.display_name or row.key,
            row.source,
            format_number(row.input_tokens),
            format_number(row.output_tokens),
            format_number(row.cache_creation_tokens),
            format_number(row.cache_read_tokens),
            format_number(row.total_tokens),
            format_cost(row.cost_usd),
        )

    if totals is not None:
        # 各来源的Token口径不同，只按来源列出，总计只有成本
        table.add_section()
        for source in totals.by_source:
            table.add_row(
                "Subtotal",
                source.source,
                format_number(source.input_tokens),
                format_number(source.output_tokens),
                format_number(source.cache_creation_tokens),
                format_number(source.cache_read_tokens),
                format_number(source.total_tokens),
                format_cost(source.cost_usd),
            )
        table.add_row("Total", "", "", "", "", "", "", format_cost(totals.cost_usd), style="bold")

    out.print("\n")
    out.print(table)
