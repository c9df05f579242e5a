#!/usr/bin/env python3

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .analyzer import REPORT_KINDS, UsageLedger
from .billing import PricingSourceError
from .config import COST_MODES, SORT_ORDERS, WEEK_DAYS, ConfigurationError, LedgerSettings, load_settings
from .combined import parse_sources
from .locator import resolve_data_dirs
from . import display

logger = logging.getLogger(__name__)

COMMANDS = ("daily", "weekly", "monthly", "session", "project", "blocks", "windows", "combined")


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--data-dir", type=Path, action="append",
        help="Claude data directory (containing projects/); may be repeated. Defaults to CLAUDE_CONFIG_DIR or ~/.config/claude and ~/.claude",
    )
    common.add_argument("--since", help="Start date, YYYYMMDD or YYYY-MM-DD (inclusive)")
    common.add_argument("--until", help="End date, YYYYMMDD or YYYY-MM-DD (inclusive)")
    common.add_argument("--mode", choices=COST_MODES, help="Cost mode: auto, calculate or display")
    common.add_argument("--order", choices=SORT_ORDERS, help="Sort order by date")
    common.add_argument("--timezone", help="IANA timezone for grouping, e.g. Asia/Shanghai")
    common.add_argument("--project", help="Only include this project")
    common.add_argument("--json", action="store_true", help="Print JSON instead of tables")
    common.add_argument("--export-json", type=Path, help="Write the report to a JSON file")
    common.add_argument("--offline", action="store_true", default=None, help="Use the bundled pricing table")
    common.add_argument("--pricing-source", help="Custom pricing URL or local YAML/JSON file")
    common.add_argument("--config", type=Path, help="Config file (YAML or JSON)")
    common.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="WARNING", help="Log level"
    )

    parser = argparse.ArgumentParser(prog="usage-ledger", description="Token usage and cost reports for AI coding assistants")
    subparsers = parser.add_subparsers(dest="command")

    for name in ("daily", "weekly", "monthly"):
        sub = subparsers.add_parser(name, parents=[common], help=f"{name.capitalize()} usage report")
        sub.add_argument("--breakdown", action="store_true", help="Show per-model breakdown")
        sub.add_argument("--instances", action="store_true", help="Group by project as well")
        if name == "weekly":
            sub.add_argument("--start-of-week", choices=WEEK_DAYS, help="First day of the week")

    subparsers.add_parser("session", parents=[common], help="Usage by session")
    project = subparsers.add_parser("project", parents=[common], help="Usage by project")
    project.add_argument("--breakdown", action="store_true", help="Show per-model breakdown")

    blocks = subparsers.add_parser("blocks", parents=[common], help="Floating billing blocks")
    blocks.add_argument("--active", action="store_true", help="Only show the active block")
    blocks.add_argument("--recent", action="store_true", help="Only show blocks from the last 3 days")
    blocks.add_argument("--session-length", type=float, help="Block duration in hours")
    blocks.add_argument("--gap-threshold", type=float, help="Idle hours that produce a gap block")

    windows = subparsers.add_parser("windows", parents=[common], help="Calendar session windows and monthly quota")
    windows.add_argument("--window-hours", type=int, help="Window length in hours")
    windows.add_argument("--session-limit", type=int, help="Monthly session quota")

    combined = subparsers.add_parser("combined", parents=[common], help="Combined report across tools")
    combined.add_argument("--kind", choices=REPORT_KINDS, default="daily", help="Report granularity")
    combined.add_argument("--sources", help="Comma-separated sources, e.g. claude,codex")

    return parser


def apply_overrides(settings: LedgerSettings, args: argparse.Namespace) -> LedgerSettings:
    """命令行参数覆盖配置文件中的设置"""
    overrides = {
        "cost_mode": args.mode,
        "order": args.order,
        "timezone": args.timezone,
        "offline": args.offline,
        "pricing_source": args.pricing_source,
        "start_of_week": getattr(args, "start_of_week", None),
        "block_duration_hours": getattr(args, "session_length", None),
        "gap_threshold_hours": getattr(args, "gap_threshold", None),
        "window_hours": getattr(args, "window_hours", None),
        "session_limit": getattr(args, "session_limit", None),
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(settings, key, value)
    return settings.validate()


def run_command(ledger: UsageLedger, args: argparse.Namespace):
    """执行子命令，返回可序列化的报告数据"""
    command = args.command
    since, until, project = args.since, args.until, args.project
    tz = ledger.tz

    if command in ("daily", "weekly", "monthly"):
        report = getattr(ledger, f"{command}_report")(since, until, project, group_by_project=args.instances)
        if not args.json:
            label = {"daily": "Date", "weekly": "Week", "monthly": "Month"}[command]
            display.render_bucket_table(report, f"{command.capitalize()} Usage", label, args.breakdown)
        return [row.to_dict() for row in report]

    if command == "project":
        report = ledger.project_report(since, until, project)
        if not args.json:
            display.render_bucket_table(report, "Usage by Project", "Project", args.breakdown)
        return [row.to_dict() for row in report]

    if command == "session":
        report = ledger.session_report(since, until, project)
        if not args.json:
            display.render_session_table(report)
        return [row.to_dict() for row in report]

    if command == "blocks":
        active, burn_rate, projection = ledger.active_block(project)
        if args.active:
            report = [active] if active is not None else []
        else:
            report = ledger.blocks_report(since, until, project, recent_days=3 if args.recent else None)
        if not args.json:
            display.render_blocks_table(report, tz, burn_rate, projection)
        data = {"blocks": [block.to_dict() for block in report]}
        if burn_rate is not None:
            data["burnRate"] = burn_rate.to_dict()
        if projection is not None:
            data["projection"] = projection.to_dict()
        return data

    if command == "windows":
        report = ledger.windows_report(since, until, project)
        if not args.json:
            display.render_windows_table(report, tz)
        return [summary.to_dict() for summary in report]

    if command == "combined":
        rows, totals = ledger.combined_report(args.kind, parse_sources(args.sources), since, until)
        if not args.json:
            display.render_combined_table(rows, totals, args.kind)
        return {"data": [row.to_dict() for row in rows], "totals": totals.to_dict() if totals else None}

    raise ValueError(f"未知命令: {command}")


def main(argv: Optional[List[str]] = None) -> int:
    """主函数"""
    argv = list(sys.argv[1:] if argv is None else argv)
    # 未指定子命令时默认输出日报
    if not argv or (argv[0].startswith("-") and argv[0] not in ("-h", "--help")):
        argv = ["daily"] + argv
    args = build_parser().parse_args(argv)

    # 设置日志级别
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    try:
        settings = apply_overrides(load_settings(args.config), args)
        claude_paths = resolve_data_dirs(args.data_dir) if args.data_dir else None
        with UsageLedger(settings, claude_paths=claude_paths) as ledger:
            data = run_command(ledger, args)
            if args.json:
                print(json.dumps(data, ensure_ascii=False, indent=2))
            if args.export_json:
                ledger.export_json(data, args.export_json)
    except (ConfigurationError, PricingSourceError) as e:
        display.console.print(f"[red]Error: {e}[/red]")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
