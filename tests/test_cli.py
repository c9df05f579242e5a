import json

import pytest

from helpers import usage_record, write_jsonl

from usage_ledger.cli import build_parser, main


@pytest.fixture
def claude_root(tmp_path):
    root = tmp_path / "claude"
    write_jsonl(
        root / "projects" / "proj" / "sess.jsonl",
        [
            usage_record("2025-01-15T10:00:00Z", 100, 50, message_id="m1", request_id="r1", cost=0.25),
            usage_record("2025-01-16T10:00:00Z", 200, 100, message_id="m2", request_id="r2", cost=0.5),
        ],
    )
    return root


def run_json(capsys, *argv):
    assert main(list(argv)) == 0
    return json.loads(capsys.readouterr().out)


def test_daily_json(claude_root, capsys):
    data = run_json(
        capsys, "daily", "--data-dir", str(claude_root), "--json", "--mode", "display", "--timezone", "UTC", "--order", "asc"
    )
    assert [row["bucket"] for row in data] == ["2025-01-15", "2025-01-16"]
    assert data[1]["totalCost"] == 0.5


def test_daily_is_the_default_command(claude_root, capsys):
    data = run_json(capsys, "--data-dir", str(claude_root), "--json", "--mode", "display", "--timezone", "UTC")
    assert len(data) == 2


def test_projects_dir_is_accepted_as_data_dir(claude_root, capsys):
    data = run_json(capsys, "monthly", "--data-dir", str(claude_root / "projects"), "--json", "--mode", "display")
    assert len(data) == 1
    assert data[0]["inputTokens"] == 300


def test_blocks_json(claude_root, capsys):
    data = run_json(capsys, "blocks", "--data-dir", str(claude_root), "--json", "--mode", "display")
    assert len([b for b in data["blocks"] if not b["isGap"]]) == 2
    assert "burnRate" not in data


def test_export_json(claude_root, tmp_path, capsys):
    output = tmp_path / "report.json"
    assert main(["session", "--data-dir", str(claude_root), "--mode", "display", "--json", "--export-json", str(output)]) == 0
    capsys.readouterr()
    exported = json.loads(output.read_text(encoding="utf-8"))
    assert exported["cost_mode"] == "display"
    assert exported["report"][0]["sessionId"] == "sess"


def test_missing_data_dir_exits_with_error(tmp_path, capsys):
    assert main(["daily", "--data-dir", str(tmp_path / "missing"), "--json"]) == 1
    assert "Error" in capsys.readouterr().out


def test_missing_config_file_exits_with_error(claude_root, tmp_path):
    assert main(["daily", "--data-dir", str(claude_root), "--config", str(tmp_path / "missing.yaml")]) == 1


def test_unknown_source_exits_with_error(claude_root):
    assert main(["combined", "--data-dir", str(claude_root), "--sources", "claude,gemini", "--json"]) == 1


def test_invalid_window_hours_exits_with_error(claude_root):
    assert main(["windows", "--data-dir", str(claude_root), "--window-hours", "0", "--json"]) == 1


def test_parser_rejects_unknown_mode():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["daily", "--mode", "free"])
