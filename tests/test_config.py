import pytest

from usage_ledger.config import (
    ConfigurationError,
    deep_merge,
    get_default_config,
    load_full_config,
    load_settings,
    settings_from_config,
)


def test_deep_merge_keeps_nested_defaults():
    merged = deep_merge({"a": 1, "pricing": {"x": {"input": 1}, "y": 2}}, {"pricing": {"x": {"output": 3}}})
    assert merged == {"a": 1, "pricing": {"x": {"input": 1, "output": 3}, "y": 2}}


def test_defaults_are_valid():
    settings = settings_from_config(get_default_config())
    assert settings.cost_mode == "auto"
    assert settings.order == "desc"
    assert settings.window_hours == 5
    assert settings.session_limit == 50
    assert "claude-sonnet-4" in settings.pricing


def test_user_config_is_merged(isolated_home):
    config_dir = isolated_home / ".usage-ledger"
    config_dir.mkdir(parents=True)
    (config_dir / "config.yaml").write_text(
        "cost_mode: calculate\nstart_of_week: Monday\npricing:\n  my-model:\n    input_per_million: 1.0\n",
        encoding="utf-8",
    )
    settings = load_settings()
    assert settings.cost_mode == "calculate"
    assert settings.start_of_week == "monday"
    assert "my-model" in settings.pricing
    assert "claude-opus-4" in settings.pricing


def test_broken_user_config_falls_back_to_defaults(isolated_home):
    config_dir = isolated_home / ".usage-ledger"
    config_dir.mkdir(parents=True)
    (config_dir / "config.yaml").write_text("cost_mode: [unclosed\n", encoding="utf-8")
    assert load_full_config()["cost_mode"] == "auto"


def test_explicit_config_must_exist(tmp_path):
    with pytest.raises(ConfigurationError):
        load_full_config(tmp_path / "missing.yaml")


def test_explicit_json_config(tmp_path):
    path = tmp_path / "ledger.json"
    path.write_text('{"order": "asc", "window_hours": 6}', encoding="utf-8")
    settings = load_settings(path)
    assert settings.order == "asc"
    assert settings.window_hours == 6


def test_explicit_config_must_be_a_mapping(tmp_path):
    path = tmp_path / "ledger.yaml"
    path.write_text("- daily\n- weekly\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_full_config(path)


@pytest.mark.parametrize(
    "override",
    [
        {"cost_mode": "free"},
        {"order": "random"},
        {"start_of_week": "funday"},
        {"window_hours": 0},
        {"window_hours": 25},
        {"session_limit": "many"},
        {"block_duration_hours": True},
        {"gap_threshold_hours": -1},
        {"pricing": ["not", "a", "mapping"]},
    ],
)
def test_invalid_settings_are_rejected(override):
    with pytest.raises(ConfigurationError):
        settings_from_config(deep_merge(get_default_config(), override))
