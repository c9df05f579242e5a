import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".usage-ledger"
DEFAULT_CONFIG_FILE = "config.yaml"

COST_MODES = ("auto", "calculate", "display")
SORT_ORDERS = ("asc", "desc")
WEEK_DAYS = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")


class ConfigurationError(Exception):
    """配置无效或缺少必需的数据目录"""


def get_default_config() -> Dict:
    """获取默认配置"""
    return {
        "cost_mode": "auto",
        "timezone": None,
        "start_of_week": "sunday",
        "block_duration_hours": 5,
        "gap_threshold_hours": None,
        "window_hours": 5,
        "session_limit": 50,
        "pricing_source": None,
        "offline": False,
        "order": "desc",
        # 离线定价表，单位为每百万Token美元
        "pricing": {
            "claude-opus-4": {
                "input_per_million": 15.0,
                "output_per_million": 75.0,
                "cache_read_per_million": 1.5,
                "cache_write_per_million": 18.75,
            },
            "claude-sonnet-4": {
                "input_per_million": 3.0,
                "output_per_million": 15.0,
                "cache_read_per_million": 0.3,
                "cache_write_per_million": 3.75,
            },
            "claude-3-5-haiku": {
                "input_per_million": 0.8,
                "output_per_million": 4.0,
                "cache_read_per_million": 0.08,
                "cache_write_per_million": 1.0,
            },
            "gpt-5": {
                "input_per_million": 1.25,
                "output_per_million": 10.0,
                "cache_read_per_million": 0.125,
            },
            "gpt-5-codex": {
                "input_per_million": 1.25,
                "output_per_million": 10.0,
                "cache_read_per_million": 0.125,
            },
            "opus": {
                "input_per_million": 15.0,
                "output_per_million": 75.0,
                "cache_read_per_million": 1.5,
                "cache_write_per_million": 18.75,
            },
            "sonnet": {
                "input_per_million": 3.0,
                "output_per_million": 15.0,
                "cache_read_per_million": 0.3,
                "cache_write_per_million": 3.75,
            },
        },
    }


def deep_merge(base_dict: Dict, update_dict: Dict) -> Dict:
    """深度合并两个字典"""
    result = base_dict.copy()
    for key, value in update_dict.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def read_config_file(path: Path) -> Dict:
    """读取YAML或JSON配置文件"""
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"配置文件顶层必须是映射: {path}")
    return data


def load_full_config(config_path: Optional[Union[str, Path]] = None) -> Dict:
    """加载完整配置

    从默认配置开始，叠加用户目录下的配置文件；显式指定的配置文件必须存在且可解析。
    """
    config = get_default_config()

    if config_path is not None:
        path = Path(config_path).expanduser()
        if not path.is_file():
            raise ConfigurationError(f"配置文件不存在: {path}")
        try:
            user_config = read_config_file(path)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"无法解析配置文件 {path}: {e}") from e
        logger.info(f"已加载配置文件: {path}")
        return deep_merge(config, user_config)

    user_config_path = Path.home() / CONFIG_DIR_NAME / DEFAULT_CONFIG_FILE
    if user_config_path.exists():
        try:
            user_config = read_config_file(user_config_path)
        except (OSError, yaml.YAMLError, json.JSONDecodeError, ConfigurationError):
            logger.warning(f"无法加载用户配置文件 {user_config_path}，使用默认配置", exc_info=True)
        else:
            config = deep_merge(config, user_config)
            logger.info(f"已加载用户配置文件: {user_config_path}")

    return config


@dataclass
class LedgerSettings:
    """一次运行使用的全部设置"""

    cost_mode: str = "auto"
    timezone: Optional[str] = None
    start_of_week: str = "sunday"
    block_duration_hours: float = 5
    gap_threshold_hours: Optional[float] = None
    window_hours: int = 5
    session_limit: int = 50
    pricing_source: Optional[str] = None
    offline: bool = False
    order: str = "desc"
    pricing: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> "LedgerSettings":
        if self.cost_mode not in COST_MODES:
            raise ConfigurationError(f"无效的成本模式: {self.cost_mode}（可选: {', '.join(COST_MODES)}）")
        if self.order not in SORT_ORDERS:
            raise ConfigurationError(f"无效的排序方式: {self.order}")
        if self.start_of_week not in WEEK_DAYS:
            raise ConfigurationError(f"无效的周起始日: {self.start_of_week}")
        if self.block_duration_hours <= 0:
            raise ConfigurationError("block_duration_hours 必须大于0")
        if self.gap_threshold_hours is not None and self.gap_threshold_hours <= 0:
            raise ConfigurationError("gap_threshold_hours 必须大于0")
        if self.window_hours <= 0 or self.window_hours > 24:
            raise ConfigurationError("window_hours 必须在1到24之间")
        if self.session_limit <= 0:
            raise ConfigurationError("session_limit 必须大于0")
        return self


def _as_number(config: Dict, key: str, kind: type, default: Any = None) -> Any:
    value = config.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigurationError(f"配置项 {key} 必须是数字")
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"配置项 {key} 必须是数字: {value!r}") from e


def settings_from_config(config: Dict) -> LedgerSettings:
    """从合并后的配置字典构建 LedgerSettings"""
    defaults = LedgerSettings()
    start_of_week = str(config.get("start_of_week") or defaults.start_of_week).lower()
    pricing = config.get("pricing") or {}
    if not isinstance(pricing, dict):
        raise ConfigurationError("配置项 pricing 必须是映射")

    settings = LedgerSettings(
        cost_mode=str(config.get("cost_mode") or defaults.cost_mode),
        timezone=config.get("timezone") or None,
        start_of_week=start_of_week,
        block_duration_hours=_as_number(config, "block_duration_hours", float, defaults.block_duration_hours),
        gap_threshold_hours=_as_number(config, "gap_threshold_hours", float),
        window_hours=_as_number(config, "window_hours", int, defaults.window_hours),
        session_limit=_as_number(config, "session_limit", int, defaults.session_limit),
        pricing_source=config.get("pricing_source") or None,
        offline=bool(config.get("offline", False)),
        order=str(config.get("order") or defaults.order),
        pricing=pricing,
    )
    return settings.validate()


def load_settings(config_path: Optional[Union[str, Path]] = None) -> LedgerSettings:
    return settings_from_config(load_full_config(config_path))
