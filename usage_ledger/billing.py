"""
计费相关功能模块

负责定价表的加载与模型匹配，以及按成本模式为每个事件确定成本。
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

import requests
import yaml

from .models import UsageEvent

logger = logging.getLogger(__name__)

LITELLM_PRICING_URL = "https://raw.githubusercontent.com/BerriAI/litellm/main/model_prices_and_context_window.json"
PRICING_FETCH_TIMEOUT = 10

DEFAULT_PROVIDER_PREFIXES = (
    "anthropic/",
    "claude-3-5-",
    "claude-3-",
    "claude-",
    "openai/",
    "azure/",
    "openrouter/openai/",
)


class PricingSourceError(Exception):
    """用户指定的定价来源无法加载"""


class CostMode(str, Enum):
    AUTO = "auto"
    CALCULATE = "calculate"
    DISPLAY = "display"


@dataclass(frozen=True)
class ModelPricing:
    """单个模型的每Token价格（美元），缺失的价格视为0"""

    input_cost_per_token: Optional[float] = None
    output_cost_per_token: Optional[float] = None
    cache_creation_input_token_cost: Optional[float] = None
    cache_read_input_token_cost: Optional[float] = None

    def calculate_cost(
        self,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
    ) -> float:
        cost = 0.0
        if self.input_cost_per_token is not None:
            cost += input_tokens * self.input_cost_per_token
        if self.output_cost_per_token is not None:
            cost += output_tokens * self.output_cost_per_token
        if self.cache_creation_input_token_cost is not None:
            cost += cache_creation_tokens * self.cache_creation_input_token_cost
        if self.cache_read_input_token_cost is not None:
            cost += cache_read_tokens * self.cache_read_input_token_cost
        return cost


def _rate(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def parse_pricing_entry(entry: Any) -> Optional[ModelPricing]:
    """解析一条定价配置

    同时支持 LiteLLM 的每Token字段和每百万Token字段（input_per_million 等）。
    """
    if not isinstance(entry, Mapping):
        return None

    if any(key.endswith("_per_million") for key in entry):

        def per_million(key: str) -> Optional[float]:
            rate = _rate(entry.get(key))
            return rate / 1_000_000 if rate is not None else None

        pricing = ModelPricing(
            input_cost_per_token=per_million("input_per_million"),
            output_cost_per_token=per_million("output_per_million"),
            cache_creation_input_token_cost=per_million("cache_write_per_million"),
            cache_read_input_token_cost=per_million("cache_read_per_million"),
        )
    else:
        pricing = ModelPricing(
            input_cost_per_token=_rate(entry.get("input_cost_per_token")),
            output_cost_per_token=_rate(entry.get("output_cost_per_token")),
            cache_creation_input_token_cost=_rate(entry.get("cache_creation_input_token_cost")),
            cache_read_input_token_cost=_rate(entry.get("cache_read_input_token_cost")),
        )

    if pricing == ModelPricing():
        return None
    return pricing


def parse_pricing_table(raw: Mapping[str, Any]) -> Dict[str, ModelPricing]:
    table = {}
    for name, entry in raw.items():
        pricing = parse_pricing_entry(entry)
        if pricing is not None:
            table[str(name)] = pricing
    return table


class PricingSource:
    """定价来源基类

    定价表在第一次查询时加载，每次运行至多加载一次，模型匹配结果按名称缓存。
    作为上下文管理器使用，退出时释放缓存。
    """

    fuzzy_match = True

    def __init__(self, provider_prefixes: Sequence[str] = DEFAULT_PROVIDER_PREFIXES):
        self.provider_prefixes = tuple(provider_prefixes)
        self._pricing: Optional[Dict[str, ModelPricing]] = None
        self._model_config_cache: Dict[str, Optional[ModelPricing]] = {}

    def __enter__(self) -> "PricingSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._pricing = None
        self._model_config_cache.clear()

    def _load(self) -> Dict[str, ModelPricing]:
        raise NotImplementedError

    @property
    def pricing(self) -> Dict[str, ModelPricing]:
        if self._pricing is None:
            self._pricing = self._load()
            logger.debug(f"已加载 {len(self._pricing)} 个模型的定价")
        return self._pricing

    def get_model_pricing(self, model_name: str) -> Optional[ModelPricing]:
        """查找模型定价，未找到时返回None"""
        if model_name in self._model_config_cache:
            return self._model_config_cache[model_name]

        pricing = self.pricing
        # 1. 精确匹配
        model_config = pricing.get(model_name)

        if model_config is None and self.fuzzy_match:
            # 2. 加上供应商前缀后精确匹配
            for prefix in self.provider_prefixes:
                model_config = pricing.get(f"{prefix}{model_name}")
                if model_config is not None:
                    break

        if model_config is None and self.fuzzy_match:
            # 3. 不区分大小写的子串匹配，任一方向包含即可
            lowered = model_name.lower()
            for config_key, config_value in pricing.items():
                key = config_key.lower()
                if key in lowered or lowered in key:
                    model_config = config_value
                    break

        if model_config is None:
            logger.debug(f"未找到模型 {model_name} 的定价配置")

        self._model_config_cache[model_name] = model_config
        return model_config


class StaticPricingSource(PricingSource):
    """内存中的定价表，用于离线模式"""

    def __init__(self, table: Mapping[str, Any], **kwargs):
        super().__init__(**kwargs)
        self._table = table

    def _load(self) -> Dict[str, ModelPricing]:
        return parse_pricing_table(self._table)


class LiteLLMPricingSource(PricingSource):
    """从 LiteLLM 的公开定价表获取价格

    默认地址加载失败时记录警告并使用空表；用户指定的地址失败时抛出 PricingSourceError。
    """

    def __init__(self, url: Optional[str] = None, timeout: float = PRICING_FETCH_TIMEOUT, **kwargs):
        super().__init__(**kwargs)
        self.is_custom = url is not None
        self.url = url or LITELLM_PRICING_URL
        self.timeout = timeout

    def _load(self) -> Dict[str, ModelPricing]:
        try:
            response = requests.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            raw = response.json()
            if not isinstance(raw, dict):
                raise ValueError("定价表顶层必须是对象")
        except (requests.RequestException, ValueError) as e:
            if self.is_custom:
                raise PricingSourceError(f"无法加载定价表 {self.url}: {e}") from e
            logger.warning(f"无法获取 LiteLLM 定价表，成本将按0计算: {e}")
            return {}
        return parse_pricing_table(raw)


class LocalPricingSource(PricingSource):
    """从本地YAML/JSON文件读取定价，只做精确匹配"""

    fuzzy_match = False

    def __init__(self, path: Path, **kwargs):
        super().__init__(**kwargs)
        self.path = Path(path)

    def _load(self) -> Dict[str, ModelPricing]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                if self.path.suffix in (".yaml", ".yml"):
                    raw = yaml.safe_load(f)
                else:
                    raw = json.load(f)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise PricingSourceError(f"无法读取定价文件 {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise PricingSourceError(f"定价文件顶层必须是映射: {self.path}")
        # 兼容把定价放在 pricing 键下的配置文件
        if isinstance(raw.get("pricing"), dict):
            raw = raw["pricing"]
        return parse_pricing_table(raw)


def create_pricing_source(
    pricing_source: Optional[str] = None,
    offline: bool = False,
    offline_table: Optional[Mapping[str, Any]] = None,
) -> PricingSource:
    """根据设置选择定价来源：用户指定的URL或文件、离线表、或默认的 LiteLLM 表"""
    if pricing_source:
        if pricing_source.startswith(("http://", "https://")):
            return LiteLLMPricingSource(url=pricing_source)
        return LocalPricingSource(Path(pricing_source).expanduser())
    if offline:
        return StaticPricingSource(offline_table or {})
    return LiteLLMPricingSource()


def calculate_cost_from_tokens(event: UsageEvent, pricing_source: Optional[PricingSource]) -> float:
    """按模型定价计算事件成本，未知模型或缺少模型名时为0"""
    if pricing_source is None or not event.model:
        return 0.0
    pricing = pricing_source.get_model_pricing(event.model)
    if pricing is None:
        return 0.0
    return pricing.calculate_cost(
        input_tokens=event.input_tokens,
        output_tokens=event.output_tokens,
        cache_creation_tokens=event.cache_creation_tokens,
        cache_read_tokens=event.cache_read_tokens,
    )


def resolve_cost(event: UsageEvent, mode: CostMode, pricing_source: Optional[PricingSource]) -> float:
    """按成本模式确定单个事件的成本

    - display: 只使用记录中的 costUSD，不查询定价
    - calculate: 忽略记录值，按Token和定价计算
    - auto: 有记录值时使用记录值，否则计算
    """
    mode = CostMode(mode)
    if mode is CostMode.DISPLAY:
        return event.cost_usd if event.cost_usd is not None else 0.0
    if mode is CostMode.AUTO and event.cost_usd is not None:
        return event.cost_usd
    return calculate_cost_from_tokens(event, pricing_source)
