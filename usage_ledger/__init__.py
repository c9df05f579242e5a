"""Usage Ledger - 统计 AI 编程助手的Token用量与成本"""

__version__ = "1.0.0"

from .analyzer import UsageLedger
from .billing import CostMode, LiteLLMPricingSource, LocalPricingSource, PricingSourceError, resolve_cost
from .config import ConfigurationError, LedgerSettings, load_full_config, load_settings
from .models import BillingBlock, BucketUsage, MonthlyWindowSummary, SessionUsage, UnifiedUsage, UsageEvent

__all__ = [
    "UsageLedger",
    "CostMode",
    "LiteLLMPricingSource",
    "LocalPricingSource",
    "PricingSourceError",
    "resolve_cost",
    "ConfigurationError",
    "LedgerSettings",
    "load_full_config",
    "load_settings",
    "BillingBlock",
    "BucketUsage",
    "MonthlyWindowSummary",
    "SessionUsage",
    "UnifiedUsage",
    "UsageEvent",
]
