"""Risk package — same-day P&L driven position sizing and trading halt."""

from tradecore.risk.sizing import (
    RiskState,
    SizingConfig,
    SizingPolicy,
    SizingRule,
    SizingUpdate,
)

__all__ = [
    "RiskState",
    "SizingConfig",
    "SizingPolicy",
    "SizingRule",
    "SizingUpdate",
]
