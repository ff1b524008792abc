"""Position Sizing Layer.

Translates a signal's edge into a USD stake and estimates execution
costs before the stake is sent to the risk gate.

Components:
- PositionSizer: Fractional-Kelly stake and slippage estimate
- SizingConfig: Kelly fraction and stake caps
- SlippageModel: Slippage parameters
"""

from src.portfolio.sizing import (
    DEFAULT_FEES,
    PositionSizer,
    SizingConfig,
    SlippageModel,
    effective_edge,
    expected_pnl,
    is_trade_viable,
)

__all__ = [
    "PositionSizer",
    "SizingConfig",
    "SlippageModel",
    "DEFAULT_FEES",
    "effective_edge",
    "expected_pnl",
    "is_trade_viable",
]
