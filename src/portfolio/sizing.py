"""Fractional-Kelly position sizing with a slippage model.

Every function here is pure and deterministic. The replay harness uses
the same sizer as live trading, so identical inputs must give identical
stakes.

Stake:
    raw = bankroll * edge * 2 * kelly_fraction
    size = min(raw, bankroll * max_bankroll_fraction, absolute_cap_usd)

The factor 2 reflects the binary payout of a prediction-market contract.

Slippage:
    liquidity_factor = min(1, mean(recent trade volumes) / reference_volume)
    slippage = (base_rate + size / reference_size * impact_coefficient)
               * (1 + (1 - liquidity_factor) * illiquidity_penalty)
    capped at max_slippage
"""

from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Sequence

from src.utils.exceptions import RiskConfigError
from src.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FEES = 0.002  # venue taker fee, fraction of notional


@dataclass(frozen=True)
class SizingConfig:
    """Parameters of the Kelly stake.

    Attributes:
        kelly_fraction: Default fraction of full Kelly (0.25 = quarter-Kelly)
        max_bankroll_fraction: Cap as a fraction of bankroll (default 10%)
        absolute_cap_usd: Hard cap per trade (default 100)
    """

    kelly_fraction: float = 0.25
    max_bankroll_fraction: float = 0.1
    absolute_cap_usd: float = 100.0

    def __post_init__(self):
        if not 0 < self.kelly_fraction <= 1:
            raise RiskConfigError(f"kelly_fraction must be in (0, 1], got {self.kelly_fraction}")
        if not 0 < self.max_bankroll_fraction <= 1:
            raise RiskConfigError(
                f"max_bankroll_fraction must be in (0, 1], got {self.max_bankroll_fraction}"
            )
        if self.absolute_cap_usd <= 0:
            raise RiskConfigError(f"absolute_cap_usd must be positive, got {self.absolute_cap_usd}")

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]] = None) -> "SizingConfig":
        config = config or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in config.items() if k in known})


@dataclass(frozen=True)
class SlippageModel:
    """Parameters of the slippage estimate.

    Attributes:
        base_rate: Slippage of an infinitesimal trade in a liquid market
        reference_size: Notional at which the size impact equals impact_coefficient
        impact_coefficient: Added slippage per reference_size of notional
        reference_volume: Average recent trade volume considered fully liquid
        illiquidity_penalty: Multiplier slope when liquidity is missing
        max_slippage: Upper bound of any estimate
    """

    base_rate: float = 0.005
    reference_size: float = 1000.0
    impact_coefficient: float = 0.002
    reference_volume: float = 1000.0
    illiquidity_penalty: float = 2.0
    max_slippage: float = 0.05

    def __post_init__(self):
        if self.reference_size <= 0 or self.reference_volume <= 0:
            raise RiskConfigError("reference_size and reference_volume must be positive")
        if self.base_rate < 0 or self.impact_coefficient < 0 or self.illiquidity_penalty < 0:
            raise RiskConfigError("slippage rates must be non-negative")
        if not 0 < self.max_slippage <= 1:
            raise RiskConfigError(f"max_slippage must be in (0, 1], got {self.max_slippage}")

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]] = None) -> "SlippageModel":
        config = config or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in config.items() if k in known})


class PositionSizer:
    """Converts a signal's edge into a USD stake and estimates its slippage.

    Example:
        >>> sizer = PositionSizer()
        >>> sizer.size(predicted_edge=0.10, confidence=0.8, bankroll=1000, kelly_fraction=0.25)
        50.0
        >>> sizer.estimate_slippage(50.0, recent_trade_volumes=[1200, 900, 1500])
        0.0051
    """

    def __init__(
        self,
        config: Optional[SizingConfig] = None,
        slippage_model: Optional[SlippageModel] = None,
    ):
        self.config = config or SizingConfig()
        self.slippage_model = slippage_model or SlippageModel()

    def size(
        self,
        predicted_edge: float,
        confidence: float,
        bankroll: float,
        kelly_fraction: Optional[float] = None,
    ) -> float:
        """Fractional-Kelly stake in USD.

        ``confidence`` is part of the signal interface but does not scale
        the stake; backtests calibrated without it.

        Args:
            predicted_edge: Model probability minus market price
            confidence: Signal confidence in [0, 1]
            bankroll: Capital available for trading
            kelly_fraction: Fraction of full Kelly (defaults to config)

        Returns:
            Stake in USD, 0.0 when edge or bankroll is not positive
        """
        if kelly_fraction is None:
            kelly_fraction = self.config.kelly_fraction

        if predicted_edge <= 0 or bankroll <= 0 or kelly_fraction <= 0:
            return 0.0

        raw_size = bankroll * predicted_edge * 2 * kelly_fraction
        return min(
            raw_size,
            bankroll * self.config.max_bankroll_fraction,
            self.config.absolute_cap_usd,
        )

    def estimate_slippage(
        self,
        size_usd: float,
        recent_trade_volumes: Optional[Sequence[float]] = None,
    ) -> float:
        """Expected slippage as a fraction of price.

        More traded volume just before entry means lower slippage. With no
        recent trades the market is treated as fully illiquid.

        Args:
            size_usd: Trade notional
            recent_trade_volumes: USD volume of the most recent trades

        Returns:
            Slippage fraction, never above the model's max_slippage
        """
        model = self.slippage_model

        if recent_trade_volumes:
            avg_volume = sum(recent_trade_volumes) / len(recent_trade_volumes)
            liquidity_factor = min(1.0, max(0.0, avg_volume) / model.reference_volume)
        else:
            liquidity_factor = 0.0

        slippage = model.base_rate + max(0.0, size_usd) / model.reference_size * model.impact_coefficient
        slippage *= 1 + (1 - liquidity_factor) * model.illiquidity_penalty

        return min(slippage, model.max_slippage)


def effective_edge(raw_edge: float, slippage: float, fees: float = DEFAULT_FEES) -> float:
    """Edge left after slippage and fees, floored at zero."""
    return max(0.0, raw_edge - slippage - fees)


def expected_pnl(
    size: float,
    edge: float,
    slippage: float,
    fees: float = DEFAULT_FEES,
) -> Dict[str, float]:
    """Gross and net expected P&L of a stake.

    Returns:
        Dict with gross_pnl, net_pnl and costs
    """
    return {
        "gross_pnl": size * edge,
        "net_pnl": size * effective_edge(edge, slippage, fees),
        "costs": size * (slippage + fees),
    }


def is_trade_viable(
    edge: float,
    slippage: float,
    fees: float = DEFAULT_FEES,
    min_net_edge: float = 0.01,
) -> tuple[bool, str]:
    """Whether the edge survives execution costs.

    Returns:
        Tuple of (viable, reason)
    """
    net = effective_edge(edge, slippage, fees)
    if net < min_net_edge:
        return False, (
            f"Net edge too small: {net:.2%} < {min_net_edge:.2%} "
            f"(slippage: {slippage:.2%}, fees: {fees:.2%})"
        )
    return True, f"Trade viable: net edge {net:.2%}"
