"""Shared types for the risk governance layer.

This module defines the configuration and value objects that flow between
the risk gate, the ledger store and the public RiskAPI.

Core Philosophy: "First, do no harm. Preserve capital above all else."

A denied trade is not an error. It is a normal GateDecision with
``passed=False`` and one human-readable reason per failed check.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.utils.exceptions import RiskConfigError


@dataclass(frozen=True)
class RiskConfig:
    """Admission limits supplied to every gate evaluation.

    Attributes:
        max_daily_loss_usd: Daily loss budget (default 100)
        max_open_positions: Maximum number of markets held (default 10)
        max_exposure_per_market_usd: Cap on notional per market (default 50)
        min_liquidity_score: Minimum liquidity score in [0, 1] (default 0.3)
        max_spread_fraction: Maximum tolerated spread (default 0.05)

    Raises:
        RiskConfigError: On construction with a non-positive limit
    """

    max_daily_loss_usd: float = 100.0
    max_open_positions: int = 10
    max_exposure_per_market_usd: float = 50.0
    min_liquidity_score: float = 0.3
    max_spread_fraction: float = 0.05

    def __post_init__(self):
        """Validate limits. Invalid config is a programmer error."""
        for name in (
            "max_daily_loss_usd",
            "max_open_positions",
            "max_exposure_per_market_usd",
            "min_liquidity_score",
            "max_spread_fraction",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise RiskConfigError(f"{name} must be a number, got {value!r}")
            if value <= 0:
                raise RiskConfigError(f"{name} must be positive, got {value}")

        if self.min_liquidity_score > 1:
            raise RiskConfigError(
                f"min_liquidity_score must be in (0, 1], got {self.min_liquidity_score}"
            )

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]] = None) -> "RiskConfig":
        """Build from a config section, ignoring unknown keys.

        Example:
            >>> RiskConfig.from_dict({"max_daily_loss_usd": 250})
            RiskConfig(max_daily_loss_usd=250, ...)
        """
        config = config or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in config.items() if k in known})


@dataclass
class MarketQualitySnapshot:
    """Market-quality metrics supplied by the caller for one market.

    Attributes:
        market_id: Venue market identifier
        liquidity_score: Normalized liquidity in [0, 1]
        spread_fraction: Bid/ask spread as a fraction of price
        volume_24h: Traded volume over the last 24 hours
        volatility: Recent price volatility
        tradeable: Whether the venue currently accepts orders
    """

    market_id: str
    liquidity_score: float
    spread_fraction: float
    volume_24h: float = 0.0
    volatility: float = 0.0
    tradeable: bool = True


@dataclass
class GateChecks:
    """Outcome of each individual admission check."""

    kill_switch_ok: bool
    daily_loss_ok: bool
    max_positions_ok: bool
    per_market_cap_ok: bool
    liquidity_ok: bool
    spread_ok: bool

    def all_ok(self) -> bool:
        return all(getattr(self, f.name) for f in fields(self))

    def to_dict(self) -> Dict[str, bool]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class GateDecision:
    """Admit/deny decision for one proposed trade.

    Attributes:
        checks: Per-check results
        passed: True only if every check passed
        failed_reasons: One reason per failed check, in evaluation order
        market_id: Market the decision applies to
        candidate_size_usd: Size that was evaluated
        timestamp: When the decision was made
    """

    checks: GateChecks
    passed: bool
    failed_reasons: List[str] = field(default_factory=list)
    market_id: str = ""
    candidate_size_usd: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def message(self) -> str:
        """Human-readable summary."""
        if self.passed:
            return "All risk checks passed"
        return "Risk checks failed: " + "; ".join(self.failed_reasons)
