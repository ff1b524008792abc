"""Pre-trade admission gate.

Evaluates a proposed trade against the current risk ledger and the
caller's market-quality snapshot. All six checks run on every call, so
a denial lists every reason at once rather than only the first one.

Checks, in evaluation order:
1. Kill-switch is off
2. Daily loss: daily_pnl + candidate size stays at or above -max_daily_loss
3. Open positions below max_open_positions
4. Per-market exposure plus candidate size within the per-market cap
5. Liquidity score at or above the minimum
6. Spread fraction at or below the maximum

The daily-loss check uses the candidate's notional size as its risk
proxy, not a simulated worst-case loss.
"""

from typing import Optional

from src.risk.base import GateChecks, GateDecision, MarketQualitySnapshot, RiskConfig
from src.risk.ledger import LedgerStore, RiskLedger
from src.utils.logging import get_logger

logger = get_logger(__name__)


def evaluate_ledger(
    ledger: RiskLedger,
    candidate_size_usd: float,
    market_id: str,
    quality: MarketQualitySnapshot,
    config: RiskConfig,
) -> GateDecision:
    """Evaluate the six checks against a given ledger state.

    Pure function; it neither reads storage nor logs.
    """
    failed_reasons = []

    # Check 1: Kill-switch
    kill_switch_ok = not ledger.kill_switch_active
    if not kill_switch_ok:
        reason = "Kill-switch is active"
        if ledger.kill_switch_reason:
            reason += f" ({ledger.kill_switch_reason})"
        failed_reasons.append(reason)

    # Check 2: Daily loss
    daily_loss_ok = (ledger.daily_pnl + candidate_size_usd) >= -config.max_daily_loss_usd
    if not daily_loss_ok:
        failed_reasons.append(
            f"Daily loss limit reached: {ledger.daily_pnl:.2f} USD "
            f"(max: -{config.max_daily_loss_usd:.2f} USD)"
        )

    # Check 3: Max open positions
    max_positions_ok = ledger.open_position_count < config.max_open_positions
    if not max_positions_ok:
        failed_reasons.append(
            f"Maximum open positions reached: "
            f"{ledger.open_position_count}/{config.max_open_positions}"
        )

    # Check 4: Per-market cap
    current_exposure = ledger.exposure_per_market.get(market_id, 0.0)
    per_market_cap_ok = (
        current_exposure + candidate_size_usd
    ) <= config.max_exposure_per_market_usd
    if not per_market_cap_ok:
        failed_reasons.append(
            f"Per-market cap exceeded: {current_exposure:.2f} + {candidate_size_usd:.2f} "
            f"> {config.max_exposure_per_market_usd:.2f} USD"
        )

    # Check 5: Liquidity
    liquidity_ok = quality.liquidity_score >= config.min_liquidity_score
    if not liquidity_ok:
        failed_reasons.append(
            f"Liquidity too low: {quality.liquidity_score:.1%} "
            f"(min: {config.min_liquidity_score:.1%})"
        )

    # Check 6: Spread
    spread_ok = quality.spread_fraction <= config.max_spread_fraction
    if not spread_ok:
        failed_reasons.append(
            f"Spread too wide: {quality.spread_fraction:.2%} "
            f"(max: {config.max_spread_fraction:.2%})"
        )

    checks = GateChecks(
        kill_switch_ok=kill_switch_ok,
        daily_loss_ok=daily_loss_ok,
        max_positions_ok=max_positions_ok,
        per_market_cap_ok=per_market_cap_ok,
        liquidity_ok=liquidity_ok,
        spread_ok=spread_ok,
    )

    return GateDecision(
        checks=checks,
        passed=checks.all_ok(),
        failed_reasons=failed_reasons,
        market_id=market_id,
        candidate_size_usd=candidate_size_usd,
    )


class RiskGate:
    """Admission gate bound to a ledger store.

    Example:
        >>> gate = RiskGate(store)
        >>> quality = MarketQualitySnapshot("0xabc", liquidity_score=0.8, spread_fraction=0.02)
        >>> decision = gate.evaluate(10.0, "0xabc", quality)
        >>> if not decision.passed:
        ...     print(decision.failed_reasons)
    """

    def __init__(self, store: LedgerStore, config: Optional[RiskConfig] = None):
        """Initialize gate.

        Args:
            store: Ledger store to read state from
            config: Default limits when evaluate() is called without one
        """
        self.store = store
        self.config = config or RiskConfig()

    def evaluate(
        self,
        candidate_size_usd: float,
        market_id: str,
        quality: MarketQualitySnapshot,
        config: Optional[RiskConfig] = None,
    ) -> GateDecision:
        """Decide whether a trade may be placed right now.

        Runs under the ledger's shared lock, so it never observes a
        half-applied mutation.

        Args:
            candidate_size_usd: Proposed notional
            market_id: Target market
            quality: Market-quality snapshot for the target market
            config: Limits for this evaluation (defaults to the gate's)

        Returns:
            GateDecision with per-check results and reasons
        """
        config = config or self.config

        with self.store.read() as ledger:
            decision = evaluate_ledger(ledger, candidate_size_usd, market_id, quality, config)

        if decision.passed:
            logger.debug(
                "Risk gate passed for %s (size %.2f)", market_id, candidate_size_usd
            )
        else:
            logger.warning(
                "Risk gate failed for %s (size %.2f): %s",
                market_id,
                candidate_size_usd,
                "; ".join(decision.failed_reasons),
            )

        return decision
