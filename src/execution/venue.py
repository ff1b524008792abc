"""Venue position sources for exposure reconciliation.

The reconciler only needs one read-only query from the trading venue:
the list of currently open positions. Any object with a
``get_open_positions(timeout)`` method works; ``HttpPositionSource`` is
the stock implementation for a JSON positions endpoint.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from src.utils.exceptions import VenueError
from src.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class VenuePosition:
    """One open position as reported by the venue.

    Attributes:
        market_id: Venue market identifier
        shares: Number of outcome shares held
        avg_entry_price: Average price paid per share
        outcome: Outcome side held (e.g. "yes"), if reported
    """

    market_id: str
    shares: float
    avg_entry_price: float
    outcome: Optional[str] = None

    @property
    def cost_basis(self) -> float:
        return self.shares * self.avg_entry_price


class PositionSource(ABC):
    """Read-only view of the venue's open positions."""

    @abstractmethod
    def get_open_positions(self, timeout: float) -> List[VenuePosition]:
        """Fetch all open positions.

        Args:
            timeout: Seconds to wait before giving up

        Returns:
            List of open positions (possibly several per market)

        Raises:
            VenueError: If the venue cannot be queried within the timeout
        """
        pass


class HttpPositionSource(PositionSource):
    """Fetches positions from a JSON HTTP endpoint.

    The endpoint returns either a list of position objects or an object
    with a ``positions`` list. Each position carries ``market_id`` (or
    ``marketId``), ``shares`` (or ``size``) and ``avg_entry_price`` (or
    ``avgPrice``).

    Example:
        >>> source = HttpPositionSource("https://venue.example/positions", params={"user": "0x..."})
        >>> positions = source.get_open_positions(timeout=10)
    """

    def __init__(
        self,
        url: str,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.params = params or {}
        self.headers = headers or {}
        self.session = session or requests.Session()

    def get_open_positions(self, timeout: float) -> List[VenuePosition]:
        logger.debug("Fetching open positions from %s", self.url)

        try:
            response = self.session.get(
                self.url, params=self.params, headers=self.headers, timeout=timeout
            )
            response.raise_for_status()
            payload = response.json()
        except requests.Timeout as e:
            raise VenueError(f"Positions request timed out after {timeout}s: {e}") from e
        except requests.RequestException as e:
            raise VenueError(f"Failed to fetch positions: {e}") from e
        except ValueError as e:
            raise VenueError(f"Positions response is not valid JSON: {e}") from e

        if isinstance(payload, dict):
            payload = payload.get("positions", [])
        if not isinstance(payload, list):
            raise VenueError(f"Unexpected positions payload type: {type(payload).__name__}")

        positions = [self._parse_position(item) for item in payload]
        logger.info("Fetched %d positions from venue", len(positions))
        return positions

    @staticmethod
    def _parse_position(item: Dict[str, Any]) -> VenuePosition:
        try:
            market_id = item.get("market_id", item.get("marketId"))
            shares = item.get("shares", item.get("size"))
            avg_price = item.get("avg_entry_price", item.get("avgPrice"))
            if market_id is None or shares is None or avg_price is None:
                raise KeyError("market_id, shares and avg_entry_price are required")
            return VenuePosition(
                market_id=str(market_id),
                shares=float(shares),
                avg_entry_price=float(avg_price),
                outcome=item.get("outcome"),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise VenueError(f"Malformed position {item!r}: {e}") from e
