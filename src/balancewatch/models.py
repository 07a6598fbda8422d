"""Shared data models for balance snapshots, trades and derived analytics.

CRITICAL: All monetary values use Decimal. Never use float for balances, prices or profits.
Timestamps are Unix milliseconds (int) throughout.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Literal

ValueField = Literal["total_usd", "total_usd_usdt", "total_rlb"]

VALUE_FIELDS: tuple[str, ...] = ("total_usd", "total_usd_usdt", "total_rlb")

ZERO = Decimal("0")


@dataclass(frozen=True)
class HistoryPoint:
    """One timestamped balance point with derived USD/RLB totals."""

    timestamp_ms: int
    total_usd: Decimal
    total_usd_usdt: Decimal
    total_rlb: Decimal
    rlb_price_usd: Decimal | None = None

    def value(self, value_field: ValueField) -> Decimal:
        """Return the named total."""
        return getattr(self, value_field)


@dataclass(frozen=True)
class BalanceSnapshot:
    """A persisted balance snapshot as reported by the balance reporter.

    Onsite balances are held on the venue, onchain balances in the wallet.
    ``rlb_price_usd`` is the token price at capture time, when known.
    """

    id: str
    timestamp_ms: int
    onchain_rlb: Decimal
    onchain_usdt: Decimal
    onsite_rlb: Decimal
    onsite_usd: Decimal
    rlb_price_usd: Decimal | None = None

    @property
    def stable_total(self) -> Decimal:
        """USD on site plus USDT on chain."""
        return self.onsite_usd + self.onchain_usdt

    @property
    def token_total(self) -> Decimal:
        """RLB held on site and on chain."""
        return self.onsite_rlb + self.onchain_rlb

    def to_history_point(self, fallback_price: Decimal = ZERO) -> HistoryPoint:
        """Derive a HistoryPoint, pricing RLB with the stored price or ``fallback_price``."""
        price = self.rlb_price_usd if self.rlb_price_usd is not None else fallback_price
        return HistoryPoint(
            timestamp_ms=self.timestamp_ms,
            total_usd=self.stable_total + self.token_total * price,
            total_usd_usdt=self.stable_total,
            total_rlb=self.token_total,
            rlb_price_usd=price,
        )


@dataclass(frozen=True)
class Trade:
    """A single executed trade.

    Profit fields are None until the trade is settled ("pending"), which is
    distinct from a settled profit of zero. ``win`` is None when the outcome
    against an opponent is unknown.
    """

    id: str
    timestamp_ms: int
    trade_amount: Decimal
    trigger_category: str = ""
    trigger_type: str = ""
    trade_number: int | None = None
    block_number: int | None = None
    raw_profit_usd: Decimal | None = None
    profit_with_gas_usd: Decimal | None = None
    opponent: bool = False
    win: bool | None = None
    opponent_time_gap_ms: Decimal | None = None
    api_call_duration_ms: Decimal | None = None
    priority_gwei: Decimal | None = None

    @property
    def is_win(self) -> bool:
        """Explicit win, or no opponent at all (uncontested trades count as wins)."""
        return self.win is True or not self.opponent

    @property
    def is_loss(self) -> bool:
        """Lost against an opponent."""
        return self.win is False and self.opponent

    @property
    def is_settled(self) -> bool:
        return self.raw_profit_usd is not None or self.profit_with_gas_usd is not None


@dataclass(frozen=True)
class AnalyticsWindow:
    """Summary P/L statistics over a filtered series for one value field.

    Recomputed on every filter change; never persisted.
    """

    start_time_ms: int | None
    end_time_ms: int | None
    total_hours: Decimal
    start_value: Decimal
    end_value: Decimal
    min_value: Decimal
    max_value: Decimal
    avg_value: Decimal
    volatility: Decimal
    profit_loss: Decimal
    profit_loss_percent: Decimal
    profit_per_hour: Decimal
    profit_per_day: Decimal
    data_points: int

    @classmethod
    def empty(cls) -> "AnalyticsWindow":
        """Neutral result for a series with no points."""
        return cls(
            start_time_ms=None,
            end_time_ms=None,
            total_hours=ZERO,
            start_value=ZERO,
            end_value=ZERO,
            min_value=ZERO,
            max_value=ZERO,
            avg_value=ZERO,
            volatility=ZERO,
            profit_loss=ZERO,
            profit_loss_percent=ZERO,
            profit_per_hour=ZERO,
            profit_per_day=ZERO,
            data_points=0,
        )

    @property
    def is_empty(self) -> bool:
        return self.data_points == 0


@dataclass(frozen=True)
class AnomalousSnapshot:
    """A snapshot whose delta from its neighbour exceeds a threshold."""

    id: str
    timestamp_ms: int
    stable_delta: Decimal
    token_delta: Decimal
    reason: str


@dataclass
class AnomalyPage:
    """One bounded page of anomaly candidates returned by the store."""

    candidates: list[AnomalousSnapshot] = field(default_factory=list)

    @property
    def ids(self) -> list[str]:
        return [c.id for c in self.candidates]

    @property
    def reasons(self) -> list[str]:
        return [c.reason for c in self.candidates]

    def __len__(self) -> int:
        return len(self.candidates)


@dataclass(frozen=True)
class Spike:
    """A snapshot flagged for manual review by the lower-sensitivity scan."""

    id: str
    timestamp_ms: int
    stable_total: Decimal
    token_total: Decimal
    stable_jump: Decimal
    token_jump: Decimal
    reason: str


@dataclass(frozen=True)
class AnomalousRange:
    """A run of consecutive snapshots far from the median balance level."""

    start_ms: int
    end_ms: int
    reason: str
    snapshot_count: int
