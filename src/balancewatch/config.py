"""Configuration system using pydantic-settings with environment variable loading."""

from dataclasses import dataclass
from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class SeriesSettings(BaseSettings):
    """Live series buffering and commit cadence."""

    model_config = SettingsConfigDict(env_prefix="SERIES_")

    live_buffer_capacity: int = 200  # oldest live points dropped beyond this
    debounce_seconds: float = 2.0  # live buffer -> display commit quantum


@dataclass(frozen=True)
class AnomalyThresholds:
    """Delta limits a snapshot pair must exceed to be reported."""

    stable_delta: Decimal = Decimal("300")
    token_delta: Decimal = Decimal("999")
    outlier_return_ratio: Decimal = Decimal("0.4")


class AnomalySettings(BaseSettings):
    """Anomaly detection thresholds and remediation loop bounds.

    Deltas are absolute changes between consecutive snapshots.
    All fields configurable via ANOMALY_ environment variable prefix.
    """

    model_config = SettingsConfigDict(env_prefix="ANOMALY_")

    # Purge thresholds
    stable_delta_threshold: Decimal = Decimal("300")  # USD + USDT
    token_delta_threshold: Decimal = Decimal("999")  # RLB

    # Manual review thresholds (spikes listing)
    spike_stable_threshold: Decimal = Decimal("500")
    spike_token_threshold: Decimal = Decimal("5000")

    page_size: int = 100
    max_iterations: int = 100
    iteration_delay_seconds: float = 0.2
    scan_window_size: int = 1000
    outlier_return_ratio: Decimal = Decimal("0.4")
    fast_mode: bool = True

    def thresholds(self) -> AnomalyThresholds:
        """Purge thresholds as consumed by the store's detector."""
        return AnomalyThresholds(
            stable_delta=self.stable_delta_threshold,
            token_delta=self.token_delta_threshold,
            outlier_return_ratio=self.outlier_return_ratio,
        )

    def spike_thresholds(self) -> AnomalyThresholds:
        """Lower-sensitivity thresholds for the manual review listing."""
        return AnomalyThresholds(
            stable_delta=self.spike_stable_threshold,
            token_delta=self.spike_token_threshold,
            outlier_return_ratio=self.outlier_return_ratio,
        )


class StoreSettings(BaseSettings):
    """SQLite store location."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    db_path: str = "data/balancewatch.db"


class PriceSettings(BaseSettings):
    """Token pricing used when deriving USD totals."""

    model_config = SettingsConfigDict(env_prefix="PRICE_")

    fallback_rlb_price_usd: Decimal = Decimal("0")  # when a snapshot has no stored price


class DashboardSettings(BaseSettings):
    """Dashboard server configuration."""

    model_config = SettingsConfigDict(env_prefix="DASHBOARD_")

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    series: SeriesSettings = SeriesSettings()
    anomaly: AnomalySettings = AnomalySettings()
    store: StoreSettings = StoreSettings()
    price: PriceSettings = PriceSettings()
    dashboard: DashboardSettings = DashboardSettings()
