"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings

from haven.domains.health.domain_logic.insight_models import FeatureConfig, InsightConfig


class Settings(BaseSettings):
    """Haven journal server configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Default to loopback; this server holds decrypted health data in memory.
    haven_host: str = "127.0.0.1"
    haven_port: int = 8001
    haven_log_level: str = "info"
    # No auth layer: refuse non-loopback binds unless explicitly allowed.
    haven_allow_insecure_bind: bool = False

    # Storage
    haven_db_path: str = "~/.haven/journal.db"
    haven_quota_bytes: int | None = None
    haven_backup_dir: str = "~/.haven/backups"
    # Upgrade outdated records eagerly (with an encrypted snapshot) when storage opens
    haven_migrate_on_start: bool = True

    # Encryption (urlsafe base64 of 32 bytes; see EncryptionGateway.generate_key)
    haven_encryption_key: str = ""

    # Severity scale
    haven_scale_max: float = 10.0

    # Analytics thresholds
    haven_crisis_ratio: float = 1.2
    haven_crisis_min_delta: float = 2.0
    haven_crisis_lookback_days: int = 7
    haven_trend_lookback_days: int = 30
    haven_prediction_window: int = 7
    haven_min_cell_count: int = 3
    haven_interaction_threshold: float = 1.0
    haven_min_support: int = 3
    haven_min_lift: float = 1.2

    # Feature flags
    haven_enable_crisis_detection: bool = True
    haven_enable_trend_analysis: bool = True
    haven_enable_predictions: bool = True
    haven_enable_multivariate: bool = True

    def insight_config(self) -> InsightConfig:
        """Build the threshold struct injected into the analytics engines."""
        return InsightConfig(
            scale_max=self.haven_scale_max,
            crisis_ratio=self.haven_crisis_ratio,
            crisis_min_delta=self.haven_crisis_min_delta,
            crisis_lookback_days=self.haven_crisis_lookback_days,
            trend_lookback_days=self.haven_trend_lookback_days,
            prediction_window=self.haven_prediction_window,
            min_cell_count=self.haven_min_cell_count,
            interaction_threshold=self.haven_interaction_threshold,
            min_support=self.haven_min_support,
            min_lift=self.haven_min_lift,
        )

    def feature_config(self) -> FeatureConfig:
        return FeatureConfig(
            crisis_detection=self.haven_enable_crisis_detection,
            trend_analysis=self.haven_enable_trend_analysis,
            predictions=self.haven_enable_predictions,
            multivariate=self.haven_enable_multivariate,
        )


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
