"""Process configuration via Pydantic Settings (12-Factor App compliance).

Environment-driven knobs for the simulator process:
- Logging level
- Telemetry endpoint (OpenTelemetry OTLP/HTTP)
- Historical data loader parallelism
- Progress logging cadence for verbose runs
- Default starting capital

Everything that describes a single backtest (capital, window, symbols, cost
model, sizing) is passed explicitly as a `BacktestConfig`; these settings
only shape how the process runs. All values can be overridden via
environment variables or a `.env` file.
"""

from decimal import Decimal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    # --- App Info ---
    PROJECT_NAME: str = "Holodeck Backtest Engine"
    VERSION: str = "0.1.0"

    # --- Logging ---
    LOG_LEVEL: str = "INFO"

    # --- Telemetry ---
    OTEL_EXPORTER_OTLP_ENDPOINT: str = ""
    OTEL_SERVICE_NAME: str = "holodeck-backtest"

    # --- Simulation Defaults ---
    DEFAULT_INITIAL_CAPITAL: Decimal = Decimal("100000")
    DATA_LOAD_WORKERS: int = Field(default=4, ge=1)
    PROGRESS_LOG_INTERVAL: int = Field(default=1000, ge=1)

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        if not v:
            return "INFO"
        return str(v).upper()


settings = Settings()
