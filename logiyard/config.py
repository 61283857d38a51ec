"""Engine configuration loaded from environment variables or defaults."""

from decimal import Decimal
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the pricing and capacity engine."""

    model_config = SettingsConfigDict(
        env_prefix="LOGIYARD_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "LogiYard Pricing & Capacity Engine"
    api_prefix: str = "/api"
    database_url: str = Field(
        default="sqlite:///warehouse.db",
        description="SQLAlchemy URL of the relational store.",
    )
    sqlite_busy_timeout_seconds: float = Field(default=30.0, ge=0.0)
    default_currency: str = Field(default="USD", min_length=3, max_length=3)
    insurance_rate: Decimal = Field(
        default=Decimal("0.01"),
        ge=0,
        description="Share of the declared value charged as insurance.",
    )
    insurance_minimum: Decimal = Field(default=Decimal("5"), ge=0)
    handling_fee: Decimal = Field(default=Decimal("10"), ge=0)
    money_places: int = Field(default=2, ge=0, le=6)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("insurance_rate", "insurance_minimum", "handling_fee", mode="before")
    @classmethod
    def _exact_decimal(cls, value: Any) -> Decimal:
        """Parse through str so a float default never leaks binary noise."""
        if isinstance(value, Decimal):
            return value
        return Decimal(str(value).strip())

    @field_validator("default_currency", mode="before")
    @classmethod
    def _upper_currency(cls, value: Any) -> str:
        return str(value).strip().upper()

    @property
    def money_quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.money_places)


settings = Settings()
