from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """
    Service configuration.

    Values come from the environment first, then from `config.env` or `.env`
    in the repository root or the current working directory.
    """

    model_config = SettingsConfigDict(
        env_file=(
            str(_PROJECT_ROOT / "config.env"),
            str(_PROJECT_ROOT / ".env"),
            "config.env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="orders", validation_alias="DB_USER")
    db_password: str = Field(default="orders", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="orders", validation_alias="DB_NAME")
    database_url_override: str | None = Field(default=None, validation_alias="DATABASE_URL")

    # Message bus
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    bus_prefix: str = Field(default="bus", validation_alias="BUS_PREFIX")
    rpc_timeout_seconds: float = Field(default=5.0, validation_alias="RPC_TIMEOUT_SECONDS")

    # Comma-separated statuses treated like PAID (e.g. "SETTLED,COMPLETED")
    paid_status_aliases: str = Field(default="", validation_alias="PAID_STATUS_ALIASES")

    # "bus" forwards preferences to the payments service, "stripe" creates checkout sessions
    payment_gateway: str = Field(default="bus", validation_alias="PAYMENT_GATEWAY")
    stripe_secret_key: str = Field(default="", validation_alias="STRIPE_SECRET_KEY")
    stripe_currency: str = Field(default="mxn", validation_alias="STRIPE_CURRENCY")
    stripe_success_url: str = Field(
        default="http://localhost:4200/payments/success",
        validation_alias="STRIPE_SUCCESS_URL",
    )
    stripe_cancel_url: str = Field(
        default="http://localhost:4200/payments/cancel",
        validation_alias="STRIPE_CANCEL_URL",
    )

    @field_validator("rpc_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("RPC_TIMEOUT_SECONDS must be positive")
        return value

    @field_validator("payment_gateway")
    @classmethod
    def _known_gateway(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("bus", "stripe"):
            raise ValueError("PAYMENT_GATEWAY must be 'bus' or 'stripe'")
        return value

    @field_validator("bus_prefix")
    @classmethod
    def _non_empty_prefix(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("BUS_PREFIX must not be empty")
        return value.strip()

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # psycopg (v3) driver
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    @property
    def paid_statuses(self) -> frozenset[str]:
        aliases = [
            status.strip()
            for status in self.paid_status_aliases.split(",")
            if status.strip()
        ]
        return frozenset(["PAID", *aliases])


settings = Settings()
