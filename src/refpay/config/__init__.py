from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .database import DatabaseSettings
from .derivation import DerivationSettings
from .ledger import LedgerSettings
from .monitor import MonitorSettings
from .payments import PaymentSettings
from .server import ServerSettings


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        env_prefix="REFPAY_",
        extra="ignore",
    )

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    derivation: DerivationSettings = Field(default_factory=DerivationSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    payments: PaymentSettings = Field(default_factory=PaymentSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)


@lru_cache
def get_settings() -> Settings:
    return Settings()
