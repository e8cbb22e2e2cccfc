from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from ..services.gateway import GatewayConfig


# Published by Safaricom for Daraja callbacks; rotate via WALLET_MPESA_ALLOWED_ORIGINS.
DEFAULT_ALLOWED_ORIGINS = [
    "196.201.214.200",
    "196.201.214.206",
    "196.201.213.114",
    "196.201.214.207",
    "196.201.214.208",
    "196.201.213.44",
    "196.201.212.127",
    "196.201.212.128",
    "196.201.212.129",
    "196.201.212.136",
    "196.201.212.74",
]


class Settings(BaseSettings):
    app_name: str = "Wallet Settlement API"
    database_url: str = "sqlite:///wallet_settlement.db"
    log_level: str = "INFO"
    environment: str = "development"
    currency: str = "KES"

    mpesa_base_url: str = "https://sandbox.safaricom.co.ke"
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_shortcode: str = ""
    mpesa_passkey: str = ""
    mpesa_initiator_name: str = ""
    mpesa_security_credential: str = ""
    mpesa_b2c_command_id: str = "BusinessPayment"
    mpesa_account_reference: str = "Wallet"
    mpesa_timeout_seconds: float = 30.0
    mpesa_token_ttl_seconds: int = 3600
    mpesa_callback_secret: Optional[str] = None
    mpesa_allowed_origins: list[str] = DEFAULT_ALLOWED_ORIGINS
    callback_base_url: str = "http://localhost:8000"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="WALLET_",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def gateway_config(self) -> GatewayConfig:
        return GatewayConfig(
            base_url=self.mpesa_base_url,
            consumer_key=self.mpesa_consumer_key,
            consumer_secret=self.mpesa_consumer_secret,
            shortcode=self.mpesa_shortcode,
            passkey=self.mpesa_passkey,
            initiator_name=self.mpesa_initiator_name,
            security_credential=self.mpesa_security_credential,
            callback_base_url=self.callback_base_url,
            callback_secret=self.mpesa_callback_secret or "",
            command_id=self.mpesa_b2c_command_id,
            account_reference=self.mpesa_account_reference,
            timeout_seconds=self.mpesa_timeout_seconds,
            token_ttl_seconds=self.mpesa_token_ttl_seconds,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
