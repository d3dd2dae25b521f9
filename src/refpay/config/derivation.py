from pydantic import BaseModel, SecretStr, model_validator


class DerivationSettings(BaseModel):
    """Per-user HD address derivation for self-custodied merchant wallets."""

    # Feature Toggle
    enabled: bool = False  # Without it every payment needs an explicit merchant wallet

    path_prefix: str = "m/44'/501'/2024'"

    # Secrets
    master_seed_secret: SecretStr = SecretStr("")  # HMAC key for per-user seeds
    seed_encryption_key: SecretStr = SecretStr("")  # HKDF input key for seed encryption

    # Compare-and-increment retries after a lost counter race
    max_conflict_retries: int = 1

    @model_validator(mode="after")
    def validate_derivation_config(self) -> "DerivationSettings":
        """Validate derivation secrets when enabled."""
        if self.enabled:
            if not self.master_seed_secret.get_secret_value():
                raise ValueError(
                    "REFPAY_DERIVATION__MASTER_SEED_SECRET required when REFPAY_DERIVATION__ENABLED=true"
                )
            if not self.seed_encryption_key.get_secret_value():
                raise ValueError(
                    "REFPAY_DERIVATION__SEED_ENCRYPTION_KEY required when REFPAY_DERIVATION__ENABLED=true"
                )
        if not self.path_prefix.startswith("m/"):
            raise ValueError("REFPAY_DERIVATION__PATH_PREFIX must start with 'm/'")
        if self.max_conflict_retries < 0:
            raise ValueError("REFPAY_DERIVATION__MAX_CONFLICT_RETRIES cannot be negative")
        return self
