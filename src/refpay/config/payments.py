from decimal import Decimal

from pydantic import BaseModel, HttpUrl, model_validator


class PaymentSettings(BaseModel):
    """Payment pricing, fees and wallet-facing metadata."""

    # Platform fee: amount * fee_rate + fixed_fee (USD)
    fee_rate: Decimal = Decimal("0.029")
    fixed_fee: Decimal = Decimal("0.30")

    # Pending payments older than this are swept to expired
    payment_ttl_seconds: int = 3600

    # Used when neither the request nor derivation provides a recipient
    default_merchant_wallet: str | None = None

    # Transaction request metadata shown by wallets
    merchant_label: str = "refpay"
    merchant_icon: HttpUrl = "https://solanapay.com/src/img/branding/Solanapay.com.svg"  # type: ignore

    # Price oracle
    price_api_url: HttpUrl = "https://api.coingecko.com/api/v3/simple/price"  # type: ignore
    price_ttl_seconds: float = 60.0
    price_timeout_seconds: float = 5.0
    fallback_sol_price: Decimal = Decimal("130")  # Used when the oracle is unreachable

    # Slack for native payments that carry no stored quote
    native_tolerance_bps: int = 100

    @model_validator(mode="after")
    def validate_fees(self) -> "PaymentSettings":
        if self.fee_rate < 0 or self.fixed_fee < 0:
            raise ValueError("REFPAY_PAYMENTS__FEE_RATE and FIXED_FEE cannot be negative")
        if self.payment_ttl_seconds <= 0:
            raise ValueError("REFPAY_PAYMENTS__PAYMENT_TTL_SECONDS must be positive")
        return self
