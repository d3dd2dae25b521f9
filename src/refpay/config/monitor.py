from pydantic import BaseModel, HttpUrl


class MonitorSettings(BaseModel):
    """Background reconciliation of pending payments."""

    enabled: bool = True
    interval_seconds: float = 15.0
    max_concurrency: int = 5  # Parallel ledger lookups within one tick
    batch_limit: int = 50  # Page size when scanning pending payments
    shutdown_timeout_seconds: float = 30.0

    # Confirmation notifications
    notifier_timeout_seconds: float = 5.0
    webhook_url: HttpUrl | None = None
