from pydantic import BaseModel, HttpUrl, model_validator


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    # Telemetry
    telemetry_enabled: bool = False
    otel_service_name: str = "refpay"
    otel_exporter_otlp_endpoint: HttpUrl = "http://jaeger:4317"  # type: ignore

    # Health checks
    health_check_timeout: float = 0.5
    health_check_slow_threshold_ms: float = 100.0

    @model_validator(mode="after")
    def validate_otel_config(self) -> "ServerSettings":
        """Validate OpenTelemetry configuration."""
        if self.telemetry_enabled and not self.otel_service_name.strip():
            raise ValueError("REFPAY_SERVER__OTEL_SERVICE_NAME cannot be empty")
        return self
