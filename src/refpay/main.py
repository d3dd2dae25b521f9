"""FastAPI application: Solana Pay transaction requests and payment management."""

import base64
import uuid
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from urllib.parse import quote

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.engine import Engine

from refpay.config import Settings, get_settings
from refpay.crypto.encryption import SeedEncryption
from refpay.crypto.interfaces import LedgerClient, Notifier
from refpay.crypto.pricing import CoinGeckoPriceOracle
from refpay.crypto.solana_client import SolanaLedgerClient
from refpay.db import create_db_engine, create_session_factory, init_db
from refpay.errors import RefPayError, ValidationError
from refpay.health import register_health_endpoints
from refpay.logging_config import (
    bind_request_id,
    clear_request_context,
    configure_logging,
    get_logger,
)
from refpay.models import Currency
from refpay.services.addresses import AddressDeriver
from refpay.services.notifier import CompositeNotifier, LoggingNotifier, WebhookNotifier
from refpay.services.payments import PaymentService
from refpay.services.reconciliation import (
    PaymentConfirmer,
    ReconciliationMonitor,
    TransferValidator,
)
from refpay.services.transactions import TransactionBuilder
from refpay.store import SqlPaymentStore, SqlUserTrackingStore

logger = get_logger("api")


@dataclass
class Services:
    """Everything the HTTP layer and the background monitor need."""

    payments: PaymentService
    builder: TransactionBuilder
    ledger: LedgerClient
    deriver: AddressDeriver | None = None
    monitor: ReconciliationMonitor | None = None
    engine: Engine | None = None
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)


def build_services(settings: Settings) -> Services:
    """Wires stores, ledger, oracle and notifiers from settings."""
    engine = create_db_engine(settings.database.url, echo=settings.database.echo)
    init_db(engine)
    session_factory = create_session_factory(engine)

    payment_store = SqlPaymentStore(session_factory)
    ledger = SolanaLedgerClient(
        rpc_url=str(settings.ledger.rpc_url),
        commitment=settings.ledger.commitment,
        timeout=settings.ledger.rpc_timeout_seconds,
        signature_search_limit=settings.ledger.signature_search_limit,
    )
    oracle = CoinGeckoPriceOracle(
        api_url=str(settings.payments.price_api_url),
        fallback_prices={
            Currency.NATIVE.value: settings.payments.fallback_sol_price,
            Currency.TOKEN.value: Decimal("1"),
        },
        ttl_seconds=settings.payments.price_ttl_seconds,
        timeout=settings.payments.price_timeout_seconds,
    )
    closers: list[Callable[[], Awaitable[None]]] = [ledger.close, oracle.close]

    notifiers: list[Notifier] = [LoggingNotifier()]
    if settings.monitor.webhook_url:
        webhook = WebhookNotifier(
            str(settings.monitor.webhook_url),
            timeout=settings.monitor.notifier_timeout_seconds,
        )
        notifiers.append(webhook)
        closers.append(webhook.close)
    notifier = CompositeNotifier(notifiers)

    deriver = None
    if settings.derivation.enabled:
        deriver = AddressDeriver(
            store=SqlUserTrackingStore(session_factory),
            encryption=SeedEncryption(
                settings.derivation.seed_encryption_key.get_secret_value()
            ),
            master_seed_secret=settings.derivation.master_seed_secret.get_secret_value(),
            path_prefix=settings.derivation.path_prefix,
            max_conflict_retries=settings.derivation.max_conflict_retries,
        )

    validator = TransferValidator(
        ledger,
        oracle,
        token_mint=settings.ledger.token_mint,
        native_tolerance_bps=settings.payments.native_tolerance_bps,
    )
    confirmer = PaymentConfirmer(
        payment_store,
        notifier,
        notifier_timeout=settings.monitor.notifier_timeout_seconds,
    )
    payments = PaymentService(
        store=payment_store,
        ledger=ledger,
        validator=validator,
        confirmer=confirmer,
        deriver=deriver,
        fee_rate=settings.payments.fee_rate,
        fixed_fee=settings.payments.fixed_fee,
        default_merchant_wallet=settings.payments.default_merchant_wallet,
    )
    builder = TransactionBuilder(
        payment_store, ledger, oracle, token_mint=settings.ledger.token_mint
    )

    monitor = None
    if settings.monitor.enabled:
        monitor = ReconciliationMonitor(
            payment_store,
            ledger,
            validator,
            confirmer,
            interval_seconds=settings.monitor.interval_seconds,
            payment_ttl_seconds=settings.payments.payment_ttl_seconds,
            max_concurrency=settings.monitor.max_concurrency,
            batch_limit=settings.monitor.batch_limit,
        )

    return Services(
        payments=payments,
        builder=builder,
        ledger=ledger,
        deriver=deriver,
        monitor=monitor,
        engine=engine,
        closers=closers,
    )


class TransactionRequestBody(BaseModel):
    account: str | None = None


class CreatePaymentBody(BaseModel):
    user_id: str
    amount: Decimal
    currency: str = Currency.NATIVE.value
    merchant_wallet: str | None = None
    label: str | None = None
    message: str | None = None
    memo: str | None = None


class ConfirmPaymentBody(BaseModel):
    signature: str | None = None


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(
    settings: Settings | None = None,
    services_factory: Callable[[Settings], Services] = build_services,
) -> FastAPI:
    """
    Builds the application.

    Services are created inside the lifespan so importing this module never
    touches the database or the network. Tests pass their own factory.
    """
    settings = settings or get_settings()
    configure_logging(settings.server.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage service lifecycle (startup and shutdown)."""
        # --- Startup ---
        logger.info("startup_begin", service=settings.server.otel_service_name)
        services = services_factory(settings)
        app.state.services = services
        if services.monitor is not None:
            services.monitor.start()
        logger.info(
            "startup_complete",
            derivation_enabled=services.deriver is not None,
            monitor_enabled=services.monitor is not None,
        )

        try:
            yield
        finally:
            # --- Shutdown ---
            logger.info("shutdown_begin")
            if services.monitor is not None:
                await services.monitor.stop(settings.monitor.shutdown_timeout_seconds)
            for close in services.closers:
                await close()
            if services.engine is not None:
                services.engine.dispose()
            logger.info("shutdown_complete")

    app = FastAPI(title="refpay", version="0.1.0", lifespan=lifespan)

    if settings.server.telemetry_enabled:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

        from refpay.telemetry import init_telemetry

        init_telemetry(
            settings.server.otel_service_name,
            str(settings.server.otel_exporter_otlp_endpoint),
        )
        FastAPIInstrumentor.instrument_app(app)
        SQLAlchemyInstrumentor().instrument()
        logger.info(
            "telemetry_initialized",
            service_name=settings.server.otel_service_name,
            endpoint=str(settings.server.otel_exporter_otlp_endpoint),
        )

    register_health_endpoints(
        app,
        health_check_timeout=settings.server.health_check_timeout,
        slow_threshold_ms=settings.server.health_check_slow_threshold_ms,
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Generate and bind request_id for every HTTP request."""
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        bind_request_id(request_id)
        logger.info("request_started", method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
            )
            response.headers["x-request-id"] = request_id
            return response
        except Exception as e:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
            )
            raise
        finally:
            clear_request_context()

    @app.exception_handler(RefPayError)
    async def refpay_error_handler(request: Request, exc: RefPayError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "request_rejected",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
            status_code=exc.status_code,
        )
        return error_response(exc.status_code, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        detail = first.get("msg", "Invalid request")
        return error_response(400, f"{location}: {detail}" if location else detail)

    def services(request: Request) -> Services:
        return request.app.state.services

    # --- Solana Pay transaction request protocol ---

    @app.get("/transaction-requests/{reference}")
    async def get_transaction_request(reference: str, request: Request):
        services(request).builder.load_pending(reference)
        return {
            "label": settings.payments.merchant_label,
            "icon": str(settings.payments.merchant_icon),
        }

    @app.post("/transaction-requests/{reference}")
    async def create_transaction(
        reference: str, body: TransactionRequestBody, request: Request
    ):
        if not body.account:
            raise ValidationError("Missing account field")
        builder = services(request).builder
        payment = builder.load_pending(reference)
        raw = await builder.build(reference, body.account)
        return {
            "transaction": base64.b64encode(raw).decode("ascii"),
            "message": builder.describe(payment),
        }

    # --- Payment management ---

    @app.post("/payments", status_code=201)
    async def create_payment(body: CreatePaymentBody, request: Request):
        record = services(request).payments.create_payment(
            user_id=body.user_id,
            amount=body.amount,
            currency=body.currency,
            merchant_wallet=body.merchant_wallet,
            label=body.label,
            message=body.message,
            memo=body.memo,
        )
        link = f"{str(request.base_url).rstrip('/')}/transaction-requests/{record.reference}"
        return {
            **record.to_dict(),
            "payment_url": f"solana:{quote(link, safe='')}",
        }

    @app.get("/payments/{reference}")
    async def get_payment(reference: str, request: Request):
        return services(request).payments.get_payment(reference).to_dict()

    @app.post("/payments/{reference}/confirm")
    async def confirm_payment(
        reference: str, request: Request, body: ConfirmPaymentBody | None = None
    ):
        signature = body.signature if body else None
        record = await services(request).payments.confirm_payment(reference, signature)
        return record.to_dict()

    @app.get("/users/{user_id}/addresses")
    async def list_user_addresses(
        user_id: str, request: Request, start: int = 1, end: int | None = None
    ):
        deriver = services(request).deriver
        if deriver is None:
            raise ValidationError("Address derivation is disabled")
        addresses = deriver.derive_range(user_id, start, end)
        return {
            "user_id": user_id,
            "payment_count": deriver.payment_count(user_id),
            "addresses": [
                {
                    "counter": a.counter,
                    "address": a.address,
                    "derivation_path": a.derivation_path,
                }
                for a in addresses
            ],
        }

    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.server.log_level,
    )


if __name__ == "__main__":
    run()
