"""HTTP surface of the settlement engine.

Webhook intake, checkout, refunds, wallet top-ups and gateway status. The
outbox publisher runs with the app lifecycle when enabled.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from starlette.concurrency import run_in_threadpool

from paysettle.common.exceptions import (
    PaymentConfigurationException,
    PaymentException,
    WebhookVerificationException,
)
from paysettle.common.logging import configure_logging, logger, trace_id_ctx
from paysettle.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from paysettle.common.startup import log_startup_config
from paysettle.common.tracing import instrument_app, setup_tracing
from paysettle.services.payments.billables import WALLET_TOPUP
from paysettle.services.payments.engine import PaymentEngine, build_engine
from paysettle.services.payments.models import Payment
from paysettle.services.payments.schemas import CheckoutRequest, PaymentResponse, RefundRequest, TopUpRequest


def create_app(engine: PaymentEngine | None = None) -> FastAPI:
    """Build the FastAPI app around an engine (the process-wide one by default)."""

    if engine is None:
        from paysettle.common.db import SessionLocal

        engine = build_engine(SessionLocal)
    configure_logging(engine.settings.log_level)
    setup_tracing(engine.settings)
    log_startup_config(engine.settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run the outbox publisher with app lifecycle."""

        publisher_task = None
        if engine.settings.outbox_publisher_enabled:
            publisher_task = asyncio.create_task(engine.publisher.run())
        yield
        if publisher_task is not None:
            publisher_task.cancel()
        await engine.publisher.close()
        engine.registry.forget_resolved_instances()

    app = FastAPI(title="PaySettle", lifespan=lifespan)
    app.state.engine = engine
    instrument_app(app, engine.settings)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=engine.settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=engine.settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(PaymentException)
    async def payment_exception_handler(_: Request, exc: PaymentException):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.post("/webhooks/{provider}")
    async def receive_webhook(provider: str, request: Request):
        """Provider callback; always 200 once verified so the provider stops retrying."""

        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse(status_code=400, content={"success": False, "error": "Invalid payload"})
        if not isinstance(payload, dict):
            return JSONResponse(status_code=400, content={"success": False, "error": "Invalid payload"})

        try:
            result = await run_in_threadpool(engine.dispatcher.dispatch, provider, payload, dict(request.headers))
        except PaymentConfigurationException:
            return JSONResponse(status_code=400, content={"success": False, "error": "Unknown provider"})
        except WebhookVerificationException:
            return JSONResponse(status_code=401, content={"success": False, "error": "Verification failed"})
        except Exception as exc:
            logger.exception("webhook processing failed provider=%s: %s", provider, exc)
            return {"success": False, "error": "Processing error"}
        return {"success": True, "webhook_id": result.webhook_id, "processed": result.processed}

    @app.get("/webhooks/{provider}/health")
    def webhook_health(provider: str):
        handler = engine.dispatcher.get_handler(provider)
        return {
            "ok": True,
            "provider": provider,
            "verification": "skipped" if handler.should_skip_verification() else "token",
        }

    @app.post("/payments/checkout")
    def checkout(req: CheckoutRequest, x_trace_id: str | None = Header(default=None)):
        """Create a payment: wallet hold, gateway charge, persisted `pending` row."""

        trace_id_ctx.set(x_trace_id or str(uuid4()))
        builder = (
            engine.checkout()
            .for_payer(
                req.payer.id,
                name=req.payer.name,
                email=req.payer.email,
                cpf_cnpj=req.payer.cpf_cnpj,
                phone=req.payer.phone,
            )
            .billable(req.billable_type, req.billable_id)
            .amount(req.amount_cents)
            .use_wallet(req.use_wallet)
            .meta(**req.meta)
        )
        if req.method is not None:
            builder = builder.method(req.method)
        if req.gateway:
            builder = builder.gateway(req.gateway)
        if req.due_date:
            builder = builder.due_date(req.due_date)
        if req.description:
            builder = builder.description(req.description)
        if req.idempotency_key:
            builder = builder.idempotency_key(req.idempotency_key)
        if req.installments:
            builder = builder.installments(req.installments)
        if req.credit_card or req.card_holder:
            builder = builder.credit_card(req.credit_card, req.card_holder)
        return builder.create().to_dict()

    @app.get("/payments/{uuid}", response_model=PaymentResponse)
    def get_payment(uuid: str):
        """Fetch current state for one payment."""

        with engine.session_factory() as db:
            payment = db.execute(select(Payment).where(Payment.uuid == uuid)).scalar_one_or_none()
            if payment is None:
                raise HTTPException(status_code=404, detail="payment not found")
            return PaymentResponse.from_payment(payment)

    @app.post("/payments/{uuid}/refund", response_model=PaymentResponse)
    def refund_payment(uuid: str, req: RefundRequest):
        context = {"reason": req.reason} if req.reason else {}
        payment = engine.refunds.refund(uuid, amount_cents=req.amount_cents, context=context)
        return PaymentResponse.from_payment(payment)

    @app.post("/wallets/{owner_id}/top-ups")
    def top_up_wallet(owner_id: str, req: TopUpRequest):
        """Pending wallet credit paid through the gateway; confirmed on settlement."""

        with engine.session_factory() as db:
            deposit = engine.wallet.create_deposit(db, owner_id, req.amount_cents)
            db.commit()
        result = (
            engine.checkout()
            .for_payer(owner_id, name=req.name, email=req.email, cpf_cnpj=req.cpf_cnpj)
            .billable(WALLET_TOPUP, deposit.id)
            .amount(req.amount_cents)
            .method(req.method)
            .without_wallet()
            .description("Wallet top-up")
            .create()
        )
        return {"deposit_id": deposit.id, **result.to_dict()}

    @app.get("/gateways/status")
    def gateways_status():
        return {
            "default": engine.registry.default_gateway,
            "gateways": {name: status.model_dump() for name, status in engine.registry.gateways_status().items()},
        }

    @app.get("/health")
    def health():
        """Container health check endpoint."""

        return {"ok": True}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    return app


app = create_app()
