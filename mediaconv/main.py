# mediaconv/main.py
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import stripe
from fastapi import FastAPI, File, Header, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .context import ConverterContext, build_context
from .engine import sse_stream
from .errors import AdmissionError, ConversionError, JobNotFound, JobNotReady
from .log import configure_logging

logger = logging.getLogger(__name__)

APP_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = APP_DIR / "templates"
DOWNLOAD_CHUNK = 1024 * 1024

env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
)


def _identity(request: Request) -> str:
    return request.client.host if request.client else "anon"


def _field(obj, key: str):
    # Stripe events arrive either as plain dicts or as StripeObjects
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


async def _iter_output(ctx: ConverterContext, job_id: str, path: Path) -> AsyncIterator[bytes]:
    completed = False
    with ctx.files.in_use(path):
        with path.open("rb") as f:
            while True:
                chunk = await asyncio.to_thread(f.read, DOWNLOAD_CHUNK)
                if not chunk:
                    break
                yield chunk
        completed = True
    # An interrupted download leaves the files to the sweeper.
    if completed:
        ctx.engine.finish_delivery(job_id)


def _output_response(ctx: ConverterContext, job_id: str, path: Path) -> StreamingResponse:
    container = ctx.settings.profile.container
    return StreamingResponse(
        _iter_output(ctx, job_id, path),
        media_type=f"video/{container}",
        headers={"Content-Disposition": f'attachment; filename="{job_id}.{container}"'},
    )


def create_app(context: Optional[ConverterContext] = None) -> FastAPI:
    ctx = context or build_context()
    settings = ctx.settings
    configure_logging(settings.log_level)
    stripe.api_key = settings.stripe_secret_key

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.enable_sweeper:
            ctx.sweeper.start()
        yield
        await ctx.sweeper.stop()
        await ctx.engine.shutdown()

    app = FastAPI(title="mediaconv", lifespan=lifespan)
    app.state.ctx = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------ Error mapping ------------
    @app.exception_handler(AdmissionError)
    async def admission_error(request: Request, exc: AdmissionError):
        return JSONResponse(exc.to_dict(), status_code=exc.http_status)

    @app.exception_handler(ConversionError)
    async def conversion_error(request: Request, exc: ConversionError):
        return JSONResponse(
            {"error": exc.code, "detail": str(exc), "job_id": exc.job_id}, status_code=422
        )

    @app.exception_handler(JobNotFound)
    async def job_not_found(request: Request, exc: JobNotFound):
        return JSONResponse({"error": exc.code, "detail": str(exc)}, status_code=404)

    @app.exception_handler(JobNotReady)
    async def job_not_ready(request: Request, exc: JobNotReady):
        return JSONResponse(
            {"error": exc.code, "detail": str(exc), "status": exc.status}, status_code=409
        )

    # ------------ Conversion API ------------
    @app.post("/upload")
    async def upload(request: Request, file: UploadFile = File(...)):
        identity = _identity(request)
        try:
            job = await ctx.admission.admit(
                identity, file.content_type, file, declared_size=getattr(file, "size", None)
            )
            ctx.engine.submit(job)
        finally:
            await file.close()
        return JSONResponse(
            {
                "ok": True,
                "job_id": job.job_id,
                "status": job.status,
                "size_bytes": job.size_bytes,
                "remaining": ctx.usage(identity)["remaining"],
            }
        )

    @app.post("/convert")
    async def convert(request: Request, file: UploadFile = File(...)):
        """Admit, convert and stream the result back in one request."""
        identity = _identity(request)
        try:
            job = await ctx.admission.admit(
                identity, file.content_type, file, declared_size=getattr(file, "size", None)
            )
            ctx.engine.submit(job)
        finally:
            await file.close()
        path = await ctx.engine.await_result(job.job_id)
        return _output_response(ctx, job.job_id, path)

    @app.get("/jobs/{job_id}")
    def job_status(job_id: str):
        return ctx.engine.get(job_id).to_dict()

    @app.get("/events/{job_id}")
    async def events(job_id: str):
        job = ctx.engine.get(job_id)
        return StreamingResponse(sse_stream(job), media_type="text/event-stream")

    @app.get("/download/{job_id}")
    def download(job_id: str):
        path = ctx.engine.open_output(job_id)
        return _output_response(ctx, job_id, path)

    # ------------ Read-only views ------------
    @app.get("/usage")
    def usage(request: Request):
        return ctx.usage(_identity(request))

    @app.get("/stats")
    def stats():
        return ctx.stats()

    @app.get("/dashboard", response_class=HTMLResponse)
    def dashboard():
        template = env.get_template("dashboard.html")
        return template.render(stats=ctx.stats(), jobs=ctx.engine.jobs())

    # ------------ Payments ------------
    @app.post("/create-checkout-session")
    async def create_checkout_session(request: Request):
        if not settings.stripe_secret_key:
            return JSONResponse({"error": "payments_disabled"}, status_code=503)
        identity = _identity(request)
        base = settings.public_base_url.rstrip("/")
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": "usd",
                            "product_data": {
                                "name": settings.premium_product_name,
                                "description": "Unlimited conversions",
                            },
                            "unit_amount": settings.premium_price_cents,
                        },
                        "quantity": 1,
                    }
                ],
                client_reference_id=identity,
                success_url=f"{base}/success.html",
                cancel_url=f"{base}/premium.html",
                metadata={"identity": identity},
            )
        except Exception as e:
            logger.exception("checkout session creation failed")
            return JSONResponse({"error": "checkout_create_failed", "detail": str(e)}, status_code=500)
        return JSONResponse({"id": session.id, "url": session.url})

    @app.post("/stripe/webhook")
    async def stripe_webhook(
        request: Request, stripe_signature: str = Header(None, alias="stripe-signature")
    ):
        """
        Grant premium on a signed checkout.session.completed event. Without
        STRIPE_WEBHOOK_SECRET no event can be verified, so all are refused.
        """
        if not settings.stripe_webhook_secret:
            logger.warning("webhook refused: STRIPE_WEBHOOK_SECRET is not set")
            return JSONResponse({"error": "webhooks_disabled"}, status_code=503)

        payload = await request.body()
        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=stripe_signature or "",
                secret=settings.stripe_webhook_secret,
            )
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning("webhook rejected: %s", e)
            return JSONResponse({"error": "invalid_signature"}, status_code=400)

        if _field(event, "type") != "checkout.session.completed":
            return {"received": True}

        obj = _field(_field(event, "data"), "object")
        identity = _field(_field(obj, "metadata"), "identity") or _field(
            obj, "client_reference_id"
        )
        if not identity:
            logger.warning("checkout completed without an identity")
            return {"received": True}

        ctx.grant_premium(identity)
        return {"received": True, "identity": identity}

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    return app


app = create_app()
