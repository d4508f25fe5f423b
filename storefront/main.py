import time

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from storefront.config import settings
from storefront.database import Base, SessionLocal, engine
from storefront.errors import (
    AuthenticationError,
    ConfigurationError,
    PersistenceFailure,
    ValidationError,
)
from storefront.logging_config import configure_logging, get_logger
from storefront.notifications import get_dispatcher
from storefront.routes import router
from storefront.webhooks import handle_event, parse_event, verify_signature, WebhookOutcome

configure_logging()
logger = get_logger(__name__)

app = FastAPI(title="Furniture Storefront Payments")

app.include_router(router)

Base.metadata.create_all(bind=engine)


def process_webhook(payload: bytes, signature):
    verify_signature(payload, signature, settings.webhook_secret, settings.webhook_tolerance)
    event = parse_event(payload)
    db = SessionLocal()
    try:
        return handle_event(db, event)
    finally:
        db.close()


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: str = Header(None),
):
    started = time.perf_counter()
    payload = await request.body()

    try:
        result = await run_in_threadpool(process_webhook, payload, stripe_signature)
    except (AuthenticationError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ConfigurationError:
        raise HTTPException(status_code=500, detail="Webhook endpoint misconfigured")
    except PersistenceFailure:
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    if result.outcome == WebhookOutcome.PROCESSED and result.notify is not None:
        background_tasks.add_task(get_dispatcher().payment_confirmed, result.notify)

    elapsed_ms = (time.perf_counter() - started) * 1000
    if elapsed_ms > settings.webhook_budget_ms:
        logger.warning("webhook_over_budget", elapsed_ms=round(elapsed_ms, 1), outcome=result.outcome.value)

    return {"ok": True, "result": result.outcome.value}


@app.get("/health")
def health_check():
    return {"status": "ok"}
