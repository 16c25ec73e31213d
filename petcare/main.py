import logging
import os
import stripe
from pathlib import Path
from dotenv import load_dotenv
from fastapi import FastAPI, Request, Header, HTTPException
from fastapi.concurrency import run_in_threadpool

from petcare.routes import router
from petcare.database import Base, engine, SessionLocal
from petcare.appointments import verify_appointment_payment
from petcare.errors import BookingError
from petcare.orders import verify_checkout_session, verify_order_payment

# Force-load .env (Windows-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="PetCare Booking & Payment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


def _finalize_event(db, event):
    obj = event["data"]["object"]

    if event["type"] == "payment_intent.succeeded":
        kind = (obj.get("metadata") or {}).get("type")
        if kind == "appointment":
            return verify_appointment_payment(db, obj["id"])
        if kind == "order":
            return verify_order_payment(db, obj["id"])
        logger.info("Ignoring payment %s with metadata type %r", obj["id"], kind)

    elif event["type"] == "checkout.session.completed":
        return verify_checkout_session(db, obj["id"])

    return None


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()

    try:
        event = stripe.Webhook.construct_event(
            payload,
            stripe_signature,
            os.getenv("STRIPE_WEBHOOK_SECRET")
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.error.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    logger.info("Received Stripe event %s", event["type"])

    db = SessionLocal()
    try:
        result = await run_in_threadpool(_finalize_event, db, event)
    except BookingError as exc:
        # not retryable; acknowledge so the event is not redelivered
        logger.error("Could not finalize %s: %s", event["type"], exc)
        return {"ok": False}
    finally:
        db.close()

    return {"ok": True, "isDuplicate": result.is_duplicate if result else None}
