import json
from datetime import datetime

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel
from supabase import PostgrestAPIError

import config
import conversation
import database
import whatsapp
from logging_setup import get_logger, setup_logging

# ---------------------------------------------------------
# 1. APP & LOGGING
# ---------------------------------------------------------

setup_logging(config.LOG_LEVEL, json_output=config.LOG_JSON)
log = get_logger(__name__)

app = FastAPI(title="WhatsApp Reservation Bot", version="1.0.0")

SERVICES = ("LUNCH", "DINNER")

SLOT_USAGE = "Missing or invalid query params. Use restaurant, date, service, party."
ALTERNATIVES_USAGE = (
    "Missing or invalid query params. Use restaurant, date, service, party, days(optional)."
)
RESERVE_USAGE = (
    "Missing/invalid fields. Required: restaurant, date, service, party, "
    "customer_name, customer_phone"
)


# ---------------------------------------------------------
# 2. INPUT VALIDATION
# ---------------------------------------------------------

class InvalidInput(ValueError):
    pass


class ReserveRequest(BaseModel):
    restaurant: str | None = None
    date: str | None = None
    service: str | None = None
    party: int | str | None = None
    customer_name: str | None = None
    customer_phone: str | int | None = None


class CancelRequest(BaseModel):
    reservation_id: int | str | None = None


def parse_positive_int(value, usage: str) -> int:
    if value is None or isinstance(value, bool):
        raise InvalidInput(usage)
    if isinstance(value, int):
        number = value
    else:
        try:
            number = int(str(value).strip())
        except ValueError:
            raise InvalidInput(usage)
    if number < 1:
        raise InvalidInput(usage)
    return number


def parse_slot(restaurant, date, service, party, usage: str) -> tuple[str, str, str, int]:
    """Validate the (restaurant, date, service, party) quadruple shared by most routes."""
    restaurant = (restaurant or "").strip()
    date = (date or "").strip()
    service = (service or "").strip()
    if not restaurant or not date or not service:
        raise InvalidInput(usage)

    party = parse_positive_int(party, usage)

    try:
        date = datetime.strptime(date, "%Y-%m-%d").date().isoformat()
    except ValueError:
        raise InvalidInput(f"Invalid date '{date}', expected YYYY-MM-DD.")

    service = service.upper()
    if service not in SERVICES:
        raise InvalidInput(f"Invalid service '{service}', expected LUNCH or DINNER.")

    return restaurant, date, service, party


# ---------------------------------------------------------
# 3. ERROR HANDLERS
# ---------------------------------------------------------

@app.exception_handler(InvalidInput)
async def invalid_input_handler(request: Request, exc: InvalidInput):
    return JSONResponse(status_code=400, content={"ok": False, "error": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"ok": False, "error": f"Invalid request: {detail}"})


@app.exception_handler(database.DatabaseUnavailable)
async def database_unavailable_handler(request: Request, exc: database.DatabaseUnavailable):
    log.error("Database unavailable", path=request.url.path)
    return JSONResponse(status_code=500, content={"ok": False, "error": str(exc)})


@app.exception_handler(PostgrestAPIError)
async def postgrest_error_handler(request: Request, exc: PostgrestAPIError):
    log.error("Database error", path=request.url.path, error=exc.message, code=exc.code)
    return JSONResponse(status_code=500, content={"ok": False, "error": exc.message})


@app.exception_handler(httpx.HTTPError)
async def database_transport_handler(request: Request, exc: httpx.HTTPError):
    # supabase-py talks to PostgREST over httpx; connect/timeouts surface here
    log.error("Database unreachable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": str(exc) or type(exc).__name__},
    )


# ---------------------------------------------------------
# 4. RESERVATION API
# ---------------------------------------------------------

@app.get("/health")
def health():
    return {"ok": True}


@app.get("/restaurants")
def restaurants():
    return {"ok": True, "restaurants": database.list_restaurants()}


@app.get("/availability")
def availability(
    restaurant: str | None = None,
    date: str | None = None,
    service: str | None = None,
    party: str | None = None,
):
    restaurant, date, service, party = parse_slot(restaurant, date, service, party, SLOT_USAGE)
    result = database.check_availability(restaurant, date, service, party)
    return {"ok": True, "result": result}


@app.get("/alternatives")
def alternatives(
    restaurant: str | None = None,
    date: str | None = None,
    service: str | None = None,
    party: str | None = None,
    days: str | None = None,
):
    restaurant, date, service, party = parse_slot(
        restaurant, date, service, party, ALTERNATIVES_USAGE
    )
    days = parse_positive_int(days, ALTERNATIVES_USAGE) if days else config.ALTERNATIVES_DAYS_AHEAD

    rows = database.suggest_alternatives(restaurant, date, service, party, days)
    return {"ok": True, "alternatives": rows}


@app.post("/reserve")
def reserve(body: ReserveRequest):
    restaurant, date, service, party = parse_slot(
        body.restaurant, body.date, body.service, body.party, RESERVE_USAGE
    )
    customer_name = (body.customer_name or "").strip()
    customer_phone = str(body.customer_phone or "").strip()
    if not customer_name or not customer_phone:
        raise InvalidInput(RESERVE_USAGE)

    try:
        reservation_id = database.reserve(
            restaurant, date, service, party, customer_name, customer_phone
        )
    except database.SlotUnavailable as e:
        return JSONResponse(
            status_code=409,
            content={"ok": False, "reason": e.reason, "details": e.details},
        )
    except database.RestaurantNotFound:
        return JSONResponse(status_code=404, content={"ok": False, "error": "Unknown restaurant code"})

    return {"ok": True, "reservation_id": reservation_id}


@app.post("/cancel")
def cancel(body: CancelRequest):
    reservation_id = body.reservation_id
    if reservation_id is None or (isinstance(reservation_id, str) and not reservation_id.strip()):
        raise InvalidInput("Missing reservation_id")

    reservation = database.cancel_reservation(reservation_id)
    if reservation is None:
        return JSONResponse(status_code=404, content={"ok": False, "error": "Reservation not found"})

    return {"ok": True, "reservation": reservation}


# ---------------------------------------------------------
# 5. WHATSAPP WEBHOOK
# ---------------------------------------------------------

@app.get("/webhook")
async def verify_webhook(
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_verify_token: str | None = Query(None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
):
    if whatsapp.verify_subscription(hub_mode, hub_verify_token):
        log.info("Webhook verified")
        return PlainTextResponse(content=hub_challenge or "")

    log.warning("Webhook verification failed", mode=hub_mode)
    return Response(status_code=403)


@app.post("/webhook")
async def receive_webhook(request: Request):
    """Inbound WhatsApp notifications.

    Always answers 200: Meta keeps redelivering anything else, so failures
    are logged and dropped here.
    """
    body = await request.body()

    if not whatsapp.verify_signature(body, request.headers.get("X-Hub-Signature-256")):
        log.warning("Invalid webhook signature, payload ignored")
        return {"ok": True}

    try:
        payload = json.loads(body)
        messages = list(whatsapp.iter_incoming_messages(payload))
    except (ValueError, AttributeError, TypeError) as e:
        log.warning("Unreadable webhook payload", error=str(e))
        return {"ok": True}

    for message in messages:
        try:
            reply = await run_in_threadpool(
                conversation.handle_message,
                message.wa_id,
                message.text,
                message.profile_name,
            )
            await whatsapp.send_text(message.wa_id, reply)
        except Exception:
            log.exception("Webhook message processing failed", wa_id=message.wa_id)

    return {"ok": True}


if __name__ == "__main__":
    import uvicorn

    log.info("Server starting", port=config.PORT)
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
