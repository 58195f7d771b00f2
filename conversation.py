"""WhatsApp booking conversation.

A small per-user state machine. The state and the collected slots live in
the whatsapp_sessions side table (see database.get_session/save_session),
so every inbound message is: load session, dispatch on state, save session,
return the reply text.

    IDLE -> ASK_RESTAURANT -> ASK_PARTY_SIZE -> ASK_DATE -> ASK_SERVICE
         -> CONFIRM_RESERVATION (or ASK_ALT_PICK when the slot is full)
    IDLE -> ASK_CANCEL_ID
"""

import re
from datetime import date, datetime, time, timedelta, timezone

import dateparser
from dateutil import parser as dateutil_parser
from supabase import PostgrestAPIError

import config
import database
from logging_setup import get_logger

log = get_logger(__name__)

IDLE = "IDLE"
ASK_RESTAURANT = "ASK_RESTAURANT"
ASK_PARTY_SIZE = "ASK_PARTY_SIZE"
ASK_DATE = "ASK_DATE"
ASK_SERVICE = "ASK_SERVICE"
CONFIRM_RESERVATION = "CONFIRM_RESERVATION"
ASK_ALT_PICK = "ASK_ALT_PICK"
ASK_CANCEL_ID = "ASK_CANCEL_ID"

MAX_ALTERNATIVES = 5
DATE_LANGUAGES = ["en", "es"]

RESET_WORDS = {"menu", "start", "restart", "reset", "hi", "hello", "hey", "hola"}
BOOK_WORDS = {"1", "book", "reserve", "reservation", "table"}
CANCEL_WORDS = {"2", "cancel"}
YES_WORDS = {"yes", "y", "confirm", "ok", "okay", "si", "sí"}
NO_WORDS = {"no", "n", "nope"}

SERVICES = {
    "1": "LUNCH",
    "lunch": "LUNCH",
    "almuerzo": "LUNCH",
    "2": "DINNER",
    "dinner": "DINNER",
    "cena": "DINNER",
}

MAIN_MENU = (
    "Hi! 👋 I can help you with your restaurant reservation.\n\n"
    "1️⃣ Book a table\n"
    "2️⃣ Cancel a reservation\n\n"
    "Reply with 1 or 2."
)
CONFIRM_PROMPT = "Reply *YES* to confirm or *NO* to cancel."
RESTART_HINT = "Send *MENU* whenever you want to start again."


# ---------------------------------------------------------
# PARSING HELPERS
# ---------------------------------------------------------

def normalize(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip()).lower().rstrip(".!")


def parse_party_size(text: str) -> int | None:
    m = re.search(r"\d+", text)
    if not m:
        return None
    size = int(m.group(0))
    return size if size >= 1 else None


def parse_service(text: str) -> str | None:
    t = normalize(text)
    if t in SERVICES:
        return SERVICES[t]
    for word in re.findall(r"\w+", t):
        if not word.isdigit() and word in SERVICES:
            return SERVICES[word]
    return None


def parse_date(text: str, today: date | None = None) -> date | None:
    """Turn an ISO date or a natural-language day into a date."""
    today = today or date.today()
    raw = text.strip()

    try:
        return date.fromisoformat(raw)
    except ValueError:
        pass

    parsed = dateparser.parse(
        raw,
        languages=DATE_LANGUAGES,
        settings={
            "PREFER_DATES_FROM": "future",
            "RELATIVE_BASE": datetime.combine(today, time(12, 0)),
            "DATE_ORDER": "DMY",
        },
    )
    return parsed.date() if parsed else None


def format_slot(service_date: str, service: str) -> str:
    try:
        day = date.fromisoformat(str(service_date)).strftime("%A %d %B %Y")
    except ValueError:
        day = str(service_date)
    return f"{day}, {str(service).lower()}"


def _is_stale(session: dict) -> bool:
    if session.get("state") == IDLE or not session.get("updated_at"):
        return False
    try:
        updated = dateutil_parser.isoparse(str(session["updated_at"]))
    except ValueError:
        return True
    if updated.tzinfo is None:
        updated = updated.replace(tzinfo=timezone.utc)
    ttl = timedelta(minutes=config.WHATSAPP_SESSION_TTL_MINUTES)
    return datetime.now(timezone.utc) - updated > ttl


def _reset(session: dict) -> None:
    session.update(
        state=IDLE,
        restaurant_code=None,
        party_size=None,
        service_date=None,
        service=None,
    )


# ---------------------------------------------------------
# REPLY BUILDERS
# ---------------------------------------------------------

def _restaurant_list(restaurants: list[dict]) -> str:
    lines = [f"{i}. {r['name']}" for i, r in enumerate(restaurants, start=1)]
    return "\n".join(lines)


def _summary(session: dict) -> str:
    restaurant = database.get_restaurant(session["restaurant_code"])
    name = restaurant["name"] if restaurant else session["restaurant_code"]
    return (
        f"📍 {name}\n"
        f"👥 {session['party_size']} guests\n"
        f"📅 {format_slot(session['service_date'], session['service'])}"
    )


def _match_restaurant(text: str, restaurants: list[dict]) -> dict | None:
    t = normalize(text)
    if t.isdigit():
        idx = int(t) - 1
        return restaurants[idx] if 0 <= idx < len(restaurants) else None

    for r in restaurants:
        if t in ((r.get("code") or "").lower(), (r.get("name") or "").lower()):
            return r

    # Unique partial name match ("deli" -> "Deli Club")
    if len(t) >= 3:
        partial = [r for r in restaurants if t in (r.get("name") or "").lower()]
        if len(partial) == 1:
            return partial[0]
    return None


def _alternatives(session: dict) -> list[dict]:
    rows = database.suggest_alternatives(
        session["restaurant_code"],
        session["service_date"],
        session["service"],
        session["party_size"],
        config.ALTERNATIVES_DAYS_AHEAD,
    )
    return rows[:MAX_ALTERNATIVES]


def _ask_restaurant(session: dict) -> str:
    restaurants = database.list_restaurants()
    if not restaurants:
        _reset(session)
        return "Sorry, there are no restaurants open for booking right now."

    session["state"] = ASK_RESTAURANT
    return (
        "Which restaurant would you like to book?\n\n"
        f"{_restaurant_list(restaurants)}\n\n"
        "Reply with the number or the name."
    )


def _offer_alternatives(session: dict, intro: str) -> str:
    alternatives = _alternatives(session)
    if not alternatives:
        _reset(session)
        return (
            f"{intro}, and I couldn't find another free slot in the next "
            f"{config.ALTERNATIVES_DAYS_AHEAD} days. 😔\n\n{RESTART_HINT}"
        )

    session["state"] = ASK_ALT_PICK
    lines = [
        f"{i}. {format_slot(alt.get('service_date'), alt.get('service'))}"
        for i, alt in enumerate(alternatives, start=1)
    ]
    return (
        f"{intro}. These slots are still free:\n\n"
        + "\n".join(lines)
        + "\n\nReply with a number to pick one, or *MENU* to start over."
    )


def _check_slot(session: dict) -> str:
    avail = database.check_availability(
        session["restaurant_code"],
        session["service_date"],
        session["service"],
        session["party_size"],
    )
    if avail and avail.get("ok") is True:
        session["state"] = CONFIRM_RESERVATION
        return f"Good news, there is room! 🎉\n\n{_summary(session)}\n\n{CONFIRM_PROMPT}"

    log.info(
        "Slot not available",
        wa_id=session["wa_id"],
        restaurant=session["restaurant_code"],
        reason=(avail or {}).get("reason"),
    )
    return _offer_alternatives(session, "Sorry, that service is fully booked")


# ---------------------------------------------------------
# STATE HANDLERS
# ---------------------------------------------------------

def handle_idle(session: dict, text: str, profile_name: str | None) -> str:
    t = normalize(text)

    if t in CANCEL_WORDS or "cancel" in t:
        session["state"] = ASK_CANCEL_ID
        return "Please send the number of the reservation you want to cancel."

    if t in BOOK_WORDS or "book" in t or "reserv" in t:
        return _ask_restaurant(session)

    return MAIN_MENU


def handle_ask_restaurant(session: dict, text: str, profile_name: str | None) -> str:
    restaurants = database.list_restaurants()
    restaurant = _match_restaurant(text, restaurants)
    if restaurant is None:
        return (
            "Sorry, I don't know that restaurant. Please pick one of these:\n\n"
            f"{_restaurant_list(restaurants)}"
        )

    session["restaurant_code"] = restaurant["code"]
    session["state"] = ASK_PARTY_SIZE
    return f"Great, {restaurant['name']}! How many people will be dining?"


def handle_ask_party_size(session: dict, text: str, profile_name: str | None) -> str:
    party = parse_party_size(text)
    if party is None:
        return "Please send the number of guests, for example *4*."

    restaurant = database.get_restaurant(session["restaurant_code"])
    if restaurant is None:
        _reset(session)
        return f"Sorry, that restaurant is no longer taking reservations.\n\n{RESTART_HINT}"

    capacity = restaurant.get("capacity_max")
    if capacity and party > capacity:
        return (
            f"Sorry, {restaurant['name']} can seat at most {capacity} guests. "
            "How many people will be dining?"
        )

    session["party_size"] = party
    session["state"] = ASK_DATE
    return "What day would you like to come? (e.g. *tomorrow*, *next friday*, *2026-11-03*)"


def handle_ask_date(session: dict, text: str, profile_name: str | None) -> str:
    today = date.today()
    day = parse_date(text, today=today)
    if day is None:
        return "Sorry, I couldn't understand that date. Please send it like *2026-11-03*."
    if day < today:
        return "That date is in the past. Which day would you like to come?"

    session["service_date"] = day.isoformat()
    session["state"] = ASK_SERVICE
    return "Lunch or dinner?\n\n1️⃣ Lunch\n2️⃣ Dinner"


def handle_ask_service(session: dict, text: str, profile_name: str | None) -> str:
    service = parse_service(text)
    if service is None:
        return "Please reply *1* for lunch or *2* for dinner."

    session["service"] = service
    return _check_slot(session)


def handle_confirm_reservation(session: dict, text: str, profile_name: str | None) -> str:
    t = normalize(text)

    if t in NO_WORDS:
        _reset(session)
        return f"No problem, I haven't booked anything. {RESTART_HINT}"

    if t not in YES_WORDS:
        return CONFIRM_PROMPT

    summary = _summary(session)
    try:
        reservation_id = database.reserve(
            session["restaurant_code"],
            session["service_date"],
            session["service"],
            session["party_size"],
            customer_name=profile_name or session["wa_id"],
            customer_phone=session["wa_id"],
        )
    except database.SlotUnavailable:
        return _offer_alternatives(session, "Sorry, that slot was just taken")
    except database.RestaurantNotFound:
        _reset(session)
        return f"Sorry, that restaurant is no longer taking reservations.\n\n{RESTART_HINT}"

    _reset(session)
    return (
        "✅ Your table is booked!\n\n"
        f"{summary}\n\n"
        f"Reservation number: *{reservation_id}*\n"
        "To cancel later, send *CANCEL* and then this number."
    )


def handle_ask_alt_pick(session: dict, text: str, profile_name: str | None) -> str:
    alternatives = _alternatives(session)
    if not alternatives:
        _reset(session)
        return f"Sorry, those slots are no longer available. {RESTART_HINT}"

    t = normalize(text)
    idx = int(t) - 1 if t.isdigit() else -1
    if not 0 <= idx < len(alternatives):
        return (
            f"Please reply with a number between 1 and {len(alternatives)}, "
            "or *MENU* to start over."
        )

    picked = alternatives[idx]
    session["service_date"] = str(picked.get("service_date"))
    session["service"] = str(picked.get("service")).upper()
    session["state"] = CONFIRM_RESERVATION
    return f"{_summary(session)}\n\n{CONFIRM_PROMPT}"


def handle_ask_cancel_id(session: dict, text: str, profile_name: str | None) -> str:
    reservation_id = text.strip().lstrip("#").strip()
    if not reservation_id:
        return "Please send the number of the reservation you want to cancel."

    try:
        cancelled = database.cancel_reservation(reservation_id, customer_phone=session["wa_id"])
    except PostgrestAPIError as e:
        # Malformed ids are rejected by PostgREST (e.g. invalid uuid syntax)
        log.warning("Cancel lookup failed", wa_id=session["wa_id"], error=e.message)
        cancelled = None

    if cancelled is None:
        return (
            f"I couldn't find reservation *{reservation_id}* for this WhatsApp number. "
            "Please check the number, or send *MENU* to go back."
        )

    _reset(session)
    return f"✅ Reservation *{cancelled['id']}* has been cancelled."


STATE_HANDLERS = {
    IDLE: handle_idle,
    ASK_RESTAURANT: handle_ask_restaurant,
    ASK_PARTY_SIZE: handle_ask_party_size,
    ASK_DATE: handle_ask_date,
    ASK_SERVICE: handle_ask_service,
    CONFIRM_RESERVATION: handle_confirm_reservation,
    ASK_ALT_PICK: handle_ask_alt_pick,
    ASK_CANCEL_ID: handle_ask_cancel_id,
}


# ---------------------------------------------------------
# ENTRY POINT
# ---------------------------------------------------------

def handle_message(wa_id: str, text: str, profile_name: str | None = None) -> str:
    """Advance wa_id's conversation by one inbound message and return the reply."""
    if normalize(text) in RESET_WORDS:
        database.reset_session(wa_id)
        return MAIN_MENU

    session = database.get_session(wa_id)
    if _is_stale(session):
        log.info("Session expired", wa_id=wa_id, state=session.get("state"))
        session = database.new_session(wa_id)

    state = session.get("state") or IDLE
    handler = STATE_HANDLERS.get(state)
    if handler is None:
        log.warning("Unknown session state, resetting", wa_id=wa_id, state=state)
        session = database.new_session(wa_id)
        handler = handle_idle

    reply = handler(session, text, profile_name)
    database.save_session(session)

    log.info("Conversation step", wa_id=wa_id, from_state=state, to_state=session["state"])
    return reply
