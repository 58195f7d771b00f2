from datetime import datetime, timezone

from supabase import create_client, Client

import config
from logging_setup import get_logger

log = get_logger(__name__)

RESTAURANT_TABLE = "restaurants"
RESERVATION_TABLE = "reservations"
SESSION_TABLE = "whatsapp_sessions"

SESSION_FIELDS = ("state", "restaurant_code", "party_size", "service_date", "service")


class DatabaseUnavailable(Exception):
    """Raised when no Supabase client could be configured."""


class RestaurantNotFound(Exception):
    pass


class SlotUnavailable(Exception):
    """The availability procedure refused the requested slot."""

    def __init__(self, reason: str, details: dict | None = None):
        super().__init__(reason)
        self.reason = reason
        self.details = details


# ---------------------------------------------------------
# CLIENT
# ---------------------------------------------------------

supabase: Client | None = None

if config.SUPABASE_URL and config.SUPABASE_ANON_KEY:
    supabase = create_client(config.SUPABASE_URL, config.SUPABASE_ANON_KEY)
else:
    log.warning("Missing SUPABASE_URL or SUPABASE_ANON_KEY, database calls will fail")


def _client() -> Client:
    if supabase is None:
        raise DatabaseUnavailable("Supabase connection is not available.")
    return supabase


def _first_row(data):
    """Table-returning procedures come back as a list of rows."""
    if isinstance(data, list):
        return data[0] if data else None
    return data


# ---------------------------------------------------------
# RESTAURANTS
# ---------------------------------------------------------

def list_restaurants() -> list[dict]:
    """All restaurants ordered by name."""
    response = (
        _client()
        .table(RESTAURANT_TABLE)
        .select("id,name,code,capacity_max")
        .order("name")
        .execute()
    )
    return response.data or []


def get_restaurant(code: str) -> dict | None:
    response = (
        _client()
        .table(RESTAURANT_TABLE)
        .select("id,name,code,capacity_max")
        .eq("code", code)
        .limit(1)
        .execute()
    )
    rows = response.data or []
    return rows[0] if rows else None


# ---------------------------------------------------------
# AVAILABILITY (remote procedures)
# ---------------------------------------------------------

def check_availability(restaurant: str, date: str, service: str, party: int) -> dict | None:
    """Run check_availability and return its single result row."""
    response = _client().rpc(
        "check_availability",
        {
            "p_restaurant_code": restaurant,
            "p_service_date": date,
            "p_service": service,
            "p_party_size": party,
        },
    ).execute()
    return _first_row(response.data)


def suggest_alternatives(
    restaurant: str, date: str, service: str, party: int, days: int = 14
) -> list[dict]:
    response = _client().rpc(
        "suggest_alternatives",
        {
            "p_restaurant_code": restaurant,
            "p_service_date": date,
            "p_service": service,
            "p_party_size": party,
            "p_days_ahead": days,
        },
    ).execute()
    return response.data or []


# ---------------------------------------------------------
# RESERVATIONS
# ---------------------------------------------------------

def reserve(
    restaurant: str,
    date: str,
    service: str,
    party: int,
    customer_name: str,
    customer_phone: str,
):
    """Check availability, then insert a CONFIRMED reservation.

    Returns the new reservation id. Raises SlotUnavailable when the
    procedure refuses the slot and RestaurantNotFound for unknown codes.
    """
    avail = check_availability(restaurant, date, service, party)
    if not avail or avail.get("ok") is not True:
        reason = (avail or {}).get("reason") or "NOT_AVAILABLE"
        raise SlotUnavailable(reason, avail)

    row = get_restaurant(restaurant)
    if row is None:
        raise RestaurantNotFound(restaurant)

    response = (
        _client()
        .table(RESERVATION_TABLE)
        .insert({
            "restaurant_id": row["id"],
            "customer_name": customer_name,
            "customer_phone": customer_phone,
            "party_size": party,
            "service_date": date,
            "service": service,
            "status": "CONFIRMED",
        })
        .execute()
    )
    reservation_id = response.data[0]["id"]
    log.info(
        "Reservation created",
        reservation_id=reservation_id,
        restaurant=restaurant,
        service_date=date,
        service=service,
        party_size=party,
    )
    return reservation_id


def cancel_reservation(reservation_id, customer_phone: str | None = None) -> dict | None:
    """Mark a reservation CANCELLED.

    When customer_phone is given only a reservation owned by that phone
    matches. Returns {id, status} or None when nothing matched.
    """
    query = (
        _client()
        .table(RESERVATION_TABLE)
        .update({"status": "CANCELLED"})
        .eq("id", reservation_id)
    )
    if customer_phone is not None:
        query = query.eq("customer_phone", customer_phone)

    rows = query.execute().data or []
    if not rows:
        return None

    log.info("Reservation cancelled", reservation_id=reservation_id)
    return {"id": rows[0]["id"], "status": rows[0].get("status", "CANCELLED")}


# ---------------------------------------------------------
# WHATSAPP SESSIONS
# ---------------------------------------------------------

def new_session(wa_id: str) -> dict:
    return {
        "wa_id": wa_id,
        "state": "IDLE",
        "restaurant_code": None,
        "party_size": None,
        "service_date": None,
        "service": None,
        "updated_at": None,
    }


def get_session(wa_id: str) -> dict:
    """Stored session for wa_id, or a fresh IDLE one."""
    response = (
        _client()
        .table(SESSION_TABLE)
        .select("*")
        .eq("wa_id", wa_id)
        .limit(1)
        .execute()
    )
    rows = response.data or []
    if not rows:
        return new_session(wa_id)

    return {**new_session(wa_id), **rows[0]}


def save_session(session: dict) -> None:
    """Upsert the session record (last write wins)."""
    record = {field: session.get(field) for field in SESSION_FIELDS}
    record["wa_id"] = session["wa_id"]
    record["updated_at"] = datetime.now(timezone.utc).isoformat()

    _client().table(SESSION_TABLE).upsert(record, on_conflict="wa_id").execute()
    session["updated_at"] = record["updated_at"]


def reset_session(wa_id: str) -> dict:
    session = new_session(wa_id)
    save_session(session)
    return session
