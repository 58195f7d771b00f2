"""WhatsApp Cloud API glue.

Parses inbound webhook notifications, checks the Meta payload signature
and sends text replies through the Graph API.
"""

import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Iterator

import httpx

import config
from logging_setup import get_logger

log = get_logger(__name__)

GRAPH_API_BASE = "https://graph.facebook.com"


class WhatsAppSendError(Exception):
    """Sending a message through the Graph API failed."""


@dataclass
class IncomingMessage:
    wa_id: str
    text: str
    profile_name: str | None = None
    message_id: str | None = None


# ---------------------------------------------------------
# INBOUND
# ---------------------------------------------------------

def _message_text(msg: dict) -> str | None:
    msg_type = msg.get("type")

    if msg_type == "text":
        return (msg.get("text") or {}).get("body")

    if msg_type == "interactive":
        interactive = msg.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        # Button ids are what we put in the menu; fall back to the visible title
        return reply.get("id") or reply.get("title")

    if msg_type == "button":
        return (msg.get("button") or {}).get("text")

    return None


def iter_incoming_messages(payload: dict[str, Any]) -> Iterator[IncomingMessage]:
    """Yield every user message carried by a webhook notification.

    Status callbacks (sent/delivered/read) and unsupported message types
    (images, locations, ...) are skipped.
    """
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            contacts = {
                c.get("wa_id"): (c.get("profile") or {}).get("name")
                for c in value.get("contacts") or []
                if c.get("wa_id")
            }
            default_contact = next(iter(contacts), None)

            for msg in value.get("messages") or []:
                text = _message_text(msg)
                if text is None:
                    log.info("Skipping unsupported message", type=msg.get("type"))
                    continue

                sender = msg.get("from")
                wa_id = sender if sender in contacts else (default_contact or sender)
                if not wa_id:
                    continue

                yield IncomingMessage(
                    wa_id=wa_id,
                    text=text.strip(),
                    profile_name=contacts.get(wa_id),
                    message_id=msg.get("id"),
                )


def verify_signature(body: bytes, signature_header: str | None) -> bool:
    """Check X-Hub-Signature-256 against the app secret.

    Passes when no app secret is configured.
    """
    secret = config.WHATSAPP_APP_SECRET
    if not secret:
        return True
    if not signature_header:
        return False

    signature = signature_header
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    # Header values arrive latin-1 decoded and may hold non-ASCII bytes
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("latin-1", "replace"))


def verify_subscription(mode: str | None, token: str | None) -> bool:
    """Meta's GET handshake: subscribe mode with our verify token."""
    expected = config.WHATSAPP_VERIFY_TOKEN
    return mode == "subscribe" and bool(expected) and token == expected


# ---------------------------------------------------------
# OUTBOUND
# ---------------------------------------------------------

def messages_url() -> str:
    return (
        f"{GRAPH_API_BASE}/{config.WHATSAPP_API_VERSION}/"
        f"{config.WHATSAPP_PHONE_NUMBER_ID}/messages"
    )


async def send_text(to: str, body: str) -> dict | None:
    """Send a plain text message to a WhatsApp user.

    Without credentials the reply is only logged.
    """
    if not config.WHATSAPP_TOKEN or not config.WHATSAPP_PHONE_NUMBER_ID:
        log.warning("WhatsApp credentials missing, reply not sent", to=to, body=body)
        return None

    headers = {
        "Authorization": f"Bearer {config.WHATSAPP_TOKEN}",
        "Content-Type": "application/json",
    }
    payload = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
        "type": "text",
        "text": {"preview_url": False, "body": body},
    }

    async with httpx.AsyncClient(timeout=30) as client:
        try:
            response = await client.post(messages_url(), headers=headers, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise WhatsAppSendError(
                f"Graph API returned {e.response.status_code}: {e.response.text}"
            ) from e
        except httpx.RequestError as e:
            raise WhatsAppSendError(f"Graph API request failed: {e}") from e

    log.info("Reply sent", to=to, status=response.status_code)
    return response.json()
