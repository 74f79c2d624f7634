"""Normalization of inbound chat replies into accept/reject intents.

Button replies carry the full booking id (`accept_<id>`); free-text replies
carry the last 8 characters of the id (`ACCEPT 1A2B3C4D`) and must be resolved
against the sender's pending bookings. Anything else normalizes to `none`.
"""

import re
from dataclasses import dataclass
from typing import Any, Mapping

from fundiconnect.common.phone import normalize_phone

TEXT_COMMAND = re.compile(r"\b(ACCEPT|REJECT)\s+([A-Z0-9]{8})\b")
BUTTON_PREFIXES = {"accept_": "accept", "reject_": "reject"}


@dataclass(frozen=True)
class InboundMessage:
    message_id: str | None
    sender: str | None
    booking_ref: str | None
    ref_kind: str | None  # "full" or "suffix"
    intent: str  # "accept", "reject" or "none"
    source: str

    @property
    def actionable(self) -> bool:
        return self.intent in ("accept", "reject") and bool(self.sender) and bool(self.booking_ref)


def parse_button_id(button_id: str | None) -> tuple[str, str | None]:
    if not button_id:
        return "none", None
    for prefix, intent in BUTTON_PREFIXES.items():
        if button_id.startswith(prefix) and len(button_id) > len(prefix):
            return intent, button_id[len(prefix):]
    return "none", None


def parse_text_command(text: str | None) -> tuple[str, str | None]:
    if not text:
        return "none", None
    match = TEXT_COMMAND.search(text.upper().strip())
    if not match:
        return "none", None
    return match.group(1).lower(), match.group(2).lower()


def _meta_message(raw: Mapping[str, Any], country_code: str) -> InboundMessage:
    sender = normalize_phone(raw.get("from"), country_code)
    interactive = raw.get("interactive") or {}
    button = interactive.get("button_reply") if isinstance(interactive, Mapping) else None
    if isinstance(button, Mapping):
        intent, ref = parse_button_id(button.get("id"))
        kind = "full" if ref else None
    else:
        text = raw.get("text") or {}
        intent, ref = parse_text_command(text.get("body") if isinstance(text, Mapping) else None)
        kind = "suffix" if ref else None
    return InboundMessage(
        message_id=raw.get("id"),
        sender=sender,
        booking_ref=ref,
        ref_kind=kind,
        intent=intent,
        source="meta",
    )


def parse_meta_payload(payload: Any, country_code: str = "254") -> list[InboundMessage]:
    """Flatten a WhatsApp Cloud API webhook body into normalized messages."""

    if not isinstance(payload, Mapping):
        return []
    messages = []
    for entry in payload.get("entry") or []:
        if not isinstance(entry, Mapping):
            continue
        for change in entry.get("changes") or []:
            if not isinstance(change, Mapping) or change.get("field") != "messages":
                continue
            value = change.get("value") or {}
            for raw in value.get("messages") or []:
                if isinstance(raw, Mapping):
                    messages.append(_meta_message(raw, country_code))
    return messages


def parse_twilio_form(form: Mapping[str, Any], country_code: str = "254") -> list[InboundMessage]:
    """Normalize one Twilio inbound-message webhook (form fields)."""

    sender = normalize_phone(form.get("From"), country_code)
    button_payload = form.get("ButtonPayload")
    if button_payload:
        intent, ref = parse_button_id(button_payload)
        kind = "full" if ref else None
    else:
        intent, ref = parse_text_command(form.get("Body"))
        kind = "suffix" if ref else None
    return [
        InboundMessage(
            message_id=form.get("MessageSid"),
            sender=sender,
            booking_ref=ref,
            ref_kind=kind,
            intent=intent,
            source="twilio",
        )
    ]
