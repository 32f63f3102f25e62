"""Normalize provider webhook payloads at the boundary.

Square and Stripe put the fields we correlate on in different (and, for
Square, version-dependent) places. Everything downstream works on
`NormalizedPaymentEvent` and never looks at the raw shape again.
"""

import re
from typing import Any

from pydantic import BaseModel, Field

PAYMENT_COMPLETED = "payment_completed"
TERMINAL_CHECKOUT_COMPLETED = "terminal_checkout_completed"
IGNORED = "ignored"

_NOTE_ORDER_ID = re.compile(r"orderId:(\S+)")


class NormalizedPaymentEvent(BaseModel):
    provider: str
    event_id: str | None = None
    event_type: str
    kind: str
    provider_payment_id: str | None = None
    provider_order_id: str | None = None
    reference_id: str | None = None
    session_ids: list[str] = Field(default_factory=list)
    status: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def actionable(self) -> bool:
        return self.kind != IGNORED


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _unique(values: list[Any]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if isinstance(value, str) and value and value not in seen:
            seen.append(value)
    return seen


def parse_square_event(event: dict) -> NormalizedPaymentEvent:
    event_type = _str(event.get("type")) or "unknown"
    event_id = _str(event.get("event_id")) or _str(event.get("id"))
    obj = _dict(_dict(event.get("data")).get("object"))

    if event_type == "terminal.checkout.updated":
        checkout = _dict(obj.get("checkout")) or obj
        checkout_id = _str(checkout.get("id"))
        status = _str(checkout.get("status"))
        payment_ids = checkout.get("payment_ids") or []
        return NormalizedPaymentEvent(
            provider="square",
            event_id=event_id,
            event_type=event_type,
            kind=TERMINAL_CHECKOUT_COMPLETED if status == "COMPLETED" and checkout_id else IGNORED,
            provider_payment_id=_str(payment_ids[0]) if payment_ids else None,
            reference_id=_str(checkout.get("reference_id")),
            session_ids=_unique([checkout_id]),
            status=status,
            raw=event,
        )

    payment = _dict(obj.get("payment")) or obj
    status = _str(payment.get("status")) or _str(obj.get("status"))
    completed = event_type == "payment.completed" or (
        event_type in ("payment.created", "payment.updated") and status == "COMPLETED"
    )
    note_match = _NOTE_ORDER_ID.search(payment.get("note") or "") if isinstance(payment.get("note"), str) else None
    return NormalizedPaymentEvent(
        provider="square",
        event_id=event_id,
        event_type=event_type,
        kind=PAYMENT_COMPLETED if completed else IGNORED,
        provider_payment_id=_str(payment.get("id")),
        provider_order_id=_str(payment.get("order_id")),
        reference_id=_str(payment.get("reference_id")) or (note_match.group(1) if note_match else None),
        session_ids=_unique([payment.get("payment_link_id"), payment.get("paymentLinkId"), payment.get("source_id")]),
        status=status,
        raw=event,
    )


def parse_stripe_event(event: dict) -> NormalizedPaymentEvent:
    event_type = _str(event.get("type")) or "unknown"
    obj = _dict(_dict(event.get("data")).get("object"))
    metadata = _dict(obj.get("metadata"))
    base = {
        "provider": "stripe",
        "event_id": _str(event.get("id")),
        "event_type": event_type,
        "reference_id": _str(metadata.get("orderId")),
        "raw": event,
    }

    if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
        payment_intent = obj.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        payment_status = _str(obj.get("payment_status"))
        return NormalizedPaymentEvent(
            **base,
            kind=IGNORED if payment_status == "unpaid" else PAYMENT_COMPLETED,
            provider_payment_id=_str(payment_intent),
            session_ids=_unique([obj.get("id")]),
            status=payment_status,
        )
    if event_type == "payment_intent.succeeded":
        return NormalizedPaymentEvent(
            **base,
            kind=PAYMENT_COMPLETED,
            provider_payment_id=_str(obj.get("id")),
            status=_str(obj.get("status")),
        )
    return NormalizedPaymentEvent(**base, kind=IGNORED)
