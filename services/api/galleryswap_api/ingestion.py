from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import orjson
from sqlalchemy import desc, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from galleryswap_api.eventlog import log
from galleryswap_api.models import CASES, EVENT_TYPES, Experiment, InteractionEvent
from galleryswap_api.rotation import as_aware_utc


class InvalidEvent(ValueError):
    pass


@dataclass(frozen=True)
class IngestResult:
    accepted: bool
    observed_case: str | None
    deduplicated: bool
    experiment_id: str | None = None
    event_id: str | None = None


def _normalize_gid(raw: str | None, *, kind: str) -> str | None:
    value = str(raw or "").strip()
    if not value:
        return None
    if value.isdigit():
        return f"gid://shopify/{kind}/{value}"
    return value


def normalize_product_id(raw: str | None) -> str | None:
    return _normalize_gid(raw, kind="Product")


def normalize_variant_id(raw: str | None) -> str | None:
    return _normalize_gid(raw, kind="ProductVariant")


def find_active_experiment(session: Session, *, product_id: str) -> Experiment | None:
    return session.scalars(
        select(Experiment)
        .where(Experiment.product_id == str(product_id))
        .where(Experiment.status == "ACTIVE")
        .order_by(desc(Experiment.updated_at), Experiment.id.asc())
        .limit(1)
    ).first()


def impression_dedup_key(
    *, session_id: str, experiment_id: str | None, product_id: str, day: datetime
) -> str:
    scope = experiment_id or f"product:{product_id}"
    return f"{session_id}|{scope}|{day.strftime('%Y%m%d')}"


def _existing_case(session: Session, *, dedup_key: str) -> tuple[bool, str | None]:
    row = session.execute(
        select(InteractionEvent.id, InteractionEvent.observed_case).where(
            InteractionEvent.dedup_key == dedup_key
        )
    ).first()
    if row is None:
        return False, None
    return True, (str(row[1]) if row[1] else None)


def ingest_event(
    session: Session,
    *,
    session_id: str,
    event_type: str,
    product_id: str,
    variant_id: str | None = None,
    revenue: float | None = None,
    quantity: int | None = None,
    client_case: str | None = None,
    shop: str | None = None,
    meta: dict[str, Any] | None = None,
    now: datetime | None = None,
    dedup_key: str | None = None,
) -> IngestResult:
    """Store one storefront signal, attributed to the case live right now.

    The experiment's ``current_case`` wins over anything the client sends;
    ``client_case`` is only used when the product has no ACTIVE experiment.
    IMPRESSIONs collapse to one per (session, experiment, UTC day); other
    types collapse only when the caller passes a ``dedup_key``.
    """
    now_dt = as_aware_utc(now) or datetime.now(UTC)
    sid = str(session_id or "").strip()[:128]
    etype = str(event_type or "").strip().upper()
    pid = normalize_product_id(product_id)
    vid = normalize_variant_id(variant_id)
    if not sid:
        raise InvalidEvent("sessionId is required")
    if etype not in EVENT_TYPES:
        raise InvalidEvent(f"unknown eventType {event_type!r}")
    if not pid:
        raise InvalidEvent("productId is required")
    if revenue is not None and float(revenue) < 0:
        raise InvalidEvent("revenue must be >= 0")
    if quantity is not None and int(quantity) < 0:
        raise InvalidEvent("quantity must be >= 0")

    experiment = find_active_experiment(session, product_id=pid)
    experiment_id = str(experiment.id) if experiment is not None else None
    if experiment is not None:
        observed_case: str | None = str(experiment.current_case)
    else:
        fallback = str(client_case or "").strip().upper()
        observed_case = fallback if fallback in CASES else None

    if etype == "IMPRESSION":
        dedup_key = impression_dedup_key(
            session_id=sid, experiment_id=experiment_id, product_id=pid, day=now_dt
        )
    if dedup_key:
        seen, seen_case = _existing_case(session, dedup_key=dedup_key)
        if seen:
            return IngestResult(
                accepted=True,
                observed_case=seen_case,
                deduplicated=True,
                experiment_id=experiment_id,
            )

    ev = InteractionEvent(
        id=f"ie_{uuid4().hex}",
        session_id=sid,
        event_type=etype,
        product_id=pid,
        variant_id=vid,
        experiment_id=experiment_id,
        observed_case=observed_case,
        shop=(str(shop)[:160] if shop else None),
        revenue=(float(revenue) if revenue is not None else None),
        quantity=(int(quantity) if quantity is not None else None),
        meta_json=orjson.dumps(meta or {}, default=str).decode("utf-8"),
        dedup_key=dedup_key,
        created_at=now_dt,
    )
    try:
        with session.begin_nested():
            session.add(ev)
            session.flush()
    except IntegrityError:
        # Lost the race to a concurrent identical IMPRESSION.
        seen, seen_case = _existing_case(session, dedup_key=str(dedup_key))
        session.commit()
        return IngestResult(
            accepted=True,
            observed_case=seen_case if seen else observed_case,
            deduplicated=True,
            experiment_id=experiment_id,
        )
    event_id = str(ev.id)
    session.commit()
    return IngestResult(
        accepted=True,
        observed_case=observed_case,
        deduplicated=False,
        experiment_id=experiment_id,
        event_id=event_id,
    )


ASSIGNMENT_ATTRIBUTE = "ModelSwapAB"


def order_line_key(*, order_id: str, product_id: str, variant_id: str | None) -> str:
    return f"order:{order_id}|{product_id}|{variant_id or '-'}"


def purchase_dedup_key(
    *, meta: dict[str, Any], product_id: str, variant_id: str | None
) -> str | None:
    """Storefront checkout reports carry ``orderId``; keying them like the
    paid-order webhook lines means each line is counted once."""
    order_id = str(meta.get("orderId") or meta.get("order_id") or "").strip()
    pid = normalize_product_id(product_id)
    if not order_id or not pid:
        return None
    return order_line_key(
        order_id=order_id, product_id=pid, variant_id=normalize_variant_id(variant_id)
    )


def parse_assignment_attribute(note_attributes: Any) -> dict[str, str]:
    if not isinstance(note_attributes, list):
        return {}
    for attr in note_attributes:
        if not isinstance(attr, dict) or attr.get("name") != ASSIGNMENT_ATTRIBUTE:
            continue
        try:
            parsed: Any = orjson.loads(str(attr.get("value") or ""))
        except orjson.JSONDecodeError:
            return {}
        if not isinstance(parsed, dict):
            return {}
        return {str(k): v for k, v in parsed.items() if isinstance(v, str)}
    return {}


def _assignment_case(raw: str | None) -> str | None:
    value = str(raw or "").strip().upper()
    if not value:
        return None
    return "TEST" if value in {"B", "TEST"} else "BASE"


@dataclass(frozen=True)
class OrderLine:
    product_id: str
    variant_id: str | None
    revenue: float
    quantity: int


def order_lines(line_items: Any) -> list[OrderLine]:
    """Paid line items summed per (product, variant); revenue is price x qty."""
    totals: dict[tuple[str, str | None], list[float]] = {}
    for item in line_items if isinstance(line_items, list) else []:
        if not isinstance(item, dict):
            continue
        pid = normalize_product_id(str(item.get("product_id") or ""))
        if not pid:
            continue
        try:
            price = float(item.get("price") or 0)
            qty = int(item.get("quantity") or 0)
        except (TypeError, ValueError):
            continue
        if price < 0 or qty < 0:
            continue
        vid = normalize_variant_id(str(item.get("variant_id") or ""))
        acc = totals.setdefault((pid, vid), [0.0, 0])
        acc[0] += price * qty
        acc[1] += qty
    return [
        OrderLine(product_id=pid, variant_id=vid, revenue=round(rev, 2), quantity=int(qty))
        for (pid, vid), (rev, qty) in totals.items()
    ]


@dataclass
class OrderIngestResult:
    order_id: str
    recorded: int = 0
    enriched: int = 0
    attributed: int = 0
    events: list[IngestResult] = field(default_factory=list)


def _enrich_reported_purchase(
    session: Session, *, dedup_key: str, line: OrderLine, order_number: str | None
) -> bool:
    ev = session.scalars(
        select(InteractionEvent).where(InteractionEvent.dedup_key == dedup_key)
    ).first()
    if ev is None:
        return False
    try:
        meta: Any = orjson.loads(ev.meta_json or "{}")
    except orjson.JSONDecodeError:
        meta = {}
    if not isinstance(meta, dict):
        meta = {}
    meta.update({"enriched_by_webhook": True, "order_number": order_number})
    ev.revenue = line.revenue
    ev.quantity = line.quantity
    ev.meta_json = orjson.dumps(meta, default=str).decode("utf-8")
    session.commit()
    return True


def ingest_order_paid(
    session: Session,
    *,
    order: dict[str, Any],
    shop: str | None = None,
    now: datetime | None = None,
) -> OrderIngestResult:
    """Record one PURCHASE per paid line, attributed like any other event.

    The experiment comes from the line's product (ACTIVE only). The
    ``ModelSwapAB`` cart attribute supplies the session id and, for products
    without an ACTIVE experiment, the case hint. A line already reported by
    the storefront checkout gets the order's revenue and quantity instead of
    a second row; redelivered webhooks change nothing.
    """
    order_id = str(order.get("id") or "").strip()
    if not order_id:
        raise InvalidEvent("order id is required")
    order_number = str(order["order_number"]) if order.get("order_number") else None
    assignment = parse_assignment_attribute(order.get("note_attributes"))
    session_id = str(assignment.get("sessionId") or f"order:{order_id}")
    assigned_product = normalize_product_id(assignment.get("productId"))
    assigned_case = _assignment_case(assignment.get("variant"))

    result = OrderIngestResult(order_id=order_id)
    for line in order_lines(order.get("line_items")):
        key = order_line_key(
            order_id=order_id, product_id=line.product_id, variant_id=line.variant_id
        )
        if _enrich_reported_purchase(
            session, dedup_key=key, line=line, order_number=order_number
        ):
            result.enriched += 1
            continue
        hint = assigned_case if assigned_product in (None, line.product_id) else None
        ingested = ingest_event(
            session,
            session_id=session_id,
            event_type="PURCHASE",
            product_id=line.product_id,
            variant_id=line.variant_id,
            revenue=line.revenue,
            quantity=line.quantity,
            client_case=hint,
            shop=shop,
            meta={
                "order_id": order_id,
                "order_number": order_number,
                "source": "webhook",
                "assignment_test_id": assignment.get("testId"),
            },
            now=now,
            dedup_key=key,
        )
        result.events.append(ingested)
        if not ingested.deduplicated:
            result.recorded += 1
        if ingested.experiment_id:
            result.attributed += 1

    log(
        "ingestion",
        "order paid",
        order_id=order_id,
        shop=shop,
        recorded=result.recorded,
        enriched=result.enriched,
        attributed=result.attributed,
    )
    return result
