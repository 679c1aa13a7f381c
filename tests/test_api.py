from __future__ import annotations

import csv
import io
from datetime import UTC, datetime
from uuid import uuid4

ADMIN = {"X-Admin-Token": "admintest"}
CRON = {"Authorization": "Bearer cron-test"}

MEDIA_URLS = {
    "m_base_1": "https://cdn.shopify.com/s/files/b1.jpg",
    "m_base_2": "https://cdn.shopify.com/s/files/b2.jpg",
    "m_test_1": "https://cdn.shopify.com/s/files/t1.jpg",
    "m_test_2": "https://cdn.shopify.com/s/files/t2.jpg",
}


def _seed_catalog(row) -> None:
    from galleryswap_api.catalog import get_catalog_client

    get_catalog_client().upload(product_id=row.product_id, media_ids=list(MEDIA_URLS))


def _numeric(product_id: str) -> str:
    return product_id.rsplit("/", 1)[-1]


def test_health_ready_and_metrics(api_client) -> None:
    health = api_client.get("/api/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.headers.get("X-Request-Id")

    ready = api_client.get("/api/ready")
    assert ready.status_code == 200
    assert ready.json()["db"]["ok"] is True
    assert ready.json()["catalog_mode"] == "mock"

    metrics = api_client.get("/api/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "galleryswap_http_requests_total" in body
    assert "galleryswap_http_request_duration_seconds_bucket" in body
    assert "galleryswap_experiments_needing_attention" in body


def test_request_id_is_echoed(api_client) -> None:
    resp = api_client.get("/api/health", headers={"X-Request-Id": "req_fixed"})
    assert resp.headers["X-Request-Id"] == "req_fixed"


def test_rotation_run_requires_cron_auth(api_client) -> None:
    assert api_client.post("/api/rotation/run").status_code == 401
    wrong = api_client.post("/api/rotation/run", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401
    assert wrong.json()["detail"] == "unauthorized"

    for method in ("post", "get"):
        resp = getattr(api_client, method)("/api/rotation/run", headers=CRON)
        assert resp.status_code == 200
        body = resp.json()
        assert set(body) >= {"processed", "rotated", "failed", "skipped", "results"}


def test_admin_routes_require_token(api_client, make_experiment) -> None:
    row = make_experiment()
    resp = api_client.post(f"/api/experiments/{row.id}/pause")
    assert resp.status_code == 401
    resp = api_client.post(
        f"/api/experiments/{row.id}/pause", headers={"X-Admin-Token": "wrong"}
    )
    assert resp.status_code == 401


def test_override_rotates_and_records_history(api_client, make_experiment) -> None:
    row = make_experiment(media_urls=MEDIA_URLS)
    _seed_catalog(row)

    resp = api_client.post(
        "/api/rotation/override",
        headers=ADMIN,
        json={"experimentId": row.id, "forceCase": "TEST"},
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["status"] == "rotated"
    assert (body["from_case"], body["to_case"]) == ("BASE", "TEST")

    hist = api_client.get(f"/api/rotation/{row.id}/history", headers=ADMIN)
    assert hist.status_code == 200
    events = hist.json()
    assert len(events) == 1
    assert events[0]["triggered_by"] == "MANUAL"
    assert events[0]["success"] is True


def test_override_errors(api_client, make_experiment) -> None:
    missing = api_client.post(
        "/api/rotation/override",
        headers=ADMIN,
        json={"experimentId": f"exp_missing_{uuid4().hex[:6]}", "forceCase": "BASE"},
    )
    assert missing.status_code == 404

    bad_case = api_client.post(
        "/api/rotation/override",
        headers=ADMIN,
        json={"experimentId": "x", "forceCase": "OTHER"},
    )
    assert bad_case.status_code == 422

    # Media never uploaded to the catalog: the write is rejected.
    unseeded = make_experiment()
    failed = api_client.post(
        "/api/rotation/override",
        headers=ADMIN,
        json={"experimentId": unseeded.id, "forceCase": "TEST"},
    )
    assert failed.status_code == 502
    assert failed.json()["detail"]["error"] == "rotation_failed"

    done = make_experiment(status="COMPLETED", next_rotation_at=None)
    conflict = api_client.post(
        "/api/rotation/override",
        headers=ADMIN,
        json={"experimentId": done.id, "forceCase": "TEST"},
    )
    assert conflict.status_code == 409


def test_experiment_lifecycle_endpoints(api_client, make_experiment) -> None:
    row = make_experiment(current_case="TEST", media_urls=MEDIA_URLS)
    _seed_catalog(row)

    paused = api_client.post(f"/api/experiments/{row.id}/pause", headers=ADMIN)
    assert paused.status_code == 200
    assert paused.json()["status"] == "PAUSED"
    assert paused.json()["next_rotation_at"] is None

    again = api_client.post(f"/api/experiments/{row.id}/pause", headers=ADMIN)
    assert again.status_code == 409
    assert again.json()["detail"]["error"] == "invalid_transition"

    active = api_client.post(f"/api/experiments/{row.id}/activate", headers=ADMIN)
    assert active.status_code == 200
    assert active.json()["status"] == "ACTIVE"
    assert active.json()["next_rotation_at"] is not None

    completed = api_client.post(f"/api/experiments/{row.id}/complete", headers=ADMIN)
    assert completed.status_code == 200
    body = completed.json()
    assert body["experiment"]["status"] == "COMPLETED"
    assert body["experiment"]["current_case"] == "BASE"
    assert body["rotation"]["status"] == "rotated"

    assert api_client.post(f"/api/experiments/{row.id}/complete", headers=ADMIN).status_code == 409
    assert api_client.post("/api/experiments/exp_nope/activate", headers=ADMIN).status_code == 404


def test_active_case_resolves_urls_and_hero(api_client, make_experiment) -> None:
    row = make_experiment(
        current_case="TEST",
        media_urls=MEDIA_URLS,
        overrides=[("gid://shopify/ProductVariant/42", "m_base_1", "m_test_2")],
    )
    resp = api_client.get(
        f"/api/storefront/active-case/{_numeric(row.product_id)}",
        params={"variant_id": "42"},
    )
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"].startswith("public, max-age=")
    body = resp.json()
    assert body["productId"] == row.product_id
    assert body["experimentId"] == row.id
    assert body["observedCase"] == "TEST"
    assert body["galleryMediaUrls"] == [MEDIA_URLS["m_test_1"], MEDIA_URLS["m_test_2"]]
    assert body["heroMediaUrl"] == MEDIA_URLS["m_test_2"]


def test_active_case_without_experiment(api_client) -> None:
    resp = api_client.get("/api/storefront/active-case/987654321987")
    assert resp.status_code == 200
    body = resp.json()
    assert body["observedCase"] is None
    assert body["galleryMediaUrls"] == []
    assert body["productId"] == "gid://shopify/Product/987654321987"


def test_events_track_attributes_and_dedups(api_client, make_experiment) -> None:
    row = make_experiment(current_case="TEST")
    sid = f"session_{uuid4().hex[:8]}"
    payload = {
        "sessionId": sid,
        "eventType": "IMPRESSION",
        "productId": _numeric(row.product_id),
        "observedCase": "BASE",
        "meta": {"source": "page"},
    }

    first = api_client.post("/api/events/track", json=payload)
    assert first.status_code == 200, first.text
    assert first.json() == {"accepted": True, "observedCase": "TEST", "deduplicated": False}

    second = api_client.post("/api/events/track", json=payload)
    assert second.status_code == 200
    assert second.json()["deduplicated"] is True


def test_events_track_validation(api_client) -> None:
    base = {"sessionId": "session_v", "productId": "1"}
    negative = api_client.post(
        "/api/events/track", json={**base, "eventType": "PURCHASE", "revenue": -5}
    )
    assert negative.status_code == 422
    unknown = api_client.post("/api/events/track", json={**base, "eventType": "CLICK"})
    assert unknown.status_code == 422
    missing = api_client.post("/api/events/track", json={"eventType": "IMPRESSION"})
    assert missing.status_code == 422


def test_statistics_rollup_and_export(api_client, make_experiment) -> None:
    row = make_experiment(current_case="BASE")
    pid = _numeric(row.product_id)
    for event_type in ("IMPRESSION", "ADD_TO_CART"):
        resp = api_client.post(
            "/api/events/track",
            json={"sessionId": f"session_{uuid4().hex[:8]}", "eventType": event_type, "productId": pid},
        )
        assert resp.status_code == 200

    today = datetime.now(UTC).date().isoformat()
    assert api_client.post("/api/statistics/rollup", params={"date": today}).status_code == 401
    rollup = api_client.post("/api/statistics/rollup", params={"date": today}, headers=CRON)
    assert rollup.status_code == 200
    assert rollup.json()["date"] == today
    assert rollup.json()["experiments"] >= 1

    summary = api_client.get(f"/api/statistics/{row.id}", headers=ADMIN)
    assert summary.status_code == 200
    cases = summary.json()["cases"]
    assert cases["BASE"]["impressions"] == 1
    assert cases["BASE"]["add_to_carts"] == 1

    export = api_client.get(
        f"/api/statistics/{row.id}", params={"format": "csv"}, headers=ADMIN
    )
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert "attachment" in export.headers["content-disposition"]
    rows = list(csv.DictReader(io.StringIO(export.text)))
    assert {r["case"] for r in rows} == {"BASE", "TEST"}

    bad = api_client.get(
        f"/api/statistics/{row.id}",
        params={"start": "2026-02-02", "end": "2026-02-01"},
        headers=ADMIN,
    )
    assert bad.status_code == 400
    assert api_client.get("/api/statistics/exp_nope", headers=ADMIN).status_code == 404


def _signed(body: bytes, secret: str = "webhook-test") -> dict[str, str]:
    from galleryswap_api.routers.webhooks import webhook_signature

    return {
        "X-Shopify-Hmac-Sha256": webhook_signature(secret, body),
        "X-Shopify-Shop-Domain": "demo.myshopify.com",
        "Content-Type": "application/json",
    }


def test_orders_paid_webhook_verifies_and_records(api_client, make_experiment) -> None:
    import orjson

    row = make_experiment(current_case="TEST")
    order_id = f"{uuid4().int % 10**12}"
    body = orjson.dumps(
        {
            "id": order_id,
            "line_items": [
                {"product_id": _numeric(row.product_id), "variant_id": 3, "price": "20.00", "quantity": 1}
            ],
        }
    )
    url = "/api/webhooks/orders-paid"

    assert api_client.post(url, content=body).status_code == 401
    forged = api_client.post(url, content=body, headers=_signed(body, "other-secret"))
    assert forged.status_code == 401
    assert forged.json()["detail"] == "bad_signature"

    ok = api_client.post(url, content=body, headers=_signed(body))
    assert ok.status_code == 200, ok.text
    assert ok.json() == {
        "ok": True,
        "order_id": order_id,
        "recorded": 1,
        "enriched": 0,
        "attributed": 1,
    }

    # A storefront checkout report for the same line is folded into it.
    pixel = api_client.post(
        "/api/events/track",
        json={
            "sessionId": f"session_{uuid4().hex[:8]}",
            "eventType": "PURCHASE",
            "productId": _numeric(row.product_id),
            "variantId": "3",
            "meta": {"orderId": order_id},
        },
    )
    assert pixel.status_code == 200
    assert pixel.json()["deduplicated"] is True

    not_json = b"[1, 2"
    assert api_client.post(url, content=not_json, headers=_signed(not_json)).status_code == 400
    no_id = orjson.dumps({"line_items": []})
    assert api_client.post(url, content=no_id, headers=_signed(no_id)).status_code == 422
