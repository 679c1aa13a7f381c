from __future__ import annotations

import os
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import uuid4

import pytest


_TEST_ROOT = Path(tempfile.mkdtemp(prefix="galleryswap_test_"))
_DB_PATH = _TEST_ROOT / "galleryswap_test.db"

os.environ["GALLERYSWAP_DB_URL"] = f"sqlite:///{_DB_PATH}"
os.environ["GALLERYSWAP_CATALOG_MODE"] = "mock"
os.environ["GALLERYSWAP_CATALOG_BACKOFF_SEC"] = "0"
os.environ["GALLERYSWAP_STOREFRONT_BACKOFF_SEC"] = "0"
os.environ["GALLERYSWAP_CRON_SECRET"] = "cron-test"
os.environ["GALLERYSWAP_ADMIN_TOKEN"] = "admintest"
os.environ["GALLERYSWAP_WEBHOOK_SECRET"] = "webhook-test"


@pytest.fixture(scope="session")
def db_schema() -> None:
    from galleryswap_api import models  # noqa: F401
    from galleryswap_api.db import Base, engine

    Base.metadata.create_all(engine)


@pytest.fixture(autouse=True)
def _reset_process_state():
    from galleryswap_api.catalog import reset_catalog_client_cache
    from galleryswap_api.metrics import reset_http_metrics
    from galleryswap_api.rate_limit import reset_rate_limits

    reset_rate_limits()
    reset_http_metrics()
    reset_catalog_client_cache()
    yield


@pytest.fixture()
def db_session(db_schema):
    from galleryswap_api.db import SessionLocal

    with SessionLocal() as session:
        yield session


@pytest.fixture()
def api_client(db_schema):
    from fastapi.testclient import TestClient

    from galleryswap_api.main import app

    return TestClient(app)


@pytest.fixture()
def make_experiment(db_session):
    """Insert an experiment with its own product id; returns the row."""
    from galleryswap_api.models import Experiment, VariantOverride

    def _make(
        *,
        status: str = "ACTIVE",
        current_case: str = "BASE",
        interval_sec: int = 3600,
        next_rotation_at: datetime | None = None,
        last_rotated_at: datetime | None = None,
        base_media: tuple[str, ...] = ("m_base_1", "m_base_2"),
        test_media: tuple[str, ...] = ("m_test_1", "m_test_2"),
        media_urls: dict[str, str] | None = None,
        overrides: list[tuple[str, str | None, str | None]] | None = None,
        variant_scope: str = "PRODUCT",
    ) -> Experiment:
        import orjson

        now = datetime.now(UTC)
        suffix = uuid4().hex[:10]
        row = Experiment(
            id=f"exp_{suffix}",
            product_id=f"gid://shopify/Product/{int(suffix, 16) % 10**9}",
            name=f"test {suffix}",
            status=status,
            current_case=current_case,
            variant_scope=variant_scope,
            rotation_interval_sec=interval_sec,
            last_rotated_at=last_rotated_at,
            next_rotation_at=next_rotation_at
            if next_rotation_at is not None or status != "ACTIVE"
            else now + timedelta(seconds=interval_sec),
            base_media_json=orjson.dumps(list(base_media)).decode("utf-8"),
            test_media_json=orjson.dumps(list(test_media)).decode("utf-8"),
            media_urls_json=orjson.dumps(media_urls or {}).decode("utf-8"),
            created_at=now,
            updated_at=now,
        )
        for variant_id, base_hero, test_hero in overrides or []:
            row.variant_overrides.append(
                VariantOverride(
                    id=f"vo_{uuid4().hex[:12]}",
                    variant_id=variant_id,
                    base_hero_media_id=base_hero,
                    test_hero_media_id=test_hero,
                    created_at=now,
                )
            )
        db_session.add(row)
        db_session.commit()
        return row

    return _make
