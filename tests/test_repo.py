from __future__ import annotations

import time

import pytest
from sqlalchemy import func, select

from app.db import repo
from app.exceptions import ConflictError, DeadlineExceeded, NotFoundError, ValidationError
from app.models.db_models import PageSnapshot, Product
from tests.conftest import make_snapshot, product


def _count(context, model) -> int:
    with context.session_scope() as s:
        return s.scalar(select(func.count()).select_from(model))


def test_ingest_without_products_is_rejected(store, context) -> None:
    with pytest.raises(ValidationError):
        store.ingest(make_snapshot(products=[]))
    assert _count(context, PageSnapshot) == 0
    assert _count(context, Product) == 0


def test_ingest_requires_page_and_product_urls(store, context) -> None:
    with pytest.raises(ValidationError):
        store.ingest(make_snapshot(url="  "))
    with pytest.raises(ValidationError):
        store.ingest(make_snapshot(products=[product("", 1.0)]))
    assert _count(context, PageSnapshot) == 0


def test_ingest_returns_id_and_creation_time(store) -> None:
    result = store.ingest(make_snapshot())
    assert result.id
    assert result.created_at.tzinfo is not None


def test_recurring_product_url_updates_row_in_place(store, context) -> None:
    first = store.ingest(make_snapshot(products=[product("https://shop.example/p#1", 9.99, "A", discount=1.5)]))
    original = store.get_by_id(first.id).products[0]

    second = store.ingest(make_snapshot(products=[product("https://shop.example/p#1", 7.99, "A v2")]))

    assert _count(context, Product) == 1
    latest = store.get_latest_by_url("https://shop.example/p")
    assert latest.id == second.id
    assert len(latest.products) == 1
    updated = latest.products[0]
    assert updated.id == original.id
    assert updated.price == 7.99
    assert updated.name == "A v2"
    assert updated.discount is None
    assert updated.created_at == original.created_at
    # ownership moved to the newer snapshot
    assert store.get_by_id(first.id).products == []


def test_duplicate_url_inside_one_snapshot_keeps_last_values(store, context) -> None:
    store.ingest(make_snapshot(products=[
        product("https://shop.example/p#1", 5.0, "first"),
        product("https://shop.example/p#1", 6.0, "second"),
    ]))
    assert _count(context, Product) == 1
    assert store.get_product(url="https://shop.example/p#1").name == "second"


def test_failure_midway_leaves_nothing_behind(store, context, monkeypatch) -> None:
    real_upsert = repo._upsert_product
    calls = []

    def failing_upsert(session, snapshot_id, item):
        calls.append(item.url)
        if len(calls) == 2:
            raise RuntimeError("disk on fire")
        return real_upsert(session, snapshot_id, item)

    monkeypatch.setattr(repo, "_upsert_product", failing_upsert)
    snapshot = make_snapshot(products=[
        product("https://shop.example/p#1", 1.0),
        product("https://shop.example/p#2", 2.0),
    ])
    with pytest.raises(RuntimeError):
        store.ingest(snapshot)

    assert _count(context, PageSnapshot) == 0
    assert _count(context, Product) == 0


def test_lost_insert_race_becomes_update(store, context, monkeypatch) -> None:
    store.ingest(make_snapshot(products=[product("https://shop.example/p#1", 9.99)]))
    before = store.get_product(url="https://shop.example/p#1")

    real_find = repo._find_product
    lookups = []

    def stale_find(session, url):
        # first lookup misses, as if the other writer committed just after it
        lookups.append(url)
        if len(lookups) == 1:
            return None
        return real_find(session, url)

    monkeypatch.setattr(repo, "_find_product", stale_find)
    second = store.ingest(make_snapshot(products=[product("https://shop.example/p#1", 4.5)]))

    assert len(lookups) == 2
    assert _count(context, Product) == 1
    after = store.get_product(url="https://shop.example/p#1")
    assert after.id == before.id
    assert after.price == 4.5
    assert [p.id for p in store.get_by_id(second.id).products] == [before.id]


def test_client_supplied_id_collision_is_conflict(store, context) -> None:
    store.ingest(make_snapshot(id="snap-1"))
    with pytest.raises(ConflictError):
        store.ingest(make_snapshot(id="snap-1", products=[product("https://shop.example/other", 1.0)]))
    assert _count(context, PageSnapshot) == 1
    assert _count(context, Product) == 1


def test_expired_deadline_writes_nothing(store, context) -> None:
    with pytest.raises(DeadlineExceeded):
        store.ingest(make_snapshot(), timeout=0)
    assert _count(context, PageSnapshot) == 0


def test_deadline_expiring_mid_ingest_rolls_back(store, context, monkeypatch) -> None:
    real_upsert = repo._upsert_product

    def slow_upsert(session, snapshot_id, item):
        result = real_upsert(session, snapshot_id, item)
        time.sleep(0.3)
        return result

    monkeypatch.setattr(repo, "_upsert_product", slow_upsert)
    snapshot = make_snapshot(products=[
        product("https://shop.example/p#1", 1.0),
        product("https://shop.example/p#2", 2.0),
    ])
    with pytest.raises(DeadlineExceeded):
        store.ingest(snapshot, timeout=0.1)

    assert _count(context, PageSnapshot) == 0
    assert _count(context, Product) == 0


def test_blobs_round_trip_verbatim(store) -> None:
    page_info = {"hasStructuredData": True, "priceElements": 3, "productElements": 2,
                 "totalElements": 140, "schemaOrgTypes": ["Product"]}
    stats = {"totalProducts": 2, "withDiscount": 1, "withWeight": 0,
             "minPrice": 1.5, "avgPrice": 2.25, "maxPrice": 3.0}
    result = store.ingest(make_snapshot(pageInfo=page_info, stats=stats))

    stored = store.get_by_id(result.id)
    assert stored.page_info.model_dump(by_alias=True) == page_info
    assert stored.stats.model_dump(by_alias=True) == stats


def test_numeric_weight_is_kept_as_text(store) -> None:
    store.ingest(make_snapshot(products=[
        product("https://shop.example/p#1", 1.0, weight=0.5),
        product("https://shop.example/p#2", 1.0, weight="500 g"),
    ]))
    assert store.get_product(url="https://shop.example/p#1").weight == "0.5"
    assert store.get_product(url="https://shop.example/p#2").weight == "500 g"


def test_delete_removes_snapshot_and_owned_products_only(store, context) -> None:
    old = store.ingest(make_snapshot(products=[
        product("https://shop.example/p#1", 1.0),
        product("https://shop.example/p#2", 2.0),
    ]))
    moved_id = store.get_product(url="https://shop.example/p#2").id
    # p#2 reappears in a newer scrape and now belongs to it
    new = store.ingest(make_snapshot(products=[product("https://shop.example/p#2", 2.5)]))

    store.delete_snapshot(old.id)

    with pytest.raises(NotFoundError):
        store.get_by_id(old.id)
    with pytest.raises(NotFoundError):
        store.get_product(url="https://shop.example/p#1")
    survivor = store.get_product(url="https://shop.example/p#2")
    assert survivor.id == moved_id
    assert [p.id for p in store.get_by_id(new.id).products] == [moved_id]


def test_delete_unknown_snapshot(store) -> None:
    with pytest.raises(NotFoundError):
        store.delete_snapshot("does-not-exist")
