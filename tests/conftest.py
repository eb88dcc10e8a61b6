from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from app.db.session import StoreContext
from app.models.schemas import PageSnapshotIn
from app.services.scrape_store import ScrapeStore


@pytest.fixture
def context(tmp_path: Path):
    ctx = StoreContext.from_url(f"sqlite:///{tmp_path / 'store.db'}")
    ctx.init_schema()
    yield ctx
    ctx.dispose()


@pytest.fixture
def store(context: StoreContext) -> ScrapeStore:
    return ScrapeStore(context)


def product(url: str, price: float, name: str = "Item", **extra: Any) -> Dict[str, Any]:
    return {"url": url, "price": price, "name": name, **extra}


def make_snapshot(url: str = "https://shop.example/p",
                  products: Optional[List[Dict[str, Any]]] = None,
                  **extra: Any) -> PageSnapshotIn:
    if products is None:
        products = [product(f"{url}#1", 9.99, "A")]
    payload = {"url": url, "pageTitle": "Shop page", "products": products, **extra}
    return PageSnapshotIn.model_validate(payload)


@pytest.fixture
def snapshot_factory():
    return make_snapshot


@pytest.fixture
def product_factory():
    return product
