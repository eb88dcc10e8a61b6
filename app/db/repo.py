import logging
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db.session import StoreContext, check_deadline
from app.exceptions import NotFoundError, ValidationError
from app.models.db_models import PageSnapshot, Product
from app.models.schemas import IngestResult, PageSnapshotIn, ProductIn

logger = logging.getLogger(__name__)

# Columns copied from the incoming product on both insert and update
PRODUCT_FIELDS = (
    "name", "price", "old_price", "discount", "weight", "unit", "source",
    "element_text", "image", "page_title", "page_url",
)


def _validate(snapshot: PageSnapshotIn):
    if not snapshot.url.strip():
        raise ValidationError("URL is required")
    if not snapshot.products:
        raise ValidationError("At least one product is required")
    for i, product in enumerate(snapshot.products):
        if not product.url.strip():
            raise ValidationError(f"products[{i}]: URL is required")


def _find_product(session: Session, url: str) -> Optional[Product]:
    return session.scalars(select(Product).where(Product.url == url)).first()


def _upsert_product(session: Session, snapshot_id: str, item: ProductIn) -> Product:
    values = {name: getattr(item, name) for name in PRODUCT_FIELDS}
    existing = _find_product(session, item.url)
    if existing is None:
        try:
            with session.begin_nested():
                product = Product(url=item.url, page_snapshot_id=snapshot_id, **values)
                session.add(product)
            return product
        except IntegrityError:
            # another ingest inserted this URL after our lookup; take its row
            existing = _find_product(session, item.url)
            if existing is None:
                raise
            logger.warning("Concurrent insert of product %s, updating instead", item.url)
    for name, value in values.items():
        setattr(existing, name, value)
    existing.page_snapshot_id = snapshot_id
    session.flush()
    return existing


def save_page_snapshot(ctx: StoreContext, snapshot: PageSnapshotIn,
                       timeout: Optional[float] = None) -> IngestResult:
    """Store one scrape and merge its products by URL, all or nothing."""
    _validate(snapshot)
    with ctx.session_scope(timeout) as s:
        snap = PageSnapshot(
            url=snapshot.url,
            page_title=snapshot.page_title,
            page_info=snapshot.page_info.model_dump(by_alias=True),
            stats=snapshot.stats.model_dump(by_alias=True),
            success=snapshot.success,
            timestamp=snapshot.timestamp,
            user_agent=snapshot.user_agent,
        )
        if snapshot.id:
            snap.id = snapshot.id
        s.add(snap)
        s.flush()
        for item in snapshot.products:
            check_deadline(s)
            _upsert_product(s, snap.id, item)
        result = IngestResult(id=snap.id, created_at=snap.created_at)
    logger.info("Saved snapshot %s for %s with %d products",
                result.id, snapshot.url, len(snapshot.products))
    return result


def delete_page_snapshot(ctx: StoreContext, snapshot_id: str,
                         timeout: Optional[float] = None) -> None:
    """Delete a snapshot and the products it currently owns."""
    with ctx.session_scope(timeout) as s:
        removed = s.execute(
            delete(Product).where(Product.page_snapshot_id == snapshot_id)
        ).rowcount
        if s.execute(delete(PageSnapshot).where(PageSnapshot.id == snapshot_id)).rowcount == 0:
            raise NotFoundError(f"Page data {snapshot_id} not found")
    logger.info("Deleted snapshot %s and %d products", snapshot_id, removed)
