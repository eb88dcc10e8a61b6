"""Read paths over snapshots and products.

Every function opens its own read-only session scope, converts ORM rows to
pydantic models before the session closes, and never returns partial data.
"""
from datetime import date, datetime, time, timezone
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import selectinload

from app.db.session import StoreContext
from app.exceptions import NotFoundError, ValidationError
from app.models.db_models import PageSnapshot, Product
from app.models.schemas import (
    HistoryFilters,
    HistoryPage,
    PageSnapshotOut,
    ProductOut,
    SearchFilters,
    SearchPage,
)

LATEST_LIMIT_CAP = 100
HISTORY_PER_PAGE = 10
SEARCH_PER_PAGE = 20

_NEWEST_FIRST = (PageSnapshot.created_at.desc(), PageSnapshot.id.desc())


def parse_timestamp(value: Optional[str], end_of_day: bool = False) -> Optional[datetime]:
    """Lenient ISO 8601 / RFC 3339 parsing; garbage becomes ``None``.

    Naive values are taken as UTC. A bare date means the start of that day,
    or its last microsecond when ``end_of_day`` is set.
    """
    if not value or not value.strip():
        return None
    value = value.strip()
    try:
        day = date.fromisoformat(value)
    except ValueError:
        day = None
    if day is not None:
        return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _page_bounds(page: int, per_page: int, default_per_page: int):
    page = page if page and page >= 1 else 1
    per_page = per_page if per_page and per_page >= 1 else default_per_page
    return page, per_page, (page - 1) * per_page


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def get_page_snapshot(ctx: StoreContext, snapshot_id: str,
                      timeout: Optional[float] = None) -> PageSnapshotOut:
    with ctx.session_scope(timeout, read_only=True) as s:
        snap = s.scalars(
            select(PageSnapshot)
            .where(PageSnapshot.id == snapshot_id)
            .options(selectinload(PageSnapshot.products))
        ).first()
        if snap is None:
            raise NotFoundError(f"Page data {snapshot_id} not found")
        return PageSnapshotOut.model_validate(snap)


def list_latest_by_url(ctx: StoreContext, url: str, limit: int = 1,
                       timeout: Optional[float] = None) -> List[PageSnapshotOut]:
    """Up to ``limit`` most recent snapshots of ``url``, newest first."""
    limit = min(max(limit, 1), LATEST_LIMIT_CAP)
    with ctx.session_scope(timeout, read_only=True) as s:
        rows = s.scalars(
            select(PageSnapshot)
            .where(PageSnapshot.url == url)
            .options(selectinload(PageSnapshot.products))
            .order_by(*_NEWEST_FIRST)
            .limit(limit)
        ).all()
        if not rows:
            raise NotFoundError(f"No page data for {url}")
        return [PageSnapshotOut.model_validate(r) for r in rows]


def get_latest_by_url(ctx: StoreContext, url: str,
                      timeout: Optional[float] = None) -> PageSnapshotOut:
    return list_latest_by_url(ctx, url, 1, timeout=timeout)[0]


def get_history(ctx: StoreContext, url: str, page: int = 1, per_page: int = HISTORY_PER_PAGE,
                filters: Optional[HistoryFilters] = None,
                timeout: Optional[float] = None) -> HistoryPage:
    filters = filters or HistoryFilters()
    page, per_page, offset = _page_bounds(page, per_page, HISTORY_PER_PAGE)

    conditions = [PageSnapshot.url == url]
    if filters.source:
        # EXISTS rather than JOIN so a snapshot with several matching
        # products is still one row
        conditions.append(PageSnapshot.products.any(Product.source == filters.source))
    date_from = parse_timestamp(filters.date_from)
    if date_from is not None:
        conditions.append(PageSnapshot.created_at >= date_from)
    date_to = parse_timestamp(filters.date_to, end_of_day=True)
    if date_to is not None:
        conditions.append(PageSnapshot.created_at <= date_to)
    if filters.success_only:
        conditions.append(PageSnapshot.success.is_(True))

    with ctx.session_scope(timeout, read_only=True) as s:
        total = s.scalar(select(func.count(PageSnapshot.id)).where(*conditions))
        rows = s.scalars(
            select(PageSnapshot)
            .where(*conditions)
            .options(selectinload(PageSnapshot.products))
            .order_by(*_NEWEST_FIRST)
            .offset(offset)
            .limit(per_page)
        ).all()
        items = [PageSnapshotOut.model_validate(r) for r in rows]
    return HistoryPage(url=url, items=items, total=total or 0, page=page,
                       per_page=per_page, filters=filters.model_copy(update={"url": url}))


def search_products(ctx: StoreContext, query: str, page: int = 1,
                    per_page: int = SEARCH_PER_PAGE,
                    filters: Optional[SearchFilters] = None,
                    timeout: Optional[float] = None) -> SearchPage:
    filters = filters or SearchFilters()
    page, per_page, offset = _page_bounds(page, per_page, SEARCH_PER_PAGE)

    conditions = []
    if query:
        pattern = f"%{_escape_like(query.lower())}%"
        conditions.append(or_(
            func.lower(Product.name).like(pattern, escape="\\"),
            func.lower(Product.element_text).like(pattern, escape="\\"),
        ))
    # 0 on either side means "no bound"
    if filters.min_price > 0:
        conditions.append(Product.price >= filters.min_price)
    if filters.max_price > 0:
        conditions.append(Product.price <= filters.max_price)
    if filters.source:
        conditions.append(Product.source == filters.source)
    if filters.with_discount:
        conditions.append(Product.discount.isnot(None))
        conditions.append(Product.discount > 0)

    with ctx.session_scope(timeout, read_only=True) as s:
        total = s.scalar(select(func.count(Product.id)).where(*conditions))
        rows = s.scalars(
            select(Product)
            .where(*conditions)
            .order_by(Product.created_at.desc(), Product.id.desc())
            .offset(offset)
            .limit(per_page)
        ).all()
        items = [ProductOut.model_validate(r) for r in rows]
    return SearchPage(query=query, items=items, total=total or 0, page=page,
                      per_page=per_page, filters=filters)


def get_product(ctx: StoreContext, product_id: Optional[str] = None,
                url: Optional[str] = None,
                timeout: Optional[float] = None) -> ProductOut:
    if not product_id and not url:
        raise ValidationError("ID or URL parameter is required")
    stmt = select(Product)
    stmt = stmt.where(Product.id == product_id) if product_id else stmt.where(Product.url == url)
    with ctx.session_scope(timeout, read_only=True) as s:
        product = s.scalars(stmt).first()
        if product is None:
            raise NotFoundError("Product not found")
        return ProductOut.model_validate(product)
