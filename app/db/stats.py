"""Statistics rollups, computed on read.

There is no materialized aggregate table; every call scans the indexed
rows it needs. Averages and extrema over an empty set come back as 0.0.
"""
import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.db.session import StoreContext
from app.models.db_models import PageSnapshot, Product
from app.models.schemas import (
    GlobalOverview,
    GlobalStats,
    SnapshotSummary,
    SourceSummary,
    Stats,
    URLStats,
)

DEFAULT_WINDOW = timedelta(days=30)
TOP_SOURCES = 10
RECENT_SCRAPES = 5


def _months_back(now: datetime, months: int) -> datetime:
    year, month = divmod(now.year * 12 + now.month - 1 - months, 12)
    month += 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def window_start(period: Optional[str], now: datetime) -> datetime:
    """Start of the look-back window for ``period``; unknown tokens mean 30 days."""
    if period == "day":
        return now - timedelta(days=1)
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        return _months_back(now, 1)
    if period == "year":
        return _months_back(now, 12)
    return now - DEFAULT_WINDOW


def _price_rollup(session: Session, stmt):
    """(min, avg, max) of ``stmt``'s products, 0.0 for an empty set."""
    row = session.execute(
        stmt.with_only_columns(
            func.coalesce(func.min(Product.price), 0),
            func.coalesce(func.avg(Product.price), 0),
            func.coalesce(func.max(Product.price), 0),
        )
    ).one()
    return tuple(float(v) for v in row)


def get_url_statistics(ctx: StoreContext, url: str, period: Optional[str] = None,
                       now: Optional[datetime] = None,
                       timeout: Optional[float] = None) -> URLStats:
    now = now or datetime.now(timezone.utc)
    since = window_start(period, now)
    in_window = (PageSnapshot.url == url, PageSnapshot.created_at >= since)
    owned = (
        select(Product)
        .join(PageSnapshot, Product.page_snapshot_id == PageSnapshot.id)
        .where(*in_window)
    )

    with ctx.session_scope(timeout, read_only=True) as s:
        total, successful, first, last = s.execute(
            select(
                func.count(PageSnapshot.id),
                func.count(PageSnapshot.id).filter(PageSnapshot.success.is_(True)),
                func.min(PageSnapshot.created_at),
                func.max(PageSnapshot.created_at),
            ).where(*in_window)
        ).one()

        last_stats = None
        if total:
            latest = s.scalars(
                select(PageSnapshot)
                .where(*in_window)
                .order_by(PageSnapshot.created_at.desc(), PageSnapshot.id.desc())
                .limit(1)
            ).first()
            last_stats = Stats.model_validate(latest.stats)
            last = latest.created_at

        product_count, unique_products = s.execute(
            owned.with_only_columns(
                func.count(Product.id), func.count(func.distinct(Product.url))
            )
        ).one()
        min_price, avg_price, max_price = _price_rollup(s, owned)

    return URLStats(
        url=url,
        period=period,
        since=since,
        total_scrapes=total,
        successful_scrapes=successful,
        total_products=product_count,
        unique_products=unique_products,
        min_price=min_price,
        avg_price=avg_price,
        max_price=max_price,
        first_scraped=first,
        last_scraped=last,
        last_stats=last_stats,
    )


def get_global_statistics(ctx: StoreContext, now: Optional[datetime] = None,
                          timeout: Optional[float] = None) -> GlobalStats:
    now = now or datetime.now(timezone.utc)

    def scrapes_since(delta: timedelta):
        return func.count(PageSnapshot.id).filter(PageSnapshot.created_at >= now - delta)

    with ctx.session_scope(timeout, read_only=True) as s:
        row = s.execute(
            select(
                func.count(PageSnapshot.id),
                func.count(PageSnapshot.id).filter(PageSnapshot.success.is_(True)),
                func.count(func.distinct(PageSnapshot.url)),
                scrapes_since(timedelta(hours=24)),
                scrapes_since(timedelta(days=7)),
                scrapes_since(timedelta(days=30)),
            )
        ).one()
        total_products = s.scalar(select(func.count(Product.id))) or 0
        min_price, avg_price, max_price = _price_rollup(s, select(Product))

        product_count = func.count(Product.id).label("count")
        top_sources = [
            SourceSummary(source=source, count=count, avg_price=float(avg or 0))
            for source, count, avg in s.execute(
                select(Product.source, product_count, func.avg(Product.price))
                .group_by(Product.source)
                .order_by(product_count.desc(), Product.source)
                .limit(TOP_SOURCES)
            )
        ]
        recent = [
            SnapshotSummary.model_validate(snap)
            for snap in s.scalars(
                select(PageSnapshot)
                .order_by(PageSnapshot.created_at.desc(), PageSnapshot.id.desc())
                .limit(RECENT_SCRAPES)
            )
        ]

    overview = GlobalOverview(
        total_scrapes=row[0],
        successful_scrapes=row[1],
        unique_urls=row[2],
        last_24_hours=row[3],
        last_7_days=row[4],
        last_30_days=row[5],
        total_products=total_products,
        min_price=min_price,
        avg_price=avg_price,
        max_price=max_price,
    )
    return GlobalStats(overview=overview, top_sources=top_sources, recent_scrapes=recent)
