import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    TypeDecorator,
    func,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on write, so naive values read back are re-tagged
    as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


# Numeric(10, 2) in the database, plain floats in Python
Money = Numeric(10, 2, asdecimal=False)


class Base(DeclarativeBase):
    pass


class PageSnapshot(Base):
    __tablename__ = "page_snapshots"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    url: Mapped[str] = mapped_column(Text, nullable=False)  # not unique: every scrape is kept
    page_title: Mapped[str] = mapped_column(Text, default="")
    page_info: Mapped[dict] = mapped_column(JSON, default=dict)  # stored verbatim
    stats: Mapped[dict] = mapped_column(JSON, default=dict)  # stored verbatim
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    timestamp: Mapped[str] = mapped_column(Text, default="")
    user_agent: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    products: Mapped[List["Product"]] = relationship(
        back_populates="snapshot",
        passive_deletes=True,
        order_by="Product.created_at",
    )


class Product(Base):
    __tablename__ = "products"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    url: Mapped[str] = mapped_column(Text, nullable=False, unique=True)  # dedup key
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    price: Mapped[float] = mapped_column(Money, nullable=False)
    old_price: Mapped[Optional[float]] = mapped_column(Money, nullable=True)
    discount: Mapped[Optional[float]] = mapped_column(Money, nullable=True)
    weight: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # free text
    unit: Mapped[str] = mapped_column(String(50), default="")
    source: Mapped[str] = mapped_column(String(100), nullable=False, default="", index=True)
    element_text: Mapped[str] = mapped_column(Text, default="")
    image: Mapped[str] = mapped_column(Text, default="")
    page_title: Mapped[str] = mapped_column(Text, default="")
    page_url: Mapped[str] = mapped_column(Text, default="", index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    page_snapshot_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("page_snapshots.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=True,
    )

    snapshot: Mapped[Optional[PageSnapshot]] = relationship(back_populates="products")


# Indexes backing the history, search and stats queries
Index("idx_page_snapshots_url_created", PageSnapshot.url, PageSnapshot.created_at.desc())
Index(
    "idx_page_snapshots_success",
    PageSnapshot.success,
    postgresql_where=PageSnapshot.success.is_(True),
    sqlite_where=PageSnapshot.success.is_(True),
)
Index("idx_products_price", Product.price)
Index("idx_products_name_lower", func.lower(Product.name))
Index("idx_products_created_at", Product.created_at.desc())
Index("idx_products_page_snapshot_id", Product.page_snapshot_id)
Index(
    "idx_products_discount",
    Product.discount,
    postgresql_where=Product.discount.isnot(None),
    sqlite_where=Product.discount.isnot(None),
)
