from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import List, Optional, Dict, Any


class CamelModel(BaseModel):
    """camelCase on the wire (what the crawler sends), snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class PageInfo(CamelModel):
    # caller-owned summary; unknown keys are kept so the blob round-trips
    model_config = ConfigDict(extra="allow")

    has_structured_data: bool = False
    price_elements: int = 0
    product_elements: int = 0
    total_elements: int = 0


class Stats(CamelModel):
    model_config = ConfigDict(extra="allow")

    total_products: int = 0
    with_discount: int = 0
    with_weight: int = 0
    min_price: float = 0.0
    avg_price: float = 0.0
    max_price: float = 0.0


class ProductIn(CamelModel):
    url: str
    name: str
    price: float = Field(..., ge=0)
    old_price: Optional[float] = None
    discount: Optional[float] = None
    weight: Optional[str] = None
    unit: str = ""
    source: str = ""
    element_text: str = ""
    image: str = ""
    page_title: str = ""
    page_url: str = ""

    @field_validator("weight", mode="before")
    @classmethod
    def weight_as_text(cls, v):
        # crawlers send 0.5, "0.5", or "500 g"; keep whatever arrives as text
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class PageSnapshotIn(CamelModel):
    id: Optional[str] = None
    url: str = ""
    page_title: str = ""
    page_info: PageInfo = Field(default_factory=PageInfo)
    products: List[ProductIn] = []
    stats: Stats = Field(default_factory=Stats)
    success: bool = True
    timestamp: str = ""
    user_agent: str = ""


class IngestRequest(CamelModel):
    page_data: PageSnapshotIn


class IngestResult(CamelModel):
    id: str
    created_at: datetime


class IngestResponse(CamelModel):
    success: bool = True
    message: str = "Page data saved successfully"
    id: str
    created_at: datetime


class ProductOut(CamelModel):
    id: str
    url: str
    name: str
    price: float
    old_price: Optional[float] = None
    discount: Optional[float] = None
    weight: Optional[str] = None
    unit: str = ""
    source: str = ""
    element_text: str = ""
    image: str = ""
    page_title: str = ""
    page_url: str = ""
    created_at: datetime
    updated_at: datetime


class PageSnapshotOut(CamelModel):
    id: str
    url: str
    page_title: str = ""
    page_info: PageInfo
    stats: Stats
    success: bool
    timestamp: str = ""
    user_agent: str = ""
    created_at: datetime
    updated_at: datetime
    products: List[ProductOut] = []


class SnapshotSummary(CamelModel):
    id: str
    url: str
    page_title: str = ""
    success: bool
    stats: Stats
    created_at: datetime


class HistoryFilters(CamelModel):
    url: Optional[str] = None
    source: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    success_only: bool = Field(False, serialization_alias="success")


class HistoryPage(CamelModel):
    url: str
    items: List[PageSnapshotOut] = Field(serialization_alias="data")
    total: int
    page: int
    per_page: int
    filters: HistoryFilters


class SearchFilters(CamelModel):
    min_price: float = 0.0  # 0 means unbounded
    max_price: float = 0.0  # 0 means unbounded
    source: Optional[str] = None
    with_discount: bool = False


class SearchPage(CamelModel):
    query: str
    items: List[ProductOut] = Field(serialization_alias="results")
    total: int
    page: int
    per_page: int
    filters: SearchFilters


class URLStats(CamelModel):
    url: str
    period: Optional[str] = None
    since: datetime
    total_scrapes: int = Field(0, serialization_alias="totalParsings")
    successful_scrapes: int = Field(0, serialization_alias="successfulParsings")
    total_products: int = 0
    unique_products: int = 0
    min_price: float = 0.0
    avg_price: float = 0.0
    max_price: float = 0.0
    first_scraped: Optional[datetime] = Field(None, serialization_alias="firstParsed")
    last_scraped: Optional[datetime] = Field(None, serialization_alias="lastParsed")
    last_stats: Optional[Stats] = None


class GlobalOverview(CamelModel):
    total_scrapes: int = Field(0, serialization_alias="totalParsings")
    successful_scrapes: int = Field(0, serialization_alias="successfulParsings")
    total_products: int = 0
    unique_urls: int = 0
    last_24_hours: int = 0
    last_7_days: int = 0
    last_30_days: int = 0
    min_price: float = 0.0
    avg_price: float = 0.0
    max_price: float = 0.0


class SourceSummary(CamelModel):
    source: str
    count: int
    avg_price: float = Field(0.0, serialization_alias="avg_price")


class GlobalStats(CamelModel):
    overview: GlobalOverview
    top_sources: List[SourceSummary] = []
    recent_scrapes: List[SnapshotSummary] = Field([], serialization_alias="recentParsings")


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[Dict[str, Any]] = None
