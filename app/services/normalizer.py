import re
from datetime import datetime, timezone
from typing import Optional

import tldextract

from app.models.schemas import PageSnapshotIn

# bundled public suffix snapshot only: no network, no cache directory
_extract = tldextract.TLDExtract(cache_dir=None, suffix_list_urls=())

def clean_text(s: Optional[str]) -> Optional[str]:
    if not s:
        return s
    s = re.sub(r"\s+", " ", s).strip()
    return s

def source_from_url(url: str) -> str:
    """Registered domain of ``url`` ("shop.example.com/p" -> "example.com")."""
    ext = _extract(url)
    return ".".join(x for x in [ext.domain, ext.suffix] if x)

def apply_ingest_defaults(snapshot: PageSnapshotIn, user_agent: str = "",
                          now: Optional[datetime] = None) -> PageSnapshotIn:
    """Fill what the crawler may leave out before the snapshot is stored."""
    if not snapshot.timestamp:
        now = now or datetime.now(timezone.utc)
        snapshot.timestamp = now.isoformat(timespec="seconds").replace("+00:00", "Z")
    if not snapshot.user_agent:
        snapshot.user_agent = user_agent or ""
    for product in snapshot.products:
        if not product.page_title:
            product.page_title = snapshot.page_title
        if not product.page_url:
            product.page_url = snapshot.url
        if not product.source and product.url:
            product.source = source_from_url(product.url)
    return snapshot
