from typing import List, Optional, Union

from app.db import queries, repo, stats
from app.db.session import StoreContext
from app.models.schemas import (
    GlobalStats,
    HistoryFilters,
    HistoryPage,
    IngestResult,
    PageSnapshotIn,
    PageSnapshotOut,
    ProductOut,
    SearchFilters,
    SearchPage,
    URLStats,
)


class ScrapeStore:
    """The operations the transport layer consumes, bound to one store context.

    Stateless between calls; every method borrows a session for its own
    duration and accepts an optional ``timeout`` in seconds.
    """

    def __init__(self, ctx: StoreContext):
        self.ctx = ctx

    def ingest(self, snapshot: PageSnapshotIn, timeout: Optional[float] = None) -> IngestResult:
        return repo.save_page_snapshot(self.ctx, snapshot, timeout=timeout)

    def get_by_id(self, snapshot_id: str, timeout: Optional[float] = None) -> PageSnapshotOut:
        return queries.get_page_snapshot(self.ctx, snapshot_id, timeout=timeout)

    def get_latest_by_url(self, url: str, limit: int = 1, timeout: Optional[float] = None
                          ) -> Union[PageSnapshotOut, List[PageSnapshotOut]]:
        """Latest snapshot for ``limit <= 1``, otherwise up to ``limit`` newest ones."""
        if limit <= 1:
            return queries.get_latest_by_url(self.ctx, url, timeout=timeout)
        return queries.list_latest_by_url(self.ctx, url, limit, timeout=timeout)

    def get_history(self, url: str, page: int = 1, per_page: int = queries.HISTORY_PER_PAGE,
                    filters: Optional[HistoryFilters] = None,
                    timeout: Optional[float] = None) -> HistoryPage:
        return queries.get_history(self.ctx, url, page, per_page, filters, timeout=timeout)

    def search_products(self, query: str, page: int = 1,
                        per_page: int = queries.SEARCH_PER_PAGE,
                        filters: Optional[SearchFilters] = None,
                        timeout: Optional[float] = None) -> SearchPage:
        return queries.search_products(self.ctx, query, page, per_page, filters, timeout=timeout)

    def get_product(self, product_id: Optional[str] = None, url: Optional[str] = None,
                    timeout: Optional[float] = None) -> ProductOut:
        return queries.get_product(self.ctx, product_id, url, timeout=timeout)

    def get_url_statistics(self, url: str, period: Optional[str] = None,
                           timeout: Optional[float] = None) -> URLStats:
        return stats.get_url_statistics(self.ctx, url, period, timeout=timeout)

    def get_global_statistics(self, timeout: Optional[float] = None) -> GlobalStats:
        return stats.get_global_statistics(self.ctx, timeout=timeout)

    def delete_snapshot(self, snapshot_id: str, timeout: Optional[float] = None) -> None:
        repo.delete_page_snapshot(self.ctx, snapshot_id, timeout=timeout)

    def ping(self, timeout: Optional[float] = None) -> None:
        self.ctx.ping(timeout)
