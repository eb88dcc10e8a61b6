import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import Settings, settings as default_settings
from app.db.session import StoreContext
from app.exceptions import (
    ConflictError,
    NotFoundError,
    ScrapeStoreError,
    StorageError,
    ValidationError,
)
from app.logging_conf import configure_logging
from app.models.schemas import (
    ErrorResponse,
    HistoryFilters,
    IngestRequest,
    IngestResponse,
    SearchFilters,
)
from app.services.normalizer import apply_ingest_defaults, clean_text
from app.services.scrape_store import ScrapeStore

logger = logging.getLogger(__name__)

ENDPOINTS = [
    {"method": "GET", "path": "/health", "description": "Health check"},
    {"method": "POST", "path": "/api/v1/page-data", "description": "Store a page scrape"},
    {"method": "GET", "path": "/api/v1/page-data", "description": "Latest scrape by URL or scrape by ID"},
    {"method": "GET", "path": "/api/v1/page-data/history", "description": "Scrape history of a URL"},
    {"method": "GET", "path": "/api/v1/statistics", "description": "Global or per-URL statistics"},
    {"method": "GET", "path": "/api/v1/search/products", "description": "Product search"},
    {"method": "GET", "path": "/api/v1/product", "description": "Product by ID or URL"},
    {"method": "DELETE", "path": "/api/v1/page-data/delete", "description": "Delete a scrape"},
]

STATUS_BY_ERROR = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StorageError, 503),
]


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content=ErrorResponse(error=message).model_dump(exclude_none=True))


def create_app(cfg: Optional[Settings] = None, context: Optional[StoreContext] = None) -> FastAPI:
    cfg = cfg or default_settings
    configure_logging(cfg.LOG_LEVEL)
    ctx = context or StoreContext.from_settings(cfg)
    store = ScrapeStore(ctx)
    timeout = cfg.REQUEST_TIMEOUT_SECS

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if cfg.AUTO_CREATE_SCHEMA:
            ctx.init_schema()
        logger.info("%s %s started", cfg.APP_NAME, cfg.APP_VERSION)
        yield
        if context is None:
            ctx.dispose()

    app = FastAPI(title=cfg.APP_NAME, version=cfg.APP_VERSION, lifespan=lifespan)
    app.state.store = store
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        logger.info("%s %s %d %.1fms", request.method, request.url.path,
                    response.status_code, (time.perf_counter() - start) * 1000)
        return response

    @app.exception_handler(ScrapeStoreError)
    async def store_error_handler(request: Request, exc: ScrapeStoreError):
        for kind, status in STATUS_BY_ERROR:
            if isinstance(exc, kind):
                break
        else:
            status = 500
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
            return _error(status, "Storage unavailable")
        return _error(status, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()
        )
        return _error(400, f"Invalid request: {problems}")

    @app.get("/")
    def index():
        return {
            "name": cfg.APP_NAME,
            "version": cfg.APP_VERSION,
            "description": "Stores page scrapes and serves history, search and statistics",
            "endpoints": ENDPOINTS,
        }

    @app.get("/health")
    def health():
        store.ping(timeout)
        return {"status": "healthy", "database": "connected", "version": cfg.APP_VERSION}

    @app.post("/api/v1/page-data", status_code=201, response_model=IngestResponse)
    def save_page_data(req: IngestRequest, request: Request):
        snapshot = apply_ingest_defaults(req.page_data, request.headers.get("user-agent", ""))
        result = store.ingest(snapshot, timeout=timeout)
        return IngestResponse(id=result.id, created_at=result.created_at)

    @app.get("/api/v1/page-data")
    def get_page_data(url: Optional[str] = None, id: Optional[str] = None, all: bool = False):
        if id:
            data = store.get_by_id(id, timeout=timeout)
        elif url:
            data = store.get_latest_by_url(url, limit=100 if all else 1, timeout=timeout)
        else:
            raise ValidationError("URL or ID parameter is required")
        if isinstance(data, list):
            return {"success": True, "data": [d.model_dump(by_alias=True, mode="json") for d in data]}
        return {"success": True, "data": data.model_dump(by_alias=True, mode="json")}

    @app.get("/api/v1/page-data/history")
    def get_page_data_history(
        url: Optional[str] = None,
        page: int = 1,
        per_page: int = 10,
        source: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        success: bool = False,
    ):
        if not url:
            raise ValidationError("URL parameter is required")
        filters = HistoryFilters(source=source or None, date_from=date_from,
                                 date_to=date_to, success_only=success)
        history = store.get_history(url, page, per_page, filters, timeout=timeout)
        return {"success": True, **history.model_dump(by_alias=True, mode="json")}

    @app.get("/api/v1/statistics")
    def get_statistics(url: Optional[str] = None, period: Optional[str] = None):
        if url:
            stats = store.get_url_statistics(url, period, timeout=timeout)
        else:
            stats = store.get_global_statistics(timeout=timeout)
        return {"success": True, "stats": stats.model_dump(by_alias=True, mode="json")}

    @app.get("/api/v1/search/products")
    def search_products(
        q: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
        min_price: float = Query(0, ge=0),
        max_price: float = Query(0, ge=0),
        source: Optional[str] = None,
        discount: bool = False,
    ):
        q = clean_text(q)
        if not q:
            raise ValidationError("Search query is required")
        filters = SearchFilters(min_price=min_price, max_price=max_price,
                                source=source or None, with_discount=discount)
        found = store.search_products(q, page, per_page, filters, timeout=timeout)
        return {"success": True, **found.model_dump(by_alias=True, mode="json")}

    @app.get("/api/v1/product")
    def get_product(id: Optional[str] = None, url: Optional[str] = None):
        product = store.get_product(product_id=id or None, url=url or None, timeout=timeout)
        return {"success": True, "product": product.model_dump(by_alias=True, mode="json")}

    @app.delete("/api/v1/page-data/delete")
    def delete_page_data(id: Optional[str] = None):
        if not id:
            raise ValidationError("ID parameter is required")
        store.delete_snapshot(id, timeout=timeout)
        return {"success": True, "message": "Page data deleted successfully", "id": id}

    return app


app = create_app()
