from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.clinical_docs.api.v1.routes_documents import document_error_handler, router as documents_router_v1
from src.clinical_docs.config import settings
from src.clinical_docs.domain.errors import DocumentError
from src.clinical_docs.infra.db.bootstrap import init_sql_repositories

app = FastAPI(title="Clinical Documents API")


@app.on_event("startup")
async def on_startup() -> None:
    """Application startup hook.

    When USE_SQL_REPOS is enabled and a DATABASE_URL is configured, this
    switches the document service to SQL-backed repositories. In other
    environments (tests, local dev without a database), this is a no-op and
    the in-memory repositories remain active.
    """

    init_sql_repositories()

# CORS configuration: permissive by default for development. Tighten via
# CORS_ALLOW_ORIGINS in production deployments.
allow_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(DocumentError, document_error_handler)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    """Basic liveness probe for the API root."""
    return {"status": "ok"}


# Versioned API routers
app.include_router(documents_router_v1, prefix="/api/v1")
