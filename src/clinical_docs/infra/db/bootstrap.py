from __future__ import annotations

import logging
from typing import Optional, Tuple

from src.clinical_docs.config import settings
from src.clinical_docs.infra.db.models import Base
from src.clinical_docs.infra.db.repositories import DocumentRepository, DocumentVersionRepository
from src.clinical_docs.infra.db.session import build_engine, create_sqlalchemy_session_factory
from src.clinical_docs.infra.db.sql_documents import SqlDocumentRepository, SqlDocumentVersionRepository

logger = logging.getLogger(__name__)


def create_sql_repositories(
    database_url: str,
    *,
    max_attempts: Optional[int] = None,
) -> Tuple[DocumentRepository, DocumentVersionRepository]:
    """Build SQL-backed repositories for ``database_url``, creating tables if needed.

    ``max_attempts`` overrides the retry budget for conditional writes.
    """

    engine = build_engine(database_url)

    # Create tables if they do not exist. Real deployments should manage the
    # schema with migrations; this keeps single-node and test setups simple.
    Base.metadata.create_all(engine)

    session_factory = create_sqlalchemy_session_factory(engine)
    documents = SqlDocumentRepository(session_factory, max_attempts=max_attempts)
    return documents, SqlDocumentVersionRepository(session_factory)


def init_sql_repositories(database_url: Optional[str] = None) -> bool:  # pragma: no cover - side-effectful wiring
    """Optionally switch the default document service to SQL-backed storage.

    Intended for the application startup path. If USE_SQL_REPOS is not
    enabled or DATABASE_URL is not configured, this is a no-op and the
    in-memory repositories remain active. Returns True when SQL storage was
    installed.
    """

    if not settings.use_sql_repos:
        return False

    db_url = database_url or settings.database_url
    if not db_url:
        logger.warning("USE_SQL_REPOS is enabled but DATABASE_URL is not set; keeping in-memory repositories")
        return False

    from src.clinical_docs.services.documents import service as documents_module

    documents, versions = create_sql_repositories(db_url)
    documents_module.document_service = documents_module.DocumentLifecycleService(documents, versions)
    logger.info("Document service switched to SQL-backed repositories")
    return True
