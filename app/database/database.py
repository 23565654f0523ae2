from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)


def build_engine(url: str, echo: bool = False):
    """Create the application engine; sqlite is only used by tests and local runs."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=echo
        )
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        echo=echo
    )


sync_engine = build_engine(settings.database_url, echo=settings.DEBUG and settings.ENVIRONMENT != "test")

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=sync_engine)

Base = declarative_base()


def get_db():
    """Genera una sesión de base de datos por request."""
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database error: {e}")
        db.rollback()
        raise
    finally:
        db.close()


def get_tenant_query(session, model, tenant_id):
    """Helper function to create tenant-scoped queries"""
    query = session.query(model).filter(model.tenant_id == tenant_id)
    if hasattr(model, 'deleted_at'):
        query = query.filter(model.deleted_at.is_(None))
    return query
