"""
Fixtures compartidos.

Cada test usa su propia base SQLite en un archivo temporal, así varias
sesiones pueden competir sobre los mismos datos como lo harían dos requests.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["EMAIL_FROM"] = ""
os.environ["EMAIL_USERNAME"] = ""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app.database.database import Base, build_engine, get_db
import app.modules.audit.models  # noqa: F401
import app.modules.clients.models  # noqa: F401
import app.modules.invoices.models  # noqa: F401
from app.modules.auth.utils import create_access_token
from app.modules.clients.models import ClientAccount, PostSite


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'billing_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def sample_company():
    """Tenant id; las empresas viven en otro servicio"""
    return uuid4()


@pytest.fixture
def other_company():
    return uuid4()


@pytest.fixture
def sample_user():
    return uuid4()


@pytest.fixture
def sample_client(db_session, sample_company):
    client = ClientAccount(
        tenant_id=sample_company,
        name="Cliente de Prueba S.A.S.",
        email="pagos@clienteprueba.com"
    )
    db_session.add(client)
    db_session.commit()
    db_session.refresh(client)
    return client


@pytest.fixture
def client_without_email(db_session, sample_company):
    client = ClientAccount(tenant_id=sample_company, name="Cliente sin correo")
    db_session.add(client)
    db_session.commit()
    db_session.refresh(client)
    return client


@pytest.fixture
def sample_post_site(db_session, sample_company, sample_client):
    site = PostSite(tenant_id=sample_company, client_id=sample_client.id, name="Sede Principal")
    db_session.add(site)
    db_session.commit()
    db_session.refresh(site)
    return site


@pytest.fixture
def auth_headers(sample_company, sample_user):
    token = create_access_token({"sub": str(sample_user)})
    return {
        "Authorization": f"Bearer {token}",
        "X-Company-ID": str(sample_company)
    }


@pytest.fixture
def api_client(session_factory):
    from app.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
