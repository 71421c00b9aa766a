# tests/conftest.py
# -*- coding: utf-8 -*-
import os
import sys
import uuid
import pathlib
import tempfile

import pytest

# =====================================================================================
# Ambiente de testes: precisa estar definido ANTES de importar config/app
# (TestingConfig lê SQLALCHEMY_DATABASE_URI na importação)
# =====================================================================================
_fd, DB_PATH = tempfile.mkstemp(prefix="querofretes_test_", suffix=".sqlite")
os.close(_fd)
os.environ["APP_ENV"] = "testing"
os.environ["FLASK_ENV"] = "testing"
os.environ["TESTING"] = "1"
os.environ["DISABLE_SCHEDULER"] = "1"
os.environ.setdefault("SECRET_KEY", "testing-secret")
# URI com flags para reduzir locks
os.environ["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{DB_PATH}?check_same_thread=0&timeout=30"
os.environ["DATABASE_URL"] = os.environ["SQLALCHEMY_DATABASE_URI"]

ROOT = pathlib.Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _set_sqlite_pragmas(dbapi_conn, _conn_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


# =====================================================================================
# App Flask com SQLite temporário e schema criado uma vez por sessão
# =====================================================================================
@pytest.fixture(scope="session")
def app():
    from sqlalchemy import event
    from querofretes_app import create_app
    from querofretes_app.extensions import db

    app = create_app()
    app.config.update(
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET="whsec_test",
        STRIPE_PRICE_MONTHLY_ID="price_monthly_test",
        STRIPE_PRICE_ANNUAL_ID="price_annual_test",
        MERCADOPAGO_ACCESS_TOKEN="TEST-mp-token",
        OPENPIX_APP_ID="openpix-app-id",
        PUBLIC_BASE_URL="https://example.test",
        EMAIL_API_KEY="re_test",
    )
    # configurações congeladas são recriadas após os ajustes acima
    from querofretes_app.services.settings import init_settings
    from querofretes_app.services.notifications import init_dispatcher
    from querofretes_app.services.reconciliation import init_engine
    init_settings(app)
    init_dispatcher(app)
    init_engine(app)

    with app.app_context():
        event.listen(db.engine, "connect", _set_sqlite_pragmas)
        db.create_all()
        with db.engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            conn.exec_driver_sql("PRAGMA busy_timeout=30000")

    yield app

    with app.app_context():
        db.session.remove()
        db.engine.dispose()
    try:
        os.remove(DB_PATH)
    except OSError:
        pass


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db_session(app):
    from querofretes_app.extensions import db
    with app.app_context():
        try:
            yield db.session
        finally:
            db.session.rollback()
            db.session.close()


@pytest.fixture
def engine(app, db_session):
    from querofretes_app.services.reconciliation import get_engine
    return get_engine()


# =====================================================================================
# Mocks de serviços externos
#   - Stripe (Checkout, Portal, Customer)
#   - requests.get/post (sem rede); chamadas ficam registradas em `sent`
# =====================================================================================
class _StripeObj(dict):
    def __init__(self, **k):
        super().__init__(**k)
        self.__dict__.update(k)


class _Resp:
    def __init__(self, status_code=200, json_data=None, text="OK"):
        self.status_code = status_code
        self._json = json_data if json_data is not None else {}
        self.text = text

    def json(self):
        return self._json


@pytest.fixture
def sent():
    return []


@pytest.fixture(autouse=True)
def _mock_externals(monkeypatch, sent):
    import stripe
    import requests

    monkeypatch.setattr(
        stripe.checkout.Session, "create",
        staticmethod(lambda **k: _StripeObj(id=f"cs_test_{uuid.uuid4().hex[:10]}",
                                            url="https://stripe.example/checkout/session/test_123", params=k)),
        raising=False,
    )
    monkeypatch.setattr(
        stripe.billing_portal.Session, "create",
        staticmethod(lambda **k: _StripeObj(url="https://stripe.example/portal/session/test_123")),
        raising=False,
    )
    monkeypatch.setattr(
        stripe.Customer, "create",
        staticmethod(lambda **k: _StripeObj(id="cus_test_123", email=k.get("email"), name=k.get("name"))),
        raising=False,
    )

    def _post(url, *a, **k):
        sent.append(("POST", url, k))
        return _Resp()

    def _get(url, *a, **k):
        sent.append(("GET", url, k))
        return _Resp()

    monkeypatch.setattr(requests, "get", _get, raising=False)
    monkeypatch.setattr(requests, "post", _post, raising=False)
    yield


# =====================================================================================
# Usuários e clientes logados
# =====================================================================================
def make_user(db_session, **overrides):
    from querofretes_app.models.user import User
    data = {
        "name": "Usuário Teste",
        "email": f"user+{uuid.uuid4().hex[:8]}@test.com",
    }
    data.update(overrides)
    u = User(**data)
    u.set_password("secret123")
    db_session.add(u)
    db_session.commit()
    return u


@pytest.fixture
def user_admin(db_session):
    return make_user(db_session, name="Admin", email=f"admin+{uuid.uuid4().hex[:6]}@test.com", is_admin=True)


@pytest.fixture
def user_normal(db_session):
    return make_user(db_session, name="User")


@pytest.fixture
def logged_client_admin(client, user_admin):
    with client.session_transaction() as sess:
        sess["user"] = {"id": user_admin.id, "email": user_admin.email, "is_admin": True}
    return client


@pytest.fixture
def logged_client_user(client, user_normal):
    with client.session_transaction() as sess:
        sess["user"] = {"id": user_normal.id, "email": user_normal.email, "is_admin": False}
    return client


def charge_id(prefix="ch"):
    return f"{prefix}_{uuid.uuid4().hex[:12]}"
