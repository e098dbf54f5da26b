import os

os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("CREATE_SCHEMA", "false")
os.environ.setdefault("INVOICE_DUE_DAYS", "30")

from dataclasses import dataclass  # noqa: E402
from datetime import date, datetime, timedelta, timezone  # noqa: E402

from fastapi.testclient import TestClient  # noqa: E402
import pytest  # noqa: E402

from freelancedesk.audit import SqlAuditSink  # noqa: E402
from freelancedesk.auth import TokenSubject, create_access_token  # noqa: E402
from freelancedesk.db import Base, SessionLocal, engine  # noqa: E402
from freelancedesk.main import app, get_clock  # noqa: E402
from freelancedesk.models import Client, Project, User, gen_id  # noqa: E402
from freelancedesk.schemas import InvoiceRequest, QuoteRequest  # noqa: E402
from freelancedesk.services import BillingServices, ServiceContext  # noqa: E402
from factories import item  # noqa: E402

START = datetime(2026, 10, 15, 9, 0, tzinfo=timezone.utc)


class TickingClock:
    """Fixed calendar day; every ``now()`` moves one second forward so event order is stable."""

    def __init__(self, start: datetime = START):
        self.current = start

    def now(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current

    def today(self) -> date:
        return self.current.date()

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@dataclass(frozen=True)
class Tenant:
    user_id: str
    client_id: str
    project_id: str


def _seed_tenant(email: str, company: str) -> Tenant:
    with SessionLocal() as db:
        user = User(id=gen_id(), email=email, name=company)
        db.add(user)
        db.flush()
        client = Client(id=gen_id(), user_id=user.id, company_name=company, contact_name="Jordan Lee")
        db.add(client)
        db.flush()
        project = Project(id=gen_id(), user_id=user.id, client_id=client.id, name=f"{company} website")
        db.add(project)
        db.commit()
        return Tenant(user.id, client.id, project.id)


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture()
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def tenant() -> Tenant:
    return _seed_tenant("owner@freelancedesk.local", "Acme Studio")


@pytest.fixture()
def other_tenant() -> Tenant:
    return _seed_tenant("rival@freelancedesk.local", "Rival Works")


@pytest.fixture()
def audit_sink(clock):
    return SqlAuditSink(SessionLocal, clock)


@pytest.fixture()
def services(db, clock, audit_sink) -> BillingServices:
    return BillingServices(ServiceContext(db=db, clock=clock, audit_sink=audit_sink))


@pytest.fixture()
def make_quote(services, tenant):
    def _make(items=None, **fields):
        fields.setdefault("client_id", tenant.client_id)
        fields.setdefault("title", "Website redesign")
        request = QuoteRequest(items=items, **fields)
        return services.quotes.create_quote(tenant.user_id, request)

    return _make


@pytest.fixture()
def make_invoice(services, tenant):
    def _make(items=None, **fields):
        fields.setdefault("client_id", tenant.client_id)
        fields.setdefault("title", "October retainer")
        request = InvoiceRequest(items=items, **fields)
        return services.invoices.create_invoice(tenant.user_id, request)

    return _make


@pytest.fixture()
def sent_invoice(services, tenant, make_invoice):
    """A sent invoice for 500.00 due in 30 days."""
    invoice = make_invoice(items=[item(unit_price="500")])
    return services.invoices.send_invoice(tenant.user_id, invoice.id)


@pytest.fixture()
def sent_quote(services, tenant, make_quote):
    quote = make_quote(items=[item(quantity="2", unit_price="100", tax_rate="10")])
    return services.quotes.send_quote(tenant.user_id, quote.id)


@pytest.fixture()
def client(clock, tenant):
    app.dependency_overrides[get_clock] = lambda: clock
    token = create_access_token(TokenSubject(user_id=tenant.user_id, email="owner@freelancedesk.local"))
    test_client = TestClient(app, headers={"Authorization": f"Bearer {token}"})
    yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def anonymous_client(clock):
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()
