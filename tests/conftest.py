"""Test configuration."""
import os
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path
from uuid import uuid4

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# --- Default test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///./payments_test.db")
os.environ.setdefault("API_KEY", "test-secret-key")
os.environ.setdefault("PSP_WEBHOOK_SECRET", "test-psp-secret")
os.environ.setdefault("PAY_ENV", "dev")
os.environ.setdefault("PAYMENTS_PROVIDER", "fake")
os.environ.setdefault("IDEMPOTENCY_POLL_BASE_SECONDS", "0")
os.environ.setdefault("SWEEPER_QUERY_BACKOFF_SECONDS", "0")

from app.main import app  # noqa: E402
from app.db import get_db  # noqa: E402
from app.models import Base  # noqa: E402
from app.providers import FakeProvider, get_provider  # noqa: E402
from app.services import intent_store  # noqa: E402
from app.models.payment_intent import PaymentIntent  # noqa: E402

DB_PATH = Path("./payments_test.db")


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("script_location", str(Path(__file__).resolve().parents[1] / "alembic"))
    command.upgrade(cfg, "head")


# --- (1) Reset the database file at session start
if DB_PATH.exists():
    DB_PATH.unlink()

engine = create_engine(
    os.environ["DATABASE_URL"],
    connect_args={"check_same_thread": False, "timeout": 30},
    future=True,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False,
                                   future=True, expire_on_commit=False)

# --- (2) Build the schema through Alembic only
_run_migrations()


def _truncate_all() -> None:
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db_session() -> Iterator[Session]:
    # The code under test commits on purpose, so isolation is a cleanup pass
    # rather than an outer transaction.
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        _truncate_all()


@pytest.fixture
def session_factory() -> sessionmaker[Session]:
    return TestingSessionLocal


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture(autouse=True)
def override_dependencies(db_session: Session, fake_provider: FakeProvider) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_provider] = lambda: fake_provider
    app.state.provider = fake_provider
    yield
    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_provider, None)


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {os.environ['API_KEY']}"}


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_intent(db_session: Session, fake_provider: FakeProvider) -> Callable[..., PaymentIntent]:
    """Factory creating an intent with a gateway reference already attached."""

    def _factory(
        *,
        amount_cents: int = 5000,
        currency: str = "USD",
        subject_id: str = "member-1",
        with_ref: bool = True,
    ) -> PaymentIntent:
        key = f"idem-{uuid4().hex}"
        intent, _ = intent_store.create_or_get(
            db_session,
            idempotency_key=key,
            amount_cents=amount_cents,
            currency=currency,
            subject_id=subject_id,
        )
        if with_ref:
            created = fake_provider.create(amount_cents, currency, key, {}, timeout=1.0)
            intent = intent_store.attach_provider_ref(
                db_session, intent.id, created.provider_ref, checkout_url=created.checkout_url
            )
        return intent

    return _factory
