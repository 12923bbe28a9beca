import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from loadops.app.api.deps import get_db, get_lifecycle
from loadops.app.db.base import Base
from loadops.app.db.models.core_types import Role
from loadops.app.db.models.models_v1 import Customer, ScheduleEntry, UserRole, Warehouse
from loadops.app.db.seed import seed_permissions
from loadops.app.db.session import make_engine
from loadops.app.main import app
from loadops.services.artifacts import ArtifactUpload
from loadops.services.authorization import open_context
from loadops.services.errors import UploadError
from loadops.services.lifecycle import AdvanceInput, LoadingLifecycle
from loadops.services.loadings import create_loading_for_schedule

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


class FakeArtifactStore:
    """Store en mémoire : trace les envois / suppressions, échecs à la demande."""

    base_url = "memory://artifacts"

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.uploaded: list[str] = []
        self.deleted: list[str] = []
        self.attempts = 0
        self.fail_upload_on: int | None = None  # n-ième tentative (1-based)
        self.fail_delete = False
        self.on_upload = None

    def upload(self, bucket, key, content, content_type):
        self.attempts += 1
        if self.on_upload is not None:
            self.on_upload(bucket, key)
        if self.fail_upload_on == self.attempts:
            raise UploadError(f"simulated failure for {key}")
        url = f"{self.base_url}/{bucket.value}/{key}"
        self.objects[url] = content
        self.uploaded.append(url)
        return url

    def delete(self, url):
        if self.fail_delete:
            raise ConnectionError(f"simulated delete failure for {url}")
        self.objects.pop(url, None)
        self.deleted.append(url)


@pytest.fixture(scope="function")
def engine():
    """Base SQLite en mémoire, schéma recréé pour chaque test."""
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine) -> Session:
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store() -> FakeArtifactStore:
    return FakeArtifactStore()


@pytest.fixture
def lifecycle(store) -> LoadingLifecycle:
    return LoadingLifecycle(store, clock=lambda: T0)


@pytest.fixture
def photo():
    return ArtifactUpload("chegada.jpg", b"\xff\xd8\xff-jpeg", "image/jpeg")


@pytest.fixture
def pdf():
    return ArtifactUpload("nf.pdf", b"%PDF-1.7 nota", "application/pdf")


@pytest.fixture
def xml():
    return ArtifactUpload("nf.xml", b"<nfeProc/>", "application/xml")


@pytest.fixture
def make_actor(db_session):
    def _make(*roles: Role, warehouse: Warehouse | None = None, customer: Customer | None = None) -> uuid.UUID:
        user_id = uuid.uuid4()
        for role in roles:
            db_session.add(UserRole(user_id=user_id, role=role))
        if warehouse is not None:
            warehouse.user_id = user_id
        if customer is not None:
            customer.user_id = user_id
        db_session.commit()
        return user_id

    return _make


@pytest.fixture
def make_loading(db_session):
    def _make(customer: Customer, warehouse: Warehouse, **kwargs):
        schedule = ScheduleEntry(
            cliente_id=customer.id,
            armazem_id=warehouse.id,
            data_retirada=kwargs.pop("data_retirada", date(2024, 3, 1)),
            quantidade=kwargs.pop("quantidade", Decimal("32.5")),
            placa_caminhao=kwargs.pop("placa_caminhao", "ABC1D23"),
            motorista_nome=kwargs.pop("motorista_nome", "João Silva"),
            **kwargs,
        )
        db_session.add(schedule)
        db_session.flush()
        return create_loading_for_schedule(db_session, schedule)

    return _make


@pytest.fixture
def context_for(db_session):
    def _open(actor_id: uuid.UUID):
        return open_context(db_session, actor_id)

    return _open


@pytest.fixture
def world(db_session, make_actor, make_loading):
    """
    Jeu de données commun :
    - 2 armazens (A, B), 2 clientes (X, Y)
    - chargement x_at_a (X chez A) et y_at_b (Y chez B)
    - un acteur par rôle, plus un armazem sans rattachement
    """
    seed_permissions(db_session)

    wh_a = Warehouse(nome="Armazém Rondonópolis", cidade="Rondonópolis", estado="MT")
    wh_b = Warehouse(nome="Armazém Sorriso", cidade="Sorriso", estado="MT")
    cust_x = Customer(nome="Fazenda Boa Vista", cnpj_cpf="11.111.111/0001-11")
    cust_y = Customer(nome="Agro Cerrado", cnpj_cpf="22.222.222/0001-22")
    db_session.add_all([wh_a, wh_b, cust_x, cust_y])
    db_session.commit()

    x_at_a = make_loading(cust_x, wh_a, placa_caminhao="QRS4T56", motorista_nome="Carlos Souza")
    y_at_b = make_loading(cust_y, wh_b, placa_caminhao="XYZ9K88", motorista_nome="Pedro Lima")

    return SimpleNamespace(
        wh_a=wh_a,
        wh_b=wh_b,
        cust_x=cust_x,
        cust_y=cust_y,
        x_at_a=x_at_a,
        y_at_b=y_at_b,
        admin=make_actor(Role.admin),
        logistica=make_actor(Role.logistica),
        comercial=make_actor(Role.comercial),
        operator_a=make_actor(Role.armazem, warehouse=wh_a),
        operator_b=make_actor(Role.armazem, warehouse=wh_b),
        client_x=make_actor(Role.cliente, customer=cust_x),
        unbound_operator=make_actor(Role.armazem),
    )


@pytest.fixture
def advance_to(db_session, lifecycle, context_for, photo, pdf):
    """Avance un chargement jusqu'à l'étape cible via l'opérateur donné."""

    def _advance(record, operator_id: uuid.UUID, target: int, step: timedelta = timedelta(minutes=15)):
        context = context_for(operator_id)
        clock_start = T0
        while record.current_stage < target:
            n = record.current_stage
            lifecycle.clock = lambda n=n: clock_start + step * (n - 1)
            artifact = pdf if n == 5 else photo
            record = lifecycle.advance(db_session, context, record.id, AdvanceInput(primary_artifact=artifact))
        lifecycle.clock = lambda: T0
        return record

    return _advance


@pytest.fixture
def client(db_session, lifecycle):
    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_lifecycle] = lambda: lifecycle
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_store():
    return FakeArtifactStore
