import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from fastapi.testclient import TestClient
from sqlalchemy.exc import SQLAlchemyError

from loadops.app.api.deps import get_auth_context, get_lifecycle
from loadops.app.db.models.core_types import Role
from loadops.app.main import app
from loadops.services.authorization import Actor, AuthorizationContext, Permission, PermissionMatrix
from loadops.services.lifecycle import LoadingLifecycle

JPEG = ("chegada.jpg", b"\xff\xd8\xff-jpeg", "image/jpeg")
PDF = ("nf.pdf", b"%PDF-1.7", "application/pdf")
XML = ("nf.xml", b"<nfeProc/>", "application/xml")


def _as(actor_id):
    return {"X-Actor-Id": str(actor_id)}


def test_health(client):
    r = client.get("/v1/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_stages(client):
    r = client.get("/v1/stages")
    assert r.status_code == 200
    body = r.json()
    assert [s["id"] for s in body] == [1, 2, 3, 4, 5, 6]
    assert body[4]["primary_artifact_kind"] == "document"
    assert body[4]["allows_secondary_artifact"] is True


def test_actor_header_is_required(client, world):
    assert client.get("/v1/me").status_code == 401
    assert client.get("/v1/me", headers={"X-Actor-Id": "not-a-uuid"}).status_code == 400


def test_actor_without_roles(client, world):
    r = client.get("/v1/me", headers=_as(uuid.uuid4()))
    assert r.status_code == 403
    assert r.json()["error"] == "AuthorizationError"


def test_me(client, world):
    r = client.get("/v1/me", headers=_as(world.operator_a))
    assert r.status_code == 200
    body = r.json()
    assert body["roles"] == ["armazem"]
    assert body["binding_state"] == "bound"
    assert body["armazem_id"] == str(world.wh_a.id)
    assert body["permissions"]["carregamentos"]["can_update"] is True


def test_list_is_scoped(client, world):
    r = client.get("/v1/loadings", headers=_as(world.client_x))
    assert r.status_code == 200
    body = r.json()
    assert [row["id"] for row in body] == [str(world.x_at_a.id)]
    assert body[0]["cliente_nome"] == "Fazenda Boa Vista"
    assert body[0]["stage_name"] == "Chegada"
    assert body[0]["photo_count"] == 0


def test_list_filters(client, world):
    r = client.get("/v1/loadings", params={"search": "pedro", "stage": [1, 2]}, headers=_as(world.admin))
    assert r.status_code == 200
    assert [row["id"] for row in r.json()] == [str(world.y_at_b.id)]


def test_list_denied_by_matrix(client, world):
    r = client.get("/v1/loadings", headers=_as(world.comercial))
    assert r.status_code == 403


def test_pending_ownership_is_425(client, world):
    ctx = AuthorizationContext(
        Actor(world.client_x, frozenset({Role.cliente})),
        PermissionMatrix({"carregamentos": Permission(can_read=True)}),
    )
    app.dependency_overrides[get_auth_context] = lambda: ctx

    r = client.get("/v1/loadings", headers=_as(world.client_x))

    assert r.status_code == 425
    assert r.headers["Retry-After"] == "1"
    assert r.json()["error"] == "OwnershipPendingError"


def test_detail(client, world):
    r = client.get(f"/v1/loadings/{world.x_at_a.id}", headers=_as(world.operator_a))
    assert r.status_code == 200
    body = r.json()
    assert body["current_stage"] == 1
    assert body["version"] == 1
    assert body["can_advance"] is True
    assert body["schedule"]["placa_caminhao"] == "QRS4T56"
    assert [s["stage_id"] for s in body["stages"]] == [1, 2, 3, 4, 5]
    assert body["timings"]["elapsed_since_arrival_min"] == 0
    assert body["timings"]["total_process_duration_min"] is None


def test_detail_access(client, world):
    assert client.get(f"/v1/loadings/{world.y_at_b.id}", headers=_as(world.client_x)).status_code == 403
    assert client.get(f"/v1/loadings/{uuid.uuid4()}", headers=_as(world.admin)).status_code == 404

    r = client.get(f"/v1/loadings/{world.x_at_a.id}", headers=_as(world.admin))
    assert r.status_code == 200
    assert r.json()["can_advance"] is False


def test_advance(client, world, store):
    r = client.post(
        f"/v1/loadings/{world.x_at_a.id}/advance",
        data={"observation": "Caminhão na balança"},
        files={"primary_artifact": JPEG},
        headers={**_as(world.operator_a), "If-Match": '"1"'},
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["current_stage"] == 2
    assert body["version"] == 2
    assert body["updated_by"] == str(world.operator_a)
    assert body["stages"][0]["observation"] == "Caminhão na balança"
    assert body["stages"][0]["artifact_urls"] == store.uploaded


def test_advance_document_stage(client, world, advance_to, lifecycle):
    advance_to(world.x_at_a, world.operator_a, 5)
    # étapes 1..4 horodatées toutes les 15 min à partir de 08:00
    lifecycle.clock = lambda: datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
    r = client.post(
        f"/v1/loadings/{world.x_at_a.id}/advance",
        data={"invoice_number": "000123"},
        files={"primary_artifact": PDF, "secondary_artifact": XML},
        headers=_as(world.operator_a),
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["current_stage"] == 6
    assert body["is_terminal"] is True
    assert body["invoice_number"] == "000123"
    assert len(body["stages"][4]["artifact_urls"]) == 2
    assert body["timings"]["total_process_duration_min"] == 60
    assert body["timings"]["total_process_duration_label"] == "1h"


def test_advance_without_artifact(client, world, store):
    r = client.post(
        f"/v1/loadings/{world.x_at_a.id}/advance",
        data={"observation": "sem foto"},
        headers=_as(world.operator_a),
    )
    assert r.status_code == 422
    assert r.json()["error"] == "ValidationError"
    assert store.attempts == 0


def test_advance_by_cliente(client, world):
    r = client.post(
        f"/v1/loadings/{world.x_at_a.id}/advance",
        files={"primary_artifact": JPEG},
        headers=_as(world.client_x),
    )
    assert r.status_code == 403


def test_advance_finalized(client, world, advance_to):
    advance_to(world.x_at_a, world.operator_a, 6)
    r = client.post(
        f"/v1/loadings/{world.x_at_a.id}/advance",
        data={"observation": "fim"},
        headers=_as(world.operator_a),
    )
    assert r.status_code == 409
    assert r.json()["error"] == "TerminalStateError"


def test_advance_version_checks(client, world, store):
    url = f"/v1/loadings/{world.x_at_a.id}/advance"
    r = client.post(url, files={"primary_artifact": JPEG}, headers={**_as(world.operator_a), "If-Match": "7"})
    assert r.status_code == 409
    assert r.json()["error"] == "ConflictError"

    r = client.post(url, files={"primary_artifact": JPEG}, headers={**_as(world.operator_a), "If-Match": "abc"})
    assert r.status_code == 400
    assert store.attempts == 0


def test_advance_upload_failure(client, world, store):
    store.fail_upload_on = 1
    r = client.post(
        f"/v1/loadings/{world.x_at_a.id}/advance",
        files={"primary_artifact": JPEG},
        headers=_as(world.operator_a),
    )
    assert r.status_code == 502
    assert r.json()["error"] == "UploadError"


def test_advance_persistence_failure_reports_orphans(client, world, store, db_session, monkeypatch):
    def boom():
        raise SQLAlchemyError("connection lost")

    monkeypatch.setattr(db_session, "commit", boom)
    store.fail_delete = True

    r = client.post(
        f"/v1/loadings/{world.x_at_a.id}/advance",
        files={"primary_artifact": JPEG},
        headers=_as(world.operator_a),
    )
    assert r.status_code == 500
    body = r.json()
    assert body["error"] == "PersistenceError"
    assert body["orphaned_urls"] == store.uploaded


def test_detail_average_matches_dashboard_rounding(client, world, lifecycle):
    t0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)
    url = f"/v1/loadings/{world.x_at_a.id}"
    for seconds in (0, 100, 140):
        lifecycle.clock = lambda s=seconds: t0 + timedelta(seconds=s)
        r = client.post(f"{url}/advance", files={"primary_artifact": JPEG}, headers=_as(world.operator_a))
        assert r.status_code == 200, r.text

    timings = client.get(url, headers=_as(world.operator_a)).json()["timings"]
    assert timings["per_stage_durations_min"] == [2, 1]
    assert timings["average_per_stage_duration_min"] == 2
    assert timings["average_per_stage_duration_label"] == "2min"


def test_lifecycle_is_built_once_at_startup():
    with TestClient(app):
        lifecycle = app.state.lifecycle
        assert isinstance(lifecycle, LoadingLifecycle)
        # toutes les requêtes partagent le même registre d'avances en cours
        assert get_lifecycle(SimpleNamespace(app=app)) is lifecycle
        assert get_lifecycle(SimpleNamespace(app=app)) is lifecycle
