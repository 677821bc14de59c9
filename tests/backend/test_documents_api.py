import pytest
from httpx import ASGITransport, AsyncClient
from fastapi import status

from src.clinical_docs.api.v1.routes_documents import get_document_service
from src.clinical_docs.main import app

DOCTOR = {"X-User-ID": "doctor-1"}


@pytest.fixture
def api_service(service):
    app.dependency_overrides[get_document_service] = lambda: service
    yield service
    app.dependency_overrides.pop(get_document_service, None)


@pytest.fixture
async def client(api_service):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def _create(client, soap_fields, headers=DOCTOR):
    response = await client.post(
        "/api/v1/documents",
        json={"kind": "soap_note", "fields": soap_fields},
        headers=headers,
    )
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


async def test_document_lifecycle_over_http(client, soap_fields):
    created = await _create(client, soap_fields)
    assert created["status"] == "draft"
    assert created["version"] == 1

    updated = await client.patch(
        f"/api/v1/documents/{created['id']}",
        json={"fields": {"plan": "Rest and fluids."}, "expected_revision": 1},
        headers=DOCTOR,
    )
    assert updated.status_code == status.HTTP_200_OK
    assert updated.json()["revision"] == 2

    finalized = await client.post(
        f"/api/v1/documents/{created['id']}/finalize",
        json={"attestation": "I attest."},
        headers=DOCTOR,
    )
    assert finalized.status_code == status.HTTP_200_OK
    assert finalized.json()["status"] == "finalized"
    assert finalized.json()["version"] == 2

    amendment = await client.post(
        f"/api/v1/documents/{created['id']}/amendments",
        json={"reason": "correct dosage", "changes": "250mg", "section": "plan"},
        headers=DOCTOR,
    )
    assert amendment.status_code == status.HTTP_201_CREATED
    assert amendment.json()["amendment_number"] == 1
    assert amendment.json()["is_amendment"] is True

    current = await client.get(f"/api/v1/documents/{created['id']}/current", headers=DOCTOR)
    assert current.json()["id"] == amendment.json()["id"]

    versions = await client.get(f"/api/v1/documents/{created['id']}/versions", headers=DOCTOR)
    assert [v["version"] for v in versions.json()] == [2]

    listing = await client.get("/api/v1/patients/pat-1/documents", headers=DOCTOR)
    assert listing.status_code == status.HTTP_200_OK
    assert listing.json()["total"] == 2


async def test_error_mapping(client, soap_fields):
    created = await _create(client, soap_fields)
    doc_url = f"/api/v1/documents/{created['id']}"

    missing = await client.get("/api/v1/documents/00000000-0000-0000-0000-000000000000", headers=DOCTOR)
    assert missing.status_code == status.HTTP_404_NOT_FOUND

    lock = await client.post(f"{doc_url}/lock", headers=DOCTOR)
    assert lock.json() == {"document_id": created["id"], "locked": True}
    refused = await client.post(f"{doc_url}/lock", headers={"X-User-ID": "doctor-2"})
    assert refused.json()["locked"] is False

    locked = await client.patch(doc_url, json={"fields": {"plan": "x"}}, headers={"X-User-ID": "doctor-2"})
    assert locked.status_code == status.HTTP_423_LOCKED
    assert locked.json()["locked_by"] == "doctor-1"

    bad_field = await client.patch(doc_url, json={"fields": {"status": "finalized"}}, headers=DOCTOR)
    assert bad_field.status_code == status.HTTP_400_BAD_REQUEST

    stale = await client.patch(doc_url, json={"fields": {"plan": "x"}, "expected_revision": 9}, headers=DOCTOR)
    assert stale.status_code == status.HTTP_409_CONFLICT

    await client.patch(doc_url, json={"fields": {"assessment": ""}}, headers=DOCTOR)
    incomplete = await client.post(f"{doc_url}/finalize", json={"attestation": "I attest."}, headers=DOCTOR)
    assert incomplete.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert incomplete.json()["missing"] == ["assessment"]

    draft_amend = await client.post(
        f"{doc_url}/amendments", json={"reason": "r", "changes": "c"}, headers=DOCTOR
    )
    assert draft_amend.status_code == status.HTTP_409_CONFLICT

    unlocked = await client.delete(f"{doc_url}/lock", headers=DOCTOR)
    assert unlocked.json()["locked"] is False


async def test_actor_header_is_required(client, soap_fields):
    response = await client.post("/api/v1/documents", json={"kind": "soap_note", "fields": soap_fields})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


async def test_search_and_statistics(client, soap_fields):
    await _create(client, {**soap_fields, "tags": ["cardiology"]})
    await _create(client, {**soap_fields, "patient_id": "pat-2"})

    search = await client.get("/api/v1/documents", params={"tags": "cardiology"}, headers=DOCTOR)
    assert search.status_code == status.HTTP_200_OK
    assert search.json()["total"] == 1

    paged = await client.get("/api/v1/documents", params={"limit": 1, "page": 2}, headers=DOCTOR)
    assert paged.json()["total"] == 2
    assert len(paged.json()["items"]) == 1

    stats = await client.get("/api/v1/documents/statistics", headers=DOCTOR)
    assert stats.json()["total"] == 2
    assert stats.json()["needs_finalization"] == 2


async def test_delete_draft(client, soap_fields):
    created = await _create(client, soap_fields)

    deleted = await client.delete(
        f"/api/v1/documents/{created['id']}", params={"reason": "Duplicate"}, headers=DOCTOR
    )
    assert deleted.json() == {"document_id": created["id"], "deleted": True}

    gone = await client.get(f"/api/v1/documents/{created['id']}", headers=DOCTOR)
    assert gone.status_code == status.HTTP_404_NOT_FOUND
