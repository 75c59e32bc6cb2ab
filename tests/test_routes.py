import httpx
import pytest
import pytest_asyncio

from app.main import app
from app.routes import get_db
from app.security import Principal, ROLE_CUSTOMER, ROLE_OWNER, issue_token
from factories import CENTER, km_north, seed_service, seed_technician, technician_principal


def auth(principal: Principal) -> dict:
    return {"Authorization": f"Bearer {issue_token(principal)}"}


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://dispatch") as c:
        yield c
    app.dependency_overrides.clear()


CUSTOMER = Principal(user_id="5f0c6c1e-1f1e-4c47-9a53-0d3c1c7a2b11", role=ROLE_CUSTOMER)
OWNER = Principal(user_id="0b3c1f1e-2d1e-4c47-9a53-0d3c1c7a2b22", role=ROLE_OWNER)


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["service"] == "dispatch-service"
    assert "X-Request-Id" in resp.headers


@pytest.mark.asyncio
async def test_requires_bearer_token(client):
    resp = await client.get("/bookings/mine")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_booking_to_acceptance_over_http(client, db):
    service = await seed_service(db)
    t1 = await seed_technician(db, service.id, at=km_north(1))
    t2 = await seed_technician(db, service.id, at=km_north(2))

    resp = await client.post(
        "/bookings",
        json={
            "service_id": service.id,
            "base_amount": 500,
            "address": "12 Church Street",
            "latitude": CENTER[0],
            "longitude": CENTER[1],
        },
        headers=auth(CUSTOMER),
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    booking_id = body["booking"]["id"]
    assert body["booking"]["status"] == "broadcasted"
    assert set(body["dispatch"]["sent_to"]) == {t1.id, t2.id}

    offers = (await client.get("/technician/offers", headers=auth(technician_principal(t1)))).json()
    assert [o["booking_id"] for o in offers] == [booking_id]

    resp = await client.post(
        f"/technician/offers/{offers[0]['broadcast_id']}/respond",
        json={"status": "accepted"},
        headers=auth(technician_principal(t1)),
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["booking"]["technician_id"] == t1.id

    late_offer = (await client.get("/technician/offers", headers=auth(technician_principal(t2)))).json()
    assert late_offer == []

    resp = await client.get(f"/bookings/{booking_id}", headers=auth(CUSTOMER))
    assert resp.json()["status"] == "accepted"


@pytest.mark.asyncio
async def test_conflict_is_409_with_code(client, db):
    service = await seed_service(db)
    t1 = await seed_technician(db, service.id)
    t2 = await seed_technician(db, service.id)

    created = await client.post(
        "/bookings",
        json={"service_id": service.id, "base_amount": 100, "latitude": CENTER[0], "longitude": CENTER[1]},
        headers=auth(CUSTOMER),
    )
    assert created.status_code == 201, created.text
    offers = {
        t.id: (await client.get("/technician/offers", headers=auth(technician_principal(t)))).json()[0]
        for t in (t1, t2)
    }

    await client.post(
        f"/technician/offers/{offers[t1.id]['broadcast_id']}/respond",
        json={"status": "accepted"},
        headers=auth(technician_principal(t1)),
    )
    resp = await client.post(
        f"/technician/offers/{offers[t2.id]['broadcast_id']}/respond",
        json={"status": "accepted"},
        headers=auth(technician_principal(t2)),
    )

    assert resp.status_code == 409
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == "BOOKING_ALREADY_TAKEN"


@pytest.mark.asyncio
async def test_ineligible_technician_gets_structured_403(client, db):
    service = await seed_service(db)
    tech = await seed_technician(db, service.id, kyc="pending")

    resp = await client.post(
        "/technician/offers/6a1f9c1e-1f1e-4c47-9a53-0d3c1c7a2b33/respond",
        json={"status": "accepted"},
        headers=auth(technician_principal(tech)),
    )

    assert resp.status_code == 403
    assert resp.json()["code"] == "NOT_ELIGIBLE"
    assert resp.json()["result"] == {"kycStatus": "pending"}


@pytest.mark.asyncio
async def test_malformed_id_is_400(client):
    resp = await client.get("/bookings/not-a-uuid", headers=auth(CUSTOMER))
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_FAILED"


@pytest.mark.asyncio
async def test_role_guard(client, db):
    tech = await seed_technician(db)
    resp = await client.post(
        "/bookings",
        json={"service_id": CUSTOMER.user_id, "base_amount": 1, "address": "x"},
        headers=auth(technician_principal(tech)),
    )
    assert resp.status_code == 403

    resp = await client.get("/withdrawals", headers=auth(OWNER))
    assert resp.status_code == 200
    assert resp.json() == []
