import pytest

from app.eligibility import (
    canonical_service_id,
    eligibility_failure,
    ensure_technician_eligible,
    find_eligible_technicians,
    normalize_skill,
)
from app.errors import EligibilityDenied, NotFound
from app.models import new_id
from factories import seed_service, seed_technician


def test_normalize_skill_accepts_both_shapes():
    sid = new_id()
    assert normalize_skill(sid) == sid
    assert normalize_skill(sid.upper()) == sid
    assert normalize_skill({"serviceId": sid}) == sid
    assert normalize_skill({"service_id": sid}) == sid
    assert normalize_skill({"name": "plumbing"}) is None
    assert normalize_skill(42) is None


def test_canonical_service_id_ignores_blank():
    assert canonical_service_id(None) is None
    assert canonical_service_id("   ") is None


@pytest.mark.asyncio
async def test_legacy_and_structured_skills_both_match(db):
    service = await seed_service(db)
    legacy = await seed_technician(db, skills=[service.id])
    structured = await seed_technician(db, skills=[{"serviceId": service.id}])
    await seed_technician(db, skills=[new_id()])

    found = await find_eligible_technicians(db, service.id)

    assert {t.id for t in found} == {legacy.id, structured.id}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"kyc": "pending"},
        {"kyc": None},
        {"online": False},
        {"profile_complete": False},
        {"training_completed": False},
        {"work_status": "suspended"},
    ],
)
async def test_each_precondition_excludes(db, overrides):
    service = await seed_service(db)
    await seed_technician(db, service.id, **overrides)

    assert await find_eligible_technicians(db, service.id) == []


@pytest.mark.asyncio
async def test_no_candidates_is_empty_not_error(db):
    assert await find_eligible_technicians(db, new_id()) == []


@pytest.mark.asyncio
async def test_ensure_eligible_reports_failed_precondition(db):
    service = await seed_service(db)
    tech = await seed_technician(db, service.id, online=False)

    with pytest.raises(EligibilityDenied) as exc:
        await ensure_technician_eligible(db, tech.id)

    assert exc.value.detail == {"isOnline": False}
    assert exc.value.status_code == 403


@pytest.mark.asyncio
async def test_ensure_eligible_missing_kyc(db):
    tech = await seed_technician(db, kyc=None)

    with pytest.raises(EligibilityDenied) as exc:
        await ensure_technician_eligible(db, tech.id)

    assert exc.value.detail == {"kycStatus": "not_submitted"}


@pytest.mark.asyncio
async def test_ensure_eligible_unknown_technician(db):
    with pytest.raises(NotFound):
        await ensure_technician_eligible(db, new_id())


@pytest.mark.asyncio
async def test_ensure_eligible_can_skip_online_and_training(db):
    tech = await seed_technician(db, online=False, training_completed=False)

    got = await ensure_technician_eligible(db, tech.id, require_training=False, require_online=False)

    assert got.id == tech.id


def test_failure_order_profile_first():
    class T:
        profile_complete = False
        work_status = "pending"
        training_completed = False
        is_online = False

    message, detail = eligibility_failure(T(), None)
    assert detail == {"profileComplete": False}
