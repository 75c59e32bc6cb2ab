import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import EligibilityDenied, NotFound
from .models import Technician, TechnicianKyc

KYC_APPROVED = "approved"
WORK_APPROVED = "approved"


def canonical_service_id(value) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return str(uuid.UUID(raw))
    except ValueError:
        return raw.lower()


def normalize_skill(raw) -> str | None:
    """
    Skill entries arrive either as a bare id string (legacy rows) or as a
    structured {"serviceId": ...} entry. Both collapse to one canonical id.
    """
    if isinstance(raw, dict):
        for key in ("serviceId", "service_id", "id"):
            if key in raw:
                return canonical_service_id(raw[key])
        return None
    if isinstance(raw, (str, uuid.UUID)):
        return canonical_service_id(raw)
    return None


def skill_ids(technician: Technician) -> set[str]:
    out = set()
    for raw in technician.skills or []:
        sid = normalize_skill(raw)
        if sid:
            out.add(sid)
    return out


def has_skill(technician: Technician, service_id: str) -> bool:
    return canonical_service_id(service_id) in skill_ids(technician)


def eligible_technicians_query():
    return (
        select(Technician)
        .join(TechnicianKyc, TechnicianKyc.technician_id == Technician.id)
        .where(
            TechnicianKyc.verification_status == KYC_APPROVED,
            Technician.profile_complete.is_(True),
            Technician.training_completed.is_(True),
            Technician.work_status == WORK_APPROVED,
            Technician.is_online.is_(True),
        )
    )


async def find_eligible_technicians(db: AsyncSession, service_id: str) -> list[Technician]:
    """Every technician allowed to receive a job for service_id. Empty list is a normal result."""
    wanted = canonical_service_id(service_id)
    if not wanted:
        return []

    res = await db.execute(eligible_technicians_query())
    return [t for t in res.scalars().all() if wanted in skill_ids(t)]


def eligibility_failure(
    technician: Technician,
    kyc_status: str | None,
    *,
    require_training: bool = True,
    require_online: bool = True,
) -> tuple[str, dict] | None:
    if not technician.profile_complete:
        return "Please complete your profile first", {"profileComplete": False}

    if kyc_status != KYC_APPROVED:
        status = kyc_status or "not_submitted"
        return f"Your KYC must be approved. Status: {status}", {"kycStatus": status}

    if technician.work_status != WORK_APPROVED:
        return (
            f"Your account must be approved by owner. Status: {technician.work_status}",
            {"workStatus": technician.work_status},
        )

    if require_training and not technician.training_completed:
        return (
            "Training must be completed before taking jobs",
            {"trainingCompleted": False, "workStatus": technician.work_status},
        )

    if require_online and not technician.is_online:
        return "You must be online to respond to jobs", {"isOnline": False}

    return None


async def ensure_technician_eligible(
    db: AsyncSession,
    technician_id: str,
    *,
    require_training: bool = True,
    require_online: bool = True,
) -> Technician:
    res = await db.execute(
        select(Technician, TechnicianKyc.verification_status)
        .outerjoin(TechnicianKyc, TechnicianKyc.technician_id == Technician.id)
        .where(Technician.id == technician_id)
        .execution_options(populate_existing=True)
    )
    row = res.one_or_none()
    if row is None:
        raise NotFound("Technician profile not found")

    technician, kyc_status = row
    failure = eligibility_failure(
        technician,
        kyc_status,
        require_training=require_training,
        require_online=require_online,
    )
    if failure:
        message, detail = failure
        raise EligibilityDenied(message, detail=detail)
    return technician
