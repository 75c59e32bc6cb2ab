import logging
import math
from dataclasses import dataclass

from geoalchemy2 import Geography
from geoalchemy2.shape import from_shape
from shapely.geometry import Point
from sqlalchemy import cast, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Technician
from .scoring import score

logger = logging.getLogger(__name__)

RADIUS_MULTIPLIERS = (1, 2, 4)


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class LocationHint:
    """Where a booking is: a point when known, otherwise postal fields."""

    point: GeoPoint | None = None
    pincode: str | None = None
    city: str | None = None
    state: str | None = None


def to_point(latitude, longitude) -> GeoPoint | None:
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return GeoPoint(lat, lng)


def haversine(lat1, lon1, lat2, lon2):
    R = 6371
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return R * c


def km_to_deg_lat(km: float) -> float:
    return km / 111.0


def km_to_deg_lon(km: float, lat: float) -> float:
    # avoid division by zero near poles
    c = math.cos(math.radians(lat))
    if abs(c) < 0.01:
        c = 0.01
    return km / (111.0 * c)


async def _nearby_haversine(db, candidate_ids, point: GeoPoint, radius_m: float, limit: int):
    radius_km = radius_m / 1000
    d_lat = km_to_deg_lat(radius_km)
    d_lon = km_to_deg_lon(radius_km, point.latitude)

    res = await db.execute(
        select(Technician).where(
            Technician.id.in_(candidate_ids),
            Technician.is_online.is_(True),
            Technician.latitude.is_not(None),
            Technician.longitude.is_not(None),
            Technician.latitude.between(point.latitude - d_lat, point.latitude + d_lat),
            Technician.longitude.between(point.longitude - d_lon, point.longitude + d_lon),
        )
    )

    hits = []
    for t in res.scalars().all():
        distance_km = haversine(point.latitude, point.longitude, t.latitude, t.longitude)
        if distance_km <= radius_km:
            hits.append((t, distance_km))

    hits.sort(key=lambda x: x[1])
    return hits[:limit]


async def _nearby_postgis(db, candidate_ids, point: GeoPoint, radius_m: float, limit: int):
    target = cast(from_shape(Point(point.longitude, point.latitude), srid=4326), Geography)
    location = cast(
        func.ST_SetSRID(func.ST_MakePoint(Technician.longitude, Technician.latitude), 4326),
        Geography,
    )
    distance = func.ST_Distance(location, target)

    res = await db.execute(
        select(Technician, distance.label("distance_m"))
        .where(
            Technician.id.in_(candidate_ids),
            Technician.is_online.is_(True),
            Technician.latitude.is_not(None),
            Technician.longitude.is_not(None),
            func.ST_DWithin(location, target, radius_m),
        )
        .order_by(distance)
        .limit(limit)
    )
    return [(t, float(d) / 1000) for t, d in res.all()]


async def find_nearby(
    db: AsyncSession,
    candidate_ids: list[str],
    point: GeoPoint,
    radius_m: float,
    limit: int,
) -> list[str]:
    """Online candidates within radius_m of point, nearest first, re-ranked by score."""
    if not candidate_ids or limit <= 0:
        return []

    if db.get_bind().dialect.name == "postgresql":
        hits = await _nearby_postgis(db, candidate_ids, point, radius_m, limit)
    else:
        hits = await _nearby_haversine(db, candidate_ids, point, radius_m, limit)

    radius_km = radius_m / 1000
    ranked = sorted(
        hits,
        key=lambda h: score(h[1], radius_km, h[0].rating_avg, h[0].rating_count, h[0].jobs_completed),
        reverse=True,
    )
    return [t.id for t, _ in ranked]


async def _find_by_postal(db, candidate_ids, hint: LocationHint, limit: int) -> list[str]:
    base = select(Technician.id).where(
        Technician.id.in_(candidate_ids),
        Technician.is_online.is_(True),
    )

    attempts = []
    if hint.pincode and hint.pincode.strip():
        attempts.append(Technician.pincode == hint.pincode.strip())
    if hint.city and hint.city.strip():
        attempts.append(func.lower(Technician.city) == hint.city.strip().lower())
    if hint.state and hint.state.strip():
        attempts.append(func.lower(Technician.state) == hint.state.strip().lower())

    for predicate in attempts:
        res = await db.execute(base.where(predicate).limit(limit))
        ids = list(res.scalars().all())
        if ids:
            return ids
    return []


async def locate(
    db: AsyncSession,
    candidate_ids: list[str],
    hint: LocationHint,
    base_radius_m: float,
    limit: int,
) -> list[str]:
    """
    Progressive radius: R, 2R, 4R, stopping at the first non-empty ring.
    Without a usable point, or when every ring is empty, fall back to
    pincode, then city, then state.
    """
    if not candidate_ids:
        return []

    if hint.point is not None:
        for multiplier in RADIUS_MULTIPLIERS:
            radius = base_radius_m * multiplier
            ids = await find_nearby(db, candidate_ids, hint.point, radius, limit)
            if ids:
                logger.debug("locator: %d technicians within %.0fm", len(ids), radius)
                return ids

    return await _find_by_postal(db, candidate_ids, hint, limit)
