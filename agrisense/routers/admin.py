from typing import Optional

from fastapi import APIRouter, Depends
from sqlmodel import Session, select, func, desc, col

from agrisense.database import get_db
from agrisense.models import District, SensorReading, User
from agrisense.schemas import DeviceSummary, FarmerListItem
from agrisense.security import require_role
from agrisense.utils import page_bounds, paginate

router = APIRouter(prefix="/admin", tags=["Admin"])

READING_FIELDS = (
    "moisture_level", "ph_level", "temperature", "humidity", "light_intensity",
    "soil_conductivity", "nitrogen_level", "phosphorus_level", "potassium_level", "last_updated",
)


def _filtered(statement, name, mobile, district_id, district, crop):
    statement = statement.where(User.role == "farmer")
    if name:
        statement = statement.where(col(User.full_name).ilike(f"%{name}%"))
    if mobile:
        statement = statement.where(col(User.mobile_number).ilike(f"%{mobile}%"))
    if district_id:
        statement = statement.where(User.district_id == district_id)
    if district:
        statement = statement.join(District, District.id == User.district_id).where(
            col(District.name).ilike(f"%{district}%"))
    if crop:
        statement = statement.where(col(User.crop_name).ilike(f"%{crop}%"))
    return statement


@router.get("/farmers")
def list_farmers(
    page: int = 1,
    limit: int = 12,
    name: Optional[str] = None,
    mobile: Optional[str] = None,
    districtId: Optional[int] = None,
    district: Optional[str] = None,
    crop: Optional[str] = None,
    db: Session = Depends(get_db),
    admin: User = Depends(require_role(["admin"]))
):
    """
    Paginated farmer listing with each farmer's first device and its current readings.
    """
    offset, limit = page_bounds(page, limit)

    farmers = db.exec(
        _filtered(select(User), name, mobile, districtId, district, crop)
        .order_by(desc(User.created_at), desc(User.id))
        .offset(offset)
        .limit(limit)
    ).all()
    total = db.exec(
        _filtered(select(func.count()).select_from(User), name, mobile, districtId, district, crop)
    ).one()

    first_devices = {}
    for farmer in farmers:
        devices = sorted(farmer.devices, key=lambda d: d.id)
        if devices:
            first_devices[farmer.id] = devices[0]

    readings = {}
    if first_devices:
        device_ids = [device.id for device in first_devices.values()]
        rows = db.exec(select(SensorReading).where(col(SensorReading.device_id).in_(device_ids))).all()
        readings = {row.device_id: row.model_dump(mode="json", include=set(READING_FIELDS)) for row in rows}

    items = []
    for farmer in farmers:
        device = first_devices.get(farmer.id)
        items.append(FarmerListItem(
            id=farmer.id,
            full_name=farmer.full_name,
            mobile_number=farmer.mobile_number,
            crop_name=farmer.crop_name,
            district=farmer.district.name if farmer.district else None,
            land_size_acres=farmer.land_size_acres,
            location_address=farmer.location_address,
            created_at=farmer.created_at,
            device=DeviceSummary(
                id=device.id,
                name=device.device_name,
                is_active=device.is_active,
                last_seen=device.last_seen,
                api_key=device.device_api_key,
                readings=readings.get(device.id),
            ) if device else None,
        ).model_dump(by_alias=True, mode="json"))

    return {
        "success": True,
        "data": {
            "items": items,
            "pagination": paginate(page=max(page, 1), limit=limit, total=total).model_dump(),
        },
    }
