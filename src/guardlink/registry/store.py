"""Device registration persistence."""

import logging

from sqlmodel import Session, select

from guardlink.registry.models import DeviceRecord

logger = logging.getLogger(__name__)


def upsert_device_record(
    session: Session,
    device_id: str,
    owner_member_id: str,
    name: str | None = None,
) -> DeviceRecord:
    """Create a registration, or fill in a missing name on an existing one."""
    record = session.get(DeviceRecord, device_id)

    if record is None:
        record = DeviceRecord(device_id=device_id, owner_member_id=owner_member_id, name=name)
        session.add(record)
        logger.info("Registered device %s for %s", device_id, owner_member_id)
    elif record.name is None and name:
        record.name = name
        session.add(record)
    else:
        return record

    session.commit()
    session.refresh(record)
    return record


def get_device_records(
    session: Session,
    owner_member_id: str | None = None,
) -> list[DeviceRecord]:
    """All registrations, optionally for one family."""
    stmt = select(DeviceRecord)
    if owner_member_id is not None:
        stmt = stmt.where(DeviceRecord.owner_member_id == owner_member_id)
    stmt = stmt.order_by(DeviceRecord.registered_at)  # type: ignore[arg-type]
    return list(session.exec(stmt).all())
