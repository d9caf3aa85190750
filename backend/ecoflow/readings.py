import logging
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import SensorReading, utcnow

logger = logging.getLogger(__name__)

STATUS_COLUMNS = {"pump": "pump_status", "valve": "valve_status"}

MAX_HISTORY_HOURS = 720


async def latest_reading(db: AsyncSession) -> SensorReading | None:
    """Newest reading whose timestamp is not in the future."""
    stmt = (
        select(SensorReading)
        .where(SensorReading.timestamp <= utcnow())
        .order_by(SensorReading.timestamp.desc(), SensorReading.id.desc())
        .limit(1)
    )
    res = await db.execute(stmt)
    return res.scalar_one_or_none()


async def reading_history(db: AsyncSession, hours: int, limit: int | None = None) -> list[SensorReading]:
    hours = max(1, min(int(hours), MAX_HISTORY_HOURS))
    now = utcnow()
    stmt = (
        select(SensorReading)
        .where(SensorReading.timestamp >= now - timedelta(hours=hours))
        .where(SensorReading.timestamp <= now)
        .order_by(SensorReading.timestamp.asc(), SensorReading.id.asc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    res = await db.execute(stmt)
    return list(res.scalars())


async def update_latest_reading_status(db: AsyncSession, device: str, state: str) -> int | None:
    """Mirror an actuator result onto the newest sensor_data row.

    Only ``pump_status``/``valve_status`` of that single row is touched. Returns
    the id of the updated row, or ``None`` when no reading exists. The caller
    owns the transaction.
    """
    column = STATUS_COLUMNS[device]
    value = 1 if state == "ON" else 0

    res = await db.execute(
        select(SensorReading.id)
        .order_by(SensorReading.timestamp.desc(), SensorReading.id.desc())
        .limit(1)
    )
    reading_id = res.scalar_one_or_none()
    if reading_id is None:
        logger.info("No sensor reading to update for %s=%s", device, state)
        return None

    await db.execute(
        update(SensorReading).where(SensorReading.id == reading_id).values({column: value})
    )
    logger.info("Updated %s to %d on sensor_data row %d", column, value, reading_id)
    return reading_id


def reading_to_dict(r: SensorReading) -> dict:
    return {
        "id": r.id,
        "device_id": r.device_id,
        "timestamp": r.timestamp.isoformat(),
        "soil_moisture_1_percent": r.soil_moisture_1_percent,
        "soil_moisture_2_percent": r.soil_moisture_2_percent,
        "soil_moisture_3_percent": r.soil_moisture_3_percent,
        "air_temperature_celsius": r.air_temperature_celsius,
        "air_humidity_percent": r.air_humidity_percent,
        "valve_status": r.valve_status,
        "pump_status": r.pump_status,
        "water_level_low_status": r.water_level_low_status,
        "water_level_high_status": r.water_level_high_status,
    }
