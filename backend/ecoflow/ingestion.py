import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import Conflict, InternalError, InvalidArgument
from .models import ResourceConsumption, SensorReading, utcnow
from .schemas import IngestPayload

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_ID = "RPi_1"


@dataclass
class IngestResult:
    sensor_data_id: int
    resource_records_inserted: int
    timestamp: datetime
    soil_values: tuple[float, float, float]
    temperature: float
    humidity: float | None
    device_id: str
    rollup_persisted: bool = False


def resolve_timestamp(value: datetime | None, site_tz: tzinfo, now: datetime | None = None) -> tuple[datetime, bool]:
    """Turn a caller timestamp into naive UTC, clamped to *now*.

    Naive values are read as site-local time. Returns ``(timestamp, clamped)``.
    """
    now = now or utcnow()
    if value is None:
        return now, False
    if value.tzinfo is None:
        value = value.replace(tzinfo=site_tz)
    ts = value.astimezone(timezone.utc).replace(tzinfo=None)
    if ts > now:
        return now, True
    return ts, False


async def ingest_batch(
    db: AsyncSession,
    payload: IngestPayload,
    *,
    device_id: str = DEFAULT_DEVICE_ID,
    site_tz: tzinfo = timezone.utc,
) -> IngestResult:
    """Store one reading and its resource records atomically."""

    if payload.temperature is None or None in (payload.soil1, payload.soil2, payload.soil3):
        raise InvalidArgument("Missing required sensor data (temperature or soil).")

    now = utcnow()
    timestamp, clamped = resolve_timestamp(payload.timestamp, site_tz, now)
    if clamped:
        logger.warning(
            "Future timestamp %s from %s clamped to server time %s",
            payload.timestamp.isoformat(), device_id, timestamp.isoformat(),
        )

    reading = SensorReading(
        device_id=device_id,
        timestamp=timestamp,
        soil_moisture_1_percent=payload.soil1,
        soil_moisture_2_percent=payload.soil2,
        soil_moisture_3_percent=payload.soil3,
        air_temperature_celsius=payload.temperature,
        air_humidity_percent=payload.humidity,
        valve_status=payload.valve,
        pump_status=payload.pump,
        water_level_low_status=payload.lowLevel,
        water_level_high_status=payload.highLevel,
    )

    inserted = 0
    skipped = 0
    reading_stored = False
    try:
        db.add(reading)
        await db.flush()
        reading_stored = True

        for record in payload.resource_consumption:
            if record.is_sentinel:
                skipped += 1
                continue
            record_ts, _ = resolve_timestamp(record.timestamp, site_tz, now)
            db.add(
                ResourceConsumption(
                    sensor_data_id=reading.id,
                    resource_id=str(record.resource_id).strip(),
                    device_id=device_id,
                    timestamp=record_ts if record.timestamp else timestamp,
                    pump_runtime_seconds=record.pump_runtime_seconds,
                    valve_runtime_seconds=record.valve_runtime_seconds,
                    water_consumed_liters=record.water_consumed_liters,
                    energy_consumed_kwh=record.energy_consumed_kwh,
                    pump_state=record.pump_state,
                    valve_state=record.valve_state,
                )
            )
            inserted += 1

        await db.flush()
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        if not reading_stored:
            logger.exception("Sensor reading from %s violated a store constraint", device_id)
            raise InternalError("Internal server error during data storage.") from exc
        logger.warning("Ingest batch from %s rejected: duplicate resource_id", device_id)
        raise Conflict("Duplicate resource_id in batch. No data was stored.") from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Data ingestion failed for %s", device_id)
        raise InternalError("Internal server error during data storage.") from exc

    if payload.total_resources_last_5min is not None:
        logger.info(
            "Resource rollup from %s received but not persisted: %s",
            device_id, payload.total_resources_last_5min,
        )

    logger.info(
        "Data ingested for %s: reading %d, %d resource record(s), %d skipped, temp %s°C",
        device_id, reading.id, inserted, skipped, payload.temperature,
    )
    return IngestResult(
        sensor_data_id=reading.id,
        resource_records_inserted=inserted,
        timestamp=timestamp,
        soil_values=(payload.soil1, payload.soil2, payload.soil3),
        temperature=payload.temperature,
        humidity=payload.humidity,
        device_id=device_id,
    )
