import logging
from datetime import timezone

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..alerting import Mailer, MoistureAlert, send_critical_moisture_alert, soil_moisture_breaches
from ..config import Settings
from ..db import Database
from ..deps import Principal, get_database, get_db, get_mailer, get_settings, get_user_or_service, require_device
from ..errors import NotFound
from ..ingestion import DEFAULT_DEVICE_ID, ingest_batch
from ..readings import latest_reading, reading_history
from ..schemas import IngestPayload, IngestResponse, ReadingOut

router = APIRouter(prefix="/api/data", tags=["data"])
logger = logging.getLogger(__name__)


@router.post(
    "/ingest",
    response_model=IngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_device)],
)
async def ingest(
    payload: IngestPayload,
    x_device_id: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
    database: Database = Depends(get_database),
    mailer: Mailer = Depends(get_mailer),
    settings: Settings = Depends(get_settings),
):
    device_id = (x_device_id or "").strip() or DEFAULT_DEVICE_ID
    result = await ingest_batch(db, payload, device_id=device_id, site_tz=settings.site_timezone)

    breaches = soil_moisture_breaches(result.soil_values, settings.critical_soil_moisture_percent)
    if breaches:
        logger.info("Critical soil moisture on reading %d: %d sensor(s)", result.sensor_data_id, len(breaches))
        alert = MoistureAlert(
            breaches=tuple(breaches),
            device_id=device_id,
            temperature=result.temperature,
            humidity=result.humidity,
            recorded_at=result.timestamp.replace(tzinfo=timezone.utc),
        )
        mailer.schedule(
            send_critical_moisture_alert(database, mailer, alert),
            f"critical moisture email for reading {result.sensor_data_id}",
        )

    return {
        "message": "Data accepted and stored.",
        "sensor_data_id": result.sensor_data_id,
        "resource_records_inserted": result.resource_records_inserted,
        "rollup_persisted": result.rollup_persisted,
    }


@router.get("/latest", response_model=ReadingOut)
async def latest(db: AsyncSession = Depends(get_db), _: Principal = Depends(get_user_or_service)):
    reading = await latest_reading(db)
    if reading is None:
        raise NotFound("No sensor data found.")
    return reading


@router.get("/history", response_model=list[ReadingOut])
async def history(
    hours: int = Query(24),
    db: AsyncSession = Depends(get_db),
    _: Principal = Depends(get_user_or_service),
):
    return await reading_history(db, hours)
