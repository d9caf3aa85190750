import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .. import reports
from ..config import Settings
from ..deps import Principal, get_db, get_settings, require_admin

router = APIRouter(prefix="/api/reports", tags=["reports"])
logger = logging.getLogger(__name__)


def _log_request(name: str, **kwargs) -> None:
    details = ", ".join(f"{k}={v}" for k, v in kwargs.items() if v is not None)
    logger.info("Report %s requested (%s)", name, details)


@router.get("/device-commands")
async def device_commands(
    startDate: str | None = Query(None),
    endDate: str | None = Query(None),
    device: str | None = Query(None),
    status: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Principal = Depends(require_admin),
):
    rng = reports.parse_report_range(startDate, endDate, tz=settings.site_timezone, reject_future=True)
    _log_request("device-commands", startDate=startDate, endDate=endDate, device=device, status=status)
    return await reports.device_commands_report(db, rng, device=device, status=status)


@router.get("/user-activity")
async def user_activity(
    startDate: str | None = Query(None),
    endDate: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Principal = Depends(require_admin),
):
    rng = reports.parse_report_range(startDate, endDate, tz=settings.site_timezone)
    _log_request("user-activity", startDate=startDate, endDate=endDate)
    return await reports.user_activity_report(db, rng)


@router.get("/sensor-summary")
async def sensor_summary(
    startDate: str | None = Query(None),
    endDate: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Principal = Depends(require_admin),
):
    rng = reports.parse_report_range(startDate, endDate, tz=settings.site_timezone)
    _log_request("sensor-summary", startDate=startDate, endDate=endDate)
    return await reports.sensor_summary_report(db, rng, critical=settings.critical_soil_moisture_percent)


@router.get("/water-usage")
async def water_usage(
    startDate: str | None = Query(None),
    endDate: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Principal = Depends(require_admin),
):
    rng = reports.parse_report_range(startDate, endDate, tz=settings.site_timezone, reject_future=True)
    _log_request("water-usage", startDate=startDate, endDate=endDate)
    return await reports.water_usage_report(db, rng)


@router.get("/energy-usage")
async def energy_usage(
    startDate: str | None = Query(None),
    endDate: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Principal = Depends(require_admin),
):
    rng = reports.parse_report_range(startDate, endDate, tz=settings.site_timezone, reject_future=True)
    _log_request("energy-usage", startDate=startDate, endDate=endDate)
    return await reports.energy_usage_report(db, rng, fixed_kwh_per_day=settings.fixed_device_kwh_per_day)


@router.get("/system-health")
async def system_health(
    startDate: str | None = Query(None),
    endDate: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Principal = Depends(require_admin),
):
    rng = reports.parse_report_range(startDate, endDate, tz=settings.site_timezone)
    _log_request("system-health", startDate=startDate, endDate=endDate)
    return await reports.system_health_report(db, rng)
