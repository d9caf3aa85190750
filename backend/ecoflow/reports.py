"""Read-only report aggregations over a date range.

Dates are whole days in the site timezone; the query bounds are the matching
naive-UTC instants ``[start 00:00, end + 1 day 00:00)``.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
import logging
from typing import Any, Iterable

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .commands import DEVICES, FAILED, PENDING, SUCCESS
from .errors import InvalidArgument
from .models import DeviceCommand, ResourceConsumption, SensorReading, User, utcnow

logger = logging.getLogger(__name__)

REFERENCE_TIMEZONE = timezone(timedelta(hours=8))
DEVICE_COMMANDS_LIMIT = 1000
COMMAND_STATUSES = (PENDING, SUCCESS, FAILED)


@dataclass(slots=True)
class ReportRange:
    """Inclusive local date range with naive UTC query bounds."""

    start_date: date
    end_date: date
    start_bound: datetime
    end_bound: datetime
    tz: tzinfo

    def as_dict(self) -> dict[str, str]:
        return {"startDate": self.start_date.isoformat(), "endDate": self.end_date.isoformat()}


def _parse_date(value: str | None, name: str) -> date:
    if not value or not value.strip():
        raise InvalidArgument("startDate and endDate are required (YYYY-MM-DD).")
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise InvalidArgument(f"Invalid {name}. Use YYYY-MM-DD format.") from exc


def _to_utc_bound(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc).replace(tzinfo=None)


def parse_report_range(
    start: str | None,
    end: str | None,
    *,
    tz: tzinfo = REFERENCE_TIMEZONE,
    reject_future: bool = False,
    now: datetime | None = None,
) -> ReportRange:
    start_date = _parse_date(start, "startDate")
    end_date = _parse_date(end, "endDate")
    if start_date > end_date:
        raise InvalidArgument("startDate must be on or before endDate.")
    if reject_future:
        now = now or datetime.now(timezone.utc)
        today = now.astimezone(REFERENCE_TIMEZONE).date()
        if end_date > today:
            raise InvalidArgument(f"endDate cannot be in the future (today is {today.isoformat()} UTC+8).")
    return ReportRange(
        start_date=start_date,
        end_date=end_date,
        start_bound=_to_utc_bound(start_date, tz),
        end_bound=_to_utc_bound(end_date + timedelta(days=1), tz),
        tz=tz,
    )


def local_date(ts: datetime, tz: tzinfo) -> date:
    return ts.replace(tzinfo=timezone.utc).astimezone(tz).date()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _num(value: Any, ndigits: int = 2) -> float | None:
    if value is None:
        return None
    return round(float(value), ndigits)


def _seconds_between(start: datetime | None, end: datetime | None) -> float | None:
    if start is None or end is None:
        return None
    return (end - start).total_seconds()


# --- device commands ---

async def device_commands_report(
    db: AsyncSession, rng: ReportRange, device: str | None = None, status: str | None = None
) -> dict[str, Any]:
    if device and device != "all" and device not in DEVICES:
        raise InvalidArgument('Invalid device. Must be "pump", "valve" or "all".')
    if status and status != "all" and status not in COMMAND_STATUSES:
        raise InvalidArgument('Invalid status. Must be "PENDING", "SUCCESS", "FAILED" or "all".')

    stmt = (
        select(DeviceCommand, User)
        .outerjoin(User, DeviceCommand.requested_by == User.user_id)
        .where(DeviceCommand.requested_at >= rng.start_bound, DeviceCommand.requested_at < rng.end_bound)
    )
    if device and device != "all":
        stmt = stmt.where(DeviceCommand.device == device)
    if status and status != "all":
        stmt = stmt.where(DeviceCommand.status == status)
    stmt = stmt.order_by(DeviceCommand.requested_at.desc(), DeviceCommand.command_id.desc()).limit(
        DEVICE_COMMANDS_LIMIT
    )

    res = await db.execute(stmt)
    commands: list[dict[str, Any]] = []
    by_device: dict[str, int] = {}
    by_status: dict[str, int] = {}
    by_user: dict[str, dict[str, Any]] = {}
    success = 0
    exec_times: list[float] = []

    for cmd, user in res.all():
        exec_seconds = _seconds_between(cmd.requested_at, cmd.executed_at)
        commands.append(
            {
                "command_id": cmd.command_id,
                "device": cmd.device,
                "desired_state": cmd.desired_state,
                "actual_state": cmd.actual_state,
                "status": cmd.status,
                "requested_at": _iso(cmd.requested_at),
                "executed_at": _iso(cmd.executed_at),
                "user_id": user.user_id if user else None,
                "username": user.username if user else None,
                "email": user.email if user else None,
                "user_role": user.user_role if user else None,
                "execution_time_seconds": exec_seconds,
            }
        )
        by_device[cmd.device] = by_device.get(cmd.device, 0) + 1
        by_status[cmd.status] = by_status.get(cmd.status, 0) + 1
        name = user.username if user else "Unknown"
        entry = by_user.setdefault(
            name,
            {
                "count": 0,
                "username": name,
                "email": user.email if user else "N/A",
                "role": user.user_role if user else "N/A",
            },
        )
        entry["count"] += 1
        if cmd.status == SUCCESS:
            success += 1
        if exec_seconds is not None:
            exec_times.append(exec_seconds)

    total = len(commands)
    summary = {
        "total": total,
        "by_device": by_device,
        "by_status": by_status,
        "by_user": by_user,
        "success_rate": round(success / total * 100, 2) if total else 0.0,
        "avg_execution_time": round(sum(exec_times) / len(exec_times), 2) if exec_times else 0.0,
    }
    return {"range": rng.as_dict(), "commands": commands, "summary": summary}


# --- user activity ---

async def user_activity_report(db: AsyncSession, rng: ReportRange) -> list[dict[str, Any]]:
    users = (await db.execute(select(User).order_by(User.user_id.asc()))).scalars().all()
    stmt = select(
        DeviceCommand.requested_by, DeviceCommand.status, DeviceCommand.requested_at
    ).where(
        DeviceCommand.requested_by.is_not(None),
        DeviceCommand.requested_at >= rng.start_bound,
        DeviceCommand.requested_at < rng.end_bound,
    )
    rows = (await db.execute(stmt)).all()

    activity = {
        u.user_id: {
            "user_id": u.user_id,
            "username": u.username,
            "email": u.email,
            "user_role": u.user_role,
            "is_active": u.is_active,
            "total_commands": 0,
            "successful_commands": 0,
            "failed_commands": 0,
            "pending_commands": 0,
            "first_command": None,
            "last_command": None,
        }
        for u in users
    }
    firsts: dict[int, datetime] = {}
    lasts: dict[int, datetime] = {}
    status_keys = {SUCCESS: "successful_commands", FAILED: "failed_commands", PENDING: "pending_commands"}

    for user_id, status, requested_at in rows:
        entry = activity.get(user_id)
        if entry is None:
            continue
        entry["total_commands"] += 1
        key = status_keys.get(status)
        if key:
            entry[key] += 1
        if user_id not in firsts or requested_at < firsts[user_id]:
            firsts[user_id] = requested_at
        if user_id not in lasts or requested_at > lasts[user_id]:
            lasts[user_id] = requested_at

    for user_id, entry in activity.items():
        entry["first_command"] = _iso(firsts.get(user_id))
        entry["last_command"] = _iso(lasts.get(user_id))

    return sorted(activity.values(), key=lambda e: (-e["total_commands"], e["user_id"]))


# --- sensor summary ---

def _count_when(condition) -> Any:
    return func.sum(case((condition, 1), else_=0))


async def sensor_summary_report(db: AsyncSession, rng: ReportRange, critical: float = 20.0) -> dict[str, Any]:
    in_range = (SensorReading.timestamp >= rng.start_bound, SensorReading.timestamp < rng.end_bound)
    stmt = select(
        func.count(SensorReading.id),
        func.min(SensorReading.timestamp),
        func.max(SensorReading.timestamp),
        func.avg(SensorReading.soil_moisture_1_percent),
        func.min(SensorReading.soil_moisture_1_percent),
        func.max(SensorReading.soil_moisture_1_percent),
        func.avg(SensorReading.soil_moisture_2_percent),
        func.min(SensorReading.soil_moisture_2_percent),
        func.max(SensorReading.soil_moisture_2_percent),
        func.avg(SensorReading.soil_moisture_3_percent),
        func.min(SensorReading.soil_moisture_3_percent),
        func.max(SensorReading.soil_moisture_3_percent),
        func.avg(SensorReading.air_temperature_celsius),
        func.min(SensorReading.air_temperature_celsius),
        func.max(SensorReading.air_temperature_celsius),
        func.avg(SensorReading.air_humidity_percent),
        func.min(SensorReading.air_humidity_percent),
        func.max(SensorReading.air_humidity_percent),
        _count_when(SensorReading.water_level_low_status == 1),
        _count_when(SensorReading.water_level_high_status == 1),
        _count_when(SensorReading.pump_status == 1),
        _count_when(SensorReading.valve_status == 1),
    ).where(*in_range)
    row = (await db.execute(stmt)).one()

    (
        total, first, last,
        avg_s1, min_s1, max_s1,
        avg_s2, min_s2, max_s2,
        avg_s3, min_s3, max_s3,
        avg_t, min_t, max_t,
        avg_h, min_h, max_h,
        low_water, high_water, pump_on, valve_on,
    ) = row

    summary = {
        "total_readings": int(total or 0),
        "first_reading": _iso(first),
        "last_reading": _iso(last),
        "avg_soil1": _num(avg_s1), "min_soil1": _num(min_s1), "max_soil1": _num(max_s1),
        "avg_soil2": _num(avg_s2), "min_soil2": _num(min_s2), "max_soil2": _num(max_s2),
        "avg_soil3": _num(avg_s3), "min_soil3": _num(min_s3), "max_soil3": _num(max_s3),
        "avg_temperature": _num(avg_t), "min_temperature": _num(min_t), "max_temperature": _num(max_t),
        "avg_humidity": _num(avg_h), "min_humidity": _num(min_h), "max_humidity": _num(max_h),
        "low_water_alerts": int(low_water or 0),
        "high_water_alerts": int(high_water or 0),
        "pump_on_count": int(pump_on or 0),
        "valve_on_count": int(valve_on or 0),
    }

    dry = (
        (SensorReading.soil_moisture_1_percent < critical)
        | (SensorReading.soil_moisture_2_percent < critical)
        | (SensorReading.soil_moisture_3_percent < critical)
    )
    t_stmt = select(
        func.count(SensorReading.id), func.min(SensorReading.timestamp), func.max(SensorReading.timestamp)
    ).where(*in_range, dry)
    low_count, first_low, last_low = (await db.execute(t_stmt)).one()

    thresholds = {
        "critical_threshold": critical,
        "low_moisture_count": int(low_count or 0),
        "first_low_moisture": _iso(first_low),
        "last_low_moisture": _iso(last_low),
    }
    return {"range": rng.as_dict(), "summary": summary, "thresholds": thresholds}


# --- water / energy ---

async def _resource_rows(db: AsyncSession, rng: ReportRange) -> list[ResourceConsumption]:
    stmt = (
        select(ResourceConsumption)
        .where(ResourceConsumption.timestamp >= rng.start_bound, ResourceConsumption.timestamp < rng.end_bound)
        .order_by(ResourceConsumption.timestamp.asc())
    )
    return list((await db.execute(stmt)).scalars())


def _day_keys(timestamps: Iterable[datetime], tz: tzinfo) -> set[date]:
    return {local_date(ts, tz) for ts in timestamps}


async def water_usage_report(db: AsyncSession, rng: ReportRange) -> dict[str, Any]:
    daily: dict[date, dict[str, Any]] = {}

    def _day(d: date) -> dict[str, Any]:
        return daily.setdefault(
            d,
            {
                "date": d.isoformat(),
                "water_liters": 0.0,
                "pump_runtime_seconds": 0.0,
                "valve_runtime_seconds": 0.0,
                "resource_records": 0,
                "pump_activations": 0,
                "valve_activations": 0,
            },
        )

    for rec in await _resource_rows(db, rng):
        entry = _day(local_date(rec.timestamp, rng.tz))
        entry["water_liters"] += rec.water_consumed_liters or 0.0
        entry["pump_runtime_seconds"] += rec.pump_runtime_seconds or 0.0
        entry["valve_runtime_seconds"] += rec.valve_runtime_seconds or 0.0
        entry["resource_records"] += 1

    stmt = select(DeviceCommand.device, DeviceCommand.requested_at).where(
        DeviceCommand.status == SUCCESS,
        DeviceCommand.desired_state == "ON",
        DeviceCommand.requested_at >= rng.start_bound,
        DeviceCommand.requested_at < rng.end_bound,
    )
    for device, requested_at in (await db.execute(stmt)).all():
        entry = _day(local_date(requested_at, rng.tz))
        entry[f"{device}_activations"] += 1

    days = [daily[d] for d in sorted(daily)]
    for entry in days:
        entry["water_liters"] = round(entry["water_liters"], 3)
        entry["pump_runtime_seconds"] = round(entry["pump_runtime_seconds"], 1)
        entry["valve_runtime_seconds"] = round(entry["valve_runtime_seconds"], 1)

    totals = {
        "water_liters": round(sum(e["water_liters"] for e in days), 3),
        "pump_runtime_seconds": round(sum(e["pump_runtime_seconds"] for e in days), 1),
        "valve_runtime_seconds": round(sum(e["valve_runtime_seconds"] for e in days), 1),
        "pump_activations": sum(e["pump_activations"] for e in days),
        "valve_activations": sum(e["valve_activations"] for e in days),
    }
    return {"range": rng.as_dict(), "daily": days, "totals": totals}


async def energy_usage_report(
    db: AsyncSession, rng: ReportRange, fixed_kwh_per_day: float = 0.12
) -> dict[str, Any]:
    """Metered irrigation energy plus a flat draw for each day the system ran."""

    metered: dict[date, float] = {}
    for rec in await _resource_rows(db, rng):
        d = local_date(rec.timestamp, rng.tz)
        metered[d] = metered.get(d, 0.0) + (rec.energy_consumed_kwh or 0.0)

    stmt = select(SensorReading.timestamp).where(
        SensorReading.timestamp >= rng.start_bound, SensorReading.timestamp < rng.end_bound
    )
    sensor_days = _day_keys((await db.execute(stmt)).scalars(), rng.tz)
    active_days = sorted(sensor_days | set(metered))

    daily = []
    for d in active_days:
        irrigation = metered.get(d, 0.0)
        daily.append(
            {
                "date": d.isoformat(),
                "irrigation_kwh": round(irrigation, 4),
                "fixed_kwh": round(fixed_kwh_per_day, 4),
                "total_kwh": round(irrigation + fixed_kwh_per_day, 4),
            }
        )

    irrigation_total = sum(metered.values())
    fixed_total = fixed_kwh_per_day * len(active_days)
    totals = {
        "active_days": len(active_days),
        "irrigation_kwh": round(irrigation_total, 4),
        "fixed_kwh": round(fixed_total, 4),
        "total_kwh": round(irrigation_total + fixed_total, 4),
        "fixed_kwh_per_day": fixed_kwh_per_day,
    }
    return {"range": rng.as_dict(), "daily": daily, "totals": totals}


# --- system health ---

def overall_status(success_rate: float, hours_since_last_reading: float | None) -> str:
    if hours_since_last_reading is None:
        return "critical"
    if success_rate < 50 or hours_since_last_reading > 24:
        return "critical"
    if success_rate < 80 or hours_since_last_reading > 2:
        return "warning"
    return "healthy"


async def system_health_report(db: AsyncSession, rng: ReportRange, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    cmd_rows = (
        await db.execute(
            select(
                DeviceCommand.device,
                DeviceCommand.desired_state,
                DeviceCommand.status,
                DeviceCommand.requested_at,
                DeviceCommand.executed_at,
            ).where(DeviceCommand.requested_at >= rng.start_bound, DeviceCommand.requested_at < rng.end_bound)
        )
    ).all()

    counts = {SUCCESS: 0, FAILED: 0, PENDING: 0}
    response_times: list[float] = []
    devices: dict[str, dict[str, Any]] = {}
    for device, desired, status, requested_at, executed_at in cmd_rows:
        counts[status] = counts.get(status, 0) + 1
        seconds = _seconds_between(requested_at, executed_at)
        if seconds is not None:
            response_times.append(seconds)
        stats = devices.setdefault(
            device, {"device": device, "total_commands": 0, "successful_ons": 0, "failures": 0}
        )
        stats["total_commands"] += 1
        if status == SUCCESS and desired == "ON":
            stats["successful_ons"] += 1
        elif status == FAILED:
            stats["failures"] += 1

    total = len(cmd_rows)
    success_rate = counts[SUCCESS] / total * 100 if total else 100.0

    in_range = (SensorReading.timestamp >= rng.start_bound, SensorReading.timestamp < rng.end_bound)
    reading_times = list((await db.execute(select(SensorReading.timestamp).where(*in_range))).scalars())
    newest = (await db.execute(select(func.max(SensorReading.timestamp)))).scalar_one_or_none()
    hours_since = round((now - newest).total_seconds() / 3600, 2) if newest else None

    water = (
        await db.execute(
            select(
                _count_when(SensorReading.water_level_low_status == 1),
                _count_when(SensorReading.water_level_high_status == 1),
            ).where(*in_range)
        )
    ).one()

    status = overall_status(success_rate, hours_since)
    if status != "healthy":
        logger.info("System health is %s (success rate %.1f%%, hours since reading %s)", status, success_rate, hours_since)

    return {
        "range": rng.as_dict(),
        "commands": {
            "total_commands": total,
            "successful": counts[SUCCESS],
            "failed": counts[FAILED],
            "pending": counts[PENDING],
            "success_rate": round(success_rate, 2),
            "avg_response_time": round(sum(response_times) / len(response_times), 2) if response_times else None,
        },
        "sensors": {
            "total_readings": len(reading_times),
            "days_with_data": len(_day_keys(reading_times, rng.tz)),
            "oldest_reading": _iso(min(reading_times)) if reading_times else None,
            "newest_reading": _iso(max(reading_times)) if reading_times else None,
            "hours_since_last_reading": hours_since,
        },
        "devices": [devices[d] for d in sorted(devices)],
        "water_alerts": {
            "low_water_count": int(water[0] or 0),
            "high_water_count": int(water[1] or 0),
        },
        "overall_status": status,
    }
