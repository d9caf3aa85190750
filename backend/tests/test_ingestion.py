import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.dialects import mysql
from sqlalchemy.exc import IntegrityError
from sqlalchemy.schema import CreateTable

from conftest import DEVICE_HEADERS, SERVICE_HEADERS
from ecoflow.errors import InternalError
from ecoflow.ingestion import ingest_batch, resolve_timestamp
from ecoflow.main import create_app
from ecoflow.models import DeviceCommand, ResourceConsumption, SensorReading, User, utcnow
from ecoflow.schemas import IngestPayload

UTC8 = timezone(timedelta(hours=8))


def _payload(**overrides):
    body = {
        "temperature": 28.1,
        "humidity": 71.5,
        "soil1": 42.0,
        "soil2": 38.5,
        "soil3": 40.0,
        "lowLevel": 0,
        "highLevel": 1,
        "valve": 0,
        "pump": 0,
    }
    body.update(overrides)
    return body


def _resource(resource_id, **overrides):
    record = {
        "resource_id": resource_id,
        "pump_runtime_seconds": 30,
        "valve_runtime_seconds": 12,
        "water_consumed_liters": 1.25,
        "energy_consumed_kwh": 0.004,
        "pump_state": 0,
        "valve_state": 1,
    }
    record.update(overrides)
    return record


def _counts(store):
    async def _run(session):
        readings = (await session.execute(select(func.count(SensorReading.id)))).scalar_one()
        resources = (await session.execute(select(func.count(ResourceConsumption.id)))).scalar_one()
        return readings, resources

    return store(_run)


def test_ingest_stores_reading_and_resources(settings, store):
    body = _payload(resource_consumption=[_resource("rc-1"), _resource("rc-2", pump_state=1)])
    with TestClient(create_app(settings)) as client:
        resp = client.post("/api/data/ingest", json=body, headers={**DEVICE_HEADERS, "x-device-id": "RPi_7"})

    assert resp.status_code == 202
    data = resp.json()
    assert data["message"] == "Data accepted and stored."
    assert data["resource_records_inserted"] == 2
    assert data["rollup_persisted"] is False
    assert _counts(store) == (1, 2)

    async def _load(session):
        reading = await session.get(SensorReading, data["sensor_data_id"])
        rows = (await session.execute(select(ResourceConsumption).order_by(ResourceConsumption.id))).scalars().all()
        return reading, rows

    reading, rows = store(_load)
    assert reading.device_id == "RPi_7"
    assert reading.water_level_high_status == 1
    assert [r.resource_id for r in rows] == ["rc-1", "rc-2"]
    assert all(r.sensor_data_id == reading.id for r in rows)
    assert rows[1].pump_state == 1


def test_sentinel_resource_id_is_skipped(settings, store, caplog):
    caplog.set_level(logging.INFO, logger="ecoflow.ingestion")
    body = _payload(resource_consumption=[_resource(0)])
    with TestClient(create_app(settings)) as client:
        resp = client.post("/api/data/ingest", json=body, headers=DEVICE_HEADERS)

    assert resp.status_code == 202
    assert resp.json()["resource_records_inserted"] == 0
    assert _counts(store) == (1, 0)
    assert "0 resource record(s), 1 skipped" in caplog.text


def test_duplicate_resource_ids_roll_back_whole_batch(settings, store):
    body = _payload(resource_consumption=[_resource("dup-1"), _resource("dup-1")])
    with TestClient(create_app(settings)) as client:
        resp = client.post("/api/data/ingest", json=body, headers=DEVICE_HEADERS)

    assert resp.status_code == 409
    assert _counts(store) == (0, 0)


def test_resource_id_already_stored_conflicts(settings, store):
    with TestClient(create_app(settings)) as client:
        first = client.post(
            "/api/data/ingest", json=_payload(resource_consumption=[_resource("rc-9")]), headers=DEVICE_HEADERS
        )
        second = client.post(
            "/api/data/ingest", json=_payload(resource_consumption=[_resource("rc-9")]), headers=DEVICE_HEADERS
        )

    assert first.status_code == 202
    assert second.status_code == 409
    assert _counts(store) == (1, 1)


def test_missing_required_values_write_nothing(settings, store):
    body = _payload()
    del body["soil2"]
    with TestClient(create_app(settings)) as client:
        missing_soil = client.post("/api/data/ingest", json=body, headers=DEVICE_HEADERS)
        missing_temp = client.post(
            "/api/data/ingest", json=_payload(temperature=None), headers=DEVICE_HEADERS
        )

    assert missing_soil.status_code == 400
    assert missing_soil.json()["message"] == "Missing required sensor data (temperature or soil)."
    assert missing_temp.status_code == 400
    assert _counts(store) == (0, 0)


def test_ingest_requires_device_key(settings, store):
    with TestClient(create_app(settings)) as client:
        resp = client.post("/api/data/ingest", json=_payload(), headers={"x-api-key": "nope"})

    assert resp.status_code == 401
    assert _counts(store) == (0, 0)


def test_future_timestamp_is_clamped(settings, store):
    future = (datetime.now(timezone.utc) + timedelta(days=2)).isoformat()
    with TestClient(create_app(settings)) as client:
        resp = client.post("/api/data/ingest", json=_payload(timestamp=future), headers=DEVICE_HEADERS)
    after = utcnow()

    async def _load(session):
        return await session.get(SensorReading, resp.json()["sensor_data_id"])

    assert resp.status_code == 202
    assert store(_load).timestamp <= after


def test_resolve_timestamp_reads_naive_values_as_site_time():
    now = datetime(2024, 5, 1, 12, 0, 0)

    ts, clamped = resolve_timestamp(datetime(2024, 5, 1, 8, 30), UTC8, now)
    assert ts == datetime(2024, 5, 1, 0, 30)
    assert clamped is False

    ts, clamped = resolve_timestamp(datetime(2024, 5, 1, 13, 0, tzinfo=timezone.utc), UTC8, now)
    assert ts == now
    assert clamped is True

    assert resolve_timestamp(None, UTC8, now) == (now, False)


def test_rollup_is_accepted_but_not_persisted(settings):
    body = _payload(total_resources_last_5min={"water_consumed_liters": 3.2, "energy_consumed_kwh": 0.01})
    with TestClient(create_app(settings)) as client:
        resp = client.post("/api/data/ingest", json=body, headers=DEVICE_HEADERS)

    assert resp.status_code == 202
    assert resp.json()["rollup_persisted"] is False


def test_critical_moisture_emails_active_users(settings, users, mail_server):
    with TestClient(create_app(settings)) as client:
        resp = client.post("/api/data/ingest", json=_payload(soil2=12.5), headers=DEVICE_HEADERS)

    assert resp.status_code == 202
    assert len(mail_server.sent_messages) == 1
    message = mail_server.sent_messages[0]
    assert message["Subject"] == "CRITICAL: Low Soil Moisture Detected - EcoFlow System"
    recipients = [addr.strip() for addr in message["To"].split(",")]
    assert sorted(recipients) == ["admin@ecoflow.test", "admin@example.com", "gardener@ecoflow.test"]
    body = message.get_body(preferencelist=("plain",)).get_content()
    assert "Sensor 2: 12.5%" in body


def test_healthy_moisture_sends_nothing(settings, mail_server):
    with TestClient(create_app(settings)) as client:
        client.post("/api/data/ingest", json=_payload(), headers=DEVICE_HEADERS)

    assert mail_server.sent_messages == []


def test_latest_and_history(settings, user_headers):
    with TestClient(create_app(settings)) as client:
        empty = client.get("/api/data/latest", headers=user_headers)
        client.post("/api/data/ingest", json=_payload(soil1=41), headers=DEVICE_HEADERS)
        client.post("/api/data/ingest", json=_payload(soil1=43), headers=DEVICE_HEADERS)
        latest = client.get("/api/data/latest", headers=SERVICE_HEADERS)
        history = client.get("/api/data/history", params={"hours": 5000}, headers=user_headers)
        bad_key = client.get("/api/data/latest", headers={"x-service-api-key": "wrong"})
        anonymous = client.get("/api/data/history")

    assert empty.status_code == 404
    assert latest.status_code == 200
    assert latest.json()["soil_moisture_1_percent"] == 43
    assert [r["soil_moisture_1_percent"] for r in history.json()] == [41, 43]
    assert bad_key.status_code == 403
    assert anonymous.status_code == 401


class FailingSession:
    """Session whose first flush hits a constraint on the sensor reading itself."""

    def __init__(self):
        self.added = []
        self.rolled_back = False
        self.committed = False

    def add(self, obj):
        self.added.append(obj)

    async def flush(self):
        raise IntegrityError("INSERT INTO sensor_data", {}, Exception("NOT NULL constraint failed"))

    async def commit(self):
        self.committed = True

    async def rollback(self):
        self.rolled_back = True


def test_reading_constraint_failure_is_not_reported_as_duplicate():
    session = FailingSession()
    payload = IngestPayload(**_payload(resource_consumption=[_resource("rc-1")]))

    with pytest.raises(InternalError):
        asyncio.run(ingest_batch(session, payload, device_id="RPi_1"))

    assert session.rolled_back is True
    assert session.committed is False
    assert len(session.added) == 1


def test_timestamp_columns_keep_microseconds_on_mysql():
    for model, columns in (
        (SensorReading, 1),
        (ResourceConsumption, 1),
        (DeviceCommand, 2),
        (User, 1),
    ):
        ddl = str(CreateTable(model.__table__).compile(dialect=mysql.dialect()))
        assert ddl.count("DATETIME(6)") == columns, model.__tablename__
