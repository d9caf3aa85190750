from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects import mysql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Current time as naive UTC, the storage convention for every timestamp."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# microsecond precision on MySQL, where a bare DATETIME rounds to whole seconds
Timestamp = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    user_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    user_role: Mapped[str] = mapped_column(String(20), nullable=False, default="user")  # admin, user
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(Timestamp, nullable=False, default=utcnow)
    commands: Mapped[list["DeviceCommand"]] = relationship("DeviceCommand", back_populates="requester")


class SensorReading(Base):
    __tablename__ = "sensor_data"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False, default="RPi_1")
    timestamp: Mapped[datetime] = mapped_column(Timestamp, nullable=False, default=utcnow, index=True)
    soil_moisture_1_percent: Mapped[float] = mapped_column(Float, nullable=False)
    soil_moisture_2_percent: Mapped[float] = mapped_column(Float, nullable=False)
    soil_moisture_3_percent: Mapped[float] = mapped_column(Float, nullable=False)
    air_temperature_celsius: Mapped[float] = mapped_column(Float, nullable=False)
    air_humidity_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    valve_status: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pump_status: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    water_level_low_status: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    water_level_high_status: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resources: Mapped[list["ResourceConsumption"]] = relationship(
        "ResourceConsumption", back_populates="reading", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def soil_values(self) -> tuple[float, float, float]:
        return (
            self.soil_moisture_1_percent,
            self.soil_moisture_2_percent,
            self.soil_moisture_3_percent,
        )


class ResourceConsumption(Base):
    __tablename__ = "resource_consumption"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sensor_data_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sensor_data.id", ondelete="CASCADE"), index=True, nullable=False
    )
    resource_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(Timestamp, nullable=False, index=True)
    pump_runtime_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    valve_runtime_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    water_consumed_liters: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    energy_consumed_kwh: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    pump_state: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    valve_state: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reading: Mapped["SensorReading"] = relationship("SensorReading", back_populates="resources")


class DeviceCommand(Base):
    __tablename__ = "device_commands"
    command_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device: Mapped[str] = mapped_column(String(16), nullable=False)  # pump, valve
    desired_state: Mapped[str] = mapped_column(String(8), nullable=False)  # ON, OFF
    actual_state: Mapped[str | None] = mapped_column(String(8), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING", index=True)
    requested_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.user_id", ondelete="SET NULL"), index=True, nullable=True
    )
    requested_at: Mapped[datetime] = mapped_column(Timestamp, nullable=False, default=utcnow)
    executed_at: Mapped[datetime | None] = mapped_column(Timestamp, nullable=True)
    requester: Mapped["User | None"] = relationship("User", back_populates="commands")

Index("ix_device_commands_device_requested", DeviceCommand.device, DeviceCommand.requested_at)
Index("ix_device_commands_status_requested", DeviceCommand.status, DeviceCommand.requested_at)
