from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator


def _flag(value: Any) -> int:
    """Coerce device status flags (bool, 0/1, "ON"/"OFF") to 0/1."""
    if value is None:
        return 0
    if isinstance(value, str):
        return 1 if value.strip().lower() in {"1", "true", "on", "yes"} else 0
    return 1 if value else 0


# --- accounts ---

class LoginRequest(BaseModel):
    email: str = ""
    password: str = ""
    remember_me: bool = Field(default=False, validation_alias=AliasChoices("remember_me", "rememberMe"))


class LoginResponse(BaseModel):
    message: str
    token: str
    username: str
    userRole: str


class RegisterIn(BaseModel):
    name: str = Field(min_length=1, validation_alias=AliasChoices("name", "username"))
    email: EmailStr
    password: str = Field(min_length=6)
    role: Literal["admin", "user"] = "user"


class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, validation_alias=AliasChoices("name", "username"))
    email: Optional[EmailStr] = None
    role: Optional[Literal["admin", "user"]] = None
    is_active: Optional[bool] = None
    password: Optional[str] = Field(default=None, min_length=6)


class UserOut(BaseModel):
    user_id: int
    username: str
    email: str
    user_role: str
    is_active: bool
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


# --- command queue ---

class CommandRequest(BaseModel):
    device: Optional[str] = None
    state: Optional[str] = None


class CommandResultIn(BaseModel):
    command_id: Optional[int] = None
    status: Optional[str] = None
    actual_state: Optional[str] = None


class CommandOut(BaseModel):
    command_id: int
    device: str
    desired_state: str
    actual_state: Optional[str] = None
    status: str
    requested_by: Optional[int] = None
    requested_at: datetime
    executed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class PendingCommandOut(BaseModel):
    device: str
    state: str
    command_id: int


# --- ingestion ---

class ResourceRecordIn(BaseModel):
    resource_id: Union[int, str] = Field(validation_alias=AliasChoices("resource_id", "resourceId", "id"))
    timestamp: Optional[datetime] = None
    pump_runtime_seconds: float = Field(
        default=0.0, validation_alias=AliasChoices("pump_runtime_seconds", "pump_runtime_sec", "pump_runtime")
    )
    valve_runtime_seconds: float = Field(
        default=0.0, validation_alias=AliasChoices("valve_runtime_seconds", "valve_runtime_sec", "valve_runtime")
    )
    water_consumed_liters: float = Field(
        default=0.0, validation_alias=AliasChoices("water_consumed_liters", "water_liters", "water_used_liters")
    )
    energy_consumed_kwh: float = Field(
        default=0.0, validation_alias=AliasChoices("energy_consumed_kwh", "energy_kwh", "energy_used_kwh")
    )
    pump_state: int = 0
    valve_state: int = 0

    @field_validator("pump_state", "valve_state", mode="before")
    @classmethod
    def _coerce_states(cls, value: Any) -> int:
        return _flag(value)

    @property
    def is_sentinel(self) -> bool:
        return str(self.resource_id).strip() in {"0", ""}


class IngestPayload(BaseModel):
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    soil1: Optional[float] = None
    soil2: Optional[float] = None
    soil3: Optional[float] = None
    lowLevel: int = 0
    highLevel: int = 0
    valve: int = 0
    pump: int = 0
    timestamp: Optional[datetime] = None
    resource_consumption: list[ResourceRecordIn] = Field(default_factory=list)
    total_resources_last_5min: Optional[dict[str, Any]] = None

    @field_validator("lowLevel", "highLevel", "valve", "pump", mode="before")
    @classmethod
    def _coerce_flags(cls, value: Any) -> int:
        return _flag(value)

    @field_validator("resource_consumption", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class IngestResponse(BaseModel):
    message: str
    sensor_data_id: int
    resource_records_inserted: int
    rollup_persisted: bool


class ReadingOut(BaseModel):
    id: int
    device_id: str
    timestamp: datetime
    soil_moisture_1_percent: float
    soil_moisture_2_percent: float
    soil_moisture_3_percent: float
    air_temperature_celsius: float
    air_humidity_percent: Optional[float] = None
    valve_status: int
    pump_status: int
    water_level_low_status: int
    water_level_high_status: int
    model_config = ConfigDict(from_attributes=True)


# --- chat ---

class ChatRequest(BaseModel):
    question: Optional[str] = Field(default=None, validation_alias=AliasChoices("question", "message"))


class ChatResponse(BaseModel):
    response: str
