"""Device command queue.

Operators submit pump/valve commands, the field device polls for ``PENDING``
rows and reports each result back. A command leaves ``PENDING`` exactly once;
the transition is a conditional update so a late or duplicated callback cannot
overwrite a terminal row.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .errors import Conflict, InternalError, InvalidArgument, NotFound
from .models import DeviceCommand, utcnow
from .readings import update_latest_reading_status

logger = logging.getLogger(__name__)

DEVICES = ("pump", "valve")
STATES = ("ON", "OFF")
RESULT_STATUSES = ("SUCCESS", "FAILED")

PENDING = "PENDING"
SUCCESS = "SUCCESS"
FAILED = "FAILED"

ActuatorHook = Callable[[AsyncSession, str, str], Awaitable[object]]


@dataclass(frozen=True)
class PendingCommand:
    device: str
    state: str
    command_id: int

    def as_dict(self) -> dict:
        return {"device": self.device, "state": self.state, "command_id": self.command_id}


class CommandSource(Protocol):
    """Where the device picks up work from."""

    async def pending(self) -> list[PendingCommand]:
        ...


class PollingCommandSource:
    """Reads pending commands straight from the store, oldest request first."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def pending(self) -> list[PendingCommand]:
        stmt = (
            select(DeviceCommand.command_id, DeviceCommand.device, DeviceCommand.desired_state)
            .where(DeviceCommand.status == PENDING)
            .order_by(DeviceCommand.requested_at.asc(), DeviceCommand.command_id.asc())
        )
        res = await self.db.execute(stmt)
        return [
            PendingCommand(device=device, state=state, command_id=command_id)
            for command_id, device, state in res.all()
        ]


def validate_command(device: str | None, state: str | None) -> None:
    if not device or not state:
        raise InvalidArgument("Device and state are required.")
    if device not in DEVICES:
        raise InvalidArgument('Invalid device. Must be "pump" or "valve".')
    if state not in STATES:
        raise InvalidArgument('Invalid state. Must be "ON" or "OFF".')


def validate_result(command_id: int | None, status: str | None, actual_state: str | None) -> None:
    if not command_id or not status:
        raise InvalidArgument("command_id and status are required.")
    if status not in RESULT_STATUSES:
        raise InvalidArgument('Invalid status. Must be "SUCCESS" or "FAILED".')
    if status == SUCCESS and actual_state not in STATES:
        raise InvalidArgument('actual_state is required when status is SUCCESS. Must be "ON" or "OFF".')


class CommandQueue:
    def __init__(
        self,
        db: AsyncSession,
        on_actuated: ActuatorHook | None = update_latest_reading_status,
        source: CommandSource | None = None,
    ):
        self.db = db
        self.on_actuated = on_actuated
        self.source = source or PollingCommandSource(db)

    async def submit(self, device: str | None, desired_state: str | None, requested_by: int | None) -> DeviceCommand:
        validate_command(device, desired_state)
        command = DeviceCommand(
            device=device,
            desired_state=desired_state,
            status=PENDING,
            requested_by=requested_by,
            requested_at=utcnow(),
        )
        self.db.add(command)
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception("Failed to store command %s -> %s", device, desired_state)
            raise InternalError("Internal server error while sending command.") from exc

        logger.info(
            "Command created: %s -> %s by user %s (command_id: %s)",
            device, desired_state, requested_by, command.command_id,
        )
        return command

    async def latest_status(self) -> dict[str, DeviceCommand | None]:
        latest: dict[str, DeviceCommand | None] = {}
        for device in DEVICES:
            stmt = (
                select(DeviceCommand)
                .where(DeviceCommand.device == device)
                .order_by(DeviceCommand.requested_at.desc(), DeviceCommand.command_id.desc())
                .limit(1)
            )
            res = await self.db.execute(stmt)
            latest[device] = res.scalar_one_or_none()
        return latest

    async def list_pending(self) -> list[PendingCommand]:
        return await self.source.pending()

    async def report_result(
        self, command_id: int | None, status: str | None, actual_state: str | None = None
    ) -> DeviceCommand:
        validate_result(command_id, status, actual_state)
        if status == FAILED:
            actual_state = None

        try:
            res = await self.db.execute(
                update(DeviceCommand)
                .where(DeviceCommand.command_id == command_id, DeviceCommand.status == PENDING)
                .values(status=status, actual_state=actual_state, executed_at=utcnow())
            )
            if res.rowcount == 0:
                await self.db.rollback()
                existing = await self.db.get(DeviceCommand, command_id)
                if existing is None:
                    raise NotFound("Command not found.")
                raise Conflict(f"Command {command_id} is already {existing.status}.")

            stmt = (
                select(DeviceCommand)
                .where(DeviceCommand.command_id == command_id)
                .options(selectinload(DeviceCommand.requester))
                .execution_options(populate_existing=True)
            )
            command = (await self.db.execute(stmt)).scalar_one()

            if status == SUCCESS and self.on_actuated is not None:
                await self.on_actuated(self.db, command.device, actual_state)

            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception("Failed to update command %s", command_id)
            raise InternalError("Internal server error while updating command status.") from exc

        logger.info("Command %s updated: status=%s, actual_state=%s", command_id, status, actual_state or "N/A")
        return command
