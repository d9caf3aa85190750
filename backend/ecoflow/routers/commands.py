import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..alerting import Mailer, send_pump_activation_alert
from ..commands import SUCCESS, CommandQueue
from ..config import Settings
from ..db import Database
from ..deps import Principal, get_current_user, get_database, get_db, get_mailer, get_settings, require_device
from ..schemas import CommandOut, CommandRequest, CommandResultIn, PendingCommandOut

router = APIRouter(prefix="/api/commands", tags=["commands"])
logger = logging.getLogger(__name__)


@router.post("/send", status_code=status.HTTP_201_CREATED)
async def send_command(
    payload: CommandRequest,
    db: AsyncSession = Depends(get_db),
    user: Principal = Depends(get_current_user),
):
    command = await CommandQueue(db).submit(payload.device, payload.state, user.user_id)
    return {
        "message": "Command sent successfully.",
        "commandId": command.command_id,
        "device": command.device,
        "desiredState": command.desired_state,
        "status": command.status,
    }


@router.get("/status")
async def command_status(db: AsyncSession = Depends(get_db), _: Principal = Depends(get_current_user)):
    latest = await CommandQueue(db).latest_status()
    return {
        device: CommandOut.model_validate(cmd) if cmd is not None else None
        for device, cmd in latest.items()
    }


@router.get("/pending", response_model=list[PendingCommandOut], dependencies=[Depends(require_device)])
async def pending_commands(db: AsyncSession = Depends(get_db)):
    pending = await CommandQueue(db).list_pending()
    return [p.as_dict() for p in pending]


@router.post("/update", dependencies=[Depends(require_device)])
async def update_command(
    payload: CommandResultIn,
    db: AsyncSession = Depends(get_db),
    database: Database = Depends(get_database),
    mailer: Mailer = Depends(get_mailer),
    settings: Settings = Depends(get_settings),
):
    command = await CommandQueue(db).report_result(payload.command_id, payload.status, payload.actual_state)

    if (
        settings.notify_pump_activation
        and command.status == SUCCESS
        and command.device == "pump"
        and command.actual_state == "ON"
    ):
        mailer.schedule(
            send_pump_activation_alert(
                database,
                mailer,
                command_id=command.command_id,
                requested_by=command.requester.username if command.requester else None,
                executed_at=command.executed_at,
            ),
            f"sprinkler activation email for command {command.command_id}",
        )

    return {
        "message": "Command status updated successfully.",
        "command_id": command.command_id,
        "status": command.status,
        "actual_state": command.actual_state,
    }
