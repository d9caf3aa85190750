"""create greenhouse tables"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import mysql

# revision identifiers, used by Alembic.
revision: str = "5b2f1c7d9a10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TIMESTAMP = sa.DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("user_role", sa.String(length=20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", TIMESTAMP, nullable=False),
    )
    op.create_index(op.f("ix_users_username"), "users", ["username"], unique=True)
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "sensor_data",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("device_id", sa.String(length=64), nullable=False),
        sa.Column("timestamp", TIMESTAMP, nullable=False),
        sa.Column("soil_moisture_1_percent", sa.Float(), nullable=False),
        sa.Column("soil_moisture_2_percent", sa.Float(), nullable=False),
        sa.Column("soil_moisture_3_percent", sa.Float(), nullable=False),
        sa.Column("air_temperature_celsius", sa.Float(), nullable=False),
        sa.Column("air_humidity_percent", sa.Float(), nullable=True),
        sa.Column("valve_status", sa.Integer(), nullable=False),
        sa.Column("pump_status", sa.Integer(), nullable=False),
        sa.Column("water_level_low_status", sa.Integer(), nullable=False),
        sa.Column("water_level_high_status", sa.Integer(), nullable=False),
    )
    op.create_index(op.f("ix_sensor_data_timestamp"), "sensor_data", ["timestamp"], unique=False)

    op.create_table(
        "resource_consumption",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "sensor_data_id",
            sa.Integer(),
            sa.ForeignKey("sensor_data.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("resource_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("device_id", sa.String(length=64), nullable=False),
        sa.Column("timestamp", TIMESTAMP, nullable=False),
        sa.Column("pump_runtime_seconds", sa.Float(), nullable=False),
        sa.Column("valve_runtime_seconds", sa.Float(), nullable=False),
        sa.Column("water_consumed_liters", sa.Float(), nullable=False),
        sa.Column("energy_consumed_kwh", sa.Float(), nullable=False),
        sa.Column("pump_state", sa.Integer(), nullable=False),
        sa.Column("valve_state", sa.Integer(), nullable=False),
    )
    op.create_index(
        op.f("ix_resource_consumption_sensor_data_id"), "resource_consumption", ["sensor_data_id"], unique=False
    )
    op.create_index(
        op.f("ix_resource_consumption_timestamp"), "resource_consumption", ["timestamp"], unique=False
    )

    op.create_table(
        "device_commands",
        sa.Column("command_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("device", sa.String(length=16), nullable=False),
        sa.Column("desired_state", sa.String(length=8), nullable=False),
        sa.Column("actual_state", sa.String(length=8), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column(
            "requested_by",
            sa.Integer(),
            sa.ForeignKey("users.user_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("requested_at", TIMESTAMP, nullable=False),
        sa.Column("executed_at", TIMESTAMP, nullable=True),
    )
    op.create_index(op.f("ix_device_commands_status"), "device_commands", ["status"], unique=False)
    op.create_index(op.f("ix_device_commands_requested_by"), "device_commands", ["requested_by"], unique=False)
    op.create_index(
        "ix_device_commands_device_requested", "device_commands", ["device", "requested_at"], unique=False
    )
    op.create_index(
        "ix_device_commands_status_requested", "device_commands", ["status", "requested_at"], unique=False
    )


def downgrade() -> None:
    op.drop_table("device_commands")
    op.drop_table("resource_consumption")
    op.drop_table("sensor_data")
    op.drop_table("users")
