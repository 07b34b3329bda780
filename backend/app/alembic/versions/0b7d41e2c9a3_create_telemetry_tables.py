"""create_telemetry_tables

Revision ID: 0b7d41e2c9a3
Revises:
Create Date: 2026-03-01 12:00:00.000000

Equipment registry, reading history and alert occurrences.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = '0b7d41e2c9a3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


equipment_status = sa.Enum(
    'active', 'inactive', 'maintenance', 'retired', name='equipmentstatus',
)
alert_severity = sa.Enum('info', 'warning', 'critical', name='alertseverity')
alert_status = sa.Enum('active', 'acknowledged', 'resolved', name='alertstatus')


def upgrade() -> None:
    # --- equipment ---
    op.create_table(
        'equipment',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('equipment_type', sa.String(50), nullable=False),
        sa.Column('location', sa.String(100), nullable=False),
        sa.Column('status', equipment_status, nullable=False),
        # Thresholds
        sa.Column('max_temperature', sa.Float(), nullable=False),
        sa.Column('max_vibration', sa.Float(), nullable=False),
        sa.Column('max_pressure', sa.Float(), nullable=False),
        sa.Column('min_pressure', sa.Float(), nullable=False),
        sa.Column('last_maintenance_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_equipment'),
    )

    # --- sensor_readings ---
    op.create_table(
        'sensor_readings',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('equipment_id', sa.String(64), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('temperature', sa.Float(), nullable=True),
        sa.Column('vibration', sa.Float(), nullable=True),
        sa.Column('pressure', sa.Float(), nullable=True),
        sa.Column('humidity', sa.Float(), nullable=True),
        # Electrical
        sa.Column('current', sa.Float(), nullable=True),
        sa.Column('voltage', sa.Float(), nullable=True),
        sa.Column('power', sa.Float(), nullable=True),
        # Performance
        sa.Column('rpm', sa.Float(), nullable=True),
        sa.Column('additional_metrics', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(
            ['equipment_id'], ['equipment.id'],
            name='fk_sensor_readings_equipment_id_equipment', ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_sensor_readings'),
    )
    op.create_index(
        'ix_sensor_readings_equipment_ts', 'sensor_readings', ['equipment_id', 'timestamp'],
    )

    # --- alerts ---
    op.create_table(
        'alerts',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('equipment_id', sa.String(64), nullable=False),
        sa.Column('rule_id', sa.String(50), nullable=False),
        sa.Column('severity', alert_severity, nullable=False),
        sa.Column('status', alert_status, nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('message', sa.String(500), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('opened_at', sa.DateTime(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('acknowledged_by', sa.String(100), nullable=True),
        sa.Column('acknowledged_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(
            ['equipment_id'], ['equipment.id'],
            name='fk_alerts_equipment_id_equipment', ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_alerts'),
    )
    op.create_index('ix_alerts_equipment_status', 'alerts', ['equipment_id', 'status'])
    # at most one active alert per (equipment, rule)
    op.create_index(
        'uq_alerts_active_equipment_rule', 'alerts', ['equipment_id', 'rule_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )


def downgrade() -> None:
    op.drop_index('uq_alerts_active_equipment_rule', table_name='alerts')
    op.drop_index('ix_alerts_equipment_status', table_name='alerts')
    op.drop_table('alerts')
    op.drop_index('ix_sensor_readings_equipment_ts', table_name='sensor_readings')
    op.drop_table('sensor_readings')
    op.drop_table('equipment')
    alert_status.drop(op.get_bind(), checkfirst=True)
    alert_severity.drop(op.get_bind(), checkfirst=True)
    equipment_status.drop(op.get_bind(), checkfirst=True)
