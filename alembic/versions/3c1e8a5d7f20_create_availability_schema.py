"""create availability schema

Revision ID: 3c1e8a5d7f20
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3c1e8a5d7f20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "settings",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "properties",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("property_number", sa.String(), nullable=False),
        sa.Column("deleted_at", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_properties_property_number", "properties", ["property_number"], unique=True)

    op.create_table(
        "property_external_calendars",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("property_id", sa.Integer(), nullable=False),
        sa.Column("calendar_name", sa.String(), nullable=False),
        sa.Column("feed_url", sa.String(), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_sync_at", sa.String(), nullable=True),
        sa.Column("last_sync_error", sa.String(), nullable=True),
        sa.Column("total_events", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["property_id"], ["properties.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_property_external_calendars_property_id",
        "property_external_calendars",
        ["property_id"],
    )

    op.create_table(
        "property_calendar",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("property_id", sa.Integer(), nullable=False),
        sa.Column("blocked_date", sa.Date(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("is_check_in", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_check_out", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("source_calendar_id", sa.Integer(), nullable=True),
        sa.Column("event_uid", sa.String(), nullable=True),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["property_id"], ["properties.id"]),
        sa.ForeignKeyConstraint(["source_calendar_id"], ["property_external_calendars.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("property_id", "blocked_date", name="uq_property_calendar_property_date"),
    )
    op.create_index(
        "ix_property_calendar_source",
        "property_calendar",
        ["property_id", "source_calendar_id"],
    )

    op.create_table(
        "property_external_calendar_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("property_id", sa.Integer(), nullable=False),
        sa.Column("event_uid", sa.String(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("summary", sa.String(), nullable=True),
        sa.CheckConstraint("end_date >= start_date", name="ck_external_events_end_not_before_start"),
        sa.ForeignKeyConstraint(["subscription_id"], ["property_external_calendars.id"]),
        sa.ForeignKeyConstraint(["property_id"], ["properties.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_property_external_calendar_events_subscription_id",
        "property_external_calendar_events",
        ["subscription_id"],
    )
    op.create_index(
        "ix_property_external_calendar_events_property_id",
        "property_external_calendar_events",
        ["property_id"],
    )

    op.create_table(
        "property_ics",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("property_id", sa.Integer(), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("file_path", sa.String(), nullable=False),
        sa.Column("total_blocked_days", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["property_id"], ["properties.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("property_id", name="uq_property_ics_property_id"),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("property_ics")
    op.drop_index(
        "ix_property_external_calendar_events_property_id",
        table_name="property_external_calendar_events",
    )
    op.drop_index(
        "ix_property_external_calendar_events_subscription_id",
        table_name="property_external_calendar_events",
    )
    op.drop_table("property_external_calendar_events")
    op.drop_index("ix_property_calendar_source", table_name="property_calendar")
    op.drop_table("property_calendar")
    op.drop_index(
        "ix_property_external_calendars_property_id",
        table_name="property_external_calendars",
    )
    op.drop_table("property_external_calendars")
    op.drop_index("ix_properties_property_number", table_name="properties")
    op.drop_table("properties")
    op.drop_table("settings")
