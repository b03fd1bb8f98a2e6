"""baseline_schema

Revision ID: a3f9c1d2e4b7
Revises: 
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op

from src.db_base import Base
import src.models  # noqa: F401 - required to register all model metadata


# revision identifiers, used by Alembic.
revision: str = 'a3f9c1d2e4b7'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    # funnel_records, subscriptions, server_aggregates, webhook_events
    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
    if bind.dialect.name == "postgresql":
        op.execute("DROP TYPE IF EXISTS funnel_status")
