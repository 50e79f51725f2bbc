from __future__ import annotations

from alembic import op
from sqlmodel import SQLModel

from app.db.base import *  # noqa: F401,F403 registers every table on SQLModel.metadata

# revision identifiers, used by Alembic.
revision = "0001_signflow_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Baseline: organizations, users, signing requests and signers, second factor,
    # notification logs, in-app notifications and the audit log.
    SQLModel.metadata.create_all(bind=op.get_bind())


def downgrade() -> None:
    SQLModel.metadata.drop_all(bind=op.get_bind())
