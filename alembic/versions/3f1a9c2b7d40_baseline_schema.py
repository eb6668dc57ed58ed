"""baseline schema: projects, steps, assets, personas, meta

Revision ID: 3f1a9c2b7d40
Revises:
Create Date: 2026-10-19 12:40:00.000000

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from workshop.database import Base
from workshop import models  # noqa: F401

# revision identifiers, used by Alembic.
revision: str = "3f1a9c2b7d40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the five stores and their indices; existing ones are kept."""
    bind: Connection = op.get_bind()
    Base.metadata.create_all(bind, checkfirst=True)


def downgrade() -> None:
    """Drop every store managed by the metadata."""
    bind: Connection = op.get_bind()
    Base.metadata.drop_all(bind)
