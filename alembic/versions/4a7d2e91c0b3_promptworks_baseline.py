"""promptworks baseline

Revision ID: 4a7d2e91c0b3
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from promptworks.database import Base
from promptworks import models  # noqa: F401

# revision identifiers, used by Alembic.
revision: str = "4a7d2e91c0b3"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create prompts, groups, book-creation, log and announcement tables."""
    bind: Connection = op.get_bind()
    Base.metadata.create_all(bind)


def downgrade() -> None:
    bind: Connection = op.get_bind()
    Base.metadata.drop_all(bind)
