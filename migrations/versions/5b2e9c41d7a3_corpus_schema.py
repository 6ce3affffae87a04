"""Corpus schema: documents, ingestion jobs, committed and staged chunks

Revision ID: 5b2e9c41d7a3
Revises:
Create Date: 2026-10-19 09:12:44.318205

"""
import os
from typing import Sequence, Union

from alembic import op

from folio.core.schema import DROP_STATEMENTS, schema_statements


# revision identifiers, used by Alembic.
revision: str = '5b2e9c41d7a3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    dimensions = int(os.getenv("EMBED_DIMENSIONS", "1536"))
    for statement in schema_statements(dimensions):
        op.execute(statement)


def downgrade() -> None:
    """Downgrade schema."""
    for statement in DROP_STATEMENTS:
        op.execute(statement)
