"""Track the last accepted TOTP time step per factor"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_factor_last_used_step"
down_revision = "0001_auth_core"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("mfa_factors", sa.Column("last_used_step", sa.BigInteger(), nullable=True))


def downgrade() -> None:
    op.drop_column("mfa_factors", "last_used_step")
