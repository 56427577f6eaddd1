"""Create MFA, trusted device, audit and envelope key tables"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_auth_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "workspace_keys",
        sa.Column("workspace_id", sa.String(length=64), primary_key=True),
        sa.Column("dek_cipher", sa.LargeBinary(), nullable=False),
        sa.Column("dek_nonce", sa.LargeBinary(), nullable=False),
        sa.Column("dek_tag", sa.LargeBinary(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("rotated_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )

    op.create_table(
        "mfa_factors",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("identity_id", sa.String(length=64), nullable=False),
        sa.Column("factor_type", sa.String(length=20), nullable=False, server_default="totp"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="unverified"),
        sa.Column("friendly_name", sa.String(length=100), nullable=True),
        sa.Column("secret_encrypted", sa.Text(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("verified_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index("ix_mfa_factors_identity_id", "mfa_factors", ["identity_id"])

    op.create_table(
        "mfa_challenges",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("factor_id", sa.Uuid(), sa.ForeignKey("mfa_factors.id", ondelete="CASCADE"), nullable=False),
        sa.Column("identity_id", sa.String(length=64), nullable=False),
        sa.Column("issued_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("consumed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_mfa_challenges_factor_id", "mfa_challenges", ["factor_id"])
    op.create_index("ix_mfa_challenges_identity_id", "mfa_challenges", ["identity_id"])

    op.create_table(
        "mfa_recovery_codes",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("identity_id", sa.String(length=64), nullable=False),
        sa.Column("code_hash", sa.String(length=64), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("used_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index("ix_mfa_recovery_codes_identity_id", "mfa_recovery_codes", ["identity_id"])
    op.create_index("ix_mfa_recovery_codes_identity_hash", "mfa_recovery_codes", ["identity_id", "code_hash"])

    op.create_table(
        "mfa_rate_limits",
        sa.Column("identity_id", sa.String(length=64), primary_key=True),
        sa.Column("window_start", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )

    op.create_table(
        "trusted_devices",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("identity_id", sa.String(length=64), nullable=False),
        sa.Column("device_id", sa.String(length=32), nullable=False),
        sa.Column("ua_hash", sa.String(length=64), nullable=False),
        sa.Column("ip_prefix", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_seen_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint("identity_id", "device_id", name="uq_trusted_devices_identity_device"),
    )
    op.create_index("ix_trusted_devices_identity_id", "trusted_devices", ["identity_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("identity_id", sa.String(length=64), nullable=True),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_identity_id", "audit_logs", ["identity_id"])
    op.create_index("ix_audit_logs_event_type", "audit_logs", ["event_type"])

    op.create_table(
        "profile_secrets",
        sa.Column("identity_id", sa.String(length=64), primary_key=True),
        sa.Column("bank_details_enc", sa.Text(), nullable=True),
        sa.Column("iban_fp", sa.LargeBinary(), nullable=True),
        sa.Column("vat_id_enc", sa.Text(), nullable=True),
        sa.Column("vat_fp", sa.LargeBinary(), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_profile_secrets_iban_fp", "profile_secrets", ["iban_fp"])
    op.create_index("ix_profile_secrets_vat_fp", "profile_secrets", ["vat_fp"])


def downgrade() -> None:
    op.drop_index("ix_profile_secrets_vat_fp", table_name="profile_secrets")
    op.drop_index("ix_profile_secrets_iban_fp", table_name="profile_secrets")
    op.drop_table("profile_secrets")
    op.drop_index("ix_audit_logs_event_type", table_name="audit_logs")
    op.drop_index("ix_audit_logs_identity_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_trusted_devices_identity_id", table_name="trusted_devices")
    op.drop_table("trusted_devices")
    op.drop_table("mfa_rate_limits")
    op.drop_index("ix_mfa_recovery_codes_identity_hash", table_name="mfa_recovery_codes")
    op.drop_index("ix_mfa_recovery_codes_identity_id", table_name="mfa_recovery_codes")
    op.drop_table("mfa_recovery_codes")
    op.drop_index("ix_mfa_challenges_identity_id", table_name="mfa_challenges")
    op.drop_index("ix_mfa_challenges_factor_id", table_name="mfa_challenges")
    op.drop_table("mfa_challenges")
    op.drop_index("ix_mfa_factors_identity_id", table_name="mfa_factors")
    op.drop_table("mfa_factors")
    op.drop_table("workspace_keys")
