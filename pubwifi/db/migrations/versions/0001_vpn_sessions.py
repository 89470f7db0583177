"""vpn sessions

Revision ID: 0001_vpn_sessions
Revises:
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa


revision = "0001_vpn_sessions"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "vpn_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("client_ip", sa.String(length=64), nullable=False),
        sa.Column("server_address", sa.String(length=255), nullable=False),
        sa.Column("server_port", sa.Integer(), nullable=False),
        sa.Column("client_public_key", sa.String(length=128), nullable=False),
        sa.Column("client_private_key_enc", sa.Text(), nullable=False),
        sa.Column("bytes_sent", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("bytes_received", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("disconnected_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_vpn_sessions_user_status", "vpn_sessions", ["user_id", "status"], unique=False)
    op.create_index(
        "uq_vpn_sessions_active_client_ip",
        "vpn_sessions",
        ["client_ip"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )


def downgrade() -> None:
    op.drop_index("uq_vpn_sessions_active_client_ip", table_name="vpn_sessions")
    op.drop_index("ix_vpn_sessions_user_status", table_name="vpn_sessions")
    op.drop_table("vpn_sessions")
