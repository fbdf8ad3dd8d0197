"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "nodes",
        sa.Column("wallet_address", sa.String(length=128), primary_key=True),
        sa.Column("node_type", sa.String(length=8), server_default="USER", nullable=False),
        sa.Column("status", sa.String(length=16), server_default="INACTIVE", nullable=False),
        sa.Column("active", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("ip", sa.String(length=64), nullable=True),
        sa.Column("connected_users", sa.Integer(), server_default="0", nullable=False),
        sa.Column("connected_to_host", sa.String(length=128), nullable=True),
        sa.Column("perf_bandwidth", sa.Float(), server_default="0", nullable=False),
        sa.Column("perf_latency", sa.Float(), server_default="0", nullable=False),
        sa.Column("perf_packet_loss", sa.Float(), server_default="0", nullable=False),
        sa.Column("bandwidth_shared", sa.Float(), server_default="0", nullable=False),
        sa.Column("connection_uptime", sa.Integer(), server_default="0", nullable=False),
        sa.Column("connection_quality", sa.Float(), server_default="100", nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("daily_reward", sa.Float(), server_default="0", nullable=False),
        sa.Column("total_earned", sa.Float(), server_default="0", nullable=False),
        sa.Column("reward_tier", sa.String(length=16), server_default="STARTER", nullable=False),
        sa.Column("last_reward_calculation", sa.DateTime(timezone=True), nullable=True),
        sa.Column("country", sa.String(length=64), nullable=True),
        sa.Column("region", sa.String(length=64), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_disconnected", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_nodes_node_type", "nodes", ["node_type"], unique=False)
    op.create_index("ix_nodes_status", "nodes", ["status"], unique=False)

    op.create_table(
        "connections",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("host_wallet_address", sa.String(length=128), nullable=False),
        sa.Column("client_wallet_address", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), server_default="ACTIVE", nullable=False),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("disconnected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_bandwidth", sa.Float(), server_default="0", nullable=False),
        sa.Column("average_latency", sa.Float(), server_default="0", nullable=False),
        sa.Column("packet_loss", sa.Float(), server_default="0", nullable=False),
        sa.Column("connection_quality", sa.Float(), server_default="100", nullable=False),
        sa.Column("session_duration", sa.Integer(), server_default="0", nullable=False),
    )
    op.create_index("ix_connections_connected_at", "connections", ["connected_at"], unique=False)
    op.create_index("ix_connections_host_status", "connections", ["host_wallet_address", "status"], unique=False)
    op.create_index("ix_connections_client_status", "connections", ["client_wallet_address", "status"], unique=False)
    op.create_index(
        "ux_connections_active_pair",
        "connections",
        ["host_wallet_address", "client_wallet_address"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
        sqlite_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        "accounts",
        sa.Column("wallet_address", sa.String(length=128), primary_key=True),
        sa.Column("role", sa.String(length=16), server_default="user", nullable=False),
        sa.Column("last_reward_claim", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_rewards_claimed", sa.Float(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("last_login", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_accounts_last_reward_claim", "accounts", ["last_reward_claim"], unique=False)

    op.create_table(
        "reward_claims",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("wallet_address", sa.String(length=128), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), server_default="success", nullable=False),
    )
    op.create_index("ix_reward_claims_wallet_address", "reward_claims", ["wallet_address"], unique=False)

    op.create_table(
        "tunnel_configs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("private_key_enc", sa.String(), nullable=False),
        sa.Column("public_key", sa.String(length=128), nullable=False),
        sa.Column("client_ip", sa.String(length=64), nullable=False),
        sa.Column("server_public_key", sa.String(length=128), nullable=False),
        sa.Column("server_endpoint", sa.String(length=255), nullable=False),
        sa.Column("server_ip", sa.String(length=64), nullable=False),
        sa.Column("allowed_ips", sa.String(length=255), server_default="0.0.0.0/0, ::/0", nullable=False),
        sa.Column("dns", sa.String(length=255), server_default="1.1.1.1, 8.8.8.8", nullable=False),
        sa.Column("persistent_keepalive", sa.Integer(), server_default="25", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_tunnel_configs_user_id", "tunnel_configs", ["user_id"], unique=True)
    op.create_index("ix_tunnel_configs_public_key", "tunnel_configs", ["public_key"], unique=False)

    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(length=128), primary_key=True),
        sa.Column("int_value", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("app_settings")
    op.drop_index("ix_tunnel_configs_public_key", table_name="tunnel_configs")
    op.drop_index("ix_tunnel_configs_user_id", table_name="tunnel_configs")
    op.drop_table("tunnel_configs")
    op.drop_index("ix_reward_claims_wallet_address", table_name="reward_claims")
    op.drop_table("reward_claims")
    op.drop_index("ix_accounts_last_reward_claim", table_name="accounts")
    op.drop_table("accounts")
    op.drop_index("ux_connections_active_pair", table_name="connections")
    op.drop_index("ix_connections_client_status", table_name="connections")
    op.drop_index("ix_connections_host_status", table_name="connections")
    op.drop_index("ix_connections_connected_at", table_name="connections")
    op.drop_table("connections")
    op.drop_index("ix_nodes_status", table_name="nodes")
    op.drop_index("ix_nodes_node_type", table_name="nodes")
    op.drop_table("nodes")
