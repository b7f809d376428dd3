"""Single open impersonation session per admin, plus seed data

Revision ID: 004
Revises: 003
Create Date: 2026-10-18

"""

from collections.abc import Sequence

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "004"
down_revision: str | None = "003"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.execute("""
        CREATE UNIQUE INDEX uq_impersonation_sessions_one_open_per_admin
          ON admin_impersonation_sessions (admin_user_id)
          WHERE ended_at IS NULL;
    """)

    op.execute("""
        INSERT INTO tenants (name, slug, status, release_channel)
        VALUES ('Default', 'default', 'ACTIVE', 'GENERAL')
        ON CONFLICT (slug) DO NOTHING;
    """)

    op.execute("""
        INSERT INTO feature_flags (key, name, description, default_enabled, is_killswitch) VALUES
          ('load_hunter', 'Load Hunter', 'Automated load board search', true, false),
          ('fleet_financials', 'Fleet Financials', 'Per-vehicle revenue and cost reporting', true, false),
          ('inspector', 'Inspector', 'Internal data inspector for platform staff', false, false),
          ('realtime_tracking', 'Realtime Tracking', 'Live load and vehicle updates', true, false),
          ('settlements', 'Settlements', 'Driver and carrier settlements', true, false),
          ('invoicing', 'Invoicing', 'Customer invoicing', true, false)
        ON CONFLICT (key) DO NOTHING;
    """)


def downgrade() -> None:
    op.execute("""
        DELETE FROM feature_flags WHERE key IN (
          'load_hunter', 'fleet_financials', 'inspector',
          'realtime_tracking', 'settlements', 'invoicing'
        );
    """)
    op.execute("DROP INDEX IF EXISTS uq_impersonation_sessions_one_open_per_admin;")
