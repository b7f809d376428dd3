"""Row-level security on tenant-owned tables

Revision ID: 003
Revises: 002
Create Date: 2026-10-18

Policies key on app.current_tenant_id and app.admin_bypass, set per
transaction by src.database.tenant.
"""

from collections.abc import Sequence

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "003"
down_revision: str | None = "002"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

TENANT_TABLES = ("customers", "carriers", "vehicles", "loads", "invoices")


def upgrade() -> None:
    # --- Helper functions ---
    op.execute("""
        CREATE OR REPLACE FUNCTION get_tenant_setting(setting_name TEXT)
        RETURNS TEXT LANGUAGE sql STABLE SECURITY DEFINER AS $$
          SELECT COALESCE(current_setting(setting_name, true), '');
        $$;
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION is_admin_bypass_active()
        RETURNS BOOLEAN LANGUAGE sql STABLE SECURITY DEFINER AS $$
          SELECT COALESCE(current_setting('app.admin_bypass', true), 'false') = 'true';
        $$;
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION set_row_tenant_id()
        RETURNS TRIGGER LANGUAGE plpgsql SECURITY DEFINER AS $$
        DECLARE
          current_tenant UUID;
        BEGIN
          current_tenant := NULLIF(get_tenant_setting('app.current_tenant_id'), '')::UUID;
          IF NEW.tenant_id IS NULL THEN
            IF current_tenant IS NULL THEN
              RAISE EXCEPTION 'app.current_tenant_id must be set for INSERT on tenant-owned tables';
            END IF;
            NEW.tenant_id := current_tenant;
          ELSIF NEW.tenant_id IS DISTINCT FROM current_tenant AND NOT is_admin_bypass_active() THEN
            RAISE EXCEPTION 'Cannot write % row for a different tenant', TG_TABLE_NAME;
          END IF;
          RETURN NEW;
        END;
        $$;
    """)

    for table in TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY;")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY;")
        op.execute(f"""
            CREATE POLICY {table}_select_policy ON {table} FOR SELECT
              USING (is_admin_bypass_active() OR tenant_id::text = get_tenant_setting('app.current_tenant_id'));
        """)
        op.execute(f"""
            CREATE POLICY {table}_insert_policy ON {table} FOR INSERT
              WITH CHECK (is_admin_bypass_active() OR tenant_id::text = get_tenant_setting('app.current_tenant_id'));
        """)
        op.execute(f"""
            CREATE POLICY {table}_update_policy ON {table} FOR UPDATE
              USING (is_admin_bypass_active() OR tenant_id::text = get_tenant_setting('app.current_tenant_id'))
              WITH CHECK (is_admin_bypass_active() OR tenant_id::text = get_tenant_setting('app.current_tenant_id'));
        """)
        op.execute(f"""
            CREATE POLICY {table}_delete_policy ON {table} FOR DELETE
              USING (is_admin_bypass_active() OR tenant_id::text = get_tenant_setting('app.current_tenant_id'));
        """)
        op.execute(f"""
            CREATE TRIGGER trg_{table}_set_tenant
              BEFORE INSERT ON {table}
              FOR EACH ROW EXECUTE FUNCTION set_row_tenant_id();
        """)


def downgrade() -> None:
    for table in reversed(TENANT_TABLES):
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_set_tenant ON {table};")
        for action in ("delete", "update", "insert", "select"):
            op.execute(f"DROP POLICY IF EXISTS {table}_{action}_policy ON {table};")
        op.execute(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY;")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY;")

    op.execute("DROP FUNCTION IF EXISTS set_row_tenant_id();")
    op.execute("DROP FUNCTION IF EXISTS is_admin_bypass_active();")
    op.execute("DROP FUNCTION IF EXISTS get_tenant_setting(TEXT);")
