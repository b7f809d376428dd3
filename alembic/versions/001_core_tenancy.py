"""Core tenancy tables: tenants, profiles, memberships, impersonation, audit

Revision ID: 001
Revises: None
Create Date: 2026-10-18

Creates: tenants, profiles, tenant_users, admin_impersonation_sessions, tenant_audit_log
Enums: tenantstatus, releasechannel, tenantuserrole
"""

from collections.abc import Sequence

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto";')

    # ── 1. Enum types ─────────────────────────────────────────────────────
    op.execute("CREATE TYPE tenantstatus AS ENUM ('ACTIVE', 'SUSPENDED', 'TRIAL', 'CHURNED');")
    op.execute("CREATE TYPE releasechannel AS ENUM ('INTERNAL', 'PILOT', 'GENERAL');")
    op.execute("CREATE TYPE tenantuserrole AS ENUM ('OWNER', 'ADMIN', 'MEMBER');")

    # ── 2. tenants ────────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE tenants (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name VARCHAR(255) NOT NULL,
            slug VARCHAR(100) NOT NULL,
            status tenantstatus NOT NULL DEFAULT 'ACTIVE',
            release_channel releasechannel NOT NULL DEFAULT 'GENERAL',
            is_paused BOOLEAN NOT NULL DEFAULT false,
            pause_reason TEXT,
            rate_limit_per_minute INTEGER NOT NULL DEFAULT 60,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE UNIQUE INDEX ix_tenants_slug ON tenants (slug);")

    # Slugs are immutable once created
    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_tenant_slug_change()
        RETURNS TRIGGER LANGUAGE plpgsql AS $$
        BEGIN
          IF NEW.slug IS DISTINCT FROM OLD.slug THEN
            RAISE EXCEPTION 'tenant slug is immutable';
          END IF;
          RETURN NEW;
        END;
        $$;
    """)
    op.execute("""
        CREATE TRIGGER trg_tenants_slug_immutable
          BEFORE UPDATE ON tenants
          FOR EACH ROW EXECUTE FUNCTION prevent_tenant_slug_change();
    """)

    # ── 3. profiles ───────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE profiles (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email VARCHAR(255) NOT NULL UNIQUE,
            full_name VARCHAR(255),
            is_platform_admin BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)

    # ── 4. tenant_users ───────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE tenant_users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            user_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
            role tenantuserrole NOT NULL DEFAULT 'MEMBER',
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_tenant_users_tenant_user UNIQUE (tenant_id, user_id)
        );
    """)
    op.execute("CREATE INDEX ix_tenant_users_user_active ON tenant_users (user_id, is_active);")

    # ── 5. admin_impersonation_sessions ───────────────────────────────────
    op.execute("""
        CREATE TABLE admin_impersonation_sessions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            admin_user_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
            tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            reason TEXT NOT NULL,
            duration_minutes INTEGER NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            expires_at TIMESTAMPTZ NOT NULL,
            revoked_at TIMESTAMPTZ,
            revoked_by UUID REFERENCES profiles(id) ON DELETE SET NULL,
            ended_at TIMESTAMPTZ,
            CONSTRAINT ck_impersonation_reason_length CHECK (char_length(btrim(reason)) >= 10),
            CONSTRAINT ck_impersonation_duration CHECK (duration_minutes IN (15, 30, 60))
        );
    """)
    op.execute("CREATE INDEX ix_impersonation_sessions_admin ON admin_impersonation_sessions (admin_user_id);")
    op.execute("CREATE INDEX ix_impersonation_sessions_expires_at ON admin_impersonation_sessions (expires_at);")

    # ── 6. tenant_audit_log ───────────────────────────────────────────────
    op.execute("""
        CREATE TABLE tenant_audit_log (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id UUID REFERENCES tenants(id) ON DELETE SET NULL,
            action VARCHAR(100) NOT NULL,
            actor_user_id UUID REFERENCES profiles(id) ON DELETE SET NULL,
            old_value JSONB,
            new_value JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_tenant_audit_log_tenant_created ON tenant_audit_log (tenant_id, created_at);")
    op.execute("CREATE INDEX ix_tenant_audit_log_action ON tenant_audit_log (action);")

    # Audit rows are append-only
    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_audit_log_mutation()
        RETURNS TRIGGER LANGUAGE plpgsql AS $$
        BEGIN
          RAISE EXCEPTION 'tenant_audit_log is append-only';
        END;
        $$;
    """)
    op.execute("""
        CREATE TRIGGER trg_tenant_audit_log_immutable
          BEFORE UPDATE OR DELETE ON tenant_audit_log
          FOR EACH ROW EXECUTE FUNCTION prevent_audit_log_mutation();
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_tenant_audit_log_immutable ON tenant_audit_log;")
    op.execute("DROP FUNCTION IF EXISTS prevent_audit_log_mutation();")
    op.execute("DROP TABLE IF EXISTS tenant_audit_log;")
    op.execute("DROP TABLE IF EXISTS admin_impersonation_sessions;")
    op.execute("DROP TABLE IF EXISTS tenant_users;")
    op.execute("DROP TABLE IF EXISTS profiles;")
    op.execute("DROP TRIGGER IF EXISTS trg_tenants_slug_immutable ON tenants;")
    op.execute("DROP FUNCTION IF EXISTS prevent_tenant_slug_change();")
    op.execute("DROP TABLE IF EXISTS tenants;")
    op.execute("DROP TYPE IF EXISTS tenantuserrole;")
    op.execute("DROP TYPE IF EXISTS releasechannel;")
    op.execute("DROP TYPE IF EXISTS tenantstatus;")
