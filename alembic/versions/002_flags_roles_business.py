"""Feature flags, custom roles and tenant-owned business tables

Revision ID: 002
Revises: 001
Create Date: 2026-10-18

Creates: feature_flags, tenant_feature_flags, release_channel_feature_flags,
         permissions, custom_roles, role_permissions, user_custom_roles,
         customers, carriers, vehicles, loads, invoices
Enums: loadstatus, vehiclestatus, invoicestatus
"""

from collections.abc import Sequence

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # ── 1. Feature flags ──────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE feature_flags (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            key VARCHAR(100) NOT NULL UNIQUE,
            name VARCHAR(255) NOT NULL,
            description TEXT,
            default_enabled BOOLEAN NOT NULL DEFAULT false,
            is_killswitch BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    op.execute("""
        CREATE TABLE tenant_feature_flags (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            feature_flag_id UUID NOT NULL REFERENCES feature_flags(id) ON DELETE CASCADE,
            enabled BOOLEAN NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_tenant_feature_flags_tenant_flag UNIQUE (tenant_id, feature_flag_id)
        );
    """)
    op.execute("""
        CREATE TABLE release_channel_feature_flags (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            release_channel releasechannel NOT NULL,
            feature_flag_id UUID NOT NULL REFERENCES feature_flags(id) ON DELETE CASCADE,
            enabled BOOLEAN NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_release_channel_flags_channel_flag UNIQUE (release_channel, feature_flag_id)
        );
    """)

    # ── 2. Custom roles & permissions ─────────────────────────────────────
    op.execute("""
        CREATE TABLE permissions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            code VARCHAR(100) NOT NULL UNIQUE,
            description TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    op.execute("""
        CREATE TABLE custom_roles (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id UUID REFERENCES tenants(id) ON DELETE CASCADE,
            name VARCHAR(100) NOT NULL,
            description TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_custom_roles_tenant_name UNIQUE (tenant_id, name)
        );
    """)
    op.execute("""
        CREATE TABLE role_permissions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            role_id UUID NOT NULL REFERENCES custom_roles(id) ON DELETE CASCADE,
            permission_id UUID NOT NULL REFERENCES permissions(id) ON DELETE CASCADE,
            CONSTRAINT uq_role_permissions_role_permission UNIQUE (role_id, permission_id)
        );
    """)
    op.execute("""
        CREATE TABLE user_custom_roles (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
            role_id UUID NOT NULL REFERENCES custom_roles(id) ON DELETE CASCADE,
            CONSTRAINT uq_user_custom_roles_user_role UNIQUE (user_id, role_id)
        );
    """)
    op.execute("CREATE INDEX ix_user_custom_roles_user_id ON user_custom_roles (user_id);")

    # ── 3. Business enums ─────────────────────────────────────────────────
    op.execute("""
        CREATE TYPE loadstatus AS ENUM (
            'AVAILABLE', 'BOOKED', 'IN_TRANSIT', 'DELIVERED', 'CANCELLED'
        );
    """)
    op.execute("CREATE TYPE vehiclestatus AS ENUM ('ACTIVE', 'IN_SHOP', 'INACTIVE');")
    op.execute("CREATE TYPE invoicestatus AS ENUM ('DRAFT', 'SENT', 'PAID', 'VOID');")

    # ── 4. Tenant-owned business tables ───────────────────────────────────
    op.execute("""
        CREATE TABLE customers (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            name VARCHAR(255) NOT NULL,
            billing_email VARCHAR(255),
            phone VARCHAR(30),
            payment_terms_days INTEGER NOT NULL DEFAULT 30,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_customers_tenant_id ON customers (tenant_id);")

    op.execute("""
        CREATE TABLE carriers (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            name VARCHAR(255) NOT NULL,
            mc_number VARCHAR(20),
            dot_number VARCHAR(20),
            email VARCHAR(255),
            phone VARCHAR(30),
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_carriers_tenant_id ON carriers (tenant_id);")

    op.execute("""
        CREATE TABLE vehicles (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            unit_number VARCHAR(50) NOT NULL,
            vin VARCHAR(17),
            make VARCHAR(100),
            model VARCHAR(100),
            year INTEGER,
            status vehiclestatus NOT NULL DEFAULT 'ACTIVE',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_vehicles_tenant_id ON vehicles (tenant_id);")
    op.execute("CREATE UNIQUE INDEX ix_vehicles_tenant_unit_number ON vehicles (tenant_id, unit_number);")

    op.execute("""
        CREATE TABLE loads (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            load_number VARCHAR(50) NOT NULL,
            status loadstatus NOT NULL DEFAULT 'AVAILABLE',
            customer_id UUID REFERENCES customers(id) ON DELETE SET NULL,
            carrier_id UUID REFERENCES carriers(id) ON DELETE SET NULL,
            vehicle_id UUID REFERENCES vehicles(id) ON DELETE SET NULL,
            origin VARCHAR(255),
            destination VARCHAR(255),
            pickup_at TIMESTAMPTZ,
            delivery_at TIMESTAMPTZ,
            rate NUMERIC(12, 2),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_loads_tenant_id ON loads (tenant_id);")
    op.execute("CREATE INDEX ix_loads_tenant_status ON loads (tenant_id, status);")
    op.execute("CREATE UNIQUE INDEX ix_loads_tenant_load_number ON loads (tenant_id, load_number);")

    op.execute("""
        CREATE TABLE invoices (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            invoice_number VARCHAR(50) NOT NULL,
            customer_id UUID REFERENCES customers(id) ON DELETE SET NULL,
            status invoicestatus NOT NULL DEFAULT 'DRAFT',
            amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
            issued_on DATE,
            due_on DATE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_invoices_tenant_id ON invoices (tenant_id);")
    op.execute("CREATE INDEX ix_invoices_tenant_status ON invoices (tenant_id, status);")
    op.execute("CREATE UNIQUE INDEX ix_invoices_tenant_invoice_number ON invoices (tenant_id, invoice_number);")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS invoices;")
    op.execute("DROP TABLE IF EXISTS loads;")
    op.execute("DROP TABLE IF EXISTS vehicles;")
    op.execute("DROP TABLE IF EXISTS carriers;")
    op.execute("DROP TABLE IF EXISTS customers;")
    op.execute("DROP TYPE IF EXISTS invoicestatus;")
    op.execute("DROP TYPE IF EXISTS vehiclestatus;")
    op.execute("DROP TYPE IF EXISTS loadstatus;")
    op.execute("DROP TABLE IF EXISTS user_custom_roles;")
    op.execute("DROP TABLE IF EXISTS role_permissions;")
    op.execute("DROP TABLE IF EXISTS custom_roles;")
    op.execute("DROP TABLE IF EXISTS permissions;")
    op.execute("DROP TABLE IF EXISTS release_channel_feature_flags;")
    op.execute("DROP TABLE IF EXISTS tenant_feature_flags;")
    op.execute("DROP TABLE IF EXISTS feature_flags;")
