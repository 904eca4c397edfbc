"""Initial schema: organizations, members, module tables, RLS and provisioning function.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

RESTRICTED_ROLE = "authenticated"
PRIVILEGED_ROLE = "service_role"

# Tables carrying an org_id column; rows are visible to members of that org.
ORG_SCOPED_TABLES = [
    "standups",
    "pr_insights",
    "retros",
    "arcade_runs",
]

# Every table with row-level security enabled.
RLS_TABLES = ["organizations", "members", *ORG_SCOPED_TABLES, "retro_notes", "arcade_levels"]

# Claim helpers read request.jwt.claims as set by restricted sessions.
# SECURITY DEFINER so the members lookup is not itself subject to RLS.
CLAIM_FUNCTIONS = """
CREATE OR REPLACE FUNCTION request_email() RETURNS text
LANGUAGE sql STABLE AS $$
    SELECT nullif(current_setting('request.jwt.claims', true), '')::jsonb ->> 'email'
$$;

CREATE OR REPLACE FUNCTION current_member_id() RETURNS uuid
LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
    SELECT id FROM members
    WHERE email = request_email() AND deleted_at IS NULL
    LIMIT 1
$$;

CREATE OR REPLACE FUNCTION current_org_id() RETURNS uuid
LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
    SELECT org_id FROM members
    WHERE email = request_email() AND deleted_at IS NULL
    LIMIT 1
$$;

CREATE OR REPLACE FUNCTION current_is_admin() RETURNS boolean
LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
    SELECT EXISTS (
        SELECT 1 FROM members
        WHERE email = request_email() AND deleted_at IS NULL AND role = 'admin'
    )
$$;
"""

# Creates the organization and its first admin in one statement (one
# transaction). Raises unique_violation if the email already has an active
# membership.
PROVISION_FUNCTION = """
CREATE OR REPLACE FUNCTION create_organization_with_admin(
    p_org_name text,
    p_email text,
    p_github_login text DEFAULT NULL,
    p_github_id text DEFAULT NULL,
    p_avatar_url text DEFAULT NULL,
    p_timezone text DEFAULT 'America/New_York'
) RETURNS TABLE (org_id uuid, member_id uuid)
LANGUAGE plpgsql SECURITY DEFINER SET search_path = public AS $$
DECLARE
    v_org_id uuid;
    v_member_id uuid;
BEGIN
    INSERT INTO organizations (name, settings)
    VALUES (p_org_name, jsonb_build_object('timezone', p_timezone))
    RETURNING id INTO v_org_id;

    INSERT INTO members (org_id, email, github_login, github_id, avatar_url, role)
    VALUES (v_org_id, p_email, p_github_login, p_github_id, p_avatar_url, 'admin')
    RETURNING id INTO v_member_id;

    RETURN QUERY SELECT v_org_id, v_member_id;
END;
$$;
"""

POLICIES = [
    # organizations
    ("org_select", "organizations", "SELECT", "id = current_org_id()", None),
    ("org_update", "organizations", "UPDATE", "id = current_org_id() AND current_is_admin()", None),
    # members
    (
        "members_select", "members", "SELECT",
        "org_id = current_org_id() OR email = request_email()", None,
    ),
    ("members_update_self", "members", "UPDATE", "email = request_email()", "email = request_email()"),
    (
        "members_admin", "members", "ALL",
        "org_id = current_org_id() AND current_is_admin()",
        "org_id = current_org_id() AND current_is_admin()",
    ),
    # module tables
    *[
        (f"{table}_select", table, "SELECT", "org_id = current_org_id()", None)
        for table in ORG_SCOPED_TABLES
    ],
    (
        "standups_write_own", "standups", "ALL",
        "member_id = current_member_id()",
        "member_id = current_member_id() AND org_id = current_org_id()",
    ),
    (
        "retros_insert", "retros", "INSERT", None,
        "org_id = current_org_id() AND created_by = current_member_id()",
    ),
    (
        "retros_update", "retros", "UPDATE",
        "org_id = current_org_id() AND (created_by = current_member_id() OR current_is_admin())",
        None,
    ),
    (
        "arcade_runs_insert", "arcade_runs", "INSERT", None,
        "member_id = current_member_id() AND org_id = current_org_id()",
    ),
    (
        "retro_notes_select", "retro_notes", "SELECT",
        "EXISTS (SELECT 1 FROM retros WHERE retros.id = retro_notes.retro_id "
        "AND retros.org_id = current_org_id())",
        None,
    ),
    (
        "retro_notes_insert", "retro_notes", "INSERT", None,
        "EXISTS (SELECT 1 FROM retros WHERE retros.id = retro_notes.retro_id "
        "AND retros.org_id = current_org_id())",
    ),
    (
        "retro_notes_update", "retro_notes", "UPDATE",
        "EXISTS (SELECT 1 FROM retros WHERE retros.id = retro_notes.retro_id "
        "AND retros.org_id = current_org_id())",
        None,
    ),
    ("arcade_levels_select", "arcade_levels", "SELECT", "true", None),
]


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id", postgresql.UUID(as_uuid=True), primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")
    )


def _fk(column: str, target: str, nullable: bool = False, ondelete: str = "CASCADE") -> sa.Column:
    return sa.Column(
        column, postgresql.UUID(as_uuid=True),
        sa.ForeignKey(target, ondelete=ondelete), nullable=nullable,
    )


def _text_array(name: str) -> sa.Column:
    return sa.Column(name, postgresql.ARRAY(sa.Text()), nullable=False, server_default="{}")


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # -----------------------------------------------------------------------
    # 1. Tenancy
    # -----------------------------------------------------------------------

    op.create_table(
        "organizations",
        _uuid_pk(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("settings", postgresql.JSONB(), nullable=False, server_default="{}"),
        _created_at(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "members",
        _uuid_pk(),
        _fk("org_id", "organizations.id"),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("github_login", sa.Text(), nullable=True),
        sa.Column("github_id", sa.Text(), nullable=True),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        sa.Column("role", sa.Text(), nullable=False, server_default="member"),
        _created_at(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("role IN ('admin', 'member')", name="ck_members_role"),
    )
    op.create_index("ix_members_org_id", "members", ["org_id"])
    # One active membership per email; soft-deleted rows are excluded
    op.create_index(
        "uq_members_active_email", "members", ["email"],
        unique=True, postgresql_where=sa.text("deleted_at IS NULL"),
    )

    # -----------------------------------------------------------------------
    # 2. Module tables
    # -----------------------------------------------------------------------

    op.create_table(
        "standups",
        _uuid_pk(),
        _fk("org_id", "organizations.id"),
        _fk("member_id", "members.id"),
        sa.Column("date", sa.Date(), nullable=False),
        _text_array("yesterday"),
        _text_array("today"),
        _text_array("blockers"),
        sa.Column("raw_github_data", postgresql.JSONB(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("org_id", "member_id", "date", name="uq_standups_member_date"),
    )
    op.create_index("ix_standups_date", "standups", ["date"])

    op.create_table(
        "pr_insights",
        _uuid_pk(),
        _fk("org_id", "organizations.id"),
        sa.Column("repo", sa.Text(), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        _fk("author_member_id", "members.id", nullable=True, ondelete="SET NULL"),
        sa.Column("additions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deletions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("files_changed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tests_changed", sa.Integer(), nullable=False, server_default="0"),
        _text_array("touched_paths"),
        sa.Column("size_score", sa.Numeric(3, 1), nullable=False, server_default="0.0"),
        sa.Column("risk_score", sa.Numeric(3, 1), nullable=False, server_default="0.0"),
        _text_array("suggested_reviewers"),
        sa.Column("status", sa.Text(), nullable=False, server_default="open"),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("org_id", "repo", "number", name="uq_pr_insights_repo_number"),
        sa.CheckConstraint("status IN ('open', 'merged', 'closed')", name="ck_pr_insights_status"),
    )
    op.create_index("ix_pr_insights_org_status", "pr_insights", ["org_id", "status"])

    op.create_table(
        "retros",
        _uuid_pk(),
        _fk("org_id", "organizations.id"),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("sprint", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="planning"),
        _fk("created_by", "members.id"),
        _created_at(),
        sa.CheckConstraint(
            "status IN ('planning', 'active', 'voting', 'completed', 'archived')",
            name="ck_retros_status",
        ),
    )
    op.create_index("ix_retros_org_status", "retros", ["org_id", "status"])

    op.create_table(
        "retro_notes",
        _uuid_pk(),
        _fk("retro_id", "retros.id"),
        _fk("author_member_id", "members.id", nullable=True, ondelete="SET NULL"),
        sa.Column("column_key", sa.Text(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("color", sa.Text(), nullable=False, server_default="#fbbf24"),
        sa.Column("votes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_anonymous", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.CheckConstraint(
            "column_key IN ('went_well', 'went_poorly', 'ideas', 'action_items')",
            name="ck_retro_notes_column",
        ),
    )
    op.create_index("ix_retro_notes_retro_column", "retro_notes", ["retro_id", "column_key"])

    op.create_table(
        "arcade_levels",
        _uuid_pk(),
        sa.Column("slug", sa.Text(), nullable=False, unique=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("language", sa.Text(), nullable=False),
        sa.Column("difficulty", sa.Text(), nullable=False),
        sa.Column("starter_code", sa.Text(), nullable=False),
        sa.Column("test_cases", sa.Text(), nullable=False),
        sa.Column("solution", sa.Text(), nullable=False),
        _created_at(),
    )

    op.create_table(
        "arcade_runs",
        _uuid_pk(),
        # org_id lets live arcade views filter runs per organization
        _fk("org_id", "organizations.id"),
        _fk("level_id", "arcade_levels.id"),
        _fk("member_id", "members.id"),
        sa.Column("submitted_code", sa.Text(), nullable=False),
        sa.Column("passed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_awarded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("test_output", sa.Text(), nullable=False, server_default=""),
        _created_at(),
    )
    op.create_index("ix_arcade_runs_member_level", "arcade_runs", ["member_id", "level_id"])

    # -----------------------------------------------------------------------
    # 3. Roles, helper functions, provisioning
    # -----------------------------------------------------------------------

    for role in (RESTRICTED_ROLE, PRIVILEGED_ROLE):
        op.execute(f"""
            DO $$ BEGIN
                IF NOT EXISTS (SELECT 1 FROM pg_roles WHERE rolname = '{role}') THEN
                    CREATE ROLE {role} NOLOGIN;
                END IF;
            END $$
        """)
    op.execute(f"ALTER ROLE {PRIVILEGED_ROLE} BYPASSRLS")
    op.execute(f"GRANT {RESTRICTED_ROLE}, {PRIVILEGED_ROLE} TO CURRENT_USER")
    op.execute(
        f"GRANT SELECT, INSERT, UPDATE, DELETE ON ALL TABLES IN SCHEMA public "
        f"TO {RESTRICTED_ROLE}, {PRIVILEGED_ROLE}"
    )

    op.execute(CLAIM_FUNCTIONS)
    op.execute(PROVISION_FUNCTION)
    op.execute(f"REVOKE ALL ON FUNCTION create_organization_with_admin FROM PUBLIC, {RESTRICTED_ROLE}")
    op.execute(f"GRANT EXECUTE ON FUNCTION create_organization_with_admin TO {PRIVILEGED_ROLE}")

    # -----------------------------------------------------------------------
    # 4. Row Level Security (RLS) policies
    # -----------------------------------------------------------------------

    for table in RLS_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")

    for name, table, command, using, check in POLICIES:
        clauses = f"FOR {command} TO {RESTRICTED_ROLE}"
        if using:
            clauses += f" USING ({using})"
        if check:
            clauses += f" WITH CHECK ({check})"
        op.execute(f"CREATE POLICY {name} ON {table} {clauses}")


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    for name, table, *_ in reversed(POLICIES):
        op.execute(f"DROP POLICY IF EXISTS {name} ON {table}")
    for table in reversed(RLS_TABLES):
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")

    op.execute("DROP FUNCTION IF EXISTS create_organization_with_admin")
    op.execute("DROP FUNCTION IF EXISTS current_is_admin()")
    op.execute("DROP FUNCTION IF EXISTS current_org_id()")
    op.execute("DROP FUNCTION IF EXISTS current_member_id()")
    op.execute("DROP FUNCTION IF EXISTS request_email()")

    op.drop_table("arcade_runs")
    op.drop_table("arcade_levels")
    op.drop_table("retro_notes")
    op.drop_table("retros")
    op.drop_table("pr_insights")
    op.drop_table("standups")
    op.drop_table("members")
    op.drop_table("organizations")
