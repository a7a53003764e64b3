"""create payout engine tables

Revision ID: 20260301_0001
Revises:
Create Date: 2026-03-01 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20260301_0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("settings", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tenants_is_active", "tenants", ["is_active"], unique=False)

    op.create_table(
        "periods",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("label", sa.String(length=64), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "label", name="uq_periods_tenant_label"),
    )
    op.create_index("ix_periods_tenant_id", "periods", ["tenant_id"], unique=False)

    op.create_table(
        "individuals",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("external_id", sa.String(length=128), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=255), nullable=True),
        sa.Column("org_unit_ref", sa.String(length=128), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "external_id", name="uq_individuals_tenant_external_id"),
    )
    op.create_index("ix_individuals_tenant_id", "individuals", ["tenant_id"], unique=False)
    op.create_index(
        "ix_individuals_tenant_org_unit",
        "individuals",
        ["tenant_id", "org_unit_ref"],
        unique=False,
    )

    op.create_table(
        "plans",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("variants", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("input_bindings", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_plans_tenant_id", "plans", ["tenant_id"], unique=False)
    op.create_index("ix_plans_tenant_status", "plans", ["tenant_id", "status"], unique=False)

    op.create_table(
        "plan_assignments",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("plan_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("individual_id", postgresql.UUID(as_uuid=True), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["individual_id"], ["individuals.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("plan_id", "individual_id", name="uq_plan_assignments_plan_individual"),
    )
    op.create_index(
        "ix_plan_assignments_tenant_plan",
        "plan_assignments",
        ["tenant_id", "plan_id"],
        unique=False,
    )

    op.create_table(
        "fact_rows",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("period_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("individual_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("org_unit_ref", sa.String(length=128), nullable=True),
        sa.Column("fact_type", sa.String(length=128), nullable=False),
        sa.Column("fields", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["period_id"], ["periods.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["individual_id"], ["individuals.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fact_rows_tenant_period", "fact_rows", ["tenant_id", "period_id"], unique=False)
    op.create_index(
        "ix_fact_rows_tenant_period_individual",
        "fact_rows",
        ["tenant_id", "period_id", "individual_id"],
        unique=False,
    )
    op.create_index(
        "ix_fact_rows_tenant_period_org_unit",
        "fact_rows",
        ["tenant_id", "period_id", "org_unit_ref"],
        unique=False,
    )

    op.create_table(
        "calculation_batches",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("period_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("plan_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("lifecycle_state", sa.String(length=32), nullable=False),
        sa.Column("individual_count", sa.Integer(), nullable=False),
        sa.Column("total_payout", sa.Numeric(), nullable=False),
        sa.Column("summary", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("supersedes", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("superseded_by", postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["period_id"], ["periods.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["supersedes"], ["calculation_batches.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["superseded_by"], ["calculation_batches.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_calculation_batches_key",
        "calculation_batches",
        ["tenant_id", "period_id", "plan_id"],
        unique=False,
    )
    op.create_index(
        "ix_calculation_batches_key_current",
        "calculation_batches",
        ["tenant_id", "period_id", "plan_id", "superseded_by"],
        unique=False,
    )
    op.create_index(
        "ix_calculation_batches_lifecycle_state",
        "calculation_batches",
        ["lifecycle_state"],
        unique=False,
    )

    op.create_table(
        "calculation_results",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("individual_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("total_payout", sa.Numeric(), nullable=False),
        sa.Column("variant_id", sa.String(length=128), nullable=True),
        sa.Column("variant_name", sa.String(length=255), nullable=True),
        sa.Column("org_unit_ref", sa.String(length=128), nullable=True),
        sa.Column("excluded_reason", sa.String(length=64), nullable=True),
        sa.Column("components", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("metrics", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("log", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["calculation_batches.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["individual_id"], ["individuals.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("batch_id", "individual_id", name="uq_calculation_results_batch_individual"),
    )
    op.create_index("ix_calculation_results_batch_id", "calculation_results", ["batch_id"], unique=False)
    op.create_index(
        "ix_calculation_results_individual_id",
        "calculation_results",
        ["individual_id"],
        unique=False,
    )

    op.create_table(
        "lifecycle_transitions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("from_state", sa.String(length=32), nullable=True),
        sa.Column("to_state", sa.String(length=32), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["calculation_batches.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_lifecycle_transitions_batch_id",
        "lifecycle_transitions",
        ["batch_id"],
        unique=False,
    )

    op.create_table(
        "pattern_density",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("signature", sa.String(length=512), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("execution_mode", sa.String(length=32), nullable=False),
        sa.Column("total_executions", sa.Integer(), nullable=False),
        sa.Column("last_anomaly_rate", sa.Float(), nullable=False),
        sa.Column("last_correction_count", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "signature", name="uq_pattern_density_tenant_signature"),
    )
    op.create_index("ix_pattern_density_tenant_id", "pattern_density", ["tenant_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_pattern_density_tenant_id", table_name="pattern_density")
    op.drop_table("pattern_density")

    op.drop_index("ix_lifecycle_transitions_batch_id", table_name="lifecycle_transitions")
    op.drop_table("lifecycle_transitions")

    op.drop_index("ix_calculation_results_individual_id", table_name="calculation_results")
    op.drop_index("ix_calculation_results_batch_id", table_name="calculation_results")
    op.drop_table("calculation_results")

    op.drop_index("ix_calculation_batches_lifecycle_state", table_name="calculation_batches")
    op.drop_index("ix_calculation_batches_key_current", table_name="calculation_batches")
    op.drop_index("ix_calculation_batches_key", table_name="calculation_batches")
    op.drop_table("calculation_batches")

    op.drop_index("ix_fact_rows_tenant_period_org_unit", table_name="fact_rows")
    op.drop_index("ix_fact_rows_tenant_period_individual", table_name="fact_rows")
    op.drop_index("ix_fact_rows_tenant_period", table_name="fact_rows")
    op.drop_table("fact_rows")

    op.drop_index("ix_plan_assignments_tenant_plan", table_name="plan_assignments")
    op.drop_table("plan_assignments")

    op.drop_index("ix_plans_tenant_status", table_name="plans")
    op.drop_index("ix_plans_tenant_id", table_name="plans")
    op.drop_table("plans")

    op.drop_index("ix_individuals_tenant_org_unit", table_name="individuals")
    op.drop_index("ix_individuals_tenant_id", table_name="individuals")
    op.drop_table("individuals")

    op.drop_index("ix_periods_tenant_id", table_name="periods")
    op.drop_table("periods")

    op.drop_index("ix_tenants_is_active", table_name="tenants")
    op.drop_table("tenants")
