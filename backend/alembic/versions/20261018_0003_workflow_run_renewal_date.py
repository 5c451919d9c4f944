"""Record the renewal date each workflow run covers."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0003"
down_revision = "20261018_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("workflow_runs", sa.Column("renewal_date", sa.DateTime(timezone=True), nullable=True))
    op.create_index(
        "ix_workflow_runs_subscription_renewal",
        "workflow_runs",
        ["subscription_id", "renewal_date"],
    )


def downgrade() -> None:
    op.drop_index("ix_workflow_runs_subscription_renewal", table_name="workflow_runs")
    op.drop_column("workflow_runs", "renewal_date")
