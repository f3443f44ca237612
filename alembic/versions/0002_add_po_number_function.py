"""add generate_po_number store function

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19 00:10:00.000000

"""
from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


# Sequences continue across days per organization, matching the application
# fallback in app.services.purchase_order.
_CREATE_FUNCTION = """
CREATE OR REPLACE FUNCTION generate_po_number(org_id integer)
RETURNS text AS $$
DECLARE
    next_seq integer;
BEGIN
    PERFORM pg_advisory_xact_lock(org_id);

    SELECT COALESCE(MAX(CAST(split_part(po_number, '-', 3) AS integer)), 0) + 1
      INTO next_seq
      FROM purchase_orders
     WHERE organization_id = org_id
       AND po_number ~ '^PO-[0-9]{8}-[0-9]+$';

    RETURN 'PO-' || to_char(CURRENT_DATE, 'YYYYMMDD') || '-' || lpad(next_seq::text, GREATEST(5, length(next_seq::text)), '0');
END;
$$ LANGUAGE plpgsql;
"""


def upgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute(_CREATE_FUNCTION)


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute("DROP FUNCTION IF EXISTS generate_po_number(integer)")
