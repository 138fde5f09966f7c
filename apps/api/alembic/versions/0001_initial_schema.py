"""initial cidery schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

TS = sa.DateTime(timezone=True)
VOL = sa.Numeric(12, 3)
ABV = sa.Numeric(5, 2)

DEFAULT_VARIETIES = [
    ("Dabinett", "apple"),
    ("Kingston Black", "apple"),
    ("Yarlington Mill", "apple"),
    ("Ellis Bitter", "apple"),
    ("Golden Russet", "apple"),
    ("Gravenstein", "apple"),
    ("Honeycrisp", "apple"),
    ("Northern Spy", "apple"),
    ("Wickson Crab", "apple"),
    ("Barland", "pear"),
    ("Blakeney Red", "pear"),
    ("Bartlett", "pear"),
]

def upgrade():
    op.create_table(
        "vendors",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("contact", sa.String(255), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_vendors_name", "vendors", ["name"], unique=True)

    varieties = op.create_table(
        "fruit_varieties",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False, unique=True),
        sa.Column("fruit_type", sa.String(16), nullable=False, server_default="apple"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.CheckConstraint("fruit_type in ('apple','pear','other')", name="ck_variety_fruit_type"),
    )

    op.create_table(
        "basefruit_purchases",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vendor_id", sa.Integer(), sa.ForeignKey("vendors.id"), nullable=False),
        sa.Column("purchase_date", sa.Date(), nullable=False),
        sa.Column("invoice_number", sa.String(64), nullable=True),
        sa.Column("notes", sa.String(500), nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("deleted_at", TS, nullable=True),
    )
    op.create_index("ix_basefruit_purchases_vendor_id", "basefruit_purchases", ["vendor_id"])
    op.create_index("ix_basefruit_purchases_purchase_date", "basefruit_purchases", ["purchase_date"])

    op.create_table(
        "basefruit_purchase_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("purchase_id", sa.Integer(), sa.ForeignKey("basefruit_purchases.id", ondelete="CASCADE"), nullable=False),
        sa.Column("variety_id", sa.Integer(), sa.ForeignKey("fruit_varieties.id"), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=False),
        sa.Column("unit", sa.String(8), nullable=False),
        sa.Column("quantity_kg", sa.Numeric(12, 3), nullable=False),
        sa.Column("price_per_unit", sa.Numeric(12, 4), nullable=True),
        sa.Column("total_cost", sa.Numeric(12, 2), nullable=True),
        sa.Column("harvest_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.String(500), nullable=True),
        sa.CheckConstraint("quantity > 0", name="ck_purchase_item_qty_positive"),
        sa.CheckConstraint("unit in ('kg','lb')", name="ck_purchase_item_unit"),
    )
    op.create_index("ix_basefruit_purchase_items_purchase_id", "basefruit_purchase_items", ["purchase_id"])
    op.create_index("ix_basefruit_purchase_items_variety_id", "basefruit_purchase_items", ["variety_id"])

    op.create_table(
        "vessels",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("vessel_type", sa.String(32), nullable=False, server_default="tank"),
        sa.Column("capacity_liters", VOL, nullable=True),
        sa.Column("max_pressure_psi", sa.Numeric(6, 2), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="available"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.CheckConstraint("status in ('available','in_use','cleaning','maintenance')", name="ck_vessel_status"),
    )
    op.create_index("ix_vessels_name", "vessels", ["name"], unique=True)

    op.create_table(
        "press_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("date_completed", sa.Date(), nullable=False),
        sa.Column("total_fruit_kg", sa.Numeric(12, 3), nullable=False),
        sa.Column("total_juice_liters", VOL, nullable=False),
        sa.Column("notes", sa.String(500), nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_press_runs_date_completed", "press_runs", ["date_completed"])

    op.create_table(
        "press_run_loads",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("press_run_id", sa.Integer(), sa.ForeignKey("press_runs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("variety_id", sa.Integer(), sa.ForeignKey("fruit_varieties.id"), nullable=False),
        sa.Column("fruit_kg", sa.Numeric(12, 3), nullable=False),
        sa.Column("juice_liters", VOL, nullable=False),
        sa.CheckConstraint("fruit_kg > 0", name="ck_press_load_fruit_positive"),
        sa.CheckConstraint("juice_liters >= 0", name="ck_press_load_juice_non_negative"),
    )
    op.create_index("ix_press_run_loads_press_run_id", "press_run_loads", ["press_run_id"])
    op.create_index("ix_press_run_loads_variety_id", "press_run_loads", ["variety_id"])

    op.create_table(
        "batches",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("batch_number", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("custom_name", sa.String(255), nullable=True),
        sa.Column("product_type", sa.String(16), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="fermentation"),
        sa.Column("vessel_id", sa.Integer(), sa.ForeignKey("vessels.id"), nullable=True),
        sa.Column("press_run_id", sa.Integer(), sa.ForeignKey("press_runs.id"), nullable=True),
        sa.Column("parent_batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=True),
        sa.Column("initial_volume_liters", VOL, nullable=False, server_default=sa.text("0")),
        sa.Column("current_volume_liters", VOL, nullable=False, server_default=sa.text("0")),
        sa.Column("estimated_abv", ABV, nullable=True),
        sa.Column("actual_abv", ABV, nullable=True),
        sa.Column("start_date", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("end_date", TS, nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("deleted_at", TS, nullable=True),
        sa.CheckConstraint(
            "product_type in ('cider','perry','brandy','pommeau','juice','other')", name="ck_batch_product_type"
        ),
        sa.CheckConstraint(
            "status in ('fermentation','aging','conditioning','completed','discarded')", name="ck_batch_status"
        ),
        sa.CheckConstraint("current_volume_liters >= 0", name="ck_batch_volume_non_negative"),
    )
    op.create_index("ix_batches_batch_number", "batches", ["batch_number"], unique=True)
    op.create_index("ix_batches_product_type", "batches", ["product_type"])
    op.create_index("ix_batches_status", "batches", ["status"])
    op.create_index("ix_batches_vessel_id", "batches", ["vessel_id"])

    op.create_table(
        "batch_measurements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("measured_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("specific_gravity", sa.Numeric(6, 4), nullable=True),
        sa.Column("abv", ABV, nullable=True),
        sa.Column("ph", sa.Numeric(4, 2), nullable=True),
        sa.Column("total_acidity", sa.Numeric(5, 2), nullable=True),
        sa.Column("temperature_c", sa.Numeric(5, 2), nullable=True),
        sa.Column("volume_liters", VOL, nullable=True),
        sa.Column("notes", sa.String(500), nullable=True),
        sa.Column("taken_by", sa.String(128), nullable=True),
        sa.Column("deleted_at", TS, nullable=True),
    )
    op.create_index("ix_batch_measurements_batch_id", "batch_measurements", ["batch_id"])

    op.create_table(
        "batch_additives",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("additive_type", sa.String(64), nullable=False),
        sa.Column("additive_name", sa.String(128), nullable=False),
        sa.Column("amount", sa.Numeric(12, 3), nullable=False),
        sa.Column("unit", sa.String(16), nullable=False),
        sa.Column("added_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("notes", sa.String(500), nullable=True),
        sa.Column("added_by", sa.String(128), nullable=True),
        sa.Column("deleted_at", TS, nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_additive_amount_positive"),
    )
    op.create_index("ix_batch_additives_batch_id", "batch_additives", ["batch_id"])

    op.create_table(
        "volume_movements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("from_vessel_id", sa.Integer(), sa.ForeignKey("vessels.id"), nullable=True),
        sa.Column("to_vessel_id", sa.Integer(), sa.ForeignKey("vessels.id"), nullable=True),
        sa.Column("related_batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=True),
        sa.Column("volume_liters", VOL, nullable=False),
        sa.Column("moved_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("move_type", sa.String(32), nullable=False),
        sa.Column("notes", sa.String(500), nullable=True),
        sa.CheckConstraint("volume_liters > 0", name="ck_move_volume_positive"),
    )
    op.create_index("ix_volume_movements_batch_id", "volume_movements", ["batch_id"])
    op.create_index("ix_volume_movements_moved_at", "volume_movements", ["moved_at"])
    op.create_index("ix_volume_movements_move_type", "volume_movements", ["move_type"])

    op.create_table(
        "batch_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("performed_by", sa.String(128), nullable=True),
        sa.Column("performed_at", TS, nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_batch_events_batch_id", "batch_events", ["batch_id"])
    op.create_index("ix_batch_events_event_type", "batch_events", ["event_type"])

    op.create_table(
        "batch_transfers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("source_batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("destination_batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("volume_liters", VOL, nullable=False),
        sa.Column("transferred_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("volume_liters > 0", name="ck_transfer_volume_positive"),
        sa.CheckConstraint("source_batch_id <> destination_batch_id", name="ck_transfer_distinct_batches"),
    )
    op.create_index("ix_batch_transfers_source_batch_id", "batch_transfers", ["source_batch_id"])
    op.create_index("ix_batch_transfers_destination_batch_id", "batch_transfers", ["destination_batch_id"])

    op.create_table(
        "carbonation_operations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("vessel_id", sa.Integer(), sa.ForeignKey("vessels.id"), nullable=True),
        sa.Column("process", sa.String(32), nullable=False),
        sa.Column("gas_type", sa.String(16), nullable=False, server_default="CO2"),
        sa.Column("target_co2_volumes", sa.Numeric(4, 2), nullable=False),
        sa.Column("starting_co2_volumes", sa.Numeric(4, 2), nullable=True),
        sa.Column("pressure_applied_psi", sa.Numeric(6, 2), nullable=False),
        sa.Column("starting_temperature_c", sa.Numeric(5, 2), nullable=True),
        sa.Column("starting_volume_liters", VOL, nullable=False),
        sa.Column("started_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("completed_at", TS, nullable=True),
        sa.Column("final_co2_volumes", sa.Numeric(4, 2), nullable=True),
        sa.Column("final_pressure_psi", sa.Numeric(6, 2), nullable=True),
        sa.Column("final_temperature_c", sa.Numeric(5, 2), nullable=True),
        sa.Column("final_volume_liters", VOL, nullable=True),
        sa.Column("notes", sa.String(500), nullable=True),
        sa.CheckConstraint(
            "process in ('headspace','inline','stone','bottle_conditioning')", name="ck_carbonation_process"
        ),
    )
    op.create_index("ix_carbonation_operations_batch_id", "carbonation_operations", ["batch_id"])
    # at most one open operation per batch
    op.create_index(
        "uq_carbonation_active_per_batch",
        "carbonation_operations",
        ["batch_id"],
        unique=True,
        postgresql_where=sa.text("completed_at IS NULL"),
    )

    op.create_table(
        "distillation_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("source_batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("source_volume_liters", VOL, nullable=False),
        sa.Column("source_abv", ABV, nullable=True),
        sa.Column("proof_gallons_sent", sa.Numeric(12, 3), nullable=True),
        sa.Column("deducted", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("distillery_name", sa.String(255), nullable=False),
        sa.Column("distillery_permit_number", sa.String(64), nullable=True),
        sa.Column("tib_outbound_number", sa.String(64), nullable=True),
        sa.Column("sent_at", TS, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="sent"),
        sa.Column("result_batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=True),
        sa.Column("received_volume_liters", VOL, nullable=True),
        sa.Column("received_abv", ABV, nullable=True),
        sa.Column("proof_gallons_received", sa.Numeric(12, 3), nullable=True),
        sa.Column("received_at", TS, nullable=True),
        sa.Column("notes", sa.String(500), nullable=True),
        sa.CheckConstraint("status in ('sent','received','cancelled')", name="ck_distillation_status"),
        sa.CheckConstraint("source_volume_liters > 0", name="ck_distillation_volume_positive"),
    )
    op.create_index("ix_distillation_records_source_batch_id", "distillation_records", ["source_batch_id"])
    op.create_index("ix_distillation_records_status", "distillation_records", ["status"])

    op.create_table(
        "packaging_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("package_type", sa.String(16), nullable=False),
        sa.Column("package_size_ml", sa.Integer(), nullable=False),
        sa.Column("units_produced", sa.Integer(), nullable=False),
        sa.Column("volume_taken_liters", VOL, nullable=False),
        sa.Column("loss_liters", VOL, nullable=False, server_default=sa.text("0")),
        sa.Column("material_cost", sa.Numeric(12, 2), nullable=True),
        sa.Column("packaged_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("notes", sa.String(500), nullable=True),
        sa.CheckConstraint("package_type in ('bottle','can','keg')", name="ck_packaging_type"),
        sa.CheckConstraint("package_size_ml > 0", name="ck_packaging_size_positive"),
        sa.CheckConstraint("units_produced >= 0", name="ck_packaging_units_non_negative"),
        sa.CheckConstraint("loss_liters >= 0", name="ck_packaging_loss_non_negative"),
    )
    op.create_index("ix_packaging_runs_batch_id", "packaging_runs", ["batch_id"])

    op.create_table(
        "ttb_opening_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("product_type", sa.String(16), nullable=False, unique=True),
        sa.Column("balance_date", sa.Date(), nullable=False),
        sa.Column("volume_liters", VOL, nullable=False, server_default=sa.text("0")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("updated_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("volume_liters >= 0", name="ck_opening_balance_non_negative"),
    )

    op.create_table(
        "ttb_period_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("period_type", sa.String(16), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("finalized_at", TS, nullable=True),
        sa.UniqueConstraint("period_type", "period_start", name="uq_ttb_snapshot_period"),
        sa.CheckConstraint("status in ('draft','finalized')", name="ck_ttb_snapshot_status"),
    )

    op.create_table(
        "code_counters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code_date", sa.Date(), nullable=False),
        sa.Column("prefix", sa.String(16), nullable=False),
        sa.Column("last_seq", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )
    op.create_unique_constraint("uq_code_counters_date_prefix", "code_counters", ["code_date", "prefix"])

    op.bulk_insert(varieties, [
        {"name": name, "fruit_type": fruit_type, "is_active": True, "sort_order": i}
        for i, (name, fruit_type) in enumerate(DEFAULT_VARIETIES)
    ])

def downgrade():
    for table in (
        "code_counters",
        "ttb_period_snapshots",
        "ttb_opening_balances",
        "packaging_runs",
        "distillation_records",
        "carbonation_operations",
        "batch_transfers",
        "batch_events",
        "volume_movements",
        "batch_additives",
        "batch_measurements",
        "batches",
        "press_run_loads",
        "press_runs",
        "vessels",
        "basefruit_purchase_items",
        "basefruit_purchases",
        "fruit_varieties",
        "vendors",
    ):
        op.drop_table(table)
