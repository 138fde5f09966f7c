from __future__ import annotations

from datetime import date, datetime, timezone
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    Boolean, CheckConstraint, Date, DateTime, ForeignKey,
    Index, Integer, JSON, Numeric, String, Text, text
)
from sqlalchemy import UniqueConstraint


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    # sqlite hands back naive datetimes
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


PRODUCT_TYPES = ("cider", "perry", "brandy", "pommeau", "juice", "other")
BATCH_STATUSES = ("fermentation", "aging", "conditioning", "completed", "discarded")


class Base(DeclarativeBase):
    pass

class Vendor(Base):
    __tablename__ = "vendors"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    contact: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

class FruitVariety(Base):
    __tablename__ = "fruit_varieties"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    fruit_type: Mapped[str] = mapped_column(String(16), nullable=False, default="apple")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("fruit_type in ('apple','pear','other')", name="ck_variety_fruit_type"),
    )

class BaseFruitPurchase(Base):
    __tablename__ = "basefruit_purchases"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vendor_id: Mapped[int] = mapped_column(ForeignKey("vendors.id"), index=True)
    purchase_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    invoice_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

class BaseFruitPurchaseItem(Base):
    __tablename__ = "basefruit_purchase_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    purchase_id: Mapped[int] = mapped_column(ForeignKey("basefruit_purchases.id", ondelete="CASCADE"), index=True)
    variety_id: Mapped[int] = mapped_column(ForeignKey("fruit_varieties.id"), index=True)
    quantity: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False)
    unit: Mapped[str] = mapped_column(String(8), nullable=False)
    quantity_kg: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False)
    price_per_unit: Mapped[float | None] = mapped_column(Numeric(12, 4), nullable=True)
    total_cost: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    harvest_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_purchase_item_qty_positive"),
        CheckConstraint("unit in ('kg','lb')", name="ck_purchase_item_unit"),
    )

class Vessel(Base):
    __tablename__ = "vessels"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    vessel_type: Mapped[str] = mapped_column(String(32), nullable=False, default="tank")
    capacity_liters: Mapped[float | None] = mapped_column(Numeric(12, 3), nullable=True)
    max_pressure_psi: Mapped[float | None] = mapped_column(Numeric(6, 2), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="available")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "status in ('available','in_use','cleaning','maintenance')",
            name="ck_vessel_status",
        ),
    )

class PressRun(Base):
    __tablename__ = "press_runs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    date_completed: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    total_fruit_kg: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False)
    total_juice_liters: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

class PressRunLoad(Base):
    __tablename__ = "press_run_loads"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    press_run_id: Mapped[int] = mapped_column(ForeignKey("press_runs.id", ondelete="CASCADE"), index=True)
    variety_id: Mapped[int] = mapped_column(ForeignKey("fruit_varieties.id"), index=True)
    fruit_kg: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False)
    juice_liters: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False)

    __table_args__ = (
        CheckConstraint("fruit_kg > 0", name="ck_press_load_fruit_positive"),
        CheckConstraint("juice_liters >= 0", name="ck_press_load_juice_non_negative"),
    )

class Batch(Base):
    __tablename__ = "batches"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_number: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    custom_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    product_type: Mapped[str] = mapped_column(String(16), index=True)
    status: Mapped[str] = mapped_column(String(32), index=True, default="fermentation")

    vessel_id: Mapped[int | None] = mapped_column(ForeignKey("vessels.id"), nullable=True, index=True)
    press_run_id: Mapped[int | None] = mapped_column(ForeignKey("press_runs.id"), nullable=True)
    parent_batch_id: Mapped[int | None] = mapped_column(ForeignKey("batches.id"), nullable=True)

    initial_volume_liters: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False, default=0)
    # Recorded (book) volume. The ledger in volume_movements is the audit trail for it.
    current_volume_liters: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False, default=0)

    estimated_abv: Mapped[float | None] = mapped_column(Numeric(5, 2), nullable=True)
    actual_abv: Mapped[float | None] = mapped_column(Numeric(5, 2), nullable=True)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "product_type in ('cider','perry','brandy','pommeau','juice','other')",
            name="ck_batch_product_type",
        ),
        CheckConstraint(
            "status in ('fermentation','aging','conditioning','completed','discarded')",
            name="ck_batch_status",
        ),
        CheckConstraint("current_volume_liters >= 0", name="ck_batch_volume_non_negative"),
    )

class BatchMeasurement(Base):
    __tablename__ = "batch_measurements"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id"), index=True)
    measured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    specific_gravity: Mapped[float | None] = mapped_column(Numeric(6, 4), nullable=True)
    abv: Mapped[float | None] = mapped_column(Numeric(5, 2), nullable=True)
    ph: Mapped[float | None] = mapped_column(Numeric(4, 2), nullable=True)
    total_acidity: Mapped[float | None] = mapped_column(Numeric(5, 2), nullable=True)
    temperature_c: Mapped[float | None] = mapped_column(Numeric(5, 2), nullable=True)
    volume_liters: Mapped[float | None] = mapped_column(Numeric(12, 3), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    taken_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

class BatchAdditive(Base):
    __tablename__ = "batch_additives"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id"), index=True)
    additive_type: Mapped[str] = mapped_column(String(64), nullable=False)
    additive_name: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False)
    unit: Mapped[str] = mapped_column(String(16), nullable=False)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    added_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (CheckConstraint("amount > 0", name="ck_additive_amount_positive"),)

class VolumeMovement(Base):
    __tablename__ = "volume_movements"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id"), index=True)

    from_vessel_id: Mapped[int | None] = mapped_column(ForeignKey("vessels.id"), nullable=True)
    to_vessel_id: Mapped[int | None] = mapped_column(ForeignKey("vessels.id"), nullable=True)
    related_batch_id: Mapped[int | None] = mapped_column(ForeignKey("batches.id"), nullable=True)

    volume_liters: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False)
    moved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    move_type: Mapped[str] = mapped_column(String(32), index=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    __table_args__ = (
        CheckConstraint("volume_liters > 0", name="ck_move_volume_positive"),
    )

class BatchEvent(Base):
    __tablename__ = "batch_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id"), index=True)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    # User-entered notes; optional.
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    performed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    performed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

class BatchTransfer(Base):
    __tablename__ = "batch_transfers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id"), index=True)
    destination_batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id"), index=True)
    volume_liters: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False)
    transferred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("volume_liters > 0", name="ck_transfer_volume_positive"),
        CheckConstraint("source_batch_id <> destination_batch_id", name="ck_transfer_distinct_batches"),
    )

class CarbonationOperation(Base):
    __tablename__ = "carbonation_operations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id"), index=True)
    vessel_id: Mapped[int | None] = mapped_column(ForeignKey("vessels.id"), nullable=True)
    process: Mapped[str] = mapped_column(String(32), nullable=False)
    gas_type: Mapped[str] = mapped_column(String(16), nullable=False, default="CO2")
    target_co2_volumes: Mapped[float] = mapped_column(Numeric(4, 2), nullable=False)
    starting_co2_volumes: Mapped[float | None] = mapped_column(Numeric(4, 2), nullable=True)
    pressure_applied_psi: Mapped[float] = mapped_column(Numeric(6, 2), nullable=False)
    starting_temperature_c: Mapped[float | None] = mapped_column(Numeric(5, 2), nullable=True)
    starting_volume_liters: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    final_co2_volumes: Mapped[float | None] = mapped_column(Numeric(4, 2), nullable=True)
    final_pressure_psi: Mapped[float | None] = mapped_column(Numeric(6, 2), nullable=True)
    final_temperature_c: Mapped[float | None] = mapped_column(Numeric(5, 2), nullable=True)
    final_volume_liters: Mapped[float | None] = mapped_column(Numeric(12, 3), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "process in ('headspace','inline','stone','bottle_conditioning')",
            name="ck_carbonation_process",
        ),
        Index(
            "uq_carbonation_active_per_batch", "batch_id", unique=True,
            postgresql_where=text("completed_at IS NULL"), sqlite_where=text("completed_at IS NULL"),
        ),
    )

class DistillationRecord(Base):
    __tablename__ = "distillation_records"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id"), index=True)
    source_volume_liters: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False)
    source_abv: Mapped[float | None] = mapped_column(Numeric(5, 2), nullable=True)
    proof_gallons_sent: Mapped[float | None] = mapped_column(Numeric(12, 3), nullable=True)
    deducted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    distillery_name: Mapped[str] = mapped_column(String(255), nullable=False)
    distillery_permit_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tib_outbound_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="sent", index=True)

    result_batch_id: Mapped[int | None] = mapped_column(ForeignKey("batches.id"), nullable=True)
    received_volume_liters: Mapped[float | None] = mapped_column(Numeric(12, 3), nullable=True)
    received_abv: Mapped[float | None] = mapped_column(Numeric(5, 2), nullable=True)
    proof_gallons_received: Mapped[float | None] = mapped_column(Numeric(12, 3), nullable=True)
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    __table_args__ = (
        CheckConstraint("status in ('sent','received','cancelled')", name="ck_distillation_status"),
        CheckConstraint("source_volume_liters > 0", name="ck_distillation_volume_positive"),
    )

class PackagingRun(Base):
    __tablename__ = "packaging_runs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id"), index=True)
    package_type: Mapped[str] = mapped_column(String(16), nullable=False)
    package_size_ml: Mapped[int] = mapped_column(Integer, nullable=False)
    units_produced: Mapped[int] = mapped_column(Integer, nullable=False)
    volume_taken_liters: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False)
    loss_liters: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False, default=0)
    material_cost: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    packaged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    __table_args__ = (
        CheckConstraint("package_type in ('bottle','can','keg')", name="ck_packaging_type"),
        CheckConstraint("package_size_ml > 0", name="ck_packaging_size_positive"),
        CheckConstraint("units_produced >= 0", name="ck_packaging_units_non_negative"),
        CheckConstraint("loss_liters >= 0", name="ck_packaging_loss_non_negative"),
    )

class TTBOpeningBalance(Base):
    __tablename__ = "ttb_opening_balances"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_type: Mapped[str] = mapped_column(String(16), unique=True, nullable=False)
    balance_date: Mapped[date] = mapped_column(Date, nullable=False)
    volume_liters: Mapped[float] = mapped_column(Numeric(12, 3), nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("volume_liters >= 0", name="ck_opening_balance_non_negative"),
    )

class TTBPeriodSnapshot(Base):
    __tablename__ = "ttb_period_snapshots"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    period_type: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("period_type", "period_start", name="uq_ttb_snapshot_period"),
        CheckConstraint("status in ('draft','finalized')", name="ck_ttb_snapshot_status"),
    )

class CodeCounter(Base):
    __tablename__ = "code_counters"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code_date: Mapped[date] = mapped_column(Date, nullable=False)
    prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    last_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("code_date", "prefix", name="uq_code_counters_date_prefix"),
    )
