from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from evvalue.data_models import (
    MarketSegment,
    NewValueEstimation,
    PriceObservation,
    ValueEstimation,
    VehicleSpec,
)
from evvalue.errors import NotFoundError, StorageFailure, ValidationError

logger = logging.getLogger(__name__)

EDITABLE_SPEC_FIELDS = frozenset(
    {"model", "battery_capacity_kwh", "efficiency_kwh_per_100km", "max_charging_power_kw"}
)

metadata = MetaData()

ev_specs_table = Table(
    "ev_specs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("model", String(255), nullable=False),
    Column("battery_capacity_kwh", Float, nullable=False),
    Column("efficiency_kwh_per_100km", Float, nullable=False),
    Column("max_charging_power_kw", Float, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

market_prices_table = Table(
    "market_prices",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("market_type", String(16), nullable=False),
    Column("price_eur_per_mwh", Float, nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_market_prices_type_timestamp", "market_type", "timestamp"),
)

ev_value_estimations_table = Table(
    "ev_value_estimations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("annual_km", Float, nullable=False),
    Column("ev_spec_id", Integer, nullable=False, index=True),
    Column("estimated_value_eur_per_year", Float, nullable=False),
    Column("day_ahead_value", Float, nullable=False),
    Column("intraday_value", Float, nullable=False),
    Column("imbalance_value", Float, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Storage operation %s failed: %s", operation, exc)
        raise StorageFailure(f"{operation} failed: {exc}") from exc


def _spec_from_row(row: Mapping[str, Any]) -> VehicleSpec:
    return VehicleSpec(
        id=int(row["id"]),
        model=row["model"],
        battery_capacity_kwh=float(row["battery_capacity_kwh"]),
        efficiency_kwh_per_100km=float(row["efficiency_kwh_per_100km"]),
        max_charging_power_kw=float(row["max_charging_power_kw"]),
        created_at=row["created_at"],
    )


def _price_from_row(row: Mapping[str, Any]) -> PriceObservation:
    return PriceObservation(
        id=int(row["id"]),
        market_type=row["market_type"],
        price_eur_per_mwh=float(row["price_eur_per_mwh"]),
        timestamp=row["timestamp"],
        created_at=row["created_at"],
    )


def _estimation_from_row(row: Mapping[str, Any]) -> ValueEstimation:
    return ValueEstimation(
        id=int(row["id"]),
        annual_km=float(row["annual_km"]),
        ev_spec_id=int(row["ev_spec_id"]),
        estimated_value_eur_per_year=float(row["estimated_value_eur_per_year"]),
        day_ahead_value=float(row["day_ahead_value"]),
        intraday_value=float(row["intraday_value"]),
        imbalance_value=float(row["imbalance_value"]),
        created_at=row["created_at"],
    )


class SqlRecordStore:
    """Record store for vehicle specs, price observations and estimations.

    Backed by an async SQLAlchemy engine. When the database cannot be reached at
    connect time the store keeps records in process memory instead (fallback
    mode), which is also what the test-suite runs against.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_specs: list[dict[str, Any]] = []
        self._mem_prices: list[dict[str, Any]] = []
        self._mem_estimations: list[dict[str, Any]] = []

    @property
    def fallback_mode(self) -> bool:
        return self._fallback_mode

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception as exc:
            logger.warning("Database unavailable (%s); keeping records in memory", exc)
            if self.engine is not None:
                await self.engine.dispose()
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None or self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def _insert(self, table: Table, mem: list[dict[str, Any]], row: dict[str, Any]) -> dict[str, Any]:
        if self.engine is None:
            row = {"id": len(mem) + 1, **row}
            mem.append(row)
            return row
        with _storage_errors(f"insert into {table.name}"):
            async with self.engine.begin() as conn:
                result = await conn.execute(insert(table).values(**row))
        return {"id": result.inserted_primary_key[0], **row}

    async def _select(self, stmt: Any, operation: str) -> list[dict[str, Any]]:
        assert self.engine is not None
        with _storage_errors(operation):
            async with self.engine.connect() as conn:
                rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    # ── Vehicle specs ───────────────────────────────────────────────

    async def insert_vehicle_spec(
        self,
        *,
        model: str,
        battery_capacity_kwh: float,
        efficiency_kwh_per_100km: float,
        max_charging_power_kw: float,
    ) -> VehicleSpec:
        row = await self._insert(
            ev_specs_table,
            self._mem_specs,
            {
                "model": model,
                "battery_capacity_kwh": float(battery_capacity_kwh),
                "efficiency_kwh_per_100km": float(efficiency_kwh_per_100km),
                "max_charging_power_kw": float(max_charging_power_kw),
                "created_at": _utcnow(),
            },
        )
        return _spec_from_row(row)

    async def list_vehicle_specs(self) -> list[VehicleSpec]:
        if self.engine is None:
            return [_spec_from_row(r) for r in self._mem_specs]
        rows = await self._select(select(ev_specs_table).order_by(ev_specs_table.c.id), "list_vehicle_specs")
        return [_spec_from_row(r) for r in rows]

    async def get_vehicle_spec(self, spec_id: int) -> VehicleSpec | None:
        if self.engine is None:
            for spec in self._mem_specs:
                if spec["id"] == spec_id:
                    return _spec_from_row(spec)
            return None
        rows = await self._select(
            select(ev_specs_table).where(ev_specs_table.c.id == spec_id),
            "get_vehicle_spec",
        )
        return _spec_from_row(rows[0]) if rows else None

    async def update_vehicle_spec(self, spec_id: int, changes: Mapping[str, Any]) -> VehicleSpec:
        unknown = set(changes) - EDITABLE_SPEC_FIELDS
        if unknown:
            raise ValidationError(f"fields not editable: {', '.join(sorted(unknown))}")
        values = {k: (v if k == "model" else float(v)) for k, v in changes.items() if v is not None}

        if self.engine is None:
            for spec in self._mem_specs:
                if spec["id"] == spec_id:
                    spec.update(values)
                    return _spec_from_row(spec)
            raise NotFoundError("EV specification", spec_id)

        with _storage_errors("update_vehicle_spec"):
            async with self.engine.begin() as conn:
                if values:
                    await conn.execute(
                        update(ev_specs_table).where(ev_specs_table.c.id == spec_id).values(**values)
                    )
                row = (await conn.execute(select(ev_specs_table).where(ev_specs_table.c.id == spec_id))).first()
        if row is None:
            raise NotFoundError("EV specification", spec_id)
        return _spec_from_row(row._mapping)

    # ── Market prices ───────────────────────────────────────────────

    async def insert_price_observation(
        self,
        *,
        market_type: MarketSegment,
        price_eur_per_mwh: float,
        timestamp: datetime,
    ) -> PriceObservation:
        row = await self._insert(
            market_prices_table,
            self._mem_prices,
            {
                "market_type": market_type,
                "price_eur_per_mwh": float(price_eur_per_mwh),
                "timestamp": _as_utc(timestamp),
                "created_at": _utcnow(),
            },
        )
        return _price_from_row(row)

    async def list_price_observations(
        self,
        *,
        market_type: MarketSegment | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        limit: int | None = None,
    ) -> list[PriceObservation]:
        """Observations matching all given filters, newest observation timestamp first.

        Date bounds are inclusive. Naive datetimes are read as UTC.
        """
        if from_date is not None:
            from_date = _as_utc(from_date)
        if to_date is not None:
            to_date = _as_utc(to_date)

        if self.engine is None:
            rows = [
                r for r in self._mem_prices
                if (market_type is None or r["market_type"] == market_type)
                and (from_date is None or r["timestamp"] >= from_date)
                and (to_date is None or r["timestamp"] <= to_date)
            ]
            rows.sort(key=lambda r: (r["timestamp"], r["id"]), reverse=True)
            if limit is not None:
                rows = rows[:limit]
            return [_price_from_row(r) for r in rows]

        t = market_prices_table
        stmt = select(t)
        if market_type is not None:
            stmt = stmt.where(t.c.market_type == market_type)
        if from_date is not None:
            stmt = stmt.where(t.c.timestamp >= from_date)
        if to_date is not None:
            stmt = stmt.where(t.c.timestamp <= to_date)
        stmt = stmt.order_by(t.c.timestamp.desc(), t.c.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return [_price_from_row(r) for r in await self._select(stmt, "list_price_observations")]

    async def list_recent_prices(self, segment: MarketSegment, limit: int) -> list[PriceObservation]:
        return await self.list_price_observations(market_type=segment, limit=limit)

    # ── Estimations ─────────────────────────────────────────────────

    async def insert_estimation(self, record: NewValueEstimation) -> ValueEstimation:
        row = await self._insert(
            ev_value_estimations_table,
            self._mem_estimations,
            {
                "annual_km": float(record.annual_km),
                "ev_spec_id": int(record.ev_spec_id),
                "estimated_value_eur_per_year": record.estimated_value_eur_per_year,
                "day_ahead_value": record.day_ahead_value,
                "intraday_value": record.intraday_value,
                "imbalance_value": record.imbalance_value,
                "created_at": _utcnow(),
            },
        )
        return _estimation_from_row(row)

    async def list_estimations(
        self, *, ev_spec_id: int | None = None, limit: int | None = None,
    ) -> list[ValueEstimation]:
        if self.engine is None:
            rows = [r for r in self._mem_estimations if ev_spec_id is None or r["ev_spec_id"] == ev_spec_id]
            rows = sorted(rows, key=lambda r: (r["created_at"], r["id"]), reverse=True)
            if limit is not None:
                rows = rows[:limit]
            return [_estimation_from_row(r) for r in rows]

        t = ev_value_estimations_table
        stmt = select(t)
        if ev_spec_id is not None:
            stmt = stmt.where(t.c.ev_spec_id == ev_spec_id)
        stmt = stmt.order_by(t.c.created_at.desc(), t.c.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return [_estimation_from_row(r) for r in await self._select(stmt, "list_estimations")]

    async def count_estimations(self) -> int:
        if self.engine is None:
            return len(self._mem_estimations)
        rows = await self._select(
            select(func.count().label("n")).select_from(ev_value_estimations_table),
            "count_estimations",
        )
        return int(rows[0]["n"])
