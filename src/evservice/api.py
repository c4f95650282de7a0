from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from evservice.logging_config import configure_logging, correlation_id
from evservice.metrics import ServiceMetrics
from evservice.settings import ServiceSettings
from evservice.storage import SqlRecordStore
from evvalue.aggregator import PriceAggregator
from evvalue.data_models import MarketSegment
from evvalue.errors import NotFoundError, StorageFailure, ValidationError
from evvalue.estimator import ValueEstimator


# ── Request / Response Models ───────────────────────────────────────

class CreateEvSpecRequest(BaseModel):
    model: str = Field(min_length=1)
    battery_capacity_kwh: float = Field(gt=0)
    efficiency_kwh_per_100km: float = Field(gt=0)
    max_charging_power_kw: float = Field(gt=0)


class UpdateEvSpecRequest(BaseModel):
    model: str | None = Field(default=None, min_length=1)
    battery_capacity_kwh: float | None = Field(default=None, gt=0)
    efficiency_kwh_per_100km: float | None = Field(default=None, gt=0)
    max_charging_power_kw: float | None = Field(default=None, gt=0)


class EvSpecResponse(BaseModel):
    id: int
    model: str
    battery_capacity_kwh: float
    efficiency_kwh_per_100km: float
    max_charging_power_kw: float
    created_at: datetime


class CreateMarketPriceRequest(BaseModel):
    market_type: MarketSegment
    price_eur_per_mwh: float
    timestamp: datetime


class MarketPriceResponse(BaseModel):
    id: int
    market_type: MarketSegment
    price_eur_per_mwh: float
    timestamp: datetime
    created_at: datetime


class EstimateRequest(BaseModel):
    ev_spec_id: int
    annual_km: int = Field(gt=0)


class EstimationResponse(BaseModel):
    id: int
    annual_km: float
    ev_spec_id: int
    estimated_value_eur_per_year: float
    day_ahead_value: float
    intraday_value: float
    imbalance_value: float
    created_at: datetime


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


# ── App Factory ─────────────────────────────────────────────────────

def create_app() -> FastAPI:
    settings = ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    store = SqlRecordStore(dsn=settings.postgres_dsn)
    estimator = ValueEstimator(
        store=store,
        aggregator=PriceAggregator(store),
        config=settings.estimator_config(),
    )
    metrics = ServiceMetrics()

    def _clamp_limit(limit: int | None) -> int:
        return settings.max_query_limit if limit is None else min(limit, settings.max_query_limit)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await store.connect()
        try:
            yield
        finally:
            await store.close()

    app = FastAPI(title="EV Flexibility Value API", version="0.1.0", lifespan=lifespan)
    app.state.store = store
    app.state.metrics = metrics

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex[:12]
        correlation_id.set(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    @app.exception_handler(StorageFailure)
    async def storage_failure_handler(_: Request, exc: StorageFailure) -> JSONResponse:
        metrics.increment("storage_failures")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "storage unavailable"},
        )

    # ── EV Specs ────────────────────────────────────────────────────

    @app.post("/ev-specs", response_model=EvSpecResponse)
    async def create_ev_spec(req: CreateEvSpecRequest) -> EvSpecResponse:
        spec = await store.insert_vehicle_spec(**req.model_dump())
        return EvSpecResponse(**asdict(spec))

    @app.get("/ev-specs", response_model=list[EvSpecResponse])
    async def list_ev_specs() -> list[EvSpecResponse]:
        return [EvSpecResponse(**asdict(s)) for s in await store.list_vehicle_specs()]

    @app.patch("/ev-specs/{spec_id}", response_model=EvSpecResponse)
    async def update_ev_spec(spec_id: int, req: UpdateEvSpecRequest) -> EvSpecResponse:
        try:
            spec = await store.update_vehicle_spec(spec_id, req.model_dump(exclude_unset=True))
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return EvSpecResponse(**asdict(spec))

    # ── Market Prices ───────────────────────────────────────────────

    @app.post("/market-prices", response_model=MarketPriceResponse)
    async def create_market_price(req: CreateMarketPriceRequest) -> MarketPriceResponse:
        price = await store.insert_price_observation(**req.model_dump())
        return MarketPriceResponse(**asdict(price))

    @app.get("/market-prices", response_model=list[MarketPriceResponse])
    async def list_market_prices(
        market_type: MarketSegment | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        limit: int | None = Query(default=None, ge=1),
    ) -> list[MarketPriceResponse]:
        prices = await store.list_price_observations(
            market_type=market_type,
            from_date=from_date,
            to_date=to_date,
            limit=_clamp_limit(limit),
        )
        return [MarketPriceResponse(**asdict(p)) for p in prices]

    # ── Estimations ─────────────────────────────────────────────────

    @app.post("/estimations", response_model=EstimationResponse)
    async def estimate_ev_value(req: EstimateRequest) -> EstimationResponse:
        t0 = time.monotonic()
        metrics.increment("estimate_requests")
        try:
            estimation = await estimator.estimate(req.ev_spec_id, req.annual_km)
        except NotFoundError as exc:
            metrics.increment("estimate_not_found")
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        metrics.record_latency("estimate", time.monotonic() - t0)
        return EstimationResponse(**asdict(estimation))

    @app.get("/estimations", response_model=list[EstimationResponse])
    async def list_estimations(
        ev_spec_id: int | None = None,
        limit: int | None = Query(default=None, ge=1),
    ) -> list[EstimationResponse]:
        rows = await store.list_estimations(ev_spec_id=ev_spec_id, limit=_clamp_limit(limit))
        return [EstimationResponse(**asdict(r)) for r in rows]

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {"postgres": await store.ping()}
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    # ── Metrics ─────────────────────────────────────────────────────

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        return metrics.as_dict()

    @app.get("/metrics/prometheus")
    async def get_prometheus_metrics() -> Response:
        return Response(content=metrics.prometheus_text(), media_type="text/plain; charset=utf-8")

    return app


app = create_app()
