"""JSON API endpoints for balance and trade ingestion, balance analytics, prices and trade P&L."""

from __future__ import annotations

import dataclasses
import time
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

import pydantic
import structlog
from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from balancewatch.analytics.profit import format_duration, format_percent, format_profit_loss
from balancewatch.analytics.trade_pnl import aggregate
from balancewatch.analytics.trade_stats import trade_statistics
from balancewatch.dashboard.serialize import to_jsonable
from balancewatch.data.store import TradeFilters
from balancewatch.exceptions import DuplicateTrade, TransientFetchError, ValidationError
from balancewatch.models import AnalyticsWindow, Trade
from balancewatch.pipeline import latest_point
from balancewatch.series.window import parse_window, select_interval_ms, series_span_ms

log = structlog.get_logger(__name__)

router = APIRouter()


class OnchainBalances(BaseModel):
    rlb: Decimal = Field(ge=0)
    usdt: Decimal = Field(ge=0)


class OnsiteBalances(BaseModel):
    rlb: Decimal = Field(ge=0)
    usd: Decimal = Field(ge=0)


class SnapshotIn(BaseModel):
    """Balance reporter payload."""

    ts: datetime | None = None
    onchain: OnchainBalances
    onsite: OnsiteBalances


class TradeIn(BaseModel):
    """Trade recorder payload. Profit fields stay empty until settlement."""

    id: str | None = None
    ts: datetime | None = None
    trade_amount: Decimal = Field(ge=0)
    trigger_category: str = ""
    trigger_type: str = ""
    trade_number: int | None = None
    block_number: int | None = None
    raw_profit_usd: Decimal | None = None
    profit_with_gas_usd: Decimal | None = None
    opponent: bool = False
    win: bool | None = None
    opponent_time_gap_ms: Decimal | None = None
    api_call_duration_ms: Decimal | None = None
    priority_gwei: Decimal | None = None

    def to_trade(self) -> Trade:
        fields = self.model_dump(exclude={"id", "ts"})
        return Trade(
            id=self.id or uuid4().hex,
            timestamp_ms=_to_ms(self.ts) if self.ts is not None else int(time.time() * 1000),
            **fields,
        )


class SettlementIn(BaseModel):
    raw_profit_usd: Decimal
    profit_with_gas_usd: Decimal


class PriceIn(BaseModel):
    price_usd: Decimal = Field(ge=0)


def _to_ms(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


def _summary_card(window: AnalyticsWindow) -> dict:
    """Analytics window plus display strings for the summary cards."""
    card = to_jsonable(window)
    card["period"] = format_duration(window.total_hours)
    card["display"] = {
        "profit_loss": format_profit_loss(window.profit_loss),
        "profit_loss_percent": format_percent(window.profit_loss_percent),
        "profit_per_hour": format_profit_loss(window.profit_per_hour),
        "profit_per_day": format_profit_loss(window.profit_per_day),
        "duration": format_duration(window.total_hours),
    }
    return card


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


@router.post("/balance/snapshot")
async def post_snapshot(request: Request, body: SnapshotIn) -> JSONResponse:
    """Persist a reporter snapshot and push it to the live series."""
    history_store = request.app.state.history_store
    live_feed = request.app.state.live_feed

    price = live_feed.price if live_feed.price > 0 else None
    snapshot = await history_store.insert_snapshot(
        onchain_rlb=body.onchain.rlb,
        onchain_usdt=body.onchain.usdt,
        onsite_rlb=body.onsite.rlb,
        onsite_usd=body.onsite.usd,
        timestamp_ms=_to_ms(body.ts) if body.ts is not None else None,
        rlb_price_usd=price,
    )
    live_feed.on_balance_snapshot(snapshot)
    log.info("balance_snapshot_ingested", snapshot_id=snapshot.id)

    return JSONResponse(content=to_jsonable(snapshot), status_code=201)


@router.get("/balance/analytics")
async def get_balance_analytics(
    request: Request,
    range: str = "24h",
    days: str | None = None,
) -> JSONResponse:
    """Filtered and downsampled balance series with P/L summaries.

    Query params:
        range: Preset window (1h, 6h, 24h, 7d, 30d, all).
        days: Custom day count; overrides ``range`` when present.
    """
    pipeline = request.app.state.pipeline

    try:
        window = parse_window(range, days)
    except ValidationError as e:
        return JSONResponse(content={"error": str(e)}, status_code=400)

    if window != pipeline.window:
        pipeline.set_window(window.preset, window.custom_days)
    await pipeline.refresh()

    state = pipeline.state()
    latest = latest_point(state.filtered_series)

    return JSONResponse(content={
        "window": state.window.label(),
        "interval_ms": select_interval_ms(state.window, series_span_ms(state.filtered_series)),
        "live_connected": request.app.state.live_feed.is_connected,
        "error": state.last_error,
        "counts": {
            "combined": len(state.combined_series),
            "filtered": len(state.filtered_series),
            "downsampled": len(state.downsampled_series),
        },
        "latest": to_jsonable(latest),
        "series": to_jsonable(state.downsampled_series),
        "total_usd": _summary_card(state.usd_analytics),
        "total_usd_usdt": _summary_card(state.stable_analytics),
    })


@router.get("/balance/high-diff")
async def get_high_diff(
    request: Request,
    limit: int = 50,
    fast: bool | None = None,
) -> JSONResponse:
    """Current page of anomalous snapshots.

    Query params:
        limit: Maximum candidates returned.
        fast: Report the later snapshot of each anomalous pair without lookahead.
    """
    if limit <= 0:
        return JSONResponse(content={"error": "limit must be positive"}, status_code=400)

    history_store = request.app.state.history_store
    settings = request.app.state.settings

    try:
        page = await history_store.fetch_anomaly_candidates(
            settings.anomaly.thresholds(), limit, fast=fast
        )
    except TransientFetchError as e:
        return JSONResponse(content={"error": str(e)}, status_code=503)

    return JSONResponse(content={
        "snapshot_ids": page.ids,
        "count": len(page),
        "details": to_jsonable(page.candidates),
    })


@router.get("/balance/spikes")
async def get_spikes(request: Request) -> JSONResponse:
    """Snapshots with large jumps, at the lower-sensitivity review thresholds."""
    history_store = request.app.state.history_store
    settings = request.app.state.settings

    try:
        spikes = await history_store.find_spikes(settings.anomaly.spike_thresholds())
    except TransientFetchError as e:
        return JSONResponse(content={"error": str(e)}, status_code=503)

    return JSONResponse(content={"spikes": to_jsonable(spikes), "count": len(spikes)})


@router.get("/balance/price")
async def get_price(request: Request) -> JSONResponse:
    """RLB price applied to incoming snapshots that carry none."""
    live_feed = request.app.state.live_feed
    settings = request.app.state.settings
    live = live_feed.price > 0
    return JSONResponse(content={
        "symbol": "RLB",
        "price_usd": str(live_feed.price if live else settings.price.fallback_rlb_price_usd),
        "source": "live" if live else "fallback",
    })


@router.post("/balance/price")
async def post_price(request: Request, body: PriceIn) -> JSONResponse:
    """Push the latest RLB price from the price refresher."""
    request.app.state.live_feed.set_price(body.price_usd)
    log.info("rlb_price_updated", price_usd=str(body.price_usd))
    return JSONResponse(content={"symbol": "RLB", "price_usd": str(body.price_usd)})


# ---------------------------------------------------------------------------
# Trades
# ---------------------------------------------------------------------------


@router.get("/trades/pnl")
async def get_trade_pnl(
    request: Request,
    range: str = "24h",
    days: str | None = None,
) -> JSONResponse:
    """Cumulative net/raw trade P&L over a regular grid plus window summary."""
    trade_store = request.app.state.trade_store

    try:
        window = parse_window(range, days)
    except ValidationError as e:
        return JSONResponse(content={"error": str(e)}, status_code=400)

    try:
        trades = await trade_store.fetch_trades()
    except TransientFetchError as e:
        return JSONResponse(content={"error": str(e)}, status_code=503)

    now_ms = int(time.time() * 1000)
    result = aggregate(trades, window, now_ms)

    return JSONResponse(content={"window": window.label(), **to_jsonable(result)})


@router.get("/trades/statistics")
async def get_trade_statistics(
    request: Request,
    trigger_category: str | None = None,
    trigger_type: str | None = None,
    has_opponent: bool | None = None,
    is_win: bool | None = None,
) -> JSONResponse:
    """Counts, volumes, win/loss and latency statistics over matching trades."""
    trade_store = request.app.state.trade_store
    filters = TradeFilters(
        trigger_category=trigger_category,
        trigger_type=trigger_type,
        has_opponent=has_opponent,
        is_win=is_win,
    )

    try:
        trades = await trade_store.fetch_trades(filters)
    except TransientFetchError as e:
        return JSONResponse(content={"error": str(e)}, status_code=503)

    return JSONResponse(content=to_jsonable(trade_statistics(trades)))


@router.post("/trades")
async def post_trades(request: Request, body: Any = Body(...)) -> JSONResponse:  # noqa: B008
    """Record one trade, or a batch when the body is a JSON array.

    A single duplicate is a 409. A batch skips duplicates and collects
    per-trade errors instead of failing as a whole.
    """
    trade_store = request.app.state.trade_store

    if not isinstance(body, list):
        try:
            trade = TradeIn.model_validate(body).to_trade()
        except pydantic.ValidationError as e:
            return JSONResponse(content={"error": str(e)}, status_code=422)
        try:
            await trade_store.insert_trade(trade)
        except DuplicateTrade as e:
            return JSONResponse(content={"error": str(e)}, status_code=409)
        except TransientFetchError as e:
            return JSONResponse(content={"error": str(e)}, status_code=503)
        log.info("trade_ingested", trade_id=trade.id)
        return JSONResponse(content=to_jsonable(trade), status_code=201)

    created = 0
    skipped = 0
    errors: list[str] = []
    for index, item in enumerate(body):
        try:
            trade = TradeIn.model_validate(item).to_trade()
            await trade_store.insert_trade(trade)
        except DuplicateTrade:
            skipped += 1
        except (pydantic.ValidationError, TransientFetchError) as e:
            errors.append(f"Trade {index}: {e}")
        else:
            created += 1

    log.info("trade_batch_ingested", created=created, skipped=skipped, errors=len(errors))
    return JSONResponse(content={"created": created, "skipped": skipped, "errors": errors})


@router.get("/trades/{trade_id}")
async def get_trade(request: Request, trade_id: str) -> JSONResponse:
    try:
        trade = await request.app.state.trade_store.get_trade(trade_id)
    except TransientFetchError as e:
        return JSONResponse(content={"error": str(e)}, status_code=503)
    if trade is None:
        return JSONResponse(content={"error": "Trade not found"}, status_code=404)
    return JSONResponse(content=to_jsonable(trade))


@router.patch("/trades/{trade_id}")
async def settle_trade(request: Request, trade_id: str, body: SettlementIn) -> JSONResponse:
    """Fill in the profit fields of a pending trade. Settled profits are final."""
    trade_store = request.app.state.trade_store

    try:
        trade = await trade_store.get_trade(trade_id)
        if trade is None:
            return JSONResponse(content={"error": "Trade not found"}, status_code=404)
        if trade.is_settled:
            return JSONResponse(content={"error": "Trade already settled"}, status_code=409)
        settled = await trade_store.settle_trade(
            trade_id, body.raw_profit_usd, body.profit_with_gas_usd
        )
    except TransientFetchError as e:
        return JSONResponse(content={"error": str(e)}, status_code=503)

    if not settled:
        return JSONResponse(content={"error": "Trade already settled"}, status_code=409)

    log.info("trade_settled", trade_id=trade_id)
    trade = dataclasses.replace(
        trade,
        raw_profit_usd=body.raw_profit_usd,
        profit_with_gas_usd=body.profit_with_gas_usd,
    )
    return JSONResponse(content=to_jsonable(trade))


@router.delete("/trades/{trade_id}")
async def delete_trade(request: Request, trade_id: str) -> JSONResponse:
    try:
        deleted = await request.app.state.trade_store.delete_trade(trade_id)
    except TransientFetchError as e:
        return JSONResponse(content={"error": str(e)}, status_code=503)
    if not deleted:
        return JSONResponse(content={"error": "Trade not found"}, status_code=404)
    log.info("trade_deleted", trade_id=trade_id)
    return JSONResponse(content={"trade_id": trade_id})
