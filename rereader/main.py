from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse

from rereader.core.analytics import Analytics
from rereader.core.errors import RecallError, SchedulingError, ValidationError
from rereader.core.maintenance import CleanupPolicy, Maintenance
from rereader.core.models import parse_timestamp, to_iso
from rereader.core.query import SORT_KEYS, HighlightQuery, SearchFilters, paginate, sort_highlights
from rereader.core.scheduler import CycleScheduler, RetryPolicy
from rereader.core.selection import HighlightSelector, SelectionConstraints
from rereader.core.settings import RecallConfig, Settings
from rereader.core.storage import open_store
from rereader.providers.extractor import ExtractionBatch
from rereader.providers.notifier import LoggingNotifier, WebhookNotifier

logger = logging.getLogger(__name__)

SCHEDULE_TASK = "recall"

ERROR_STATUS = {
    "validation": 422,
    "not_found": 404,
    "constraint": 409,
    "storage": 503,
    "delivery": 503,
    "scheduling": 400,
}

app = FastAPI(title="rereader")


@app.exception_handler(RecallError)
async def _recall_error_handler(request: Request, exc: RecallError) -> JSONResponse:
    return JSONResponse(status_code=ERROR_STATUS.get(exc.kind, 400), content={"error": exc.to_dict()})


@app.on_event("startup")
async def _startup() -> None:
    s = Settings.from_env()
    logging.basicConfig(level=s.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    store = open_store(s.db_path)
    if s.notifier_webhook_url:
        notifier = WebhookNotifier(s.notifier_webhook_url, s.notifier_token, timeout=s.operation_timeout_seconds)
    else:
        notifier = LoggingNotifier()
    selector = HighlightSelector(store)

    app.state.settings = s
    app.state.store = store
    app.state.notifier = notifier
    app.state.query = HighlightQuery(store)
    app.state.maintenance = Maintenance(store)
    app.state.analytics = Analytics(store)
    app.state.selector = selector
    app.state.scheduler = CycleScheduler(store, selector, notifier, retry=RetryPolicy.from_settings(s))

    config = await store.load_config()
    try:
        app.state.scheduler.register(SCHEDULE_TASK, config)
    except SchedulingError as e:
        logger.error(f"Schedule not installed: {e.message}")
    logger.info(f"rereader started ({s.app_env}, db={s.db_path})")


@app.on_event("shutdown")
async def _shutdown() -> None:
    app.state.scheduler.stop_all()
    if isinstance(app.state.notifier, WebhookNotifier):
        await app.state.notifier.aclose()
    app.state.store.close()


def _split(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(p.strip() for p in raw.split(",") if p.strip())


def _optional_timestamp(raw: str | None, name: str) -> datetime | None:
    if not raw:
        return None
    try:
        return parse_timestamp(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 timestamp") from None


def _constraints(payload: dict[str, Any]) -> SelectionConstraints:
    return SelectionConstraints(
        source_ids=tuple(payload.get("source_ids") or ()),
        categories=tuple(payload.get("categories") or ()),
        min_age_days=int(payload.get("min_age_days") or 0),
        tags=tuple(payload.get("tags") or ()),
    )


def _int_param(payload: dict[str, Any], name: str, default: int | None) -> int | None:
    """Non-negative integer from a JSON body. An explicit null keeps None."""
    raw = payload.get(name, default)
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None
    if value < 0:
        raise ValidationError(f"{name} must be >= 0")
    return value


def _id_list(payload: dict[str, Any]) -> list[str]:
    ids = payload.get("ids")
    if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
        raise ValidationError("ids must be a list of strings")
    return ids


# ==================== Stats ====================


@app.get("/api/stats")
async def api_stats():
    return await app.state.analytics.get_stats()


@app.get("/api/stats/advanced")
async def api_advanced_stats(top_n: int = 5):
    return await app.state.analytics.get_advanced_stats(top_n=top_n)


@app.get("/api/stats/selection")
async def api_selection_stats():
    return await app.state.analytics.get_selection_stats()


# ==================== Highlights ====================


@app.get("/api/highlights")
async def api_search(
    q: str = "",
    source_id: str | None = None,
    category: str | None = None,
    tag: str | None = None,
    has_note: bool | None = None,
    created_after: str | None = None,
    created_before: str | None = None,
    sort: str = "date_created",
    page: int = 1,
    page_size: int = 50,
):
    """Search highlights.

    Args:
        q: Case-insensitive substring over text, note and tags
        source_id, category, tag: Comma-separated allow-lists
        sort: One of date_created, date_ingested, category, position
    """
    if sort not in SORT_KEYS:
        raise ValidationError(f"sort must be one of: {', '.join(SORT_KEYS)}")
    filters = SearchFilters(
        source_ids=_split(source_id),
        categories=_split(category),
        tags=_split(tag),
        has_note=has_note,
        created_after=_optional_timestamp(created_after, "created_after"),
        created_before=_optional_timestamp(created_before, "created_before"),
    )
    results = sort_highlights(await app.state.query.search(q, filters), sort)
    return {
        "total": len(results),
        "page": page,
        "page_size": page_size,
        "highlights": [h.to_dict() for h in paginate(results, page_size, page)],
    }


@app.get("/api/highlights/{highlight_id}")
async def api_get_highlight(highlight_id: str):
    return (await app.state.store.get_highlight(highlight_id)).to_dict()


@app.patch("/api/highlights/{highlight_id}")
async def api_update_highlight(highlight_id: str, changes: dict[str, Any] = Body(...)):
    return (await app.state.store.update_highlight(highlight_id, changes)).to_dict()


@app.post("/api/highlights/bulk-update")
async def api_bulk_update(payload: dict[str, Any] = Body(...)):
    patch = payload.get("patch")
    if not isinstance(patch, dict):
        raise ValidationError("patch must be an object")
    result = await app.state.maintenance.bulk_update(_id_list(payload), patch)
    return result.to_dict()


@app.post("/api/highlights/bulk-delete")
async def api_bulk_delete(payload: dict[str, Any] = Body(...)):
    result = await app.state.maintenance.bulk_delete(_id_list(payload))
    return result.to_dict()


@app.get("/api/sources")
async def api_sources():
    return {"sources": [s.to_dict() for s in await app.state.store.list_sources()]}


# ==================== Ingest ====================


@app.post("/api/ingest")
async def api_ingest(payload: dict[str, Any] = Body(...)):
    """Accept one extractor payload. A failed extraction is recorded, not raised."""
    batch = ExtractionBatch.from_dict(payload)
    result = await app.state.store.ingest_batch(batch)
    return result.to_dict()


# ==================== Selection ====================


@app.post("/api/selection/preview")
async def api_selection_preview(payload: dict[str, Any] = Body(default={})):
    config: RecallConfig = await app.state.store.load_config()
    count = _int_param(payload, "count", config.highlights_per_cycle)
    if count is None:
        count = config.highlights_per_cycle
    mode = payload.get("mode") or config.selection_mode
    if isinstance(payload.get("constraints"), dict):
        constraints = _constraints(payload["constraints"])
    else:
        constraints = SelectionConstraints.from_config(config)
    return await app.state.selector.preview(count, mode, constraints)


@app.post("/api/selection/commit")
async def api_selection_commit(payload: dict[str, Any] = Body(...)):
    results = await app.state.selector.commit_selection(_id_list(payload))
    return {"results": [r.to_dict() for r in results]}


# ==================== Maintenance ====================


@app.get("/api/export")
async def api_export():
    return await app.state.maintenance.export_all()


@app.post("/api/import")
async def api_import(payload: dict[str, Any] = Body(...)):
    result = await app.state.maintenance.import_all(
        payload.get("snapshot"),
        overwrite=bool(payload.get("overwrite")),
        skip_duplicates=bool(payload.get("skip_duplicates")),
    )
    return result.to_dict()


@app.post("/api/maintenance/cleanup")
async def api_cleanup(payload: dict[str, Any] = Body(default={})):
    config: RecallConfig = await app.state.store.load_config()
    defaults = CleanupPolicy.from_config(config)
    policy = CleanupPolicy(
        max_cycle_records=_int_param(payload, "max_cycle_records", defaults.max_cycle_records),
        max_delivery_records=_int_param(payload, "max_delivery_records", defaults.max_delivery_records),
        remove_orphans=bool(payload.get("remove_orphans", defaults.remove_orphans)),
    )
    result = await app.state.maintenance.cleanup(policy)
    return result.to_dict()


@app.get("/api/history")
async def api_history(limit: int = 20):
    return {
        "cycles": [c.to_dict() for c in await app.state.store.list_cycle_records(limit)],
        "deliveries": [d.to_dict() for d in await app.state.store.list_delivery_records(limit)],
    }


# ==================== Config / schedule ====================


@app.get("/api/config")
async def api_get_config():
    return (await app.state.store.load_config()).to_mapping()


@app.post("/api/config")
async def api_set_config(payload: dict[str, Any] = Body(...)):
    """Merge keys into the stored config and reinstall the schedule."""
    current = (await app.state.store.load_config()).to_mapping()
    current.update({k: v if isinstance(v, str) else _config_value(v) for k, v in payload.items()})
    config = RecallConfig.from_mapping(current)
    next_at = app.state.scheduler.register(SCHEDULE_TASK, config)
    await app.state.store.save_config(config)
    return {"config": config.to_mapping(), "next_run": to_iso(next_at)}


def _config_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return str(value)


@app.get("/api/schedule")
async def api_schedule():
    next_at = app.state.scheduler.next_run(SCHEDULE_TASK)
    return {"scheduled": next_at is not None, "next_run": to_iso(next_at)}


@app.post("/api/cycle/run")
async def api_run_cycle():
    config = await app.state.store.load_config()
    outcome = await app.state.scheduler.run_now(config, task=SCHEDULE_TASK)
    return outcome.to_dict()
