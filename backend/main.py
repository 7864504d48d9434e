import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from errors import InvalidTransitionError, NotFoundError, StoreError
from local_time import LocalDateTime
from models import EventQuery, EventStatus, EventType, LoggedEntry, SourceKind, parse_source
from service_events import EventService, build_service
from settings import settings

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Health Calendar Engine")

# Built on first use so importing the app never touches the database.
# Tests replace it through `app.dependency_overrides[get_service]`.
_service: Optional[EventService] = None


def get_service() -> EventService:
    global _service
    if _service is None:
        _service = build_service()
    return _service


@app.exception_handler(NotFoundError)
def _not_found(request: Request, e: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(e)})


@app.exception_handler(InvalidTransitionError)
def _conflict(request: Request, e: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(e)})


@app.exception_handler(ValueError)
def _bad_request(request: Request, e: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(e)})


@app.exception_handler(StoreError)
def _store_unavailable(request: Request, e: StoreError):
    logger.error("Store failure on %s: %s", request.url.path, e)
    return JSONResponse(status_code=503, content={"detail": str(e)})


@app.get("/health")
def health(svc: EventService = Depends(get_service)):
    try:
        svc.health_check()
        return {"ok": True}
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"DB health check failed: {e}")


@app.put("/sources/{kind}")
def save_source(
    kind: SourceKind,
    background_tasks: BackgroundTasks,
    body: Dict[str, Any] = Body(...),
    svc: EventService = Depends(get_service),
):
    entity = parse_source({**body, "kind": kind.value})
    change = svc.save_source(entity)
    # regeneration runs after the response, off the request path
    background_tasks.add_task(svc.process_regeneration)
    return {"id": entity.id, "change": change.change.value, "schedule_changed": change.schedule_changed}


@app.delete("/sources/{kind}/{source_id}")
def delete_source(
    kind: SourceKind,
    source_id: str,
    background_tasks: BackgroundTasks,
    svc: EventService = Depends(get_service),
):
    svc.delete_source(kind, source_id)
    background_tasks.add_task(svc.process_regeneration)
    return {"deleted": source_id}


@app.get("/events")
def list_events(
    profile_id: str = Query(...),
    day: Optional[date] = None,
    start: Optional[LocalDateTime] = None,
    end: Optional[LocalDateTime] = None,
    status: List[EventStatus] = Query(default=[]),
    event_type: List[EventType] = Query(default=[]),
    limit: int = 200,
    svc: EventService = Depends(get_service),
):
    if day is not None:
        events = svc.get_day(profile_id, day)
    else:
        events = svc.get_events(
            EventQuery(
                profile_id=profile_id,
                start=start,
                end=end,
                statuses=status,
                event_types=event_type,
                limit=limit,
            )
        )
    return [e.model_dump(mode="json") for e in events]


@app.get("/sources/{kind}/{source_id}/events")
def source_events(kind: SourceKind, source_id: str, svc: EventService = Depends(get_service)):
    return [e.model_dump(mode="json") for e in svc.get_by_source(source_id)]


@app.get("/events/{event_id}")
def get_event(event_id: str, svc: EventService = Depends(get_service)):
    return svc.get_event(event_id).model_dump(mode="json")


@app.get("/events/{event_id}/history")
def event_history(event_id: str, svc: EventService = Depends(get_service)):
    return [h.model_dump(mode="json") for h in svc.dose_history(event_id)]


@app.post("/logs")
def record_log(entry: LoggedEntry, svc: EventService = Depends(get_service)):
    return svc.record_logged(entry).model_dump(mode="json")


@app.post("/events/{event_id}/complete")
def complete_event(
    event_id: str,
    notes: Optional[str] = Body(default=None, embed=True),
    svc: EventService = Depends(get_service),
):
    return svc.complete(event_id, notes).model_dump(mode="json")


@app.post("/events/{event_id}/skip")
def skip_event(
    event_id: str,
    notes: Optional[str] = Body(default=None, embed=True),
    svc: EventService = Depends(get_service),
):
    return svc.skip(event_id, notes).model_dump(mode="json")


@app.post("/events/{event_id}/postpone")
def postpone_event(
    event_id: str,
    minutes: Optional[int] = None,
    svc: EventService = Depends(get_service),
):
    return svc.postpone(event_id, minutes).model_dump(mode="json")


@app.post("/profiles/{profile_id}/refresh")
def refresh_profile(profile_id: str, svc: EventService = Depends(get_service)):
    return {"created": svc.refresh_profile(profile_id)}


@app.post("/profiles/{profile_id}/sweep")
def sweep_profile(profile_id: str, svc: EventService = Depends(get_service)):
    return {"missed": svc.sweep_missed(profile_id)}


@app.get("/profiles/{profile_id}/stats")
def profile_stats(profile_id: str, svc: EventService = Depends(get_service)):
    return svc.timeline_stats(profile_id).model_dump(mode="json")


@app.get("/profiles/{profile_id}/overdue")
def profile_overdue(profile_id: str, svc: EventService = Depends(get_service)):
    return [e.model_dump(mode="json") for e in svc.get_overdue(profile_id)]


@app.get("/profiles/{profile_id}/upcoming")
def profile_upcoming(
    profile_id: str, hours: Optional[int] = None, svc: EventService = Depends(get_service)
):
    return [e.model_dump(mode="json") for e in svc.get_upcoming(profile_id, hours)]


@app.get("/profiles/{profile_id}/event-stats")
def profile_event_stats(
    profile_id: str,
    start: LocalDateTime = Query(...),
    end: LocalDateTime = Query(...),
    svc: EventService = Depends(get_service),
):
    return svc.get_stats(profile_id, start, end).model_dump()


@app.get("/profiles/{profile_id}/insights")
def profile_insights(profile_id: str, svc: EventService = Depends(get_service)):
    best = svc.stats.best_hour(profile_id)
    return {
        "most_missed": [m.model_dump() for m in svc.stats.most_missed(profile_id)],
        "best_hour": best.model_dump() if best else None,
        "refill": [r.model_dump() for r in svc.stats.refill_forecast(profile_id)],
    }
