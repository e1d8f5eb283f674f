import logging
import os
from datetime import datetime, timedelta, date as dt_date
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from config import LOG_LEVEL, load_config
from database import db, create_document, delete_document, get_documents, update_document
from late_policy import gate_dose_status
from scheduler import (
    align_to,
    generate_schedule,
    generate_schedule_range,
    next_dose_time,
    schedule_stats,
    slots_past_late_window,
)
from schemas import DoseLogCreate, DoseStatus, RegimenCreate

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

settings = load_config()

app = FastAPI(title="Dose Schedule API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def current_time() -> datetime:
    return datetime.now()


def _doc_out(d: Dict[str, Any]) -> Dict[str, Any]:
    d = dict(d)
    d["id"] = str(d.pop("_id"))
    return d


def _parse_day(value: Optional[str], default: dt_date) -> dt_date:
    if not value:
        return default
    try:
        return dt_date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid date {value!r}, expected YYYY-MM-DD")


def _day_bounds(start: dt_date, days: int = 1):
    begin = datetime.combine(start, datetime.min.time())
    return begin, begin + timedelta(days=days)


def _find_regimen(regimen_id: str) -> Optional[Dict[str, Any]]:
    if not ObjectId.is_valid(regimen_id):
        return None
    docs = get_documents("regimen", {"_id": ObjectId(regimen_id)})
    return docs[0] if docs else None


def _load_range(start: dt_date, days: int):
    begin, end = _day_bounds(start, days)
    regimens = get_documents("regimen")
    logs = get_documents("doselog", {"scheduled_time": {"$gte": begin, "$lt": end}})
    return regimens, logs


def _day_payload(result) -> Dict[str, Any]:
    payload = result.model_dump(mode="json")
    payload["stats"] = schedule_stats(result.slots).model_dump()
    return payload


@app.get("/")
def read_root():
    return {"message": "Dose Schedule Backend Running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response


# Regimens
@app.post("/api/regimens", response_model=dict)
async def create_regimen(payload: RegimenCreate):
    try:
        regimen_id = create_document("regimen", payload)
        logger.info("Created regimen %s (%s)", regimen_id, payload.frequency)
        return {"id": regimen_id}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/regimens")
async def list_regimens(active: Optional[bool] = None):
    try:
        filt: Dict[str, Any] = {}
        if active is not None:
            filt["is_active"] = active
        return [_doc_out(d) for d in get_documents("regimen", filt)]
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/regimens/{regimen_id}")
async def get_regimen(regimen_id: str):
    try:
        regimen = _find_regimen(regimen_id)
        if regimen is None:
            raise HTTPException(status_code=404, detail="Regimen not found")
        return _doc_out(regimen)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.put("/api/regimens/{regimen_id}", response_model=dict)
async def update_regimen(regimen_id: str, payload: RegimenCreate):
    try:
        if _find_regimen(regimen_id) is None:
            raise HTTPException(status_code=404, detail="Regimen not found")
        # full replace: fields left out of the payload are reset
        update_document("regimen", {"_id": ObjectId(regimen_id)}, payload.model_dump(exclude={"id"}))
        return {"id": regimen_id}
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.put("/api/regimens/{regimen_id}/toggle", response_model=dict)
async def toggle_regimen(regimen_id: str):
    try:
        regimen = _find_regimen(regimen_id)
        if regimen is None:
            raise HTTPException(status_code=404, detail="Regimen not found")
        is_active = not regimen.get("is_active", True)
        update_document("regimen", {"_id": regimen["_id"]}, {"is_active": is_active})
        logger.info("Regimen %s %s", regimen_id, "activated" if is_active else "deactivated")
        return {"id": regimen_id, "is_active": is_active}
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.delete("/api/regimens/{regimen_id}", response_model=dict)
async def delete_regimen(regimen_id: str):
    """Remove a regimen. Its dose logs are kept for history."""
    try:
        regimen = _find_regimen(regimen_id)
        if regimen is None:
            raise HTTPException(status_code=404, detail="Regimen not found")
        delete_document("regimen", {"_id": regimen["_id"]})
        return {"id": regimen_id, "deleted": True}
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/regimens/{regimen_id}/next-dose")
async def get_next_dose(regimen_id: str):
    try:
        regimen = _find_regimen(regimen_id)
        if regimen is None:
            raise HTTPException(status_code=404, detail="Regimen not found")
        upcoming = next_dose_time(regimen, current_time())
        return {"regimen_id": regimen_id, "next_dose_time": upcoming.isoformat() if upcoming else None}
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


# Dose logs
@app.post("/api/doses", response_model=dict)
async def log_dose(payload: DoseLogCreate, window_minutes: Optional[int] = Query(None, ge=0)):
    try:
        regimen = _find_regimen(payload.regimen_id)
        if regimen is None:
            raise HTTPException(status_code=404, detail="Regimen not found")

        now = current_time()
        scheduled = align_to(payload.scheduled_time, now)
        existing = get_documents("doselog", {"regimen_id": payload.regimen_id, "scheduled_time": scheduled})
        if existing:
            raise HTTPException(status_code=400, detail="Dose already logged for this time")

        actual = align_to(payload.actual_time, now) if payload.actual_time else now
        if actual > now:
            raise HTTPException(status_code=400, detail="actual_time cannot be in the future")

        # lateness is measured when the dose was taken, not when it is logged
        window = settings.late_window_minutes if window_minutes is None else window_minutes
        decision = gate_dose_status(payload.status, scheduled, actual, window, settings.on_time_minutes)
        if decision is not None and decision.rejected:
            raise HTTPException(status_code=409, detail={
                "message": f"This dose was taken {decision.minutes_late} minutes after its scheduled time, outside the "
                           f"{window}-minute logging window. It can only be logged as missed.",
                "decision": decision.model_dump(mode="json"),
            })

        doc = payload.model_dump(exclude_none=True)
        doc["scheduled_time"] = scheduled
        doc["medication_id"] = regimen.get("medication_id")
        if payload.status == DoseStatus.TAKEN:
            doc["actual_time"] = actual
            doc["minutes_late"] = max(0, decision.minutes_late)
            doc["taken_late"] = decision.taken_late
        dose_id = create_document("doselog", doc)
        if decision is not None and decision.taken_late:
            logger.info("Dose %s logged %d minutes late", dose_id, decision.minutes_late)
        return {
            "id": dose_id,
            "decision": decision.model_dump(mode="json") if decision else None,
        }
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/doses")
async def list_doses(regimen_id: Optional[str] = None, date: Optional[str] = None,
                     status: Optional[DoseStatus] = None):
    try:
        filt: Dict[str, Any] = {}
        if regimen_id:
            filt["regimen_id"] = regimen_id
        if date:
            begin, end = _day_bounds(_parse_day(date, current_time().date()))
            filt["scheduled_time"] = {"$gte": begin, "$lt": end}
        if status:
            filt["status"] = status.value
        return [_doc_out(d) for d in get_documents("doselog", filt)]
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/doses/mark-missed", response_model=dict)
async def mark_expired_missed(window_minutes: Optional[int] = Query(None, ge=0)):
    """Record a missed log for every pending dose past the late-logging window today."""
    try:
        now = current_time()
        window = settings.late_window_minutes if window_minutes is None else window_minutes
        regimens, logs = _load_range(now.date(), 1)
        result = generate_schedule(regimens, logs, now, now.date(), settings)
        created: List[str] = []
        for slot in slots_past_late_window(result.slots, window):
            created.append(create_document("doselog", {
                "regimen_id": slot.regimen_id,
                "medication_id": slot.medication_id,
                "scheduled_time": slot.scheduled_time,
                "status": DoseStatus.MISSED.value,
            }))
        if created:
            logger.info("Marked %d expired doses as missed", len(created))
        return {"created": created, "count": len(created)}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


# Schedule endpoints
@app.get("/api/schedule")
async def get_schedule(date: Optional[str] = None):
    try:
        now = current_time()
        target = _parse_day(date, now.date())
        regimens, logs = _load_range(target, 1)
        return _day_payload(generate_schedule(regimens, logs, now, target, settings))
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/schedule/range")
async def get_schedule_range(start: Optional[str] = None, days: int = Query(7, ge=1, le=31)):
    try:
        now = current_time()
        first = _parse_day(start, now.date())
        regimens, logs = _load_range(first, days)
        results = generate_schedule_range(regimens, logs, now, first, days, settings)
        return {"start": first.isoformat(), "days": [_day_payload(r) for r in results]}
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/stats")
async def get_stats(date: Optional[str] = None, days: int = Query(7, ge=1, le=90)):
    """Adherence over the ``days`` days ending on ``date`` (inclusive)."""
    try:
        now = current_time()
        last = _parse_day(date, now.date())
        first = last - timedelta(days=days - 1)
        regimens, logs = _load_range(first, days)
        results = generate_schedule_range(regimens, logs, now, first, days, settings)
        slots = [slot for r in results for slot in r.slots]
        return {
            "start": first.isoformat(),
            "end": last.isoformat(),
            "stats": schedule_stats(slots).model_dump(),
        }
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
