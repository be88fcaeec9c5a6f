"""
Reflection Records API

List, save (upsert by date), fetch, search and delete daily records.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.records import (
    delete_record,
    get_record,
    list_records,
    parse_record_date,
    search_records,
    upsert_record,
)
from app.services.session import SessionRegistry, get_sessions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reflections", tags=["reflections"])


class SaveRecordRequest(BaseModel):
    date: str
    items: List[dict] = []
    selectedItem: Optional[dict] = None
    chatMessages: List[dict] = []
    connections: List[dict] = []


def _parse_date_or_400(value: str):
    try:
        return parse_record_date(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Date must be YYYY-MM-DD")


@router.get("")
async def get_reflections(db: Session = Depends(get_db)):
    """All records, newest first."""
    try:
        return [record.to_dict() for record in list_records(db)]
    except Exception as e:
        logger.error("Failed to fetch reflections: %s", e)
        return JSONResponse({"error": "Failed to fetch reflections"}, status_code=500)


@router.post("")
async def save_reflection(data: SaveRecordRequest, db: Session = Depends(get_db)):
    """Create or overwrite the record for data.date."""
    day = _parse_date_or_400(data.date)
    try:
        record = upsert_record(
            db,
            day,
            items=data.items,
            selected_item=data.selectedItem,
            chat_messages=data.chatMessages,
            connections=data.connections,
        )
    except Exception as e:
        db.rollback()
        logger.error("Failed to save reflection %s: %s", data.date, e)
        return JSONResponse({"error": "Failed to save reflection"}, status_code=500)
    return record.to_dict()


@router.get("/search")
async def search_reflections(
    q: str = Query("", description="Keyword to look for"),
    db: Session = Depends(get_db),
):
    """Records whose notes, topic or chat mention the keyword."""
    records = [record.to_dict() for record in list_records(db)]
    return search_records(records, q)


@router.get("/{record_date}")
async def get_reflection(record_date: str, db: Session = Depends(get_db)):
    record = get_record(db, _parse_date_or_400(record_date))
    if not record:
        raise HTTPException(status_code=404, detail="Reflection not found")
    return record.to_dict()


@router.delete("/{record_date}")
async def delete_reflection(
    record_date: str,
    db: Session = Depends(get_db),
    sessions: SessionRegistry = Depends(get_sessions),
):
    day = _parse_date_or_400(record_date)
    try:
        deleted = delete_record(db, day)
    except Exception as e:
        db.rollback()
        logger.error("Failed to delete reflection %s: %s", record_date, e)
        return JSONResponse({"error": "Failed to delete reflection"}, status_code=500)

    if not deleted:
        return JSONResponse({"error": "Failed to delete reflection"}, status_code=404)

    sessions.discard(day)
    return {"success": True}
