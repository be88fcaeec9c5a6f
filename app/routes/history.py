"""
History Page

Past daily records grouped by month, with keyword search and highlight.
"""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.records import group_by_month, list_records, search_records
from app.template_config import templates, today_local

router = APIRouter(tags=["history"])


@router.get("/history", response_class=HTMLResponse)
async def history(
    request: Request,
    db: Session = Depends(get_db),
    q: str = Query("", description="Search keyword"),
):
    records = search_records([record.to_dict() for record in list_records(db)], q)

    return templates.TemplateResponse(
        request,
        "history/index.html",
        {
            "groups": group_by_month(records),
            "keyword": q,
            "today": today_local().isoformat(),
        },
    )
