"""
Daily Record Store

CRUD for DailyRecord rows keyed by calendar date, plus the search and
grouping helpers behind the history view.

Saves are upserts: saving the same date twice leaves one row holding
the latest snapshot.
"""

import html
import logging
import re
from collections import OrderedDict
from datetime import date, datetime
from typing import Dict, List, Optional, Union

from sqlalchemy.orm import Session

from app.models import DailyRecord

logger = logging.getLogger(__name__)

DateLike = Union[str, date]


def parse_record_date(value: DateLike) -> date:
    """Accept a date or a YYYY-MM-DD string. Raises ValueError otherwise."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()


def _filled(items: Optional[List[dict]]) -> List[dict]:
    return [item for item in (items or []) if (item.get("text") or "").strip()]


def list_records(db: Session) -> List[DailyRecord]:
    """All records, newest date first."""
    return db.query(DailyRecord).order_by(DailyRecord.record_date.desc()).all()


def get_record(db: Session, record_date: DateLike) -> Optional[DailyRecord]:
    return (
        db.query(DailyRecord)
        .filter(DailyRecord.record_date == parse_record_date(record_date))
        .first()
    )


def upsert_record(
    db: Session,
    record_date: DateLike,
    items: Optional[List[dict]],
    selected_item: Optional[dict],
    chat_messages: Optional[List[dict]],
    connections: Optional[List[dict]] = None,
) -> DailyRecord:
    """
    Create or overwrite the record for a date.

    Notes without text are dropped, and so are connections whose
    endpoints were dropped with them.
    """
    day = parse_record_date(record_date)
    kept = _filled(items)
    kept_ids = {str(item.get("id")) for item in kept}
    kept_connections = [
        conn for conn in (connections or [])
        if str(conn.get("from")) in kept_ids and str(conn.get("to")) in kept_ids
    ]

    record = get_record(db, day)
    if record:
        record.items = kept
        record.connections = kept_connections
        record.selected_item = selected_item
        record.chat_messages = list(chat_messages or [])
    else:
        record = DailyRecord(
            record_date=day,
            items=kept,
            connections=kept_connections,
            selected_item=selected_item,
            chat_messages=list(chat_messages or []),
        )
        db.add(record)

    db.commit()
    db.refresh(record)
    return record


def delete_record(db: Session, record_date: DateLike) -> bool:
    """Delete the record for a date. False when there was nothing to delete."""
    record = get_record(db, record_date)
    if not record:
        return False
    db.delete(record)
    db.commit()
    return True


# ============================================================
# HISTORY HELPERS
# ============================================================

def record_matches(record: dict, keyword: str) -> bool:
    """Case-insensitive match against notes, the chosen topic and the chat."""
    if not keyword:
        return True
    needle = keyword.lower()

    for item in record.get("items") or []:
        if needle in (item.get("text") or "").lower():
            return True

    selected = record.get("selectedItem")
    if selected and needle in (selected.get("text") or "").lower():
        return True

    for message in record.get("chatMessages") or []:
        if needle in (message.get("text") or "").lower():
            return True

    return False


def search_records(records: List[dict], keyword: Optional[str]) -> List[dict]:
    keyword = (keyword or "").strip()
    return [record for record in records if record_matches(record, keyword)]


def group_by_month(records: List[dict]) -> Dict[str, List[dict]]:
    """Bucket records by YYYY-MM, keeping their incoming order."""
    groups: Dict[str, List[dict]] = OrderedDict()
    for record in records:
        groups.setdefault(record["date"][:7], []).append(record)
    return groups


def highlight(text: str, keyword: Optional[str]) -> str:
    """HTML-escape text and wrap case-insensitive keyword hits in <mark>."""
    escaped = html.escape(text or "")
    if not keyword:
        return escaped
    pattern = re.compile(re.escape(html.escape(keyword)), re.IGNORECASE)
    return pattern.sub(lambda m: f"<mark>{m.group(0)}</mark>", escaped)
