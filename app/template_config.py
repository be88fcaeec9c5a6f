"""Centralized Jinja2 template configuration with timezone support."""
import os
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from fastapi.templating import Jinja2Templates
from markupsafe import Markup

from app.services.records import highlight as highlight_text

# App timezone setting - decides which calendar day "today" is
APP_TIMEZONE = os.getenv("APP_TIMEZONE", "America/Chicago")

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "templates")


def get_app_tz() -> ZoneInfo:
    """Get the application timezone."""
    return ZoneInfo(APP_TIMEZONE)


def today_local() -> date:
    """Today's calendar date in the app timezone; the key for today's record."""
    return datetime.now(get_app_tz()).date()


def to_local(dt: datetime) -> datetime:
    """Convert a datetime to the app's local timezone for display.

    Naive datetimes are assumed to be UTC.
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(get_app_tz())


def localtime(value, fmt: str = None) -> str:
    """Jinja filter to convert a UTC datetime (or ISO string) to local time.

    Usage in templates:
        {{ record.updatedAt | localtime }}
        {{ record.updatedAt | localtime('%b %d, %H:%M') }}
    """
    if not value:
        return ""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)

    local_dt = to_local(value)

    # Default format: "Jan 15, 14:30"
    return local_dt.strftime(fmt or "%b %d, %H:%M")


def longdate(value, fmt: str = None) -> str:
    """Jinja filter for record dates (date or YYYY-MM-DD).

    Usage in templates:
        {{ record.date | longdate }}   -> "Monday, January 15, 2024"
    """
    if not value:
        return ""
    if isinstance(value, str):
        value = datetime.strptime(value, "%Y-%m-%d").date()
    return value.strftime(fmt or "%A, %B %d, %Y")


def month_label(year_month: str) -> str:
    """'2024-01' -> 'January 2024'."""
    return datetime.strptime(year_month, "%Y-%m").strftime("%B %Y")


def highlight(text: str, keyword: str = None) -> Markup:
    """Jinja filter marking search hits; the text is escaped first."""
    return Markup(highlight_text(text, keyword))


def create_templates() -> Jinja2Templates:
    """Create a Jinja2Templates instance with custom filters."""
    templates = Jinja2Templates(directory=TEMPLATE_DIR)

    templates.env.filters["localtime"] = localtime
    templates.env.filters["longdate"] = longdate
    templates.env.filters["month_label"] = month_label
    templates.env.filters["highlight"] = highlight

    return templates


# Singleton template instance - import this in route files
templates = create_templates()
