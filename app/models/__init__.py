from app.models.daily_record import DailyRecord

__all__ = [
    "DailyRecord",
]
