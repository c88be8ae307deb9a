from datetime import datetime, timezone
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "UTC"

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def ensure_utc(dt: datetime) -> datetime:
    """Datetimes sem tzinfo são tratados como UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

def utc_to_local(dt_utc: datetime, tz_name: str = DEFAULT_TIMEZONE) -> datetime:
    """Converte datetime UTC para timezone local."""
    return dt_utc.astimezone(ZoneInfo(tz_name))

def day_key(dt: datetime, tz_name: str = DEFAULT_TIMEZONE) -> str:
    """Dia (yyyy-mm-dd) do datetime no timezone informado."""
    return utc_to_local(ensure_utc(dt), tz_name).strftime("%Y-%m-%d")
