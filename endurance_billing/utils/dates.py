from datetime import datetime, timezone


def utcnow() -> datetime:
    """Horário UTC sem tzinfo, no mesmo formato gravado no banco"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value):
    return value.isoformat() if value else None


def parse_datetime(value):
    """Aceita datetime, data ISO (YYYY-MM-DD) ou timestamp ISO com/sem fuso"""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).replace(tzinfo=None) if value.tzinfo else value
    raw = str(value).strip()
    if raw.endswith('Z'):
        raw = raw[:-1] + '+00:00'
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
