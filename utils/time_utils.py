from datetime import datetime, timezone


def now_iso() -> str:
    """Текущее время UTC в ISO-8601, в формате сервера синхронизации."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_ms() -> int:
    """Миллисекунды с начала эпохи, используются в именах файлов фото."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)
