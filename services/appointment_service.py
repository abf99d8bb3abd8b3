"""Локальная работа со встречами оценщика."""

import logging

from database.models import Appointment
from services.local_store import appointments

logger = logging.getLogger(__name__)

STATUSES = {"booked", "scheduled", "in-progress", "completed", "cancelled"}


def _normalize_status(status: str) -> str:
    value = status.strip().lower().replace("_", "-")
    if value not in STATUSES:
        raise ValueError(f"Неизвестный статус встречи: {status}")
    return value


def book_appointment(
    start_time: str,
    end_time: str,
    *,
    order_id: int | None = None,
    location: str | None = None,
    category: str | None = None,
    comments: str | None = None,
    surveyor_email: str | None = None,
    appointment_id: int | None = None,
) -> Appointment:
    """Записать встречу локально; без id она получает локальный id."""
    if end_time < start_time:
        raise ValueError("Окончание встречи раньше начала")
    record_id = appointments.insert_or_replace(
        {
            "appointment_id": appointment_id,
            "order_id": order_id,
            "start_time": start_time,
            "end_time": end_time,
            "location": location,
            "category": category,
            "comments": comments,
            "surveyor_email": surveyor_email,
            "invite_status": "booked",
            "meeting_status": "scheduled",
        }
    )
    logger.info("📅 Встреча #%s записана на %s", record_id, start_time)
    return appointments.get_by_id(record_id)


def set_invite_status(appointment_id: int, status: str) -> Appointment | None:
    status = _normalize_status(status)
    return appointments.update_fields(appointment_id, invite_status=status)


def set_meeting_status(appointment_id: int, status: str, **times: str) -> Appointment | None:
    """Сменить статус встречи; ``arrival_time``/``departure_time`` передаются явно."""
    status = _normalize_status(status)
    extra = {k: v for k, v in times.items() if k in ("arrival_time", "departure_time")}
    return appointments.update_fields(appointment_id, meeting_status=status, **extra)


def get_appointments_by_status(status: str) -> list[Appointment]:
    return appointments.get_by_status(_normalize_status(status))


__all__ = [
    "book_appointment",
    "set_invite_status",
    "set_meeting_status",
    "get_appointments_by_status",
]
