"""Derived numbers: measurement BMI and the dashboard counters.

Pure functions over already-loaded entities. Nothing here reads the store
or knows about HTTP.
"""

from datetime import datetime, timezone

from dietcim.models import Activity, Appointment, Client, DashboardStats, DietPlan

# Activity type written for every outbound notification message.
NOTIFICATION_ACTIVITY_TYPE = "telegram"


def compute_bmi(height_cm: float | None, weight_kg: float | None) -> float | None:
    """Return BMI rounded to one decimal, or ``None`` when an input is missing.

    Args:
        height_cm: Client height in centimetres (stored on the client).
        weight_kg: Weight from the measurement being recorded.

    Returns:
        ``weight / height_m²`` rounded to 0.1, or ``None``.
    """
    if not height_cm or not weight_kg:
        return None
    h_m = height_cm / 100.0
    return round(weight_kg / (h_m * h_m), 1)


def _same_day(moment: datetime, now: datetime) -> bool:
    return moment.astimezone(timezone.utc).date() == now.astimezone(timezone.utc).date()


def compute_dashboard_stats(
    clients: list[Client],
    appointments: list[Appointment],
    diet_plans: list[DietPlan],
    activities: list[Activity],
    now: datetime | None = None,
) -> DashboardStats:
    """Summarise one user's data for the dashboard header cards.

    Args:
        clients: All clients owned by the user.
        appointments: All appointments owned by the user.
        diet_plans: All diet plans owned by the user.
        activities: The user's activity feed (unbounded).
        now: Reference time for "today"; defaults to the current UTC time.

    Returns:
        A ``DashboardStats`` with active clients, today's appointments,
        active diet plans and the number of notification messages sent.
    """
    now = now or datetime.now(tz=timezone.utc)
    return DashboardStats(
        active_clients=sum(1 for c in clients if c.is_active),
        today_appointments=sum(1 for a in appointments if _same_day(a.date, now)),
        active_diet_plans=sum(1 for p in diet_plans if p.is_active),
        notification_messages=sum(
            1 for a in activities if a.type == NOTIFICATION_ACTIVITY_TYPE
        ),
    )
