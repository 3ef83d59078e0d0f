from datetime import date, datetime, timezone
from typing import Annotated, Literal, Optional

from pydantic import AfterValidator, BaseModel, Field, model_validator

# bcrypt only looks at the first 72 bytes of a password.
MAX_PASSWORD_BYTES = 72


def _as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC so every stored datetime is comparable."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


def _check_password_length(value: str) -> str:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    return value


NewPassword = Annotated[str, Field(min_length=8), AfterValidator(_check_password_length)]


def _check_date_order(start: datetime, end: Optional[datetime]) -> None:
    if end is not None and end < start:
        raise ValueError("end_date must not be before start_date")


# ── Users & auth ──────────────────────────────────────────────────────────────


class User(BaseModel):
    """A registered dietitian account as held by the identity store."""

    id: int
    username: str
    email: str
    full_name: str
    profile_image: Optional[str] = None
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    password_hash: str
    created_at: datetime


class UserPublic(BaseModel):
    """User fields safe to return to the caller (no hash, no bot token)."""

    id: int
    username: str
    email: str
    full_name: str
    profile_image: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    has_telegram_token: bool = False
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserPublic":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            profile_image=user.profile_image,
            telegram_chat_id=user.telegram_chat_id,
            has_telegram_token=bool(user.telegram_token),
            created_at=user.created_at,
        )


class RegisterRequest(BaseModel):
    """Account details submitted to /auth/register."""

    username: str = Field(min_length=3, max_length=32, pattern=r"^[a-zA-Z0-9_]+$")
    password: NewPassword
    email: str = Field(min_length=3, max_length=254)
    full_name: str = Field(min_length=1, max_length=128)
    profile_image: Optional[str] = None


class LoginRequest(BaseModel):
    """Credentials submitted to /auth/login."""

    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class AuthResponse(BaseModel):
    """Response from /auth/register and /auth/login."""

    user: UserPublic
    token: str


class UserUpdate(BaseModel):
    """Editable profile fields; omitted fields are left unchanged."""

    email: Optional[str] = Field(default=None, min_length=3, max_length=254)
    full_name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    profile_image: Optional[str] = None


class PasswordChangeRequest(BaseModel):
    """Body of PUT /users/{id}/password."""

    current_password: str = Field(min_length=1)
    new_password: NewPassword


class TelegramSettings(BaseModel):
    """Outbound notification channel identifiers for a user."""

    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None


# ── Clients ───────────────────────────────────────────────────────────────────


class ClientCreate(BaseModel):
    """Personal and health profile of a new client."""

    full_name: str = Field(min_length=1)
    email: str
    phone: str
    birth_date: Optional[date] = None
    gender: str
    profile_image: Optional[str] = None
    height: Optional[float] = Field(default=None, gt=0)  # cm
    starting_weight: Optional[float] = Field(default=None, gt=0)
    target_weight: Optional[float] = Field(default=None, gt=0)
    activity_level: Optional[str] = None
    medical_history: Optional[str] = None
    dietary_restrictions: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = True


class ClientUpdate(BaseModel):
    """Partial client update; ownership fields cannot be changed."""

    full_name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    birth_date: Optional[date] = None
    gender: Optional[str] = None
    profile_image: Optional[str] = None
    height: Optional[float] = Field(default=None, gt=0)
    starting_weight: Optional[float] = Field(default=None, gt=0)
    target_weight: Optional[float] = Field(default=None, gt=0)
    activity_level: Optional[str] = None
    medical_history: Optional[str] = None
    dietary_restrictions: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None


class Client(ClientCreate):
    """A stored client, owned by exactly one user."""

    id: int
    user_id: int
    created_at: datetime


# ── Measurements ──────────────────────────────────────────────────────────────


class MeasurementCreate(BaseModel):
    """Body metrics for a new measurement; ``date`` defaults to now."""

    date: Optional[UtcDatetime] = None
    weight: Optional[float] = Field(default=None, gt=0)  # kg
    chest: Optional[float] = Field(default=None, gt=0)  # cm
    waist: Optional[float] = Field(default=None, gt=0)
    hip: Optional[float] = Field(default=None, gt=0)
    arm: Optional[float] = Field(default=None, gt=0)
    thigh: Optional[float] = Field(default=None, gt=0)
    body_fat_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    notes: Optional[str] = None


class MeasurementUpdate(MeasurementCreate):
    """Partial measurement update."""


class Measurement(BaseModel):
    """A stored measurement snapshot with the derived BMI."""

    id: int
    client_id: int
    date: datetime
    weight: Optional[float] = None
    chest: Optional[float] = None
    waist: Optional[float] = None
    hip: Optional[float] = None
    arm: Optional[float] = None
    thigh: Optional[float] = None
    body_fat_percentage: Optional[float] = None
    bmi: Optional[float] = None
    notes: Optional[str] = None


# ── Diet plans ────────────────────────────────────────────────────────────────


class FoodItem(BaseModel):
    """One line of a meal, e.g. ``2 slices`` of ``whole-wheat bread``."""

    name: str = Field(min_length=1)
    amount: str = ""
    calories: Optional[float] = Field(default=None, ge=0)


class Meal(BaseModel):
    """A named meal with its food items in serving order."""

    name: str = Field(min_length=1)
    foods: list[FoodItem] = []


class DietPlanCreate(BaseModel):
    """A new diet plan for a client."""

    name: str = Field(min_length=1)
    description: Optional[str] = None
    start_date: UtcDatetime
    end_date: Optional[UtcDatetime] = None
    daily_calories: Optional[float] = Field(default=None, ge=0)
    macro_protein: Optional[float] = Field(default=None, ge=0)
    macro_carbs: Optional[float] = Field(default=None, ge=0)
    macro_fat: Optional[float] = Field(default=None, ge=0)
    meals: list[Meal]
    is_active: bool = True

    @model_validator(mode="after")
    def _end_after_start(self) -> "DietPlanCreate":
        _check_date_order(self.start_date, self.end_date)
        return self


class DietPlanUpdate(BaseModel):
    """Partial diet plan update; a supplied ``meals`` list replaces the old one."""

    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None
    daily_calories: Optional[float] = Field(default=None, ge=0)
    macro_protein: Optional[float] = Field(default=None, ge=0)
    macro_carbs: Optional[float] = Field(default=None, ge=0)
    macro_fat: Optional[float] = Field(default=None, ge=0)
    meals: Optional[list[Meal]] = None
    is_active: Optional[bool] = None


class DietPlan(BaseModel):
    """A stored diet plan."""

    id: int
    user_id: int
    client_id: int
    name: str
    description: Optional[str] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    daily_calories: Optional[float] = None
    macro_protein: Optional[float] = None
    macro_carbs: Optional[float] = None
    macro_fat: Optional[float] = None
    meals: list[Meal]
    is_active: bool = True
    created_at: datetime

    @model_validator(mode="after")
    def _end_after_start(self) -> "DietPlan":
        # Partial updates are re-validated here after the merge.
        _check_date_order(self.start_date, self.end_date)
        return self


# ── Appointments ──────────────────────────────────────────────────────────────

AppointmentType = Literal["online", "in-person"]
AppointmentStatus = Literal["scheduled", "completed", "cancelled"]


class AppointmentCreate(BaseModel):
    """A new appointment; the client must belong to the caller."""

    client_id: int
    date: UtcDatetime
    duration: int = Field(gt=0)  # minutes
    type: AppointmentType
    notes: Optional[str] = None
    status: AppointmentStatus = "scheduled"


class AppointmentUpdate(BaseModel):
    """Partial appointment update (reschedule, complete, cancel)."""

    date: Optional[UtcDatetime] = None
    duration: Optional[int] = Field(default=None, gt=0)
    type: Optional[AppointmentType] = None
    notes: Optional[str] = None
    status: Optional[AppointmentStatus] = None


class Appointment(BaseModel):
    """A stored appointment."""

    id: int
    user_id: int
    client_id: int
    date: datetime
    duration: int
    type: AppointmentType
    notes: Optional[str] = None
    status: AppointmentStatus = "scheduled"
    created_at: datetime


# ── Activity feed & articles ──────────────────────────────────────────────────


class Activity(BaseModel):
    """An immutable, system-generated log entry."""

    id: int
    user_id: int
    client_id: Optional[int] = None
    type: str  # "client" | "measurement" | "diet_plan" | "appointment" | "telegram"
    description: str
    created_at: datetime


class ArticleCreate(BaseModel):
    """Content for a new blog article."""

    title: str
    summary: str
    content: str
    author: str
    image_url: Optional[str] = None
    read_time: Optional[int] = None  # minutes


class Article(ArticleCreate):
    """A published blog article."""

    id: int
    published_at: UtcDatetime


class DashboardStats(BaseModel):
    """Counters shown on the dashboard."""

    active_clients: int
    today_appointments: int
    active_diet_plans: int
    notification_messages: int
