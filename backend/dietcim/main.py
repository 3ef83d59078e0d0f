"""FastAPI application entry point.

Defines the REST API endpoints. Handlers are thin: they validate input,
authenticate the caller, check the owner chain, and delegate everything
else to storage.py (data access), activity.py (feed) and logic.py (stats).

Run with:
    uvicorn dietcim.main:app --reload --port 8000
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError
from starlette.concurrency import run_in_threadpool

from dietcim import logic
from dietcim.activity import ActivityRecorder
from dietcim.config import settings
from dietcim.errors import format_validation_error, register_exception_handlers
from dietcim.models import (
    Activity,
    Appointment,
    AppointmentCreate,
    AppointmentUpdate,
    Article,
    AuthResponse,
    Client,
    ClientCreate,
    ClientUpdate,
    DashboardStats,
    DietPlan,
    DietPlanCreate,
    DietPlanUpdate,
    LoginRequest,
    Measurement,
    MeasurementCreate,
    MeasurementUpdate,
    PasswordChangeRequest,
    RegisterRequest,
    TelegramSettings,
    User,
    UserPublic,
    UserUpdate,
)
from dietcim.security import (
    Principal,
    check_password,
    create_access_token,
    get_current_user,
)
from dietcim.storage import DuplicateUserError, MemoryStorage, get_storage

logger = logging.getLogger(__name__)


def create_storage() -> MemoryStorage:
    """Build the process-wide store with the activity recorder attached."""
    storage = MemoryStorage(bcrypt_rounds=settings.bcrypt_rounds)
    ActivityRecorder(storage).attach()
    if settings.seed_articles:
        storage.load_seed_articles()
    return storage


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: configure logging and create the store."""
    logging.basicConfig(level=settings.log_level)
    app.state.storage = create_storage()
    logger.info("In-memory store ready.")
    yield


app = FastAPI(
    title="Dietcim API",
    description=(
        "Practice management for dietitians: clients, body measurements, "
        "diet plans, appointments and an activity feed."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)

router = APIRouter(prefix="/api")


def _changes(payload: BaseModel) -> dict[str, object]:
    """Fields the caller actually sent; ``null`` means "leave unchanged"."""
    return payload.model_dump(exclude_unset=True, exclude_none=True)


# ── Owner chain ───────────────────────────────────────────────────────────────


def _owned_client(storage: MemoryStorage, client_id: int, user: Principal) -> Client:
    client = storage.get_client(client_id)
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found.")
    if client.user_id != user.id:
        raise HTTPException(
            status_code=403, detail="You do not have access to this client."
        )
    return client


def _owned_measurement(
    storage: MemoryStorage, measurement_id: int, user: Principal
) -> Measurement:
    measurement = storage.get_measurement(measurement_id)
    if measurement is None:
        raise HTTPException(status_code=404, detail="Measurement not found.")
    client = storage.get_client(measurement.client_id)
    if client is None:
        raise HTTPException(status_code=404, detail="Measurement not found.")
    if client.user_id != user.id:
        raise HTTPException(
            status_code=403, detail="You do not have access to this measurement."
        )
    return measurement


def _owned_diet_plan(storage: MemoryStorage, plan_id: int, user: Principal) -> DietPlan:
    plan = storage.get_diet_plan(plan_id)
    if plan is None:
        raise HTTPException(status_code=404, detail="Diet plan not found.")
    if plan.user_id != user.id:
        raise HTTPException(
            status_code=403, detail="You do not have access to this diet plan."
        )
    return plan


def _owned_appointment(
    storage: MemoryStorage, appointment_id: int, user: Principal
) -> Appointment:
    appointment = storage.get_appointment(appointment_id)
    if appointment is None:
        raise HTTPException(status_code=404, detail="Appointment not found.")
    if appointment.user_id != user.id:
        raise HTTPException(
            status_code=403, detail="You do not have access to this appointment."
        )
    return appointment


def _require_self(user_id: int, user: Principal) -> None:
    if user_id != user.id:
        raise HTTPException(
            status_code=403, detail="You can only modify your own account."
        )


# ── System ────────────────────────────────────────────────────────────────────


@app.get("/health", tags=["system"])
async def health_check() -> dict[str, str]:
    """Confirm the API is running."""
    return {"status": "ok"}


# ── Auth ──────────────────────────────────────────────────────────────────────


_DUPLICATE_USER = {
    "username": "Username already taken.",
    "email": "Email already registered.",
}


def _auth_response(user: User) -> AuthResponse:
    return AuthResponse(
        user=UserPublic.from_user(user),
        token=create_access_token(user.id, user.username),
    )


@router.post(
    "/auth/register", response_model=AuthResponse, status_code=201, tags=["auth"]
)
async def register(
    request: RegisterRequest, storage: MemoryStorage = Depends(get_storage)
) -> AuthResponse:
    """Create a dietitian account and return it with a fresh token.

    Returns HTTP 409 if the username or email is already registered.
    """
    if storage.get_user_by_username(request.username):
        raise HTTPException(status_code=409, detail=_DUPLICATE_USER["username"])
    if storage.get_user_by_email(request.email):
        raise HTTPException(status_code=409, detail=_DUPLICATE_USER["email"])

    try:
        user = await run_in_threadpool(storage.create_user, request)
    except DuplicateUserError as exc:
        # Lost a race with a concurrent sign-up for the same name or email.
        raise HTTPException(status_code=409, detail=_DUPLICATE_USER[exc.field]) from exc
    logger.info("Registered user %s (id=%d).", user.username, user.id)
    return _auth_response(user)


@router.post("/auth/login", response_model=AuthResponse, tags=["auth"])
async def login(
    request: LoginRequest, storage: MemoryStorage = Depends(get_storage)
) -> AuthResponse:
    """Exchange username and password for a token.

    Unknown usernames and wrong passwords get the same HTTP 401 message.
    """
    user = await run_in_threadpool(
        storage.verify_credentials, request.username, request.password
    )
    if user is None:
        logger.info("Failed login attempt for username %r.", request.username)
        raise HTTPException(status_code=401, detail="Invalid username or password.")
    return _auth_response(user)


@router.get("/auth/me", response_model=UserPublic, tags=["auth"])
async def me(
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> UserPublic:
    """Return the account behind the bearer token."""
    row = storage.get_user(user.id)
    if row is None:
        raise HTTPException(status_code=404, detail="User not found.")
    return UserPublic.from_user(row)


# ── Users ─────────────────────────────────────────────────────────────────────


@router.put("/users/{user_id}", response_model=UserPublic, tags=["users"])
async def update_profile(
    user_id: int,
    payload: UserUpdate,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> UserPublic:
    """Update the caller's own profile fields."""
    _require_self(user_id, user)
    if payload.email is not None:
        other = storage.get_user_by_email(payload.email)
        if other is not None and other.id != user_id:
            raise HTTPException(status_code=409, detail=_DUPLICATE_USER["email"])
    updated = storage.update_user(user_id, _changes(payload))
    if updated is None:
        raise HTTPException(status_code=404, detail="User not found.")
    return UserPublic.from_user(updated)


@router.put("/users/{user_id}/password", response_model=UserPublic, tags=["users"])
async def change_password(
    user_id: int,
    payload: PasswordChangeRequest,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> UserPublic:
    """Replace the caller's password after re-checking the current one.

    Returns HTTP 400 if ``current_password`` is wrong.
    """
    _require_self(user_id, user)
    row = storage.get_user(user_id)
    if row is None:
        raise HTTPException(status_code=404, detail="User not found.")
    if not await run_in_threadpool(
        check_password, payload.current_password, row.password_hash
    ):
        raise HTTPException(status_code=400, detail="Current password is incorrect.")
    updated = await run_in_threadpool(
        storage.set_password, user_id, payload.new_password
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="User not found.")
    logger.info("Password changed for user id=%d.", user_id)
    return UserPublic.from_user(updated)


@router.put(
    "/users/{user_id}/telegram-settings", response_model=UserPublic, tags=["users"]
)
async def update_telegram_settings(
    user_id: int,
    payload: TelegramSettings,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> UserPublic:
    """Store the bot token and chat id used for outbound notifications.

    Sending ``null`` for a field clears it.
    """
    _require_self(user_id, user)
    updated = storage.update_user(user_id, payload.model_dump(exclude_unset=True))
    if updated is None:
        raise HTTPException(status_code=404, detail="User not found.")
    return UserPublic.from_user(updated)


# ── Clients ───────────────────────────────────────────────────────────────────


@router.get("/clients", response_model=list[Client], tags=["clients"])
async def list_clients(
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> list[Client]:
    """Return the caller's clients in the order they were added."""
    return storage.list_clients(user.id)


@router.post("/clients", response_model=Client, status_code=201, tags=["clients"])
async def create_client(
    payload: ClientCreate,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> Client:
    """Add a client owned by the caller."""
    return storage.create_client(user.id, payload)


@router.get("/clients/{client_id}", response_model=Client, tags=["clients"])
async def get_client(
    client_id: int,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> Client:
    """Return one client. HTTP 404 if missing, 403 if owned by someone else."""
    return _owned_client(storage, client_id, user)


@router.put("/clients/{client_id}", response_model=Client, tags=["clients"])
async def update_client(
    client_id: int,
    payload: ClientUpdate,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> Client:
    """Partially update a client."""
    _owned_client(storage, client_id, user)
    updated = storage.update_client(client_id, _changes(payload))
    if updated is None:
        raise HTTPException(status_code=404, detail="Client not found.")
    return updated


@router.delete("/clients/{client_id}", status_code=204, tags=["clients"])
async def delete_client(
    client_id: int,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> Response:
    """Delete a client and its measurements, diet plans and appointments."""
    _owned_client(storage, client_id, user)
    storage.delete_client(client_id)
    return Response(status_code=204)


# ── Measurements ──────────────────────────────────────────────────────────────


@router.get(
    "/clients/{client_id}/measurements",
    response_model=list[Measurement],
    tags=["measurements"],
)
async def list_measurements(
    client_id: int,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> list[Measurement]:
    """Return a client's measurement history, newest first."""
    _owned_client(storage, client_id, user)
    return storage.list_measurements(client_id)


@router.post(
    "/clients/{client_id}/measurements",
    response_model=Measurement,
    status_code=201,
    tags=["measurements"],
)
async def create_measurement(
    client_id: int,
    payload: MeasurementCreate,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> Measurement:
    """Record a measurement. BMI is filled in when the client's height is known."""
    _owned_client(storage, client_id, user)
    return storage.create_measurement(client_id, payload)


@router.put(
    "/measurements/{measurement_id}", response_model=Measurement, tags=["measurements"]
)
async def update_measurement(
    measurement_id: int,
    payload: MeasurementUpdate,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> Measurement:
    """Correct a recorded measurement."""
    _owned_measurement(storage, measurement_id, user)
    updated = storage.update_measurement(measurement_id, _changes(payload))
    if updated is None:
        raise HTTPException(status_code=404, detail="Measurement not found.")
    return updated


@router.delete("/measurements/{measurement_id}", status_code=204, tags=["measurements"])
async def delete_measurement(
    measurement_id: int,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> Response:
    _owned_measurement(storage, measurement_id, user)
    storage.delete_measurement(measurement_id)
    return Response(status_code=204)


# ── Diet plans ────────────────────────────────────────────────────────────────


@router.get("/diet-plans", response_model=list[DietPlan], tags=["diet-plans"])
async def list_diet_plans(
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> list[DietPlan]:
    """Return every diet plan the caller has written, across all clients."""
    return storage.list_diet_plans(user.id)


@router.get(
    "/clients/{client_id}/diet-plans",
    response_model=list[DietPlan],
    tags=["diet-plans"],
)
async def list_client_diet_plans(
    client_id: int,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> list[DietPlan]:
    _owned_client(storage, client_id, user)
    return storage.list_client_diet_plans(client_id)


@router.post(
    "/clients/{client_id}/diet-plans",
    response_model=DietPlan,
    status_code=201,
    tags=["diet-plans"],
)
async def create_diet_plan(
    client_id: int,
    payload: DietPlanCreate,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> DietPlan:
    """Create a diet plan for one of the caller's clients."""
    _owned_client(storage, client_id, user)
    return storage.create_diet_plan(user.id, client_id, payload)


@router.get("/diet-plans/{plan_id}", response_model=DietPlan, tags=["diet-plans"])
async def get_diet_plan(
    plan_id: int,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> DietPlan:
    return _owned_diet_plan(storage, plan_id, user)


@router.put("/diet-plans/{plan_id}", response_model=DietPlan, tags=["diet-plans"])
async def update_diet_plan(
    plan_id: int,
    payload: DietPlanUpdate,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> DietPlan:
    """Partially update a diet plan. A supplied ``meals`` list replaces the old one."""
    _owned_diet_plan(storage, plan_id, user)
    try:
        updated = storage.update_diet_plan(plan_id, _changes(payload))
    except ValidationError as exc:
        # The merged plan can break the start/end date order.
        raise HTTPException(
            status_code=400, detail=format_validation_error(exc)
        ) from exc
    if updated is None:
        raise HTTPException(status_code=404, detail="Diet plan not found.")
    return updated


@router.delete("/diet-plans/{plan_id}", status_code=204, tags=["diet-plans"])
async def delete_diet_plan(
    plan_id: int,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> Response:
    _owned_diet_plan(storage, plan_id, user)
    storage.delete_diet_plan(plan_id)
    return Response(status_code=204)


# ── Appointments ──────────────────────────────────────────────────────────────


@router.get("/appointments", response_model=list[Appointment], tags=["appointments"])
async def list_appointments(
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> list[Appointment]:
    return storage.list_appointments(user.id)


@router.post(
    "/appointments",
    response_model=Appointment,
    status_code=201,
    tags=["appointments"],
)
async def create_appointment(
    payload: AppointmentCreate,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> Appointment:
    """Book an appointment with one of the caller's clients.

    Returns HTTP 404 if ``client_id`` does not exist, 403 if it belongs to
    another dietitian.
    """
    _owned_client(storage, payload.client_id, user)
    return storage.create_appointment(user.id, payload)


@router.get(
    "/clients/{client_id}/appointments",
    response_model=list[Appointment],
    tags=["appointments"],
)
async def list_client_appointments(
    client_id: int,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> list[Appointment]:
    _owned_client(storage, client_id, user)
    return storage.list_client_appointments(client_id)


@router.get(
    "/appointments/{appointment_id}", response_model=Appointment, tags=["appointments"]
)
async def get_appointment(
    appointment_id: int,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> Appointment:
    return _owned_appointment(storage, appointment_id, user)


@router.put(
    "/appointments/{appointment_id}", response_model=Appointment, tags=["appointments"]
)
async def update_appointment(
    appointment_id: int,
    payload: AppointmentUpdate,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> Appointment:
    """Reschedule, complete or cancel an appointment."""
    _owned_appointment(storage, appointment_id, user)
    updated = storage.update_appointment(appointment_id, _changes(payload))
    if updated is None:
        raise HTTPException(status_code=404, detail="Appointment not found.")
    return updated


@router.delete(
    "/appointments/{appointment_id}", status_code=204, tags=["appointments"]
)
async def delete_appointment(
    appointment_id: int,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> Response:
    _owned_appointment(storage, appointment_id, user)
    storage.delete_appointment(appointment_id)
    return Response(status_code=204)


# ── Activity feed ─────────────────────────────────────────────────────────────


@router.get("/activities", response_model=list[Activity], tags=["activities"])
async def list_activities(
    limit: Optional[int] = None,
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> list[Activity]:
    """Return the caller's activity feed, newest first.

    ``limit`` truncates the feed when positive; zero or negative is ignored.
    """
    return storage.list_activities(user.id, limit)


# ── Blog ──────────────────────────────────────────────────────────────────────


@router.get("/blog", response_model=list[Article], tags=["blog"])
async def list_articles(
    limit: Optional[int] = None, storage: MemoryStorage = Depends(get_storage)
) -> list[Article]:
    """Return published articles, newest first. No authentication required."""
    return storage.list_articles(limit)


@router.get("/blog/{article_id}", response_model=Article, tags=["blog"])
async def get_article(
    article_id: int, storage: MemoryStorage = Depends(get_storage)
) -> Article:
    article = storage.get_article(article_id)
    if article is None:
        raise HTTPException(status_code=404, detail="Article not found.")
    return article


# ── Dashboard ─────────────────────────────────────────────────────────────────


@router.get("/dashboard/stats", response_model=DashboardStats, tags=["dashboard"])
async def dashboard_stats(
    user: Principal = Depends(get_current_user),
    storage: MemoryStorage = Depends(get_storage),
) -> DashboardStats:
    """Return the counters shown on the dashboard header."""
    return logic.compute_dashboard_stats(
        clients=storage.list_clients(user.id),
        appointments=storage.list_appointments(user.id),
        diet_plans=storage.list_diet_plans(user.id),
        activities=storage.list_activities(user.id),
    )


app.include_router(router)
