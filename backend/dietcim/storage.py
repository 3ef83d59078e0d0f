"""In-memory access layer: CRUD for users, clients and their dependents.

One ``MemoryStorage`` instance is built at application start (see
``main.create_storage``) and handed to request handlers through the
``get_storage`` dependency. Tests construct a fresh instance each.

Conventions shared by every entity:

- Lookups return the entity or ``None``; deletes return ``True``/``False``.
  Nothing here raises for "not found", and nothing here validates shapes;
  the HTTP layer does that before calling in.
- Ids come from one counter per entity type and are never reused.
- Updates are partial merges: only the keys present in ``changes`` move.
- After a client, measurement, diet plan, or appointment is created every
  subscribed listener is called with ``(kind, entity)``. Listener errors are
  logged and otherwise ignored; the entity stays created.
"""

import json
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generic, Optional, TypeVar

from fastapi import Request
from pydantic import BaseModel

from dietcim.logic import compute_bmi
from dietcim.models import (
    Activity,
    Appointment,
    AppointmentCreate,
    Article,
    ArticleCreate,
    Client,
    ClientCreate,
    DietPlan,
    DietPlanCreate,
    Measurement,
    MeasurementCreate,
    RegisterRequest,
    User,
)
from dietcim.security import check_password, hash_password

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).parent / "data"
ARTICLES_FILE = DATA_DIR / "articles.json"

Listener = Callable[[str, BaseModel], None]


class DuplicateUserError(ValueError):
    """Raised by ``create_user`` when the username or email is already taken.

    Attributes:
        field: ``"username"`` or ``"email"``.
    """

    def __init__(self, field: str) -> None:
        super().__init__(f"{field} already registered")
        self.field = field


_M = TypeVar("_M", bound=BaseModel)


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _merge(existing: _M, changes: dict[str, Any]) -> _M:
    """Apply *changes* over *existing* and re-validate nested models."""
    return type(existing).model_validate({**existing.model_dump(), **changes})


def _newest_first(rows: list[_M], key: Callable[[_M], datetime]) -> list[_M]:
    # Ties on the timestamp go to the higher (later) id.
    return sorted(rows, key=lambda r: (key(r), r.id), reverse=True)  # type: ignore[attr-defined]


def _truncate(rows: list[_M], limit: Optional[int]) -> list[_M]:
    if limit and limit > 0:
        return rows[:limit]
    return rows


class _Table(Generic[_M]):
    """Insertion-ordered ``id → entity`` map with its own id counter."""

    def __init__(self) -> None:
        self.rows: dict[int, _M] = {}
        self._last_id = 0

    def next_id(self) -> int:
        self._last_id += 1
        return self._last_id

    def put(self, row: _M) -> _M:
        self.rows[row.id] = row  # type: ignore[attr-defined]
        return row

    def get(self, row_id: int) -> Optional[_M]:
        return self.rows.get(row_id)

    def where(self, predicate: Callable[[_M], bool]) -> list[_M]:
        return [r for r in list(self.rows.values()) if predicate(r)]

    def delete(self, row_id: int) -> bool:
        return self.rows.pop(row_id, None) is not None


class MemoryStorage:
    """Process-local store for every entity type.

    Args:
        bcrypt_rounds: Cost factor used when hashing new passwords.
    """

    def __init__(self, bcrypt_rounds: int = 10) -> None:
        self.bcrypt_rounds = bcrypt_rounds
        self._users: _Table[User] = _Table()
        self._clients: _Table[Client] = _Table()
        self._measurements: _Table[Measurement] = _Table()
        self._diet_plans: _Table[DietPlan] = _Table()
        self._appointments: _Table[Appointment] = _Table()
        self._activities: _Table[Activity] = _Table()
        self._articles: _Table[Article] = _Table()
        self._listeners: list[Listener] = []
        # Handlers hash passwords in a worker thread, so writes can overlap.
        self._lock = threading.RLock()
        self._dummy_hash: Optional[str] = None

    # ── Post-create events ────────────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> None:
        """Register a callable invoked as ``listener(kind, entity)`` after creation."""
        self._listeners.append(listener)

    def _emit(self, kind: str, entity: BaseModel) -> None:
        for listener in self._listeners:
            try:
                listener(kind, entity)
            except Exception:
                logger.exception(
                    "Post-create listener failed for %s %s.",
                    kind,
                    getattr(entity, "id", "?"),
                )

    # ── Users ─────────────────────────────────────────────────────────────────

    def get_user(self, user_id: int) -> Optional[User]:
        return self._users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._lock:
            users = list(self._users.rows.values())
        for user in users:
            if user.username == username:
                return user
        return None

    def get_user_by_email(self, email: str) -> Optional[User]:
        wanted = email.strip().lower()
        with self._lock:
            users = list(self._users.rows.values())
        for user in users:
            if user.email.lower() == wanted:
                return user
        return None

    def create_user(self, data: RegisterRequest) -> User:
        """Create an account, storing only a bcrypt hash of the password.

        Raises:
            DuplicateUserError: if the username or email (case-insensitive)
                already belongs to another account. The check runs under the
                store lock, after hashing, so concurrent sign-ups cannot both
                succeed.
        """
        password_hash = hash_password(data.password, self.bcrypt_rounds)
        with self._lock:
            if self.get_user_by_username(data.username) is not None:
                raise DuplicateUserError("username")
            if self.get_user_by_email(data.email) is not None:
                raise DuplicateUserError("email")
            user = User(
                id=self._users.next_id(),
                username=data.username,
                email=data.email.strip(),
                full_name=data.full_name,
                profile_image=data.profile_image,
                password_hash=password_hash,
                created_at=_utc_now(),
            )
            return self._users.put(user)

    def update_user(self, user_id: int, changes: dict[str, Any]) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            return self._users.put(_merge(user, changes))

    def set_password(self, user_id: int, new_password: str) -> Optional[User]:
        password_hash = hash_password(new_password, self.bcrypt_rounds)
        return self.update_user(user_id, {"password_hash": password_hash})

    def verify_credentials(self, username: str, password: str) -> Optional[User]:
        """Return the user when *password* matches, ``None`` otherwise.

        An unknown username still costs one bcrypt comparison so response
        time does not reveal whether the account exists.
        """
        user = self.get_user_by_username(username)
        if user is None:
            if self._dummy_hash is None:
                self._dummy_hash = hash_password("not-a-real-password", self.bcrypt_rounds)
            check_password(password, self._dummy_hash)
            return None
        if not check_password(password, user.password_hash):
            return None
        return user

    # ── Clients ───────────────────────────────────────────────────────────────

    def list_clients(self, user_id: int) -> list[Client]:
        return self._clients.where(lambda c: c.user_id == user_id)

    def get_client(self, client_id: int) -> Optional[Client]:
        return self._clients.get(client_id)

    def create_client(self, user_id: int, data: ClientCreate) -> Client:
        with self._lock:
            client = Client(
                id=self._clients.next_id(),
                user_id=user_id,
                created_at=_utc_now(),
                **data.model_dump(),
            )
            self._clients.put(client)
        self._emit("client", client)
        return client

    def update_client(self, client_id: int, changes: dict[str, Any]) -> Optional[Client]:
        with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                return None
            return self._clients.put(_merge(client, changes))

    def delete_client(self, client_id: int) -> bool:
        """Delete a client together with its measurements, plans and appointments.

        Activities that mention the client are an audit log and are kept.
        """
        with self._lock:
            if not self._clients.delete(client_id):
                return False
            for table in (self._measurements, self._diet_plans, self._appointments):
                for row in table.where(lambda r: r.client_id == client_id):
                    table.delete(row.id)
            return True

    # ── Measurements ──────────────────────────────────────────────────────────

    def list_measurements(self, client_id: int) -> list[Measurement]:
        """Return a client's measurements, newest ``date`` first."""
        rows = self._measurements.where(lambda m: m.client_id == client_id)
        return _newest_first(rows, lambda m: m.date)

    def get_measurement(self, measurement_id: int) -> Optional[Measurement]:
        return self._measurements.get(measurement_id)

    def _bmi_for(self, client_id: int, weight: Optional[float]) -> Optional[float]:
        client = self._clients.get(client_id)
        return compute_bmi(client.height if client else None, weight)

    def create_measurement(self, client_id: int, data: MeasurementCreate) -> Measurement:
        """Append a measurement; BMI is derived from the client's height."""
        values = data.model_dump()
        values["date"] = values["date"] or _utc_now()
        with self._lock:
            measurement = Measurement(
                id=self._measurements.next_id(),
                client_id=client_id,
                bmi=self._bmi_for(client_id, data.weight),
                **values,
            )
            self._measurements.put(measurement)
        self._emit("measurement", measurement)
        return measurement

    def update_measurement(
        self, measurement_id: int, changes: dict[str, Any]
    ) -> Optional[Measurement]:
        with self._lock:
            measurement = self._measurements.get(measurement_id)
            if measurement is None:
                return None
            merged = _merge(measurement, changes)
            if "weight" in changes:
                merged.bmi = self._bmi_for(merged.client_id, merged.weight)
            return self._measurements.put(merged)

    def delete_measurement(self, measurement_id: int) -> bool:
        with self._lock:
            return self._measurements.delete(measurement_id)

    # ── Diet plans ────────────────────────────────────────────────────────────

    def list_diet_plans(self, user_id: int) -> list[DietPlan]:
        return self._diet_plans.where(lambda p: p.user_id == user_id)

    def list_client_diet_plans(self, client_id: int) -> list[DietPlan]:
        return self._diet_plans.where(lambda p: p.client_id == client_id)

    def get_diet_plan(self, plan_id: int) -> Optional[DietPlan]:
        return self._diet_plans.get(plan_id)

    def create_diet_plan(
        self, user_id: int, client_id: int, data: DietPlanCreate
    ) -> DietPlan:
        with self._lock:
            plan = DietPlan(
                id=self._diet_plans.next_id(),
                user_id=user_id,
                client_id=client_id,
                created_at=_utc_now(),
                **data.model_dump(),
            )
            self._diet_plans.put(plan)
        self._emit("diet_plan", plan)
        return plan

    def update_diet_plan(self, plan_id: int, changes: dict[str, Any]) -> Optional[DietPlan]:
        with self._lock:
            plan = self._diet_plans.get(plan_id)
            if plan is None:
                return None
            return self._diet_plans.put(_merge(plan, changes))

    def delete_diet_plan(self, plan_id: int) -> bool:
        with self._lock:
            return self._diet_plans.delete(plan_id)

    # ── Appointments ──────────────────────────────────────────────────────────

    def list_appointments(self, user_id: int) -> list[Appointment]:
        return self._appointments.where(lambda a: a.user_id == user_id)

    def list_client_appointments(self, client_id: int) -> list[Appointment]:
        return self._appointments.where(lambda a: a.client_id == client_id)

    def get_appointment(self, appointment_id: int) -> Optional[Appointment]:
        return self._appointments.get(appointment_id)

    def create_appointment(self, user_id: int, data: AppointmentCreate) -> Appointment:
        with self._lock:
            appointment = Appointment(
                id=self._appointments.next_id(),
                user_id=user_id,
                created_at=_utc_now(),
                **data.model_dump(),
            )
            self._appointments.put(appointment)
        self._emit("appointment", appointment)
        return appointment

    def update_appointment(
        self, appointment_id: int, changes: dict[str, Any]
    ) -> Optional[Appointment]:
        with self._lock:
            appointment = self._appointments.get(appointment_id)
            if appointment is None:
                return None
            return self._appointments.put(_merge(appointment, changes))

    def delete_appointment(self, appointment_id: int) -> bool:
        with self._lock:
            return self._appointments.delete(appointment_id)

    # ── Activities ────────────────────────────────────────────────────────────

    def list_activities(self, user_id: int, limit: Optional[int] = None) -> list[Activity]:
        """Return a user's activities newest first, truncated to *limit* if positive."""
        rows = self._activities.where(lambda a: a.user_id == user_id)
        return _truncate(_newest_first(rows, lambda a: a.created_at), limit)

    def create_activity(
        self,
        user_id: int,
        type: str,
        description: str,
        client_id: Optional[int] = None,
    ) -> Activity:
        with self._lock:
            activity = Activity(
                id=self._activities.next_id(),
                user_id=user_id,
                client_id=client_id,
                type=type,
                description=description,
                created_at=_utc_now(),
            )
            return self._activities.put(activity)

    # ── Articles ──────────────────────────────────────────────────────────────

    def list_articles(self, limit: Optional[int] = None) -> list[Article]:
        rows = list(self._articles.rows.values())
        return _truncate(_newest_first(rows, lambda a: a.published_at), limit)

    def get_article(self, article_id: int) -> Optional[Article]:
        return self._articles.get(article_id)

    def create_article(
        self, data: ArticleCreate, published_at: Optional[datetime] = None
    ) -> Article:
        with self._lock:
            article = Article(
                id=self._articles.next_id(),
                published_at=published_at or _utc_now(),
                **data.model_dump(),
            )
            return self._articles.put(article)

    def load_seed_articles(self, path: Path = ARTICLES_FILE) -> int:
        """Publish the bundled starter articles.

        Args:
            path: JSON file holding a list of article objects; an optional
                ``published_at`` ISO timestamp is honoured.

        Returns:
            Number of articles created.
        """
        raw: list[dict[str, Any]] = json.loads(path.read_text(encoding="utf-8"))
        for item in raw:
            published_at = item.pop("published_at", None)
            self.create_article(
                ArticleCreate.model_validate(item),
                published_at=datetime.fromisoformat(published_at) if published_at else None,
            )
        logger.info("Seeded %d article(s) from %s.", len(raw), path.name)
        return len(raw)


def get_storage(request: Request) -> MemoryStorage:
    """FastAPI dependency returning the store attached at startup.

    Usage::

        async def my_endpoint(storage: MemoryStorage = Depends(get_storage)) -> ...:
    """
    return request.app.state.storage
