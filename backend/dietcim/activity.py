"""Activity feed recorder.

Listens to the store's post-create events and writes one ``Activity`` per
new client, measurement, diet plan or appointment. The recorder is best
effort: a missing client only degrades the description, and any exception
raised here is logged by the store without touching the created entity.
"""

import logging
from typing import Optional

from pydantic import BaseModel

from dietcim.models import Appointment, Client, DietPlan, Measurement
from dietcim.storage import MemoryStorage

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "Unknown client"


class ActivityRecorder:
    """Turns creation events into human-readable activity entries."""

    def __init__(self, storage: MemoryStorage) -> None:
        self.storage = storage

    def attach(self) -> "ActivityRecorder":
        """Subscribe to the store and return self."""
        self.storage.subscribe(self.on_created)
        return self

    def _client_name(self, client_id: int) -> str:
        client = self.storage.get_client(client_id)
        return client.full_name if client else UNKNOWN_CLIENT

    def on_created(self, kind: str, entity: BaseModel) -> None:
        if isinstance(entity, Client):
            self._record_client(entity)
        elif isinstance(entity, Measurement):
            self._record_measurement(entity)
        elif isinstance(entity, DietPlan):
            self._record_diet_plan(entity)
        elif isinstance(entity, Appointment):
            self._record_appointment(entity)
        else:
            logger.debug("No activity recorded for %s events.", kind)

    def _record_client(self, client: Client) -> None:
        self.storage.create_activity(
            user_id=client.user_id,
            client_id=client.id,
            type="client",
            description=f"New client added: {client.full_name}",
        )

    def _record_measurement(self, measurement: Measurement) -> None:
        # Measurements reach their owner only through the client.
        client: Optional[Client] = self.storage.get_client(measurement.client_id)
        if client is None:
            logger.warning(
                "Measurement %d references missing client %d; no activity recorded.",
                measurement.id,
                measurement.client_id,
            )
            return
        self.storage.create_activity(
            user_id=client.user_id,
            client_id=client.id,
            type="measurement",
            description=f"New measurement recorded for {client.full_name}",
        )

    def _record_diet_plan(self, plan: DietPlan) -> None:
        self.storage.create_activity(
            user_id=plan.user_id,
            client_id=plan.client_id,
            type="diet_plan",
            description=(
                f"New diet plan created for {self._client_name(plan.client_id)}: "
                f"{plan.name}"
            ),
        )

    def _record_appointment(self, appointment: Appointment) -> None:
        self.storage.create_activity(
            user_id=appointment.user_id,
            client_id=appointment.client_id,
            type="appointment",
            description=(
                f"New appointment scheduled with "
                f"{self._client_name(appointment.client_id)} "
                f"on {appointment.date.strftime('%d.%m.%Y')}"
            ),
        )
