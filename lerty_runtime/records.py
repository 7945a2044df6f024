"""
Persisted subscription records.

An activated trigger stores one :class:`SubscriptionRecord` per topic it
joined. Teardown reads them back, so a restarted process can still tell
what it had subscribed to. Missing or stale records are not errors.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class SubscriptionRecord(BaseModel):
    """One subscription issued by a trigger activation."""

    subscription_id: str = Field(default_factory=lambda: f"sub_{uuid.uuid4().hex}", alias="subscriptionId")
    topic: str
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )

    model_config = {"populate_by_name": True, "frozen": True}


_RECORDS = TypeAdapter(list[SubscriptionRecord])


class RecordStore(Protocol):
    def save(self, records: list[SubscriptionRecord]) -> None: ...

    def load(self) -> list[SubscriptionRecord]: ...

    def clear(self) -> None: ...


class MemoryRecordStore:
    """Keeps records for the lifetime of the process."""

    def __init__(self) -> None:
        self._records: list[SubscriptionRecord] = []

    def save(self, records: list[SubscriptionRecord]) -> None:
        self._records = list(records)

    def load(self) -> list[SubscriptionRecord]:
        return list(self._records)

    def clear(self) -> None:
        self._records = []


class FileRecordStore:
    """Keeps records as a JSON array in ``path``."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def save(self, records: list[SubscriptionRecord]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_bytes(_RECORDS.dump_json(records, by_alias=True, indent=2))

    def load(self) -> list[SubscriptionRecord]:
        try:
            return _RECORDS.validate_json(self._path.read_bytes())
        except FileNotFoundError:
            return []
        except ValidationError as e:
            logger.warning("Ignoring unreadable subscription records in %s: %s", self._path, e)
            return []

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)
