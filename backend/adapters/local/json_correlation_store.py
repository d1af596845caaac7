"""JsonFileCorrelationStore — session → provider chat id mapping in a JSON file."""

import json
import logging
import os
import threading
from datetime import datetime
from typing import Optional

from domain.errors import StorageError
from domain.models import CorrelationRecord
from ports.correlation_store import CorrelationStorePort

logger = logging.getLogger(__name__)


class JsonFileCorrelationStore(CorrelationStorePort):
    def __init__(self, path: str = "/data/chat-metadata.json"):
        self._path = path
        self._lock = threading.Lock()

    def _load(self) -> dict:
        try:
            with open(self._path) as f:
                data = json.load(f)
            return data.get("sessions", {})
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            logger.warning(f"Could not load correlation file: {e}")
            return {}

    def get(self, session_id: str) -> Optional[CorrelationRecord]:
        entry = self._load().get(session_id)
        if not entry or not entry.get("external_job_id"):
            return None
        return CorrelationRecord(
            session_id=session_id,
            external_job_id=entry["external_job_id"],
            captured_at=datetime.fromisoformat(entry["captured_at"]),
        )

    def upsert(self, record: CorrelationRecord) -> None:
        with self._lock:
            sessions = self._load()
            sessions[record.session_id] = {
                "external_job_id": record.external_job_id,
                "captured_at": record.captured_at.isoformat(),
            }
            tmp_path = f"{self._path}.tmp"
            try:
                os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
                with open(tmp_path, "w") as f:
                    json.dump({"sessions": sessions}, f, indent=2)
                os.replace(tmp_path, self._path)
            except OSError as e:
                raise StorageError(f"Could not write correlation file: {e}") from e
