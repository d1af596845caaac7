"""JsonFileConversationStore — one JSON document per conversation session.

Document layout:

    {
      "session_id": "...",
      "started_at": "2025-01-01T10:00:00+00:00",
      "turns": [
        {"turn_number": 1, "speaker": "agent", "message": "...",
         "timestamp": "...", "metadata": {"time_begin": 0, "time_end": 1800},
         "prosody": {"duration": 1.8}}
      ],
      "audio_url": "...",
      "turn_audio": [{"turn_number": 1, "speaker": "agent", "audio_url": "...", ...}]
    }
"""

import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Optional

from domain.errors import StorageError
from domain.naming import safe_path_component
from domain.models import (
    ArtifactIndexEntry, ArtifactStatus, ConversationRecord, ExplicitBounds,
    MeasuredDuration, TimingEvidence, Turn,
)
from domain.timing import to_epoch_ms
from ports.conversation_store import ConversationStorePort

logger = logging.getLogger(__name__)


def parse_timing(raw: dict) -> Optional[TimingEvidence]:
    """Resolve a stored turn's optional timing fields into one evidence variant."""
    metadata = raw.get("metadata") or {}
    begin, end = metadata.get("time_begin"), metadata.get("time_end")
    if begin is not None and end is not None:
        return ExplicitBounds(begin_ms=int(begin), end_ms=int(end))

    duration = (raw.get("prosody") or {}).get("duration")
    if duration:
        return MeasuredDuration(seconds=float(duration))
    return None


def parse_started_at(value) -> Optional[datetime]:
    """Stored start time as an aware UTC datetime; None when missing or unparsable."""
    ms = to_epoch_ms(value)
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def parse_turn(raw: dict) -> Turn:
    return Turn(
        turn_number=int(raw["turn_number"]),
        speaker=raw.get("speaker", "unknown"),
        message=raw.get("message", ""),
        timestamp=raw.get("timestamp"),
        timing=parse_timing(raw),
    )


class JsonFileConversationStore(ConversationStorePort):
    def __init__(self, root: str = "/data/conversations"):
        self._root = root
        self._lock = threading.Lock()

    def _path(self, session_id: str) -> str:
        return os.path.join(self._root, f"{safe_path_component(session_id)}.json")

    def _load(self, session_id: str) -> Optional[dict]:
        try:
            with open(self._path(session_id)) as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt conversation file for {session_id}: {e}") from e

    def _save(self, session_id: str, doc: dict) -> None:
        path = self._path(session_id)
        tmp_path = f"{path}.tmp"
        try:
            os.makedirs(self._root, exist_ok=True)
            with open(tmp_path, "w") as f:
                json.dump(doc, f, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Could not write conversation {session_id}: {e}") from e

    def get_conversation(self, session_id: str) -> Optional[ConversationRecord]:
        doc = self._load(session_id)
        if doc is None:
            return None
        started_at = parse_started_at(doc.get("started_at"))
        if started_at is None and doc.get("started_at"):
            logger.warning(f"Unparsable started_at for {session_id}: {doc['started_at']!r}")
        try:
            turns = sorted((parse_turn(t) for t in doc.get("turns", [])), key=lambda t: t.turn_number)
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Malformed turn in conversation {session_id}: {e!r}") from e
        return ConversationRecord(
            session_id=session_id,
            started_at=started_at,
            turns=turns,
            full_audio_ref=doc.get("audio_url"),
        )

    def set_full_audio_ref(self, session_id: str, reference: str) -> None:
        with self._lock:
            doc = self._load(session_id)
            if doc is None:
                logger.warning(f"No conversation record found to update for {session_id}")
                return
            doc["audio_url"] = reference
            self._save(session_id, doc)

    def upsert_turn_artifact(self, session_id: str, entry: ArtifactIndexEntry) -> None:
        with self._lock:
            doc = self._load(session_id) or {"session_id": session_id, "turns": []}
            index = [
                row for row in doc.get("turn_audio", [])
                if (row["turn_number"], row["speaker"]) != (entry.turn_number, entry.speaker)
            ]
            index.append({
                "turn_number": entry.turn_number,
                "speaker": entry.speaker,
                "audio_url": entry.reference,
                "audio_format": entry.audio_format,
                "audio_duration_ms": entry.duration_ms,
                "processing_status": entry.status.value,
                "updated_at": datetime.now().astimezone().isoformat(),
            })
            doc["turn_audio"] = sorted(index, key=lambda row: row["turn_number"])
            self._save(session_id, doc)

    def list_turn_artifacts(self, session_id: str) -> list[ArtifactIndexEntry]:
        doc = self._load(session_id) or {}
        try:
            return [
                ArtifactIndexEntry(
                    turn_number=row["turn_number"],
                    speaker=row["speaker"],
                    reference=row["audio_url"],
                    status=ArtifactStatus(row.get("processing_status", "complete")),
                    audio_format=row.get("audio_format", "mp3"),
                    duration_ms=row.get("audio_duration_ms"),
                )
                for row in doc.get("turn_audio", [])
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Malformed audio index for {session_id}: {e!r}") from e
