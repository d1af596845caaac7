"""HumeVoiceProviderAdapter — Hume EVI chat listing and audio reconstruction over httpx.

Reconstruction is requested and re-checked through the same endpoint:
GET /v0/evi/chats/{chat_id}/audio returns the current job state, including
a signed URL once the file is compiled.
"""

import logging
from typing import Optional

import httpx

from domain.errors import ProviderError
from domain.models import CandidateSession, JobStatus, ReconstructionJob
from ports.voice_provider import VoiceProviderPort

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.hume.ai"


class HumeVoiceProviderAdapter(VoiceProviderPort):
    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        if not api_key:
            logger.warning("HUME_API_KEY is not set; provider calls will fail until it is configured")
        self._api_key = api_key
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._headers = {"X-Hume-Api-Key": api_key or "", "Accept": "application/json"}

    def _get(self, path: str, params: Optional[dict] = None) -> dict:
        if not self._api_key:
            raise ProviderError("HUME_API_KEY is not configured")
        try:
            response = self._client.get(path, headers=self._headers, params=params)
        except httpx.HTTPError as e:
            raise ProviderError(f"Request to {path} failed: {e}") from e
        if response.status_code != 200:
            raise ProviderError(f"{path} returned {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"{path} returned invalid JSON") from e

    def list_recent_sessions(self, limit: int = 50) -> list[CandidateSession]:
        data = self._get("/v0/evi/chats", params={"page_size": limit, "ascending_order": "false"})
        chats = data.get("chats_page") or []
        sessions: list[CandidateSession] = []
        for chat in chats[:limit]:
            start = chat.get("start_timestamp")
            if not chat.get("id") or start is None:
                continue
            sessions.append(CandidateSession(id=chat["id"], start_timestamp_ms=int(start)))
        logger.info(f"Found {len(sessions)} chats from provider")
        return sessions

    def get_reconstruction_status(self, external_job_id: str) -> ReconstructionJob:
        data = self._get(f"/v0/evi/chats/{external_job_id}/audio")
        try:
            status = JobStatus(data.get("status", ""))
        except ValueError as e:
            raise ProviderError(f"Unknown reconstruction status: {data.get('status')!r}") from e

        expires = data.get("signed_url_expiration_timestamp_millis")
        return ReconstructionJob(
            external_job_id=external_job_id,
            status=status,
            result_url=data.get("signed_audio_url"),
            expires_at_ms=int(expires) if expires is not None else None,
        )
