"""HttpAudioDownloader — streams the signed full-audio URL to disk with httpx."""

import os
import logging
from typing import Optional

import httpx

from domain.errors import DownloadError
from ports.download import AudioDownloadPort

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class HttpAudioDownloader(AudioDownloadPort):
    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = 30.0):
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def download(self, url: str, destination: str, timeout: Optional[float] = None) -> int:
        logger.info(f"Downloading audio from: {url[:50]}...")
        written = 0
        options = {"timeout": timeout} if timeout is not None else {}
        try:
            with self._client.stream("GET", url, **options) as response:
                if response.status_code != 200:
                    raise DownloadError(f"Failed to download audio: HTTP {response.status_code}")
                with open(destination, "wb") as f:
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        f.write(chunk)
                        written += len(chunk)
        except httpx.HTTPError as e:
            self._discard(destination)
            raise DownloadError(f"Failed to download audio: {e}") from e
        except DownloadError:
            self._discard(destination)
            raise

        if written == 0:
            self._discard(destination)
            raise DownloadError("Downloaded audio file is empty")

        logger.info(f"Downloaded audio file: {written} bytes")
        return written

    @staticmethod
    def _discard(path: str) -> None:
        if os.path.exists(path):
            os.unlink(path)
