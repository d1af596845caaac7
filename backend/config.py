import os
import logging
from typing import Dict, Any
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8001
DEFAULT_PROVIDER_BASE_URL = "https://api.hume.ai"
DEFAULT_CORRELATION_TOLERANCE_MS = 30 * 60 * 1000
DEFAULT_TAIL_MS = 2000


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(Config, cls).__new__(cls)
            cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        self.host = os.environ.get("HOST", DEFAULT_HOST)
        self.port = int(os.environ.get("PORT", DEFAULT_PORT))
        self.debug = os.environ.get("DEBUG", "0") == "1"
        self.infra = os.environ.get("INFRA", "local").lower()

        # Voice provider
        self.hume_api_key = os.environ.get("HUME_API_KEY")
        self.provider_base_url = os.environ.get("PROVIDER_BASE_URL", DEFAULT_PROVIDER_BASE_URL)
        self.http_timeout = float(os.environ.get("HTTP_TIMEOUT_S", "30"))

        # Correlation and timing
        self.correlation_tolerance_ms = int(os.environ.get("CORRELATION_TOLERANCE_MS", DEFAULT_CORRELATION_TOLERANCE_MS))
        self.candidate_limit = int(os.environ.get("CANDIDATE_LIMIT", "50"))
        self.default_tail_ms = int(os.environ.get("DEFAULT_TAIL_MS", DEFAULT_TAIL_MS))
        self.strict_timestamps = _env_bool("STRICT_TIMESTAMPS")

        # Polling
        self.poll_max_attempts = int(os.environ.get("POLL_MAX_ATTEMPTS", "12"))
        self.poll_interval_ms = int(os.environ.get("POLL_INTERVAL_MS", "10000"))

        # Extraction
        self.ffmpeg_bin = os.environ.get("FFMPEG_BIN", "ffmpeg")
        self.extraction_workers = int(os.environ.get("EXTRACTION_WORKERS", "4"))
        self.output_codec = os.environ.get("OUTPUT_CODEC", "libmp3lame")
        self.output_bitrate = os.environ.get("OUTPUT_BITRATE", "128k")
        self.slice_timeout = float(os.environ.get("SLICE_TIMEOUT_S", "120"))
        self.download_retries = int(os.environ.get("DOWNLOAD_RETRIES", "2"))

        # Local storage
        self.work_dir = os.environ.get("WORK_DIR", "/tmp/audio-extraction")
        self.data_dir = os.environ.get("DATA_DIR", "/data")
        self.public_base_url = os.environ.get("PUBLIC_BASE_URL") or None
        Path(self.work_dir).mkdir(parents=True, exist_ok=True)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
            "infra": self.infra,
            "provider_base_url": self.provider_base_url,
            "has_hume_api_key": self.hume_api_key is not None,
            "correlation_tolerance_ms": self.correlation_tolerance_ms,
            "candidate_limit": self.candidate_limit,
            "default_tail_ms": self.default_tail_ms,
            "strict_timestamps": self.strict_timestamps,
            "poll_max_attempts": self.poll_max_attempts,
            "poll_interval_ms": self.poll_interval_ms,
            "extraction_workers": self.extraction_workers,
            "ffmpeg_bin": self.ffmpeg_bin,
            "output_codec": self.output_codec,
            "work_dir": self.work_dir,
        }


config = Config()


def get_config() -> Config:
    return config


def create_provider_adapter(cfg: Config):
    """Create the voice provider adapter (Hume EVI)."""
    from adapters.hume.provider import HumeVoiceProviderAdapter
    return HumeVoiceProviderAdapter(
        api_key=cfg.hume_api_key,
        base_url=cfg.provider_base_url,
        timeout=cfg.http_timeout,
    )


def create_audio_adapters(cfg: Config):
    """Create the slicing (ffmpeg) and download (httpx) adapters."""
    from adapters.ffmpeg.audio import FFmpegAudioAdapter
    from adapters.http.download import HttpAudioDownloader
    return (
        FFmpegAudioAdapter(ffmpeg_bin=cfg.ffmpeg_bin, bitrate=cfg.output_bitrate, default_timeout=cfg.slice_timeout),
        HttpAudioDownloader(timeout=cfg.http_timeout),
    )


def create_infra_adapters(cfg: Config):
    """Create infrastructure adapters based on INFRA env var."""
    from adapters.local.file_object_storage import LocalFileObjectStorage
    from adapters.local.json_conversation_store import JsonFileConversationStore
    from adapters.local.json_correlation_store import JsonFileCorrelationStore
    from adapters.local.log_progress import LogProgressAdapter

    infra = cfg.infra

    if infra == "local":
        data_dir = Path(cfg.data_dir)
        adapters = {
            "correlations": JsonFileCorrelationStore(str(data_dir / "chat-metadata.json")),
            "conversations": JsonFileConversationStore(str(data_dir / "conversations")),
            "storage": LocalFileObjectStorage(str(data_dir / "conversation-audio"), cfg.public_base_url),
            "progress": LogProgressAdapter(),
        }
    else:
        raise ValueError(f"Unknown INFRA: {infra!r}. Valid options: local")

    logger.info(f"Infra adapters: {infra} -> {', '.join(type(v).__name__ for v in adapters.values())}")
    return adapters


def create_use_case(cfg: Config):
    """Wire the full reconstruction pipeline from configuration."""
    from use_cases.correlate import SessionCorrelator
    from use_cases.extract import SegmentExtractionEngine
    from use_cases.persist import ArtifactPersistence
    from use_cases.reconstruct import ReconstructConversationAudioUseCase
    from use_cases.reconstruction_job import ReconstructionJobClient

    infra = create_infra_adapters(cfg)
    provider = create_provider_adapter(cfg)
    slicer, downloader = create_audio_adapters(cfg)

    correlator = SessionCorrelator(
        infra["correlations"], provider, infra["conversations"],
        tolerance_ms=cfg.correlation_tolerance_ms,
        candidate_limit=cfg.candidate_limit,
    )
    extractor = SegmentExtractionEngine(
        slicer, downloader, cfg.work_dir,
        codec=cfg.output_codec,
        max_workers=cfg.extraction_workers,
        slice_timeout=cfg.slice_timeout,
        download_retries=cfg.download_retries,
    )
    persistence = ArtifactPersistence(
        infra["storage"], infra["conversations"], max_workers=cfg.extraction_workers,
    )
    return ReconstructConversationAudioUseCase(
        conversations=infra["conversations"],
        correlator=correlator,
        jobs=ReconstructionJobClient(provider),
        extractor=extractor,
        persistence=persistence,
        progress=infra["progress"],
        default_tail_ms=cfg.default_tail_ms,
        strict_timestamps=cfg.strict_timestamps,
    )
