import os
import shutil
import logging
import uvicorn

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

if os.environ.get("DEBUG", "0") == "1":
    logging.getLogger().setLevel(logging.DEBUG)

from api import create_app
from config import get_config

config = get_config()
if not config.hume_api_key:
    logger.error("HUME_API_KEY is not set; provider calls will fail")
app = create_app()

if __name__ == "__main__":
    logger.info(f"Starting conversation audio service on {config.host}:{config.port}")
    ffmpeg_path = shutil.which(config.ffmpeg_bin)
    if ffmpeg_path:
        logger.info(f"ffmpeg: {ffmpeg_path}")
    else:
        logger.warning(f"ffmpeg not found ({config.ffmpeg_bin}); turn extraction will fail")
    logger.info(f"Infra: {config.infra}, data dir: {config.data_dir}, work dir: {config.work_dir}")

    uvicorn.run(app, host=config.host, port=config.port)
