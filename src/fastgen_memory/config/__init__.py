"""Application configuration"""

import logging
from dotenv import load_dotenv

from .loader import load_raw_config
from .provider import Provider
from .milvus import Milvus
from .memory import Memory

load_dotenv()

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s]: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logging.basicConfig(format=LOG_FORMAT, datefmt=DATE_FORMAT, level=logging.INFO)
logging.getLogger("httpx").setLevel(logging.WARNING)

_RAW_CONFIG = load_raw_config()

provider = Provider(_RAW_CONFIG)
milvus = Milvus(_RAW_CONFIG)
memory = Memory(_RAW_CONFIG)


class Config:
    provider = provider
    milvus = milvus
    memory = memory


__all__ = ["provider", "milvus", "memory", "Config"]
