import os

from .loader import section

_METRICS = ("COSINE", "IP", "L2")


class Milvus:
    def __init__(self, config: dict | None = None) -> None:
        milvus_cfg = section(config, "milvus")
        self.MILVUS_HOST: str = str(milvus_cfg.get("host", os.getenv("MILVUS_HOST", "127.0.0.1")))
        self.MILVUS_PORT: str = str(milvus_cfg.get("port", os.getenv("MILVUS_PORT", "19530")))
        self.MILVUS_URI: str = str(
            milvus_cfg.get("uri", os.getenv("MILVUS_URI", f"http://{self.MILVUS_HOST}:{self.MILVUS_PORT}"))
        )
        self.MILVUS_TOKEN: str | None = milvus_cfg.get("token") or os.getenv("MILVUS_TOKEN") or None
        self.MILVUS_COLLECTION: str = str(milvus_cfg.get("collection", os.getenv("MILVUS_COLLECTION", "fastgen_chats")))
        self.MILVUS_METRIC: str = str(milvus_cfg.get("metric", os.getenv("MILVUS_METRIC", "COSINE"))).upper()
        self.MILVUS_NLIST: int = int(milvus_cfg.get("nlist", os.getenv("MILVUS_NLIST", "1024")))
        self.MILVUS_NPROBE: int = int(milvus_cfg.get("nprobe", os.getenv("MILVUS_NPROBE", "32")))
        self.MILVUS_CLOUD: str = str(milvus_cfg.get("cloud", os.getenv("MILVUS_CLOUD", "aws")))
        self.MILVUS_REGION: str = str(milvus_cfg.get("region", os.getenv("MILVUS_REGION", "us-east-1")))

        self.PROVISION_POLL_INTERVAL: float = float(
            milvus_cfg.get("provision_poll_interval", os.getenv("PROVISION_POLL_INTERVAL", "2"))
        )
        self.PROVISION_MAX_ATTEMPTS: int = int(
            milvus_cfg.get("provision_max_attempts", os.getenv("PROVISION_MAX_ATTEMPTS", "30"))
        )
        self.PROVISION_TIMEOUT: float = float(
            milvus_cfg.get("provision_timeout", os.getenv("PROVISION_TIMEOUT", "90"))
        )

        if self.MILVUS_METRIC not in _METRICS:
            raise ValueError(f"MILVUS_METRIC must be one of {', '.join(_METRICS)}, got {self.MILVUS_METRIC!r}")
