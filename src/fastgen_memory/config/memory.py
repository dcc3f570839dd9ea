import os

from .loader import section


class Memory:
    def __init__(self, config: dict | None = None) -> None:
        mem_cfg = section(config, "memory")
        self.EMB_DIM: int = int(mem_cfg.get("emb_dim", os.getenv("EMB_DIM", "1536")))
        self.CONTENT_EXCERPT_CHARS: int = int(
            mem_cfg.get("content_excerpt_chars", os.getenv("CONTENT_EXCERPT_CHARS", "1000"))
        )
        self.RECALL_TOP_K: int = int(mem_cfg.get("recall_top_k", os.getenv("RECALL_TOP_K", "5")))
        self.QUERY_OVERFETCH: int = int(mem_cfg.get("query_overfetch", os.getenv("QUERY_OVERFETCH", "2")))
        self.STORE_RETRY_BACKOFF: float = float(
            mem_cfg.get("store_retry_backoff", os.getenv("STORE_RETRY_BACKOFF", "0.5"))
        )
        self.BACKFILL_CONCURRENCY: int = int(
            mem_cfg.get("backfill_concurrency", os.getenv("BACKFILL_CONCURRENCY", "8"))
        )
        # 0 disables the per-call deadline
        self.MEMORY_TIMEOUT: float = float(mem_cfg.get("timeout", os.getenv("MEMORY_TIMEOUT", "0")))

        if self.EMB_DIM <= 0:
            raise ValueError("EMB_DIM must be positive")
