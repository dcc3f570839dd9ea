import logging
import os
from typing import List

from .loader import section

logger = logging.getLogger(__name__)

_STRATEGIES = ("prompt", "endpoint")


def _split_keys(raw: str) -> List[str]:
    return [key.strip() for key in raw.split(",") if key.strip()]


class Provider:
    def __init__(self, config: dict | None = None) -> None:
        cfg = section(config, "provider")

        keys_env = str(cfg.get("keys_env", "GEN_API_KEYS"))
        keys_cfg = cfg.get("api_keys")
        if keys_cfg:
            self.API_KEYS: List[str] = [str(k).strip() for k in keys_cfg if str(k).strip()]
        else:
            self.API_KEYS = _split_keys(os.getenv(keys_env, ""))

        self.BASE_URL: str | None = cfg.get("base_url") or os.getenv("GEN_BASE_URL") or None
        self.EMB_PROMPT_MODEL_ID: str = str(
            cfg.get("emb_prompt_model", os.getenv("EMB_PROMPT_MODEL_ID", "gpt-4o-mini"))
        )
        self.EMB_MODEL_ID: str = str(cfg.get("emb_model", os.getenv("EMB_MODEL_ID", "text-embedding-3-small")))
        self.EMB_STRATEGY: str = str(cfg.get("emb_strategy", os.getenv("EMB_STRATEGY", "prompt"))).lower()
        self.TIMEOUT: float = float(cfg.get("timeout", os.getenv("PROVIDER_TIMEOUT", "30")))
        self.CREDENTIAL_COOLDOWN: float = float(
            cfg.get("credential_cooldown", os.getenv("CREDENTIAL_COOLDOWN", "60"))
        )
        self.EMBED_MAX_ATTEMPTS: int = int(cfg.get("embed_max_attempts", os.getenv("EMBED_MAX_ATTEMPTS", "3")))
        self.POOL_RETRY_DELAY: float = float(cfg.get("pool_retry_delay", os.getenv("POOL_RETRY_DELAY", "1.0")))

        if not self.API_KEYS:
            raise ValueError(f"Missing environment variables: {keys_env}")
        if self.EMB_STRATEGY not in _STRATEGIES:
            raise ValueError(
                f"EMB_STRATEGY must be one of {', '.join(_STRATEGIES)}, got {self.EMB_STRATEGY!r}"
            )
        if self.EMBED_MAX_ATTEMPTS < 1:
            raise ValueError("EMBED_MAX_ATTEMPTS must be at least 1")
