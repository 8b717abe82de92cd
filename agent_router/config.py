"""Environment-driven settings.

Every value can be set through a ``ROUTER_*`` environment variable or a
``.env`` file in the working directory.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from agent_router.cost import DEFAULT_PRICE_PER_TOKEN


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


@dataclass
class Settings:
    model: str = "gpt-4o-mini"
    api_key: str = ""
    api_base: str | None = None
    timeout_s: float = 5.0
    confidence_threshold: float = 0.6
    price_per_token: float = DEFAULT_PRICE_PER_TOKEN
    db_path: str = ""
    session_budget_usd: float | None = None
    safety_failure_threshold: int = 1
    trace_buffer_size: int = 256
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def classifier_enabled(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        budget = os.getenv("ROUTER_SESSION_BUDGET_USD", "").strip()
        return cls(
            model=os.getenv("ROUTER_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini",
            api_key=(os.getenv("ROUTER_API_KEY") or os.getenv("OPENAI_API_KEY") or "").strip(),
            api_base=os.getenv("ROUTER_API_BASE", "").strip() or None,
            timeout_s=_float("ROUTER_TIMEOUT_S", 5.0),
            confidence_threshold=_float("ROUTER_CONFIDENCE_THRESHOLD", 0.6),
            price_per_token=_float("ROUTER_PRICE_PER_TOKEN", DEFAULT_PRICE_PER_TOKEN),
            db_path=os.getenv("ROUTER_DB_PATH", "").strip(),
            session_budget_usd=float(budget) if budget else None,
            safety_failure_threshold=_int("ROUTER_SAFETY_FAILURE_THRESHOLD", 1),
            trace_buffer_size=_int("ROUTER_TRACE_BUFFER", 256),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
            log_file=os.getenv("ROUTER_LOG_FILE", "").strip() or None,
        )
