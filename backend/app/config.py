import os
from typing import List


PARTIAL_RECEIPT_POLICIES = ("write_off", "return_to_source")
EVENT_SINKS = ("outbox", "log")


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _env_int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except Exception:
            return default

    def _env_choice(self, name: str, choices, default: str) -> str:
        raw = (os.getenv(name) or "").strip().lower()
        return raw if raw in choices else default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/inventory')
        # Comma-separated list of allowed CORS origins for browser/mobile clients.
        # Default keeps local dev working out of the box.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Bounded optimistic retries for compare-and-set stock updates.
        self.cas_max_retries = max(1, self._env_int("INVENTORY_CAS_MAX_RETRIES", 5))
        # What happens to the undelivered remainder of a partially received transfer.
        self.partial_receipt_policy = self._env_choice(
            "INVENTORY_PARTIAL_RECEIPT_POLICY", PARTIAL_RECEIPT_POLICIES, "write_off"
        )
        # Location used for bulk adjustments and order deductions when none is given.
        self.default_location_id = (os.getenv("INVENTORY_DEFAULT_LOCATION_ID") or "").strip() or "main"
        self.events_sink = self._env_choice("INVENTORY_EVENTS_SINK", EVENT_SINKS, "outbox")

settings = Settings()
