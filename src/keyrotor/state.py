from dataclasses import dataclass, fields, replace
from typing import Any

from .types import (
    DEFAULT_MAX_FAILURES,
    DEFAULT_MAX_USAGE,
    DEFAULT_ROTATION_INTERVAL,
    SECONDS_PER_DAY,
)


@dataclass(frozen=True)
class KeyEntry:
    key_id: str
    secret: str
    service_name: str
    created_at: float
    last_used_at: float
    usage_count: int = 0
    active: bool = True
    rotation_interval: float = DEFAULT_ROTATION_INTERVAL  # seconds
    max_usage_count: int = DEFAULT_MAX_USAGE
    failure_count: int = 0
    max_failure_count: int = DEFAULT_MAX_FAILURES

    def __post_init__(self):
        if self.rotation_interval <= 0:
            raise ValueError("rotation_interval must be positive")
        if self.max_usage_count <= 0:
            raise ValueError("max_usage_count must be positive")
        if self.max_failure_count <= 0:
            raise ValueError("max_failure_count must be positive")

    def __repr__(self) -> str:
        # keep secrets out of reprs and tracebacks
        return (
            f"KeyEntry(key_id={self.key_id!r}, service_name={self.service_name!r}, "
            f"active={self.active}, usage_count={self.usage_count}, "
            f"failure_count={self.failure_count})"
        )

    # ---------- predicates (evaluated fresh against `now`) ----------
    def needs_rotation(self, now: float) -> bool:
        return (
            not self.active
            or now - self.created_at >= self.rotation_interval
            or self.usage_count >= self.max_usage_count
            or self.failure_count >= self.max_failure_count
            # idle for too long
            or now - self.last_used_at >= 2 * self.rotation_interval
        )

    def is_valid(self, now: float) -> bool:
        return (
            self.active
            and self.failure_count < self.max_failure_count
            and self.usage_count < self.max_usage_count
            and now - self.created_at < 2 * self.rotation_interval
        )

    # ---------- transitions (return a new entry) ----------
    def mark_used(self, now: float) -> "KeyEntry":
        return replace(
            self,
            last_used_at=max(self.last_used_at, now),
            usage_count=self.usage_count + 1,
        )

    def mark_failed(self, now: float) -> "KeyEntry":
        return replace(
            self,
            failure_count=self.failure_count + 1,
            last_used_at=max(self.last_used_at, now),
        )

    def deactivate(self) -> "KeyEntry":
        return replace(self, active=False)

    def touch(self, now: float) -> "KeyEntry":
        return replace(self, last_used_at=max(self.last_used_at, now))

    def log_string(self, now: float) -> str:
        """One-line summary for logs and status reports; never includes the secret."""
        age_days = int((now - self.created_at) // SECONDS_PER_DAY)
        return (
            f"KeyEntry(id={self.key_id}, service={self.service_name}, active={self.active}, "
            f"usage={self.usage_count}/{self.max_usage_count}, "
            f"failures={self.failure_count}/{self.max_failure_count}, age={age_days} days)"
        )

    # ---------- serialization ----------
    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KeyEntry":
        # unknown keys are ignored so older/newer payloads still decode
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})
