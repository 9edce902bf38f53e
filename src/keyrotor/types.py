from dataclasses import dataclass
from typing import Generic, Literal, TypeVar, Union

T = TypeVar("T")

SECONDS_PER_DAY = 24 * 60 * 60
DEFAULT_ROTATION_INTERVAL = 7 * SECONDS_PER_DAY
DEFAULT_MAX_USAGE = 1000
DEFAULT_MAX_FAILURES = 10


@dataclass
class KeyConfig:
    secret: str
    # Optional: explicit id; generated from service name + timestamp when None.
    key_id: str | None = None


@dataclass(frozen=True)
class RotationConfig:
    rotation_interval: float = DEFAULT_ROTATION_INTERVAL  # seconds
    max_usage_count: int = DEFAULT_MAX_USAGE
    max_failure_count: int = DEFAULT_MAX_FAILURES

    # record_success() counts as another use (legacy double count) when True
    count_success_usage: bool = False


@dataclass(frozen=True)
class AuthConfig:
    header: str = "Authorization"
    scheme: str = "Bearer"
    in_: Literal["header", "query"] = "header"
    query_param: str = "api_key"

    def header_value(self, secret: str) -> str:
        return f"{self.scheme} {secret}".strip()


class NoActiveKeyError(Exception):
    """No valid credential is registered for a service.

    Callers usually surface this as a configuration problem ("add an API key").
    """

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"No active key available for {service}")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success/failure container returned by the rotating-call wrappers."""

    value: Union[T, None] = None
    error: Union[BaseException, None] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: BaseException) -> "Result[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def get_or_none(self) -> Union[T, None]:
        return self.value if self.ok else None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value
