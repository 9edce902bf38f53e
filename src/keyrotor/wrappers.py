"""Single-attempt helpers: take a key, run the caller's action, report the outcome.

Despite the name nothing here retries with a second key; a failed action is recorded
against the key that was used and reported back to the caller.
"""

import inspect
import logging
from typing import Any, Callable, TypeVar

from .state import KeyEntry
from .types import NoActiveKeyError, Result

T = TypeVar("T")

UNKNOWN_KEY_ID = "unknown"

logger = logging.getLogger("keyrotor")


def resolve_key_id(entries: list[KeyEntry], secret: str) -> str:
    """Map a secret handed out by get_active_key back to its key id.

    Active matches win over retired entries carrying the same secret.
    """
    matches = [e for e in entries if e.secret == secret]
    for e in matches:
        if e.active:
            return e.key_id
    return matches[0].key_id if matches else UNKNOWN_KEY_ID


def with_rotating_key_result(manager, service: str, action: Callable[[str], T]) -> Result[T]:
    try:
        secret = manager.get_active_key(service)
        if secret is None:
            logger.error(f"no active key available for service={service}")
            return Result.failure(NoActiveKeyError(service))
        key_id = resolve_key_id(manager.get_keys(service), secret)
    except Exception as e:
        logger.error(f"could not obtain a key for service={service}: {e!r}")
        return Result.failure(e)

    try:
        value = action(secret)
        if inspect.isawaitable(value):
            if inspect.iscoroutine(value):
                value.close()
            raise TypeError(
                "action returned an awaitable; use AsyncRotationManager for async actions"
            )
    except Exception as e:
        logger.warning(f"action failed on service={service} key={key_id}: {e!r}")
        manager.record_failure(service, key_id)
        return Result.failure(e)
    manager.record_success(service, key_id)
    return Result.success(value)


def with_rotating_key(manager, service: str, action: Callable[[str], Any]) -> bool:
    return with_rotating_key_result(manager, service, action).ok


async def awith_rotating_key_result(manager, service: str, action: Callable) -> Result:
    """Async twin of with_rotating_key_result; `action` may be sync or async."""
    try:
        secret = await manager.get_active_key(service)
        if secret is None:
            logger.error(f"no active key available for service={service}")
            return Result.failure(NoActiveKeyError(service))
        key_id = resolve_key_id(await manager.get_keys(service), secret)
    except Exception as e:
        logger.error(f"could not obtain a key for service={service}: {e!r}")
        return Result.failure(e)

    try:
        value = action(secret)
        if inspect.isawaitable(value):
            value = await value
    except Exception as e:
        logger.warning(f"action failed on service={service} key={key_id}: {e!r}")
        await manager.record_failure(service, key_id)
        return Result.failure(e)
    await manager.record_success(service, key_id)
    return Result.success(value)


async def awith_rotating_key(manager, service: str, action: Callable) -> bool:
    return (await awith_rotating_key_result(manager, service, action)).ok
