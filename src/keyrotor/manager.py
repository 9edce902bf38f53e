import asyncio
import contextlib
import logging
import os
import random
import threading
import time
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, TypeVar, Union

from . import wrappers
from .env import load_keyconfigs_from_env
from .policies import SelectionPolicy, coerce_policy
from .state import KeyEntry
from .storage import BlobStore, KeyStore, coerce_store
from .types import AuthConfig, KeyConfig, Result, RotationConfig

T = TypeVar("T")

# loader flags forwarded by from_env / register_from_env
_ENV_LOADER_FLAGS = {"to_lower_names", "split_commas", "strip_prefix"}


@dataclass(frozen=True)
class RotationStatus:
    service: str
    total_keys: int
    active_keys: int
    needs_rotation: int
    keys: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _index_of(pool: list[KeyEntry], key_id: str) -> Union[int, None]:
    for idx, entry in enumerate(pool):
        if entry.key_id == key_id:
            return idx
    return None


# ---------- Base manager (shared logic; locking and I/O handled by subclasses) ----------


class _RotationCore:
    def __init__(
        self,
        store: Union[KeyStore, BlobStore, str, os.PathLike, None],
        config: Union[RotationConfig, None],
        policy: Union[object, None],
        clock: Union[Callable[[], float], None],
        log_level: Union[int, None],
        **kwargs,
    ):
        """Initialize a _RotationCore.

        Args:
            store: KeyStore, BlobStore or JSON file path; a fresh in-memory store when None
            config (RotationConfig | None): default limits for new keys
            policy: SelectionPolicy, policy name or callable (see coerce_policy)
            clock: zero-argument callable returning epoch seconds (default time.time)
            log_level (int | None): level applied to the "keyrotor" logger
            kwargs:
            - rotation_interval / max_usage_count / max_failure_count /
              count_success_usage: build a RotationConfig when config is None
            - auth_config: AuthConfig used by auth()
        """
        self._store: KeyStore = coerce_store(store)
        if config is not None:
            self.config = config
        else:
            defaults = RotationConfig()
            self.config = RotationConfig(
                rotation_interval=kwargs.get("rotation_interval", defaults.rotation_interval),
                max_usage_count=kwargs.get("max_usage_count", defaults.max_usage_count),
                max_failure_count=kwargs.get("max_failure_count", defaults.max_failure_count),
                count_success_usage=kwargs.get(
                    "count_success_usage", defaults.count_success_usage
                ),
            )
        self._policy: SelectionPolicy = coerce_policy(policy)
        self._clock = clock or time.time
        self._auth_config: AuthConfig = kwargs.get("auth_config") or AuthConfig()
        # last known pool per service; entries are frozen, lists are replaced not mutated
        self._cache: dict[str, list[KeyEntry]] = {}
        self._logger = logging.getLogger("keyrotor")
        if log_level is not None:
            with contextlib.suppress(Exception):
                self._logger.setLevel(log_level)

    @property
    def store(self) -> KeyStore:
        return self._store

    def _now(self) -> float:
        return self._clock()

    # --- entry construction ---
    def _generate_key_id(self, service: str, taken: set[str]) -> str:
        while True:
            key_id = f"{service}_{int(self._now() * 1000)}_{random.randint(0, 9999)}"
            if key_id not in taken:
                return key_id

    def _new_entry(
        self,
        service: str,
        secret: str,
        pool: list[KeyEntry],
        key_id: Union[str, None] = None,
        rotation_interval: Union[float, None] = None,
        max_usage: Union[int, None] = None,
        max_failures: Union[int, None] = None,
    ) -> KeyEntry:
        taken = {e.key_id for e in pool}
        if key_id is None:
            key_id = self._generate_key_id(service, taken)
        elif key_id in taken:
            raise ValueError(f"key_id {key_id!r} already registered for {service}")
        now = self._now()
        return KeyEntry(
            key_id=key_id,
            secret=secret,
            service_name=service,
            created_at=now,
            last_used_at=now,
            rotation_interval=(
                self.config.rotation_interval if rotation_interval is None else rotation_interval
            ),
            max_usage_count=max_usage if max_usage is not None else self.config.max_usage_count,
            max_failure_count=(
                max_failures if max_failures is not None else self.config.max_failure_count
            ),
        )

    # --- pure pool transitions: each returns the pool to persist (or None for no-op) ---
    def _select(
        self, service: str, pool: list[KeyEntry]
    ) -> tuple[Union[list[KeyEntry], None], Union[KeyEntry, None]]:
        now = self._now()
        if not pool:
            self._logger.warning(f"service={service} has no registered keys")
            return None, None
        valid = [e for e in pool if e.is_valid(now)]
        if not valid:
            self._logger.warning(f"service={service} has no valid keys; total={len(pool)}")
            for e in pool:
                self._logger.debug(f"  - {e.log_string(now)}")
            return None, None
        chosen = self._policy.select(valid, service)
        used = chosen.mark_used(now)
        updated = pool[:]
        updated[pool.index(chosen)] = used
        self._logger.debug(f"using {used.log_string(now)}")
        return updated, used

    def _apply_success(self, service: str, pool: list[KeyEntry], key_id: str):
        idx = _index_of(pool, key_id)
        if idx is None:
            self._logger.warning(f"success reported for unknown key={key_id} service={service}")
            return None
        now = self._now()
        entry = pool[idx]
        updated = pool[:]
        updated[idx] = entry.mark_used(now) if self.config.count_success_usage else entry.touch(now)
        self._logger.debug(f"success recorded key={key_id} service={service}")
        return updated

    def _apply_failure(
        self, service: str, pool: list[KeyEntry], key_id: str, deactivate_if_exhausted: bool
    ):
        idx = _index_of(pool, key_id)
        if idx is None:
            self._logger.warning(f"failure reported for unknown key={key_id} service={service}")
            return None
        entry = pool[idx].mark_failed(self._now())
        if deactivate_if_exhausted and entry.failure_count >= entry.max_failure_count:
            self._logger.warning(
                f"key={key_id} service={service} reached max failures "
                f"({entry.failure_count}/{entry.max_failure_count}); deactivating"
            )
            entry = entry.deactivate()
        updated = pool[:]
        updated[idx] = entry
        self._logger.warning(
            f"failure recorded key={key_id} service={service} "
            f"failures={entry.failure_count}/{entry.max_failure_count}"
        )
        return updated

    def _apply_rotation(
        self, service: str, pool: list[KeyEntry], new_secrets: Iterable[str]
    ) -> tuple[list[KeyEntry], list[str]]:
        now = self._now()
        deactivated: list[str] = []
        updated: list[KeyEntry] = []
        for e in pool:
            if e.active and e.needs_rotation(now):
                self._logger.debug(f"deactivating key={e.key_id} service={service} for rotation")
                e = e.deactivate()
                deactivated.append(e.key_id)
            updated.append(e)
        for secret in new_secrets:
            entry = self._new_entry(service, secret, updated)
            updated.append(entry)
            self._logger.debug(f"added key={entry.key_id} service={service} during rotation")
        self._logger.info(
            f"rotation done service={service} deactivated={len(deactivated)} total={len(updated)}"
        )
        return updated, deactivated

    def _status(self, service: str, pool: list[KeyEntry]) -> RotationStatus:
        now = self._now()
        return RotationStatus(
            service=service,
            total_keys=len(pool),
            active_keys=sum(1 for e in pool if e.active and e.is_valid(now)),
            needs_rotation=sum(1 for e in pool if e.needs_rotation(now)),
            keys=[e.log_string(now) for e in pool],
        )

    def _cached_services(self) -> list[str]:
        return list(self._cache)

    def _merge_service_names(self, names: list[str]) -> list[str]:
        return names + [s for s in self._cached_services() if s not in names]

    @staticmethod
    def _split_env_kwargs(kwargs: dict) -> dict:
        return {k: kwargs.pop(k) for k in list(kwargs) if k in _ENV_LOADER_FLAGS}


# ---------- Sync manager ----------


class RotationManager(_RotationCore):
    def __init__(
        self,
        store: Union[KeyStore, BlobStore, str, os.PathLike, None] = None,
        config: Union[RotationConfig, None] = None,
        policy: Union[object, None] = None,
        clock: Union[Callable[[], float], None] = None,
        log_level: Union[int, None] = None,
        **kwargs,
    ):
        super().__init__(store, config, policy, clock, log_level, **kwargs)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # cache writes for different services happen under different service locks
        self._cache_guard = threading.Lock()

    def _service_lock(self, service: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(service)
            if lock is None:
                lock = self._locks[service] = threading.Lock()
            return lock

    # internal: callers hold the service lock
    def _load(self, service: str) -> list[KeyEntry]:
        cached = self._cache.get(service)
        if cached is not None:
            return cached
        pool = self._store.load(service)
        if pool:
            with self._cache_guard:
                self._cache[service] = pool
        return pool

    def _persist(self, service: str, pool: list[KeyEntry]) -> None:
        # the cache stays authoritative even if the store write fails
        with self._cache_guard:
            self._cache[service] = pool
        self._store.save(service, pool)

    # ---------- registration ----------
    def register_key(
        self,
        service: str,
        secret: str,
        key_id: Union[str, None] = None,
        rotation_interval: Union[float, None] = None,
        max_usage: Union[int, None] = None,
        max_failures: Union[int, None] = None,
    ) -> KeyEntry:
        with self._service_lock(service):
            pool = self._load(service)
            entry = self._new_entry(
                service, secret, pool, key_id, rotation_interval, max_usage, max_failures
            )
            self._persist(service, [*pool, entry])
        self._logger.debug(f"registered {entry.log_string(entry.created_at)}")
        return entry

    def register_keys(self, service: str, configs: Iterable[KeyConfig]) -> list[KeyEntry]:
        return [self.register_key(service, c.secret, key_id=c.key_id) for c in configs]

    def register_from_env(
        self,
        service: str,
        names=None,
        prefix: Union[str, None] = None,
        env_path: Union[str, None] = None,
        **kwargs,
    ) -> list[KeyEntry]:
        configs = load_keyconfigs_from_env(names=names, prefix=prefix, env_path=env_path, **kwargs)
        return self.register_keys(service, configs)

    @classmethod
    def from_env(
        cls,
        service: str,
        names=None,
        prefix: Union[str, None] = None,
        env_path: Union[str, None] = None,
        **kwargs,
    ) -> "RotationManager":
        """Create a manager and register the keys found in the environment under `service`.

        kwargs keywords:
        to_lower_names / split_commas / strip_prefix: forwarded to the env loader
        everything else: forwarded to the constructor
        """
        loader_kwargs = cls._split_env_kwargs(kwargs)
        manager = cls(**kwargs)
        manager.register_from_env(service, names, prefix, env_path, **loader_kwargs)
        return manager

    # ---------- selection and outcomes ----------
    def take_key(self, service: str) -> Union[KeyEntry, None]:
        """Select a valid key, mark it used and return the updated entry (None if none)."""
        with self._service_lock(service):
            pool, entry = self._select(service, self._load(service))
            if pool is not None:
                self._persist(service, pool)
        return entry

    def get_active_key(self, service: str) -> Union[str, None]:
        entry = self.take_key(service)
        return entry.secret if entry is not None else None

    def get_keys(self, service: str) -> list[KeyEntry]:
        with self._service_lock(service):
            return list(self._load(service))

    def record_success(self, service: str, key_id: str) -> None:
        with self._service_lock(service):
            pool = self._apply_success(service, self._load(service), key_id)
            if pool is not None:
                self._persist(service, pool)

    def record_failure(
        self, service: str, key_id: str, deactivate_if_exhausted: bool = True
    ) -> None:
        with self._service_lock(service):
            pool = self._apply_failure(
                service, self._load(service), key_id, deactivate_if_exhausted
            )
            if pool is not None:
                self._persist(service, pool)

    # ---------- rotation and status ----------
    def rotate_keys(self, service: str, new_secrets: Iterable[str] = ()) -> list[str]:
        with self._service_lock(service):
            pool, deactivated = self._apply_rotation(service, self._load(service), new_secrets)
            self._persist(service, pool)
        return deactivated

    def needs_rotation(self, service: str) -> bool:
        now = self._now()
        return any(e.needs_rotation(now) for e in self.get_keys(service))

    def get_rotation_status(self, service: str) -> RotationStatus:
        return self._status(service, self.get_keys(service))

    # ---------- administration ----------
    def _cached_services(self) -> list[str]:
        with self._cache_guard:
            return list(self._cache)

    def get_all_services(self) -> list[str]:
        return self._merge_service_names(self._store.list_service_names())

    def clear_keys(self, service: str) -> None:
        self._logger.debug(f"clearing keys for service={service}")
        with self._service_lock(service):
            self._store.remove(service)
            with self._cache_guard:
                self._cache.pop(service, None)

    def clear_all_keys(self) -> None:
        for service in self.get_all_services():
            self.clear_keys(service)

    # ---------- rotating-call wrappers ----------
    def with_rotating_key(self, service: str, action: Callable[[str], Any]) -> bool:
        return wrappers.with_rotating_key(self, service, action)

    def with_rotating_key_result(self, service: str, action: Callable[[str], T]) -> Result[T]:
        return wrappers.with_rotating_key_result(self, service, action)

    # ---------- HTTP integrations ----------
    def auth(self, service: str, **kwargs):
        """Return a RotatingAuth usable with requests and httpx.Client."""
        from .auth import RotatingAuth  # noqa: PLC0415

        kwargs.setdefault("auth_config", self._auth_config)
        return RotatingAuth(self, service, **kwargs)

    def requests_session(self, service: str, session=None, **kwargs):
        import requests  # noqa: PLC0415

        sess = session if session is not None else requests.Session()
        sess.auth = self.auth(service, **kwargs)
        return sess

    def httpx_client(self, service: str, auth_kwargs: Union[dict, None] = None, **client_kwargs):
        import httpx  # noqa: PLC0415

        return httpx.Client(auth=self.auth(service, **(auth_kwargs or {})), **client_kwargs)


# ---------- Async manager ----------


class AsyncRotationManager(_RotationCore):
    """Coroutine flavour of RotationManager.

    Store I/O runs in a worker thread, serialized per service by an asyncio.Lock, so a
    slow store only holds up callers of the same service.
    """

    def __init__(
        self,
        store: Union[KeyStore, BlobStore, str, os.PathLike, None] = None,
        config: Union[RotationConfig, None] = None,
        policy: Union[object, None] = None,
        clock: Union[Callable[[], float], None] = None,
        log_level: Union[int, None] = None,
        **kwargs,
    ):
        super().__init__(store, config, policy, clock, log_level, **kwargs)
        self._locks: dict[str, asyncio.Lock] = {}

    def _service_lock(self, service: str) -> asyncio.Lock:
        lock = self._locks.get(service)
        if lock is None:
            lock = self._locks[service] = asyncio.Lock()
        return lock

    async def _load(self, service: str) -> list[KeyEntry]:
        cached = self._cache.get(service)
        if cached is not None:
            return cached
        pool = await asyncio.to_thread(self._store.load, service)
        if pool:
            self._cache[service] = pool
        return pool

    async def _persist(self, service: str, pool: list[KeyEntry]) -> None:
        # visible to other callers even if this call is cancelled mid-write
        self._cache[service] = pool
        await asyncio.to_thread(self._store.save, service, pool)

    # ---------- registration ----------
    async def register_key(
        self,
        service: str,
        secret: str,
        key_id: Union[str, None] = None,
        rotation_interval: Union[float, None] = None,
        max_usage: Union[int, None] = None,
        max_failures: Union[int, None] = None,
    ) -> KeyEntry:
        async with self._service_lock(service):
            pool = await self._load(service)
            entry = self._new_entry(
                service, secret, pool, key_id, rotation_interval, max_usage, max_failures
            )
            await self._persist(service, [*pool, entry])
        self._logger.debug(f"registered {entry.log_string(entry.created_at)}")
        return entry

    async def register_keys(self, service: str, configs: Iterable[KeyConfig]) -> list[KeyEntry]:
        return [await self.register_key(service, c.secret, key_id=c.key_id) for c in configs]

    async def register_from_env(
        self,
        service: str,
        names=None,
        prefix: Union[str, None] = None,
        env_path: Union[str, None] = None,
        **kwargs,
    ) -> list[KeyEntry]:
        configs = load_keyconfigs_from_env(names=names, prefix=prefix, env_path=env_path, **kwargs)
        return await self.register_keys(service, configs)

    @classmethod
    async def from_env(
        cls,
        service: str,
        names=None,
        prefix: Union[str, None] = None,
        env_path: Union[str, None] = None,
        **kwargs,
    ) -> "AsyncRotationManager":
        loader_kwargs = cls._split_env_kwargs(kwargs)
        manager = cls(**kwargs)
        await manager.register_from_env(service, names, prefix, env_path, **loader_kwargs)
        return manager

    # ---------- selection and outcomes ----------
    async def take_key(self, service: str) -> Union[KeyEntry, None]:
        async with self._service_lock(service):
            pool, entry = self._select(service, await self._load(service))
            if pool is not None:
                await self._persist(service, pool)
        return entry

    async def get_active_key(self, service: str) -> Union[str, None]:
        entry = await self.take_key(service)
        return entry.secret if entry is not None else None

    async def get_keys(self, service: str) -> list[KeyEntry]:
        async with self._service_lock(service):
            return list(await self._load(service))

    async def record_success(self, service: str, key_id: str) -> None:
        async with self._service_lock(service):
            pool = self._apply_success(service, await self._load(service), key_id)
            if pool is not None:
                await self._persist(service, pool)

    async def record_failure(
        self, service: str, key_id: str, deactivate_if_exhausted: bool = True
    ) -> None:
        async with self._service_lock(service):
            pool = self._apply_failure(
                service, await self._load(service), key_id, deactivate_if_exhausted
            )
            if pool is not None:
                await self._persist(service, pool)

    # ---------- rotation and status ----------
    async def rotate_keys(self, service: str, new_secrets: Iterable[str] = ()) -> list[str]:
        async with self._service_lock(service):
            pool, deactivated = self._apply_rotation(
                service, await self._load(service), new_secrets
            )
            await self._persist(service, pool)
        return deactivated

    async def needs_rotation(self, service: str) -> bool:
        now = self._now()
        return any(e.needs_rotation(now) for e in await self.get_keys(service))

    async def get_rotation_status(self, service: str) -> RotationStatus:
        return self._status(service, await self.get_keys(service))

    # ---------- administration ----------
    async def get_all_services(self) -> list[str]:
        names = await asyncio.to_thread(self._store.list_service_names)
        return self._merge_service_names(names)

    async def clear_keys(self, service: str) -> None:
        self._logger.debug(f"clearing keys for service={service}")
        async with self._service_lock(service):
            await asyncio.to_thread(self._store.remove, service)
            self._cache.pop(service, None)

    async def clear_all_keys(self) -> None:
        for service in await self.get_all_services():
            await self.clear_keys(service)

    # ---------- rotating-call wrappers ----------
    async def with_rotating_key(
        self, service: str, action: Callable[[str], Union[Awaitable[Any], Any]]
    ) -> bool:
        return await wrappers.awith_rotating_key(self, service, action)

    async def with_rotating_key_result(
        self, service: str, action: Callable[[str], Union[Awaitable[T], T]]
    ) -> Result[T]:
        return await wrappers.awith_rotating_key_result(self, service, action)

    # ---------- HTTP integrations ----------
    def auth(self, service: str, **kwargs):
        """Return a RotatingAuth usable with httpx.AsyncClient and aiohttp sessions."""
        from .auth import RotatingAuth  # noqa: PLC0415

        kwargs.setdefault("auth_config", self._auth_config)
        return RotatingAuth(self, service, **kwargs)

    def httpx_client(self, service: str, auth_kwargs: Union[dict, None] = None, **client_kwargs):
        import httpx  # noqa: PLC0415

        return httpx.AsyncClient(auth=self.auth(service, **(auth_kwargs or {})), **client_kwargs)

    def aiohttp_session(
        self, service: str, auth_kwargs: Union[dict, None] = None, **session_kwargs
    ):
        """Return an aiohttp.ClientSession whose requests draw keys from `service`.

        Must be called from a running event loop, like any aiohttp.ClientSession.
        """
        import aiohttp  # noqa: PLC0415

        trace = self.auth(service, **(auth_kwargs or {})).trace_config()
        trace_configs = [*(session_kwargs.pop("trace_configs", None) or []), trace]
        return aiohttp.ClientSession(trace_configs=trace_configs, **session_kwargs)
