import contextlib
import inspect
from typing import Union

import httpx

from .state import KeyEntry
from .types import AuthConfig, NoActiveKeyError

# Responses that count against the key that was used (besides any 5xx)
DEFAULT_FAILURE_STATUSES = frozenset({401, 403, 429})
SERVER_ERROR_MIN = 500


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class RotatingAuth(httpx.Auth):
    """One object that plugs into requests + httpx directly, with a helper for aiohttp.

    Each request takes the currently selected key from the manager, injects it, and
    reports the response back as a success or failure for that key. There is exactly
    one attempt per request; a rejected key is not retried with the next one.

    - requests: __call__(request) protocol + response hook.
    - httpx: auth_flow (RotationManager) / async_auth_flow (AsyncRotationManager).
    - aiohttp: request(session, method, url) returns an awaitable async context manager;
      trace_config() covers sessions that should inject on every request.

    Other keywords for kwargs:
    - auth_config: AuthConfig object
    - auth_header / auth_scheme / auth_in / auth_query_param: build an AuthConfig
    - failure_statuses: iterable of status codes recorded as failures
    """

    def __init__(self, manager, service: str, **kwargs):
        self.manager = manager
        self.service = service
        if kwargs.get("auth_config") is not None:
            self.auth_config: AuthConfig = kwargs["auth_config"]
        else:
            self.auth_config = AuthConfig(
                header=kwargs.get("auth_header", "Authorization"),
                scheme=kwargs.get("auth_scheme", "Bearer"),
                in_=kwargs.get("auth_in", "header"),
                query_param=kwargs.get("auth_query_param", "api_key"),
            )
        self.failure_statuses = frozenset(
            kwargs.get("failure_statuses", DEFAULT_FAILURE_STATUSES)
        )
        self._async = inspect.iscoroutinefunction(getattr(manager, "take_key", None))

    # ------------------------ outcome bookkeeping ------------------------
    def is_failure(self, status: Union[int, None]) -> bool:
        return status is None or status in self.failure_statuses or status >= SERVER_ERROR_MIN

    def _take(self) -> KeyEntry:
        key = self.manager.take_key(self.service)
        if key is None:
            raise NoActiveKeyError(self.service)
        return key

    async def _atake(self) -> KeyEntry:
        key = await _maybe_await(self.manager.take_key(self.service))
        if key is None:
            raise NoActiveKeyError(self.service)
        return key

    def _record(self, key: KeyEntry, status: Union[int, None]):
        if self.is_failure(status):
            return self.manager.record_failure(self.service, key.key_id)
        return self.manager.record_success(self.service, key.key_id)

    # ------------------------ requests auth protocol ------------------------
    def __call__(self, r):
        """Inject the key into a requests.PreparedRequest and record the response."""
        if self._async:
            raise RuntimeError("Use httpx.AsyncClient or aiohttp with an AsyncRotationManager.")
        key = self._take()
        ac = self.auth_config
        if ac.in_ == "query":
            r.prepare_url(r.url, {ac.query_param: key.secret})
        else:
            r.headers[ac.header] = ac.header_value(key.secret)

        def _hook(resp, *args, **kwargs):
            self._record(key, resp.status_code)
            return resp

        r.register_hook("response", _hook)
        return r

    # ------------------------ httpx ------------------------
    def _inject_httpx(self, request: httpx.Request, secret: str) -> None:
        ac = self.auth_config
        if ac.in_ == "query":
            request.url = request.url.copy_merge_params({ac.query_param: secret})
        else:
            request.headers[ac.header] = ac.header_value(secret)

    def auth_flow(self, request):
        if self._async:
            raise RuntimeError("Use httpx.AsyncClient with an AsyncRotationManager.")
        key = self._take()
        self._inject_httpx(request, key.secret)
        response = yield request
        self._record(key, response.status_code)

    async def async_auth_flow(self, request):
        key = await self._atake()
        self._inject_httpx(request, key.secret)
        response = yield request
        await _maybe_await(self._record(key, response.status_code))

    # ------------------------ aiohttp ------------------------
    def request(self, session, method: str, url: str, **kwargs):
        """Return an awaitable async context manager performing one aiohttp request.

        Usage:
            async with auth.request(session, "GET", url) as resp:
                data = await resp.json()
        """
        return _AiohttpRequestContext(self, session, method, url, kwargs)

    def trace_config(self):
        """Return an aiohttp.TraceConfig that injects the key and records each outcome.

        Header placement only: aiohttp does not let trace hooks rewrite the query string,
        so query-parameter keys need request()/get()/post() instead.
        """
        import aiohttp  # noqa: PLC0415

        ac = self.auth_config
        if ac.in_ == "query":
            raise ValueError("trace_config() injects headers only; use request() for query keys")
        tc = aiohttp.TraceConfig()

        @tc.on_request_start.append
        async def _start(session, ctx, params):
            # caller already set the header itself
            if ac.header in params.headers:
                return
            key = await self._atake()
            params.headers[ac.header] = ac.header_value(key.secret)
            ctx.rotating_key = key

        @tc.on_request_end.append
        async def _end(session, ctx, params):
            key = getattr(ctx, "rotating_key", None)
            if key is not None:
                await _maybe_await(self._record(key, getattr(params.response, "status", None)))

        @tc.on_request_exception.append
        async def _exception(session, ctx, params):
            key = getattr(ctx, "rotating_key", None)
            if key is not None:
                await _maybe_await(self._record(key, None))

        return tc

    def get(self, session, url: str, **kwargs):
        return self.request(session, "GET", url, **kwargs)

    def post(self, session, url: str, **kwargs):
        return self.request(session, "POST", url, **kwargs)


class _AiohttpRequestContext:
    def __init__(self, auth: RotatingAuth, session, method: str, url: str, kwargs):
        self.auth = auth
        self.session = session
        self.method = method.upper()
        self.url = url
        self.kwargs = dict(kwargs)
        self._resp = None

    async def _send(self):
        key = await self.auth._atake()
        ac = self.auth.auth_config
        headers = {**(self.kwargs.pop("headers", None) or {})}
        params = {**(self.kwargs.pop("params", None) or {})}
        if ac.in_ == "query":
            params[ac.query_param] = key.secret
        else:
            headers[ac.header] = ac.header_value(key.secret)
        try:
            resp = await self.session.request(
                self.method, self.url, headers=headers, params=params, **self.kwargs
            )
        except Exception:
            await _maybe_await(self.auth._record(key, None))
            raise
        await _maybe_await(self.auth._record(key, getattr(resp, "status", None)))
        return resp

    async def __aenter__(self):
        self._resp = await self._send()
        return self._resp

    def __await__(self):
        return self._send().__await__()

    async def __aexit__(self, exc_type, exc, tb):
        if self._resp is not None and not getattr(self._resp, "closed", True):
            with contextlib.suppress(Exception):
                await _maybe_await(self._resp.release())
        return False
