import inspect
import threading
from typing import Callable, Union

from .state import KeyEntry

# Defaults used when inspect.signature cannot determine argument counts
DEFAULT_SELECTION_ARGC = 2  # select_fn(entries, service)
DEFAULT_KEYFN_ARGC = 1  # key_fn(entry)

# Thresholds for dispatch decisions
SELECTION_WITH_SERVICE_ARGC = 2  # selection fns receive service at 2+ args
KEYFN_WITH_SERVICE_ARGC = 2  # key fns receive service at 2+ args


def _count_positional_args(fn, default: int) -> int:
    """Return count of positional params for fn; fall back to default on failure."""
    try:
        sig = inspect.signature(fn)
        return len(
            [
                p
                for p in sig.parameters.values()
                if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
            ]
        )
    except (TypeError, ValueError):
        return default


class SelectionPolicy:
    """Picks one entry among the currently valid ones of a pool.

    ``valid`` is never empty and keeps pool order (oldest registration first).
    """

    def select(self, valid: list[KeyEntry], service: str) -> KeyEntry:
        raise NotImplementedError


class FirstValidPolicy(SelectionPolicy):
    """Deterministic priority order: always the earliest registered valid key."""

    def select(self, valid: list[KeyEntry], service: str) -> KeyEntry:
        return valid[0]


class RoundRobinPolicy(SelectionPolicy):
    """Cycle through valid keys, one cursor per service."""

    def __init__(self):
        self._cursors: dict[str, int] = {}
        self._lock = threading.Lock()

    def select(self, valid: list[KeyEntry], service: str) -> KeyEntry:
        with self._lock:
            idx = self._cursors.get(service, 0)
            self._cursors[service] = idx + 1
        return valid[idx % len(valid)]


class LeastUsedPolicy(SelectionPolicy):
    def select(self, valid: list[KeyEntry], service: str) -> KeyEntry:
        # min() keeps the first of equal candidates, so ties fall back to pool order
        return min(valid, key=lambda e: e.usage_count)


class FunctionalPolicy(SelectionPolicy):
    """Wrap a user-supplied selection function.

    Accepted function signatures:
        - select_fn(valid, service) -> KeyEntry
    """

    def __init__(self, select_fn: Callable):
        self.select_fn = select_fn

    def select(self, valid, service):
        selected = self.select_fn(valid, service)
        if selected not in valid:
            raise ValueError("Custom select function returned an entry not in 'valid'")
        return selected


class KeyFunctionPolicy(SelectionPolicy):
    """Wrap a user-supplied key function; the lowest score wins.

    Accepted function signatures:
        - key_fn(entry) -> comparable
        - key_fn(entry, service) -> comparable
    """

    def __init__(self, key_fn: Callable):
        self.key_fn = key_fn

    def select(self, valid, service):
        argc = _count_positional_args(self.key_fn, DEFAULT_KEYFN_ARGC)

        def _score(e):
            return self.key_fn(e, service) if argc >= KEYFN_WITH_SERVICE_ARGC else self.key_fn(e)

        return min(valid, key=_score)


def coerce_policy(policy: Union[object, None]) -> SelectionPolicy:
    """Turn None | str | SelectionPolicy | callable into a SelectionPolicy.

    Accepted inputs:
      - None          -> FirstValidPolicy
      - "first"       -> FirstValidPolicy
      - "round_robin" -> RoundRobinPolicy
      - "least_used"  -> LeastUsedPolicy
      - SelectionPolicy instance (returned as-is)
      - callable taking (valid, service): selection function -> FunctionalPolicy
      - callable taking (entry): key function -> KeyFunctionPolicy
    """
    if policy is None:
        return FirstValidPolicy()
    if isinstance(policy, SelectionPolicy):
        return policy
    if isinstance(policy, str):
        name = policy.lower().replace("-", "_")
        if name == "first":
            return FirstValidPolicy()
        if name == "round_robin":
            return RoundRobinPolicy()
        if name == "least_used":
            return LeastUsedPolicy()
        raise ValueError(
            "Unknown policy string. Use 'first', 'round_robin' or 'least_used', "
            "or pass a callable/SelectionPolicy."
        )
    if callable(policy):
        argc = _count_positional_args(policy, DEFAULT_SELECTION_ARGC)
        return (
            FunctionalPolicy(policy)
            if argc >= SELECTION_WITH_SERVICE_ARGC
            else KeyFunctionPolicy(policy)
        )
    raise TypeError(
        "policy must be None, 'first'|'round_robin'|'least_used', SelectionPolicy, or a callable"
    )
