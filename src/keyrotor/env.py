import os
from collections.abc import Iterable

from .types import KeyConfig


def _parse_env_file(env_path: str) -> dict[str, str]:
    """Parse a simple .env file into a dict without modifying os.environ.

    Supports basic KEY=VALUE pairs, ignoring comments and blank lines.
    Surrounding single/double quotes are stripped if present.
    """
    values: dict[str, str] = {}
    try:
        with open(env_path) as f:
            for raw_line in f:
                line = raw_line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, val = line.split("=", 1)
                key = key.strip()
                if key.startswith("export "):
                    key = key[len("export ") :].strip()
                val = val.strip().strip('"').strip("'")
                if key:
                    values[key] = val
    except FileNotFoundError:
        # a missing .env simply contributes nothing
        pass
    return values


def _configs_for(var_id: str, secret: str, split_commas: bool) -> list[KeyConfig]:
    if split_commas and "," in secret:
        parts = [t.strip() for t in secret.split(",") if t.strip()]
        return [
            KeyConfig(secret=part, key_id=f"{var_id}_{idx + 1}") for idx, part in enumerate(parts)
        ]
    return [KeyConfig(secret=secret.strip(), key_id=var_id)]


def load_keyconfigs_from_env(
    names: Iterable[str] | None = None,
    prefix: str | None = None,
    env_path: str | None = None,
    **kwargs,
) -> list[KeyConfig]:
    """Create KeyConfig objects from environment variables.

    - If 'names' is provided, look up each explicit env var name and create a KeyConfig
        for each found variable.
    - If 'prefix' is provided, find all env vars whose names start with the prefix and
        create a KeyConfig per match.
    - If both are provided, results are combined; a variable matched by both is only
        loaded once.
    - If 'env_path' is provided, variables from the .env file augment lookups (without
        mutating the process environment). Values in the actual environment take
        precedence over the file.

    The variable name becomes the key id; comma-separated values yield one key per
    part with ids suffixed ``_1``, ``_2``, ...

    kwargs keywords:
    to_lower_names: lowercase key ids (default False)
    split_commas: split comma-separated values (default True)
    strip_prefix: drop the prefix from key ids (default False)
    """
    file_env = _parse_env_file(env_path) if env_path else {}
    env_map: dict[str, str] = {**file_env, **os.environ}

    split_commas = kwargs.get("split_commas", True)
    to_lower_names = kwargs.get("to_lower_names", False)
    strip_prefix = kwargs.get("strip_prefix", False)

    results: list[KeyConfig] = []
    seen: set[str] = set()

    if names:
        for var in names:
            secret = env_map.get(var)
            if not secret or not secret.strip():
                continue
            seen.add(var)
            var_id = var.lower() if to_lower_names else var
            results.extend(_configs_for(var_id, secret, split_commas))

    if prefix:
        for var in sorted(env_map):
            secret = env_map[var]
            if var in seen or not var.startswith(prefix) or not secret.strip():
                continue
            name_part = var[len(prefix) :] if strip_prefix else var
            var_id = name_part.lower() if to_lower_names else name_part
            results.extend(_configs_for(var_id, secret, split_commas))

    return results
