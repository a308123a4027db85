"""
Deterministic cache key derivation.

Keys fingerprint "this computation with these inputs". Equal requests map
to equal keys; arguments are serialized canonically (sorted mappings,
sorted keyword arguments) before hashing.
"""
import hashlib
import json
from typing import Any, Callable, Dict, Mapping, Optional, Tuple


def _canonical(value: Any) -> Any:
    """Convert a value into a JSON-friendly structure with stable ordering."""
    if isinstance(value, Mapping):
        items = [(str(k), _canonical(v)) for k, v in value.items()]
        return {"__map__": sorted(items, key=lambda item: item[0])}
    if isinstance(value, (set, frozenset)):
        return {"__set__": sorted(json.dumps(_canonical(v), sort_keys=True) for v in value)}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    # Fall back to a typed repr for anything else (dates, enums, ...)
    return {"__repr__": f"{type(value).__qualname__}:{value!r}"}


def fingerprint(*parts: Any) -> str:
    """SHA-256 hex digest of the canonical form of ``parts``."""
    payload = json.dumps(_canonical(list(parts)), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def make_cache_key(namespace: str, *args: Any, **kwargs: Any) -> str:
    """
    Build a cache key from a namespace and arbitrary arguments.

    Example:
        make_cache_key("standings", league=39, season=2025)
        -> "standings:3f1c..."
    """
    return f"{namespace}:{fingerprint(args, kwargs)}"


def function_key(fn: Callable, args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> str:
    """Key for a call to ``fn`` with the given arguments."""
    identity = f"{fn.__module__}.{fn.__qualname__}"
    return make_cache_key(identity, *args, **kwargs)


def request_key(url: str, params: Optional[Dict[str, Any]] = None, method: str = "GET") -> str:
    """Key for an HTTP request, ignoring params whose value is None."""
    sorted_params = sorted((k, v) for k, v in (params or {}).items() if v is not None)
    return make_cache_key(f"{method.upper()} {url}", sorted_params)
