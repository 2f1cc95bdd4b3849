"""
Cache key derivation for JSON-RPC calls.
"""

import json
from typing import Any


def canonical_params(params: Any) -> str:
    """Serialize call parameters so equal structures give equal strings."""
    return json.dumps(params, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def make_cache_key(method: str, params: Any) -> str:
    """Build the cache key for a call: method name followed by its params."""
    return f"{method}{canonical_params(params)}"
