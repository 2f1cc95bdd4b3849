"""
Per-method cache policy.

Methods fall into one of five classes:

- always immutable: the answer never changes for a given node (chain id).
- volatile: changes over time, served from cache for ``CACHE_MAX_AGE``.
- block pinned: immutable only when the call pins a block by hash.
- result based: immutable once a non-null result has been observed
  (a pending transaction has no receipt yet, a mined one never changes).
- uncacheable: everything else, including all state-changing calls.
"""

import math
import re
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional


class MethodClass(str, Enum):
    """Cache classification of an RPC method."""
    ALWAYS_IMMUTABLE = "always_immutable"
    VOLATILE = "volatile"
    BLOCK_PINNED = "block_pinned"
    RESULT_BASED = "result_based"
    UNCACHEABLE = "uncacheable"


ALWAYS_IMMUTABLE_METHODS: FrozenSet[str] = frozenset({
    "eth_chainId",
    "net_version",
})

VOLATILE_METHODS: FrozenSet[str] = frozenset({
    "eth_blockNumber",
    "eth_gasPrice",
    "eth_maxPriorityFeePerGas",
})

BLOCK_PINNED_METHODS: FrozenSet[str] = frozenset({
    "eth_call",
    "eth_getBalance",
    "eth_getCode",
    "eth_getStorageAt",
    "eth_getTransactionCount",
})

RESULT_BASED_METHODS: FrozenSet[str] = frozenset({
    "eth_getTransactionReceipt",
    "eth_getTransactionByHash",
    "eth_getBlockByHash",
})

BLOCK_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


def pins_block_hash(params: Any) -> bool:
    """Return True if the block parameter references a block by hash.

    The block parameter is the last positional one for every block pinned
    method. Accepts EIP-1898 block objects (``{"blockHash": "0x..."}``) and
    bare 32-byte hex hashes. Storage slots are also 32 bytes, which is why
    only the last position is inspected.
    """
    if not isinstance(params, list) or not params:
        return False

    block = params[-1]
    if isinstance(block, dict):
        return isinstance(block.get("blockHash"), str)
    return isinstance(block, str) and bool(BLOCK_HASH_PATTERN.match(block))


class MethodPolicy:
    """Decides max-age on read and eligibility on write for each method."""

    def __init__(
        self,
        volatile_max_age_ms: float,
        *,
        always_immutable: Iterable[str] = ALWAYS_IMMUTABLE_METHODS,
        volatile: Iterable[str] = VOLATILE_METHODS,
        block_pinned: Iterable[str] = BLOCK_PINNED_METHODS,
        result_based: Iterable[str] = RESULT_BASED_METHODS,
    ):
        self.volatile_max_age_ms = volatile_max_age_ms
        self._classes: Dict[str, MethodClass] = {}
        for methods, method_class in (
            (always_immutable, MethodClass.ALWAYS_IMMUTABLE),
            (volatile, MethodClass.VOLATILE),
            (block_pinned, MethodClass.BLOCK_PINNED),
            (result_based, MethodClass.RESULT_BASED),
        ):
            for method in methods:
                self._classes[method] = method_class

    def classify(self, method: Optional[str]) -> MethodClass:
        if method is None:
            return MethodClass.UNCACHEABLE
        return self._classes.get(method, MethodClass.UNCACHEABLE)

    def is_readable(self, method: Optional[str], params: Any) -> bool:
        """Whether a cached value may be served for this call at all."""
        method_class = self.classify(method)
        if method_class is MethodClass.UNCACHEABLE:
            return False
        if method_class is MethodClass.BLOCK_PINNED:
            return pins_block_hash(params)
        return True

    def max_age_ms(self, method: Optional[str]) -> float:
        """Maximum age of a cache entry that may still be served.

        Only meaningful for calls that pass ``is_readable``.
        """
        method_class = self.classify(method)
        if method_class is MethodClass.VOLATILE:
            return self.volatile_max_age_ms
        return math.inf

    def should_write(self, method: Optional[str], params: Any, result: Any) -> bool:
        """Cache-write predicate applied to a successful upstream result.

        A null result is never written so that a pending value (such as an
        unmined receipt) is not cached as permanently absent.
        """
        if result is None:
            return False

        method_class = self.classify(method)
        if method_class is MethodClass.UNCACHEABLE:
            return False
        if method_class is MethodClass.BLOCK_PINNED:
            return pins_block_hash(params)
        return True
