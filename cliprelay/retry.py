"""Retry, backoff and adaptive chunk sizing for upload requests.

``next_attempt`` is a pure function so the policy can be exercised without a
transport: given how many attempts have failed and why, it decides whether to
try again, how long to wait first, and which chunk size to use next.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

FAILURE_TIMEOUT = "timeout"
FAILURE_NETWORK = "network"
FAILURE_SERVER = "server"
FAILURE_REJECTED = "rejected"
FAILURE_UNAUTHORIZED = "unauthorized"

NON_RETRYABLE = frozenset({FAILURE_REJECTED, FAILURE_UNAUTHORIZED})
# A timeout or aborted connection suggests the link cannot carry the chunk.
SHRINKS_CHUNK = frozenset({FAILURE_TIMEOUT, FAILURE_NETWORK})
TRANSIENT_STATUSES = frozenset({408, 425, 429})


@dataclass(frozen=True)
class RetryPolicy:
    retries: int = 3
    backoff_base_sec: float = 0.3
    timeout_sec: float = 15.0
    chunk_bytes: int = 32768
    min_chunk_bytes: int = 8192

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "RetryPolicy":
        section = cfg.get("upload") or {}
        chunk_bytes = max(1, int(section.get("chunk_bytes", cls.chunk_bytes)))
        return cls(
            retries=max(0, int(section.get("retries", cls.retries))),
            backoff_base_sec=max(0.0, float(section.get("backoff_base_sec", cls.backoff_base_sec))),
            timeout_sec=float(section.get("timeout_sec", cls.timeout_sec)),
            chunk_bytes=chunk_bytes,
            min_chunk_bytes=max(1, min(chunk_bytes, int(section.get("min_chunk_bytes", cls.min_chunk_bytes)))),
        )


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float
    chunk_size: int


def backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    return policy.backoff_base_sec * (2 ** max(0, attempt))


def next_attempt(attempt: int, failure: str, chunk_size: int, policy: RetryPolicy) -> RetryDecision:
    """Decide what to do after ``attempt`` (0-based) failed with ``failure``."""

    if failure in NON_RETRYABLE:
        return RetryDecision(retry=False, delay=0.0, chunk_size=chunk_size)
    if failure in SHRINKS_CHUNK and chunk_size > policy.min_chunk_bytes:
        chunk_size = max(policy.min_chunk_bytes, chunk_size // 2)
    if attempt >= policy.retries:
        return RetryDecision(retry=False, delay=0.0, chunk_size=chunk_size)
    return RetryDecision(retry=True, delay=backoff_delay(attempt, policy), chunk_size=chunk_size)


def classify_status(status: int) -> str | None:
    """Map an HTTP status to a failure kind; ``None`` means success."""

    if 200 <= status < 300:
        return None
    if status == 401:
        return FAILURE_UNAUTHORIZED
    if status >= 500 or status in TRANSIENT_STATUSES:
        return FAILURE_SERVER
    return FAILURE_REJECTED


__all__ = [
    "FAILURE_NETWORK",
    "FAILURE_REJECTED",
    "FAILURE_SERVER",
    "FAILURE_TIMEOUT",
    "FAILURE_UNAUTHORIZED",
    "RetryDecision",
    "RetryPolicy",
    "backoff_delay",
    "classify_status",
    "next_attempt",
]
