# access_gate.py
"""API-key authentication and fixed-window, per-identity rate limiting.

Buckets are keyed by ``"<tier>:<identity>"`` and live only in process
memory; a restart clears all rate history.
"""

import logging
import math
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from errors import AppError

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0
_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


class Tier(str, Enum):
    INTERNAL = "internal"
    OUTSIDER = "outsider"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class ApiKeyRecord:
    name: str
    tier: Tier


@dataclass(frozen=True)
class Caller:
    tier: Tier
    identity: str
    key_name: Optional[str] = None


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0


@dataclass
class _Bucket:
    used: int
    reset_at: float


def _parse_tier(raw: Optional[str]) -> Tier:
    if not raw or raw.lower() == "outsider":
        return Tier.OUTSIDER
    if raw.lower() == "internal":
        return Tier.INTERNAL
    raise ValueError(f'Invalid API key tier: {raw}. Use "internal" or "outsider".')


def parse_api_keys(raw: Optional[str]) -> Dict[str, ApiKeyRecord]:
    """Parse ``name:key[:tier]`` entries separated by commas into a key -> record map."""
    api_keys: Dict[str, ApiKeyRecord] = {}
    if not raw:
        return api_keys

    for entry in (part.strip() for part in raw.split(",")):
        if not entry:
            continue
        parts = [p.strip() for p in entry.split(":")]
        if len(parts) < 2 or len(parts) > 3:
            raise ValueError(f'Invalid API_KEYS entry: "{entry}". Expected format "name:key:tier".')

        name, key = parts[0], parts[1]
        if not name or not key:
            raise ValueError(f'Invalid API_KEYS entry: "{entry}". Name and key are required.')
        if key in api_keys:
            raise ValueError(f'Duplicate API key detected in API_KEYS for name "{name}".')

        api_keys[key] = ApiKeyRecord(name=name, tier=_parse_tier(parts[2] if len(parts) == 3 else None))
    return api_keys


def extract_api_key(x_api_key: Optional[str], authorization: Optional[str]) -> Optional[str]:
    """Key from the X-API-Key header, else from an ``Authorization: Bearer`` header."""
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()
    if authorization:
        match = _BEARER_RE.match(authorization.strip())
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


class RateLimiter:
    def __init__(
        self,
        limits: Dict[Tier, int],
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.limits = dict(limits)
        self.window_seconds = window_seconds
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def limit_for(self, tier: Tier) -> int:
        return self.limits.get(tier, 0)

    def check_and_consume(self, tier: Tier, identity: str) -> RateDecision:
        limit = self.limit_for(tier)
        if limit <= 0:
            return RateDecision(allowed=True, limit=0, remaining=0, reset_at=0.0)

        key = f"{tier.value}:{identity}"
        with self._lock:
            now = self._clock()
            self._sweep(now)

            bucket = self._buckets.get(key)
            if bucket is None or now >= bucket.reset_at:
                bucket = _Bucket(used=0, reset_at=now + self.window_seconds)
                self._buckets[key] = bucket

            if bucket.used >= limit:
                retry_after = max(1, math.ceil(bucket.reset_at - now))
                return RateDecision(False, limit, 0, bucket.reset_at, retry_after)

            bucket.used += 1
            return RateDecision(True, limit, limit - bucket.used, bucket.reset_at)

    def _sweep(self, now: float) -> None:
        expired = [key for key, bucket in self._buckets.items() if now >= bucket.reset_at]
        for key in expired:
            del self._buckets[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)


class AccessGate:
    def __init__(self, api_keys: Dict[str, ApiKeyRecord], require_api_key: bool, limiter: RateLimiter):
        self.api_keys = api_keys
        self.require_api_key = require_api_key
        self.limiter = limiter

    @classmethod
    def from_settings(cls, cfg, clock: Callable[[], float] = time.time) -> "AccessGate":
        limiter = RateLimiter(
            {
                Tier.INTERNAL: cfg.internal_rate_limit_per_minute,
                Tier.OUTSIDER: cfg.outsider_rate_limit_per_minute,
                Tier.ANONYMOUS: cfg.anonymous_rate_limit_per_minute,
            },
            clock=clock,
        )
        return cls(parse_api_keys(cfg.api_keys), cfg.auth_required, limiter)

    def authenticate(self, api_key: Optional[str], client_address: str) -> Caller:
        record = self.api_keys.get(api_key) if api_key else None

        # a supplied key that matches nothing is rejected even when auth is optional
        if api_key and record is None:
            raise _unauthorized()
        if record is None:
            if self.require_api_key:
                raise _unauthorized()
            return Caller(tier=Tier.ANONYMOUS, identity=client_address or "unknown")
        return Caller(tier=record.tier, identity=record.name, key_name=record.name)

    def admit(self, api_key: Optional[str], client_address: str):
        """Authenticate and consume one request from the caller's budget.

        Returns ``(caller, decision)``; raises 401 or 429 ``AppError``.
        """
        caller = self.authenticate(api_key, client_address)
        decision = self.limiter.check_and_consume(caller.tier, caller.identity)
        if not decision.allowed:
            logger.warning("rate limit exceeded tier=%s identity=%s", caller.tier.value, caller.identity)
            raise AppError(
                "RATE_LIMITED",
                "Rate limit exceeded",
                429,
                {"retry_after_seconds": decision.retry_after},
                headers={"retry-after": str(decision.retry_after), **rate_limit_headers(decision)},
            )
        return caller, decision


def rate_limit_headers(decision: RateDecision) -> Dict[str, str]:
    if decision.limit <= 0:
        return {}
    return {
        "x-rate-limit-limit": str(decision.limit),
        "x-rate-limit-remaining": str(max(decision.remaining, 0)),
        "x-rate-limit-reset": str(int(decision.reset_at)),
    }


def _unauthorized() -> AppError:
    return AppError("UNAUTHORIZED", "Missing or invalid API key", 401)
