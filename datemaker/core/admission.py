"""Fixed-window admission control per client identity and route class."""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from redis.exceptions import RedisError

logger = logging.getLogger("datemaker")

GENERAL = "general"
PLACES = "places"
GEOCODE = "geocode"
PHOTO = "photo"
CHECKOUT = "checkout"

# Specific route classes by path prefix. Every /api route also counts
# against the general class unless exempt.
PREFIX_MAP: Dict[str, List[str]] = {
    PLACES: ["/api/places"],
    GEOCODE: ["/api/geocode"],
    PHOTO: ["/api/photo"],
    CHECKOUT: ["/api/create-checkout-session", "/api/create-web-checkout"],
}

GENERAL_PREFIX = "/api/"

# Provider-to-server traffic; throttling it would drop billing events
EXEMPT_PATHS = {"/api/webhook"}


@dataclass(frozen=True)
class RoutePolicy:
    route_class: str
    limit: int
    window_seconds: int
    message: str = "Too many requests, please try again later."


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    route_class: str
    limit: int
    remaining: int
    retry_after: int
    message: str = ""


@dataclass(frozen=True)
class WindowState:
    count: int
    resets_in: float


def build_admission_policies(cfg) -> Dict[str, RoutePolicy]:
    places_limit = cfg.ADMISSION_PLACES_LIMIT
    return {
        GENERAL: RoutePolicy(GENERAL, cfg.ADMISSION_GENERAL_LIMIT, cfg.ADMISSION_GENERAL_WINDOW_SECONDS),
        PLACES: RoutePolicy(
            PLACES,
            places_limit,
            cfg.ADMISSION_PLACES_WINDOW_SECONDS,
            f"Daily date generation limit reached ({places_limit}/day). Please try again tomorrow.",
        ),
        GEOCODE: RoutePolicy(GEOCODE, cfg.ADMISSION_GEOCODE_LIMIT, cfg.ADMISSION_GEOCODE_WINDOW_SECONDS),
        PHOTO: RoutePolicy(PHOTO, cfg.ADMISSION_PHOTO_LIMIT, cfg.ADMISSION_PHOTO_WINDOW_SECONDS),
        CHECKOUT: RoutePolicy(
            CHECKOUT,
            cfg.ADMISSION_CHECKOUT_LIMIT,
            cfg.ADMISSION_CHECKOUT_WINDOW_SECONDS,
            "Too many checkout attempts, please try again later.",
        ),
    }


def route_classes_for_path(path: str) -> Tuple[str, ...]:
    """Route classes a request path counts against, most general first."""
    if path in EXEMPT_PATHS or not path.startswith(GENERAL_PREFIX):
        return ()
    classes = [GENERAL]
    for route_class, prefixes in PREFIX_MAP.items():
        if any(path == prefix or path.startswith(prefix + "/") for prefix in prefixes):
            classes.append(route_class)
    return tuple(classes)


class InMemoryWindowStore:
    """Per-process fixed windows; counters restart with the process."""

    def __init__(self, time_fn: Optional[Callable[[], float]] = None, max_keys: int = 100_000):
        self.time_fn = time_fn or time.monotonic
        self.max_keys = max_keys
        self.windows: Dict[str, Tuple[float, int, int]] = {}
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        expired = [k for k, (start, _, size) in self.windows.items() if now - start >= size]
        for key in expired:
            del self.windows[key]

    async def incr(self, key: str, window_seconds: int) -> Optional[WindowState]:
        with self._lock:
            now = self.time_fn()
            window_start, count, _ = self.windows.get(key, (now, 0, window_seconds))
            if now - window_start >= window_seconds:
                window_start, count = now, 0
            count += 1
            if key not in self.windows and len(self.windows) >= self.max_keys:
                self._prune(now)
            self.windows[key] = (window_start, count, window_seconds)
            return WindowState(count=count, resets_in=window_start + window_seconds - now)


class RedisWindowStore:
    """Shared fixed windows aligned to wall-clock buckets (INCR + EXPIRE).

    Store faults return None so the controller fails open.
    """

    def __init__(self, client, time_fn: Optional[Callable[[], float]] = None, prefix: str = "admission"):
        self.client = client
        self.time_fn = time_fn or time.time
        self.prefix = prefix

    async def incr(self, key: str, window_seconds: int) -> Optional[WindowState]:
        now = self.time_fn()
        bucket = int(now // window_seconds)
        redis_key = f"{self.prefix}:{key}:{bucket}"
        try:
            pipe = self.client.pipeline()
            pipe.incr(redis_key)
            pipe.expire(redis_key, window_seconds)
            count, _ = await pipe.execute()
        except (RedisError, OSError) as e:
            logger.warning("admission.store_unavailable", extra={"reason": e.__class__.__name__})
            return None
        return WindowState(count=int(count), resets_in=(bucket + 1) * window_seconds - now)


class AdmissionController:
    def __init__(self, policies: Dict[str, RoutePolicy], store=None):
        self.policies = policies
        self.store = store or InMemoryWindowStore()

    async def admit(self, identity: str, route_class: str) -> AdmissionDecision:
        policy = self.policies.get(route_class)
        if policy is None or policy.limit <= 0:
            return AdmissionDecision(True, route_class, 0, 0, 0)

        state = await self.store.incr(f"{route_class}:{identity}", policy.window_seconds)
        if state is None:
            return AdmissionDecision(True, route_class, policy.limit, policy.limit, 0)

        retry_after = max(1, math.ceil(state.resets_in))
        remaining = max(0, policy.limit - state.count)
        allowed = state.count <= policy.limit
        return AdmissionDecision(allowed, route_class, policy.limit, remaining, retry_after, policy.message)

    async def admit_all(self, identity: str, route_classes: Iterable[str]) -> Optional[AdmissionDecision]:
        """Admit against each class in order; returns the first rejection, else the last decision."""
        decision = None
        for route_class in route_classes:
            decision = await self.admit(identity, route_class)
            if not decision.allowed:
                return decision
        return decision
