from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


@dataclass
class BenefitSnapshot:
    cache: Dict[str, Dict[str, int]]
    degraded_paths: Dict[str, int]
    redemptions: Dict[str, int]
    sweeps: Dict[str, object]

    def as_dict(self) -> Dict[str, object]:
        return {
            "cache": {key: dict(value) for key, value in self.cache.items()},
            "degraded_paths": dict(self.degraded_paths),
            "redemptions": dict(self.redemptions),
            "sweeps": dict(self.sweeps),
        }


class BenefitObservabilityStore:
    """Collect benefit engine telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._cache_hits: Dict[str, int] = defaultdict(int)
        self._cache_misses: Dict[str, int] = defaultdict(int)
        self._degraded: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._sweep_runs = 0
        self._sweep_expired = 0
        self._last_sweep_at: datetime | None = None

    def record_cache_lookup(self, namespace: str, *, hit: bool) -> None:
        with self._lock:
            if hit:
                self._cache_hits[namespace] += 1
            else:
                self._cache_misses[namespace] += 1

    def record_degraded_path(self, path: str) -> None:
        with self._lock:
            self._degraded[path] += 1

    def record_redemption(self, outcome: str) -> None:
        with self._lock:
            self._redemptions[outcome] += 1

    def record_sweep(self, expired: int) -> None:
        with self._lock:
            self._sweep_runs += 1
            self._sweep_expired += expired
            self._last_sweep_at = datetime.now(timezone.utc)

    def snapshot(self) -> BenefitSnapshot:
        with self._lock:
            cache = {
                "hits": dict(self._cache_hits),
                "misses": dict(self._cache_misses),
            }
            sweeps: Dict[str, object] = {
                "runs": self._sweep_runs,
                "expired": self._sweep_expired,
                "last_run_at": self._last_sweep_at.isoformat() if self._last_sweep_at else None,
            }
            return BenefitSnapshot(
                cache=cache,
                degraded_paths=dict(self._degraded),
                redemptions=dict(self._redemptions),
                sweeps=sweeps,
            )

    def reset(self) -> None:
        with self._lock:
            self._cache_hits.clear()
            self._cache_misses.clear()
            self._degraded.clear()
            self._redemptions.clear()
            self._sweep_runs = 0
            self._sweep_expired = 0
            self._last_sweep_at = None


_STORE = BenefitObservabilityStore()


def get_benefit_store() -> BenefitObservabilityStore:
    return _STORE


__all__ = ["BenefitObservabilityStore", "BenefitSnapshot", "get_benefit_store"]
