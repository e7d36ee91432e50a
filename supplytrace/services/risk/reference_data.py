# supplytrace/services/risk/reference_data.py

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, Iterable, Mapping, Optional

from supplytrace.models.risk.risk_models import CountryRisk
from supplytrace.services.risk.risk_components import HIGH_RISK_COMMODITIES, EvidenceUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferenceSnapshot:
    countries: Mapping[str, CountryRisk]
    commodities: FrozenSet[str]

    def country(self, code: Optional[str]) -> Optional[CountryRisk]:
        if not code:
            return None
        return self.countries.get(code.strip().upper())


class ReferenceData:
    """
    Country risk table + high-risk commodity set, cached with a TTL.

    Each assessment takes one `snapshot()` so it reads a consistent table even
    if an admin edits a country mid-run. A failed refresh keeps serving the
    previous table; with nothing cached yet the snapshot raises
    EvidenceUnavailable and the country component degrades.
    """

    def __init__(
        self,
        loader: Callable[[], Dict[str, CountryRisk]],
        ttl_seconds: float = 3600.0,
        commodities: Iterable[str] = HIGH_RISK_COMMODITIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._countries: Optional[Mapping[str, CountryRisk]] = None
        self._commodities: FrozenSet[str] = frozenset(c.strip().lower() for c in commodities)
        self._loaded_at: Optional[float] = None

    @classmethod
    def from_store(cls, store, ttl_seconds: float = 3600.0) -> "ReferenceData":
        return cls(store.load_country_risks, ttl_seconds=ttl_seconds)

    def _stale(self) -> bool:
        return self._loaded_at is None or (self._clock() - self._loaded_at) >= self._ttl

    def refresh(self) -> None:
        table = self._loader()
        frozen = MappingProxyType({code.upper(): risk for code, risk in table.items()})
        with self._lock:
            self._countries = frozen
            self._loaded_at = self._clock()
        logger.info("Country risk table loaded (%d countries)", len(frozen))

    def snapshot(self) -> ReferenceSnapshot:
        if self._stale():
            try:
                self.refresh()
            except Exception as e:
                if self._countries is None:
                    raise EvidenceUnavailable(f"country risk table unavailable: {e}") from e
                logger.warning("Country risk refresh failed, serving cached table: %s", e)

        with self._lock:
            return ReferenceSnapshot(countries=self._countries, commodities=self._commodities)

    def set_country_risk(self, risk: CountryRisk) -> None:
        """Admin edit. Copy-on-write so snapshots already handed out stay intact."""
        with self._lock:
            current = dict(self._countries or {})
            current[risk.countryCode.upper()] = risk
            self._countries = MappingProxyType(current)
            if self._loaded_at is None:
                self._loaded_at = self._clock()
        logger.info("Country risk for %s set to %s", risk.countryCode, risk.riskLevel.value)

    def invalidate(self) -> None:
        with self._lock:
            self._loaded_at = None
