"""Thin HTTP client for the ledger API, backed by an :class:`ApiCache`."""
from __future__ import annotations

import os
from datetime import date
from typing import Any, Dict, Optional

from api_cache import ApiCache
from config import Config, _env_float


class LedgerClient:
    def __init__(self, base_url: str, token: Optional[str] = None, cache: Optional[ApiCache] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.cache = cache if cache is not None else ApiCache()

    @classmethod
    def from_env(cls, cache: Optional[ApiCache] = None) -> "LedgerClient":
        base_url = os.getenv("LEDGER_API_URL", "http://localhost:5000").strip()
        token = os.getenv("LEDGER_API_TOKEN", "").strip() or None
        if cache is None:
            cache = ApiCache(default_ttl=_env_float("API_CACHE_TTL", Config.API_CACHE_TTL))
        return cls(base_url, token=token, cache=cache)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None, ttl: Optional[float] = None) -> Any:
        params = {key: value for key, value in (params or {}).items() if value is not None}
        return self.cache.fetch(
            f"{self.base_url}{path}",
            params=params or None,
            headers=self._headers(),
            ttl=ttl,
        )

    def financial_summary(self, start: date, end: date, driver_id: Optional[int] = None) -> Dict[str, Any]:
        return self._get(
            "/api/reports/financial-summary",
            {"from": start.isoformat(), "to": end.isoformat(), "driverId": driver_id},
        )

    def daily_records(self, start: date, end: date, driver_id: Optional[int] = None) -> list:
        return self._get(
            "/api/daily-records",
            {"from": start.isoformat(), "to": end.isoformat(), "driverId": driver_id},
        )

    def configuration(self) -> list:
        return self._get("/api/configuration", ttl=300)

    def refresh(self) -> None:
        self.cache.invalidate_all()
