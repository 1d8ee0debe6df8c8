"""Memoising cache for JSON API requests.

The cache is an ordinary object: create one and hand it to whatever needs
it. Entries are keyed by ``(method, url, body)``, with any query
parameters encoded into the url, and stay valid while
``now < inserted_at + ttl``. Concurrent identical requests share a single
in-flight call.
"""
from __future__ import annotations

import json as _json
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import requests


class ApiCacheError(RuntimeError):
    """Raised when the upstream request fails."""


CacheKey = Tuple[str, str, str]


@dataclass(frozen=True)
class _CacheEntry:
    data: Any
    inserted_at: float


def _body_key(body: Any) -> str:
    if body is None:
        return ""
    if isinstance(body, (str, bytes)):
        return body.decode("utf-8", "replace") if isinstance(body, bytes) else body
    return _json.dumps(body, sort_keys=True, default=str)


class ApiCache:
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        default_ttl: float = 60.0,
        timeout: float = 20.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session or requests.Session()
        self._default_ttl = default_ttl
        self._timeout = timeout
        self._clock = clock
        self._entries: Dict[CacheKey, _CacheEntry] = {}
        self._pending: Dict[CacheKey, Future] = {}
        self._lock = threading.Lock()

    @staticmethod
    def cache_key(method: str, url: str, body: Any = None, params: Optional[Dict[str, Any]] = None) -> CacheKey:
        if params:
            prepared = requests.PreparedRequest()
            prepared.prepare_url(url, params)
            url = prepared.url
        return (method.upper(), url, _body_key(body))

    def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        ttl: Optional[float] = None,
    ) -> Any:
        """Return the decoded JSON for ``url``, from cache when still fresh."""

        key = self.cache_key(method, url, json, params)
        ttl = self._default_ttl if ttl is None else ttl

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() < entry.inserted_at + ttl:
                return entry.data
            pending = self._pending.get(key)
            owner = pending is None
            if owner:
                pending = Future()
                self._pending[key] = pending

        if not owner:
            return pending.result()

        try:
            data = self._request(method, url, json, params, headers)
        except BaseException as exc:
            with self._lock:
                self._pending.pop(key, None)
            pending.set_exception(exc)
            raise

        with self._lock:
            self._entries[key] = _CacheEntry(data=data, inserted_at=self._clock())
            self._pending.pop(key, None)
        pending.set_result(data)
        return data

    def _request(
        self,
        method: str,
        url: str,
        body: Any,
        params: Optional[Dict[str, Any]],
        headers: Optional[Dict[str, str]],
    ) -> Any:
        response = self._session.request(
            method.upper(),
            url,
            json=body,
            params=params,
            headers=headers,
            timeout=self._timeout,
        )
        if response.status_code >= 400:
            raise ApiCacheError(f"Error al cargar datos: {response.status_code}")
        return response.json()

    def invalidate(
        self,
        url: str,
        *,
        method: str = "GET",
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock:
            self._entries.pop(self.cache_key(method, url, json, params), None)

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["ApiCache", "ApiCacheError"]
