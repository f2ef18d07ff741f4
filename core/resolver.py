"""Name resolution: local tables first, then rate-limited external lookups."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

import aiohttp

from .mappings import MappingSource, MappingStore, NameMapping
from .text import normalize

log = logging.getLogger(__name__)

USER_AGENT = "AnimeBot/1.0"


class RateLimitedError(Exception):
    """Raised by a lookup service when the remote side throttles us."""


@dataclass
class LookupResult:
    name: str
    confidence: float
    source: str


def _is_rate_limit_message(exc: BaseException) -> bool:
    text = str(exc).lower()
    return "rate limit" in text or "too many requests" in text


class LookupService:
    """Base class for a single external character database."""

    name = "service"
    confidence = 0.8

    async def fetch(self, session: aiohttp.ClientSession, query: str) -> Optional[LookupResult]:
        raise NotImplementedError

    @staticmethod
    def _check_status(resp: aiohttp.ClientResponse) -> bool:
        if resp.status == 429:
            raise RateLimitedError(f"{resp.url.host} returned 429")
        return resp.status == 200


class AniListService(LookupService):
    name = "AniList"
    confidence = 0.9
    url = "https://graphql.anilist.co/"
    query = "query ($search: String) { Character(search: $search) { name { full native } id } }"

    async def fetch(self, session: aiohttp.ClientSession, query: str) -> Optional[LookupResult]:
        body = {"query": self.query, "variables": {"search": query}}
        async with session.post(self.url, json=body) as resp:
            if not self._check_status(resp):
                return None
            payload = await resp.json(content_type=None)
        character = ((payload or {}).get("data") or {}).get("Character")
        if not character:
            return None
        names = character.get("name") or {}
        full = names.get("full") or names.get("native")
        if not full:
            return None
        return LookupResult(name=full, confidence=self.confidence, source=self.name)


class JikanService(LookupService):
    name = "api.jikan.moe"
    url = "https://api.jikan.moe/v4/characters"

    async def fetch(self, session: aiohttp.ClientSession, query: str) -> Optional[LookupResult]:
        async with session.get(self.url, params={"q": query, "limit": "1"}) as resp:
            if not self._check_status(resp):
                return None
            payload = await resp.json(content_type=None)
        items = (payload or {}).get("data") or []
        if not items:
            return None
        name = items[0].get("name")
        if not name:
            return None
        return LookupResult(name=name, confidence=self.confidence, source=self.name)


class KitsuService(LookupService):
    name = "kitsu.io"
    url = "https://kitsu.io/api/edge/characters"

    async def fetch(self, session: aiohttp.ClientSession, query: str) -> Optional[LookupResult]:
        params = {"filter[name]": query, "page[limit]": "1"}
        async with session.get(self.url, params=params) as resp:
            if not self._check_status(resp):
                return None
            payload = await resp.json(content_type=None)
        items = (payload or {}).get("data") or []
        if not items:
            return None
        attrs = items[0].get("attributes") or {}
        name = attrs.get("name") or attrs.get("canonicalName")
        if not name:
            return None
        return LookupResult(name=name, confidence=self.confidence, source=self.name)


def default_services() -> List[LookupService]:
    return [AniListService(), JikanService(), KitsuService()]


class NameResolver:
    """Resolve a surface form to a display name.

    Order: curated table, learned table, then every lookup service queried
    concurrently. Calls share one minimum spacing per resolver; only rate
    limiting is retried, with exponential backoff and a fixed attempt cap.
    External hits are promoted into the learned table.
    """

    def __init__(
        self,
        mappings: MappingStore,
        *,
        services: Optional[Sequence[LookupService]] = None,
        min_interval: float = 0.9,
        max_attempts: int = 3,
        backoff: float = 1.8,
        timeout: float = 0.66,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.mappings = mappings
        self.services = list(services) if services is not None else default_services()
        self.min_interval = min_interval
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._next_slot = 0.0
        self._slot_lock = asyncio.Lock()

    async def _wait_for_slot(self) -> None:
        async with self._slot_lock:
            now = self._clock()
            wait = max(0.0, self._next_slot - now)
            self._next_slot = now + wait + self.min_interval
        if wait:
            await self._sleep(wait)

    async def _query_service(
        self, service: LookupService, session: aiohttp.ClientSession, query: str
    ) -> Optional[LookupResult]:
        await self._wait_for_slot()
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await service.fetch(session, query)
            except Exception as exc:
                if not isinstance(exc, RateLimitedError) and not _is_rate_limit_message(exc):
                    log.debug("%s lookup failed for %s: %s", service.name, query, exc)
                    return None
                delay = self.backoff * (2 ** (attempt - 1))
                log.info("%s rate limited (%s), retrying in %.1fs", service.name, exc, delay)
                await self._sleep(delay)
        log.warning("%s still rate limited after %d attempts", service.name, self.max_attempts)
        return None

    async def lookup_external(self, query: str) -> Optional[LookupResult]:
        if not self.services:
            return None
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout, headers={"User-Agent": USER_AGENT}) as session:
            results = await asyncio.gather(
                *(self._query_service(service, session, query) for service in self.services)
            )
        best: Optional[LookupResult] = None
        for result in results:
            if result is None:
                continue
            if best is None or result.confidence > best.confidence:
                best = result
        return best

    async def resolve(self, surface_form: str) -> Optional[NameMapping]:
        key = normalize(surface_form)
        hit = self.mappings.lookup_static(key) or self.mappings.lookup_learned(key)
        if hit is not None:
            return hit
        result = await self.lookup_external(surface_form)
        if result is None:
            return None
        mapping = NameMapping(
            display_name=result.name,
            confidence=result.confidence,
            source=MappingSource.EXTERNAL,
            origin=result.source,
        )
        self.mappings.learn(surface_form, mapping)
        return mapping
