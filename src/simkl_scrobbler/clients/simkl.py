from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from simkl_scrobbler.config import get_settings
from simkl_scrobbler.utils.log import logger

from .base import ServiceClient

# Used when Simkl has no runtime for the item.
DEFAULT_RUNTIMES = {"movie": 90, "show": 45, "anime": 25}
DEFAULT_KITSU_RUNTIME = 24
# Anime is tracked as season 1 with absolute episode numbers.
ANIME_SEASON = 1


@dataclass(frozen=True, slots=True)
class MediaMatch:
    remote_id: int
    runtime_minutes: int
    kind: str  # movie|show|anime
    mal_id: int | None = None
    title: str = ""


def _watched_at() -> str:
    return datetime.now(tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _int_or_none(v: Any) -> int | None:
    try:
        return int(v) if v not in (None, "") else None
    except (TypeError, ValueError):
        return None


class SimklClient(ServiceClient):
    """Simkl API: id lookups and watched-history writes."""

    service = "simkl"

    def __init__(
        self,
        *,
        base_url: str | None = None,
        client_id: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_sec: float | None = None,
    ) -> None:
        s = get_settings()
        cid = client_id if client_id is not None else str(s.simkl_client_id or "")
        super().__init__(
            base_url=base_url or str(s.simkl_api_base),
            transport=transport,
            timeout_sec=timeout_sec,
            headers={"Content-Type": "application/json", "simkl-api-key": cid},
        )

    async def _lookup(self, params: dict[str, str], credential: str, *, op: str) -> dict[str, Any] | None:
        resp = await self._send("GET", "/search/id", credential=credential, params=params, op=op)
        if resp is None or resp.is_error:
            return None
        results = self._json(resp)
        if not isinstance(results, list) or not results or not isinstance(results[0], dict):
            logger.info("simkl_lookup_no_results", op=op, **params)
            return None
        item = results[0]
        ids = item.get("ids") if isinstance(item.get("ids"), dict) else {}
        if _int_or_none(ids.get("simkl")) is None:
            return None
        return item

    async def lookup_by_imdb(self, imdb_id: str, credential: str) -> MediaMatch | None:
        item = await self._lookup({"imdb": str(imdb_id)}, credential, op="lookup_by_imdb")
        if item is None:
            return None
        kind = str(item.get("type") or "")
        runtime = _int_or_none(item.get("runtime")) or DEFAULT_RUNTIMES.get(kind, 45)
        return MediaMatch(
            remote_id=int(item["ids"]["simkl"]),
            runtime_minutes=int(runtime),
            kind=kind or "show",
            mal_id=_int_or_none(item["ids"].get("mal")),
            title=str(item.get("title") or ""),
        )

    async def lookup_by_kitsu(self, kitsu_id: str, credential: str) -> MediaMatch | None:
        item = await self._lookup({"kitsu": str(kitsu_id)}, credential, op="lookup_by_kitsu")
        if item is None:
            return None
        runtime = _int_or_none(item.get("runtime")) or DEFAULT_KITSU_RUNTIME
        return MediaMatch(
            remote_id=int(item["ids"]["simkl"]),
            runtime_minutes=int(runtime),
            kind="anime",
            mal_id=_int_or_none(item["ids"].get("mal")),
            title=str(item.get("title") or ""),
        )

    async def _add_to_history(self, body: dict[str, Any], credential: str, *, op: str) -> bool:
        resp = await self._send("POST", "/sync/history", credential=credential, json=body, op=op)
        return resp is not None and resp.is_success

    async def scrobble_movie(self, remote_id: int, credential: str) -> bool:
        body = {"movies": [{"ids": {"simkl": int(remote_id)}, "watched_at": _watched_at()}]}
        return await self._add_to_history(body, credential, op="scrobble_movie")

    async def scrobble_episode(self, remote_id: int, season: int, episode: int, credential: str) -> bool:
        return await self._add_to_history(
            _show_body(remote_id, season, episode), credential, op="scrobble_episode"
        )

    async def scrobble_anime(self, remote_id: int, episode: int, credential: str) -> bool:
        return await self._add_to_history(
            _show_body(remote_id, ANIME_SEASON, episode), credential, op="scrobble_anime"
        )


def _show_body(remote_id: int, season: int, episode: int) -> dict[str, Any]:
    return {
        "shows": [
            {
                "ids": {"simkl": int(remote_id)},
                "seasons": [
                    {
                        "number": int(season),
                        "episodes": [{"number": int(episode), "watched_at": _watched_at()}],
                    }
                ],
            }
        ]
    }
