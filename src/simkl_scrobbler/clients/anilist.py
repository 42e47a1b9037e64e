from __future__ import annotations

from typing import Any

import httpx

from simkl_scrobbler.config import get_settings
from simkl_scrobbler.utils.log import logger

from .base import ServiceClient

MEDIA_BY_MAL_QUERY = """
query ($malId: Int) {
  Media(idMal: $malId, type: ANIME) {
    id
    title { romaji english }
  }
}
"""

SAVE_PROGRESS_MUTATION = """
mutation ($mediaId: Int, $progress: Int, $status: MediaListStatus) {
  SaveMediaListEntry(mediaId: $mediaId, progress: $progress, status: $status) {
    id
    progress
    status
  }
}
"""


class AniListClient(ServiceClient):
    """AniList GraphQL: MAL id resolution and list progress updates."""

    service = "anilist"

    def __init__(
        self,
        *,
        api_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_sec: float | None = None,
    ) -> None:
        super().__init__(
            base_url=api_url or str(get_settings().anilist_api_url),
            transport=transport,
            timeout_sec=timeout_sec,
            headers={"Content-Type": "application/json"},
        )

    async def _graphql(self, query: str, variables: dict[str, Any], credential: str, *, op: str) -> dict | None:
        resp = await self._send(
            "POST", "", credential=credential, json={"query": query, "variables": variables}, op=op
        )
        if resp is None or resp.is_error:
            return None
        body = self._json(resp)
        if not isinstance(body, dict):
            return None
        errors = body.get("errors")
        if errors:
            msg = errors[0].get("message") if isinstance(errors, list) and isinstance(errors[0], dict) else errors
            logger.warning("anilist_graphql_error", op=op, error=str(msg)[:200])
            return None
        data = body.get("data")
        return data if isinstance(data, dict) else None

    async def resolve_id_by_mal(self, mal_id: int, credential: str) -> int | None:
        data = await self._graphql(MEDIA_BY_MAL_QUERY, {"malId": int(mal_id)}, credential, op="resolve_id_by_mal")
        media = (data or {}).get("Media")
        if not isinstance(media, dict) or media.get("id") is None:
            return None
        try:
            return int(media["id"])
        except (TypeError, ValueError):
            return None

    async def update_progress(self, media_id: int, episode: int, credential: str) -> bool:
        data = await self._graphql(
            SAVE_PROGRESS_MUTATION,
            {"mediaId": int(media_id), "progress": int(episode), "status": "CURRENT"},
            credential,
            op="update_progress",
        )
        return bool((data or {}).get("SaveMediaListEntry"))
