from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from simkl_scrobbler.scrobble.models import user_digest
from simkl_scrobbler.scrobble.playback import UserConfig, handle_playback_start
from simkl_scrobbler.utils.log import logger, set_user_id

from .manifest import build_manifest

router = APIRouter(tags=["addon"])

# Stremio must not cache subtitle lookups; each request is a playback signal.
_NO_STORE = {"cache-control": "no-store"}


def _empty_subtitles() -> JSONResponse:
    return JSONResponse({"subtitles": []}, headers=_NO_STORE)


@router.get("/manifest.json")
async def manifest() -> dict[str, Any]:
    return build_manifest(configured=False)


@router.get("/{config}/manifest.json")
async def manifest_configured(config: str) -> dict[str, Any]:
    cfg = UserConfig.parse(config)
    return build_manifest(configured=bool(cfg.token))


@router.get("/subtitles/{content_type}/{stremio_id}.json")
async def subtitles_unconfigured(content_type: str, stremio_id: str) -> JSONResponse:
    return _empty_subtitles()


async def _subtitles(request: Request, config: str, content_type: str, stremio_id: str) -> JSONResponse:
    cfg = UserConfig.parse(config)
    if cfg.token:
        set_user_id(user_digest(cfg.token))
    scheduler = getattr(request.app.state, "scheduler", None)
    simkl = getattr(request.app.state, "simkl", None)
    if scheduler is None or simkl is None:
        logger.error("playback_not_ready", content_type=content_type)
        return _empty_subtitles()
    decision = await handle_playback_start(
        scheduler=scheduler,
        simkl=simkl,
        config=cfg,
        content_type=content_type,
        stremio_id=stremio_id,
    )
    logger.info(
        "subtitles_request",
        content_type=content_type,
        scheduled=decision.scheduled,
        reason=decision.reason,
    )
    return _empty_subtitles()


@router.get("/{config}/subtitles/{content_type}/{stremio_id}.json")
async def subtitles(request: Request, config: str, content_type: str, stremio_id: str) -> JSONResponse:
    return await _subtitles(request, config, content_type, stremio_id)


@router.get("/{config}/subtitles/{content_type}/{stremio_id}/{extra}.json")
async def subtitles_with_extra(
    request: Request, config: str, content_type: str, stremio_id: str, extra: str
) -> JSONResponse:
    # extra carries videoHash/videoSize; not needed for scrobbling.
    return await _subtitles(request, config, content_type, stremio_id)
