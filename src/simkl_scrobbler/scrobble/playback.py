"""
Playback-start handling: Stremio request -> lookup -> delay -> scheduled scrobble.

Stremio has no "playback started" hook; the subtitles request it sends when a
stream opens is used as the signal. Every outcome is a `PlaybackDecision`;
nothing here raises to the route.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qsl, unquote

from simkl_scrobbler.clients.simkl import MediaMatch, SimklClient
from simkl_scrobbler.config import get_settings
from simkl_scrobbler.errors import (
    ConfigurationError,
    DecryptionError,
    JobStoreUnavailable,
    LookupMiss,
)
from simkl_scrobbler.security.credentials import decode_secondary_token, decrypt_token
from simkl_scrobbler.utils.log import logger

from . import delay
from .models import ContentKind, JobSpec, user_digest
from .scheduler import ScrobbleScheduler


def _flag_on(v: Any) -> bool:
    # Unset means enabled; only an explicit "0" turns a flag off.
    return str(v if v is not None else "1").strip() != "0"


@dataclass(frozen=True, slots=True)
class UserConfig:
    """Per-user settings carried in the addon install URL."""

    token: str = ""
    anilist_token: str = ""
    threshold: str = ""
    movies: str = "1"
    shows: str = "1"
    anime: str = "1"
    anilist_enabled: str = "1"

    @classmethod
    def from_mapping(cls, m: dict[str, Any]) -> UserConfig:
        def s(key: str, default: str = "") -> str:
            v = m.get(key)
            return default if v is None else str(v)

        return cls(
            token=s("token"),
            anilist_token=s("anilistToken"),
            threshold=s("threshold"),
            movies=s("movies", "1"),
            shows=s("shows", "1"),
            anime=s("anime", "1"),
            anilist_enabled=s("anilistEnabled", "1"),
        )

    @classmethod
    def parse(cls, raw: str | None) -> UserConfig:
        """URL path segment: JSON object (the usual form) or a query string."""
        text = unquote(str(raw or "")).strip()
        if not text:
            return cls()
        if text.startswith("{"):
            try:
                d = json.loads(text)
            except json.JSONDecodeError:
                return cls()
            return cls.from_mapping(d) if isinstance(d, dict) else cls()
        return cls.from_mapping(dict(parse_qsl(text, keep_blank_values=True)))

    def type_enabled(self, content_type: str) -> bool:
        if content_type == "movie":
            return _flag_on(self.movies)
        if content_type == "anime":
            return _flag_on(self.anime)
        return _flag_on(self.shows)

    @property
    def wants_anilist(self) -> bool:
        return bool(self.anilist_token) and _flag_on(self.anilist_enabled)


@dataclass(frozen=True, slots=True)
class StremioRef:
    imdb_id: str | None = None
    kitsu_id: str | None = None
    season: int | None = None
    episode: int | None = None

    @property
    def is_anime(self) -> bool:
        return self.kitsu_id is not None

    @property
    def display_id(self) -> str:
        return f"kitsu:{self.kitsu_id}" if self.kitsu_id else str(self.imdb_id or "")


def _to_int(s: str) -> int | None:
    try:
        return int(str(s).strip())
    except ValueError:
        return None


def parse_stremio_id(stremio_id: str) -> StremioRef | None:
    """
    "tt1234567"          movie
    "tt1234567:1:5"      series season 1 episode 5
    "kitsu:12345:3"      anime episode 3 (absolute numbering)
    """
    parts = str(stremio_id or "").strip().split(":")
    if parts[0] == "kitsu":
        if len(parts) < 2 or not parts[1]:
            return None
        return StremioRef(kitsu_id=parts[1], episode=_to_int(parts[2]) if len(parts) >= 3 else None)
    if not parts[0].startswith("tt"):
        return None
    if len(parts) == 3:
        return StremioRef(imdb_id=parts[0], season=_to_int(parts[1]), episode=_to_int(parts[2]))
    return StremioRef(imdb_id=parts[0])


@dataclass(frozen=True, slots=True)
class PlaybackDecision:
    scheduled: bool
    reason: str
    job_id: str | None = None
    wait_ms: int = 0


def _content_kind(content_type: str, ref: StremioRef, match: MediaMatch) -> ContentKind:
    if ref.is_anime or match.kind == "anime":
        # Anime without an episode number (anime films) is tracked like a movie.
        return ContentKind.anime_episode if ref.episode is not None else ContentKind.movie
    if content_type == "series" and ref.season is not None and ref.episode is not None:
        return ContentKind.episode
    return ContentKind.movie


def _build_spec(
    user_key: str,
    kind: ContentKind,
    ref: StremioRef,
    match: MediaMatch,
    credential: str,
    secondary: str | None,
) -> JobSpec:
    anime = kind is ContentKind.anime_episode
    return JobSpec(
        user_key=user_key,
        content_kind=kind,
        remote_id=int(match.remote_id),
        primary_credential=credential,
        season=ref.season if kind is ContentKind.episode else None,
        episode_number=ref.episode if kind in {ContentKind.episode, ContentKind.anime_episode} else None,
        secondary_credential=secondary if anime else None,
        secondary_hint_id=match.mal_id if anime else None,
        label=ref.display_id,
    )


async def _lookup(simkl: SimklClient, ref: StremioRef, credential: str) -> MediaMatch:
    if ref.kitsu_id:
        match = await simkl.lookup_by_kitsu(ref.kitsu_id, credential)
    else:
        match = await simkl.lookup_by_imdb(str(ref.imdb_id), credential)
    if match is None:
        raise LookupMiss(f"{ref.display_id} not found on simkl")
    return match


async def handle_playback_start(
    *,
    scheduler: ScrobbleScheduler,
    simkl: SimklClient,
    config: UserConfig,
    content_type: str,
    stremio_id: str,
) -> PlaybackDecision:
    content_type = str(content_type or "").strip().lower()
    if not config.token:
        logger.info("playback_skipped", reason="no_token", content_type=content_type)
        return PlaybackDecision(False, "no_token")

    tag = user_digest(config.token)
    ref = parse_stremio_id(stremio_id)
    if ref is None:
        logger.info("playback_skipped", reason="unsupported_id", user_id=tag, stremio_id=str(stremio_id)[:64])
        return PlaybackDecision(False, "unsupported_id")

    type_key = "anime" if (content_type == "anime" or ref.is_anime) else content_type
    if not config.type_enabled(type_key):
        logger.info("playback_skipped", reason="type_disabled", user_id=tag, content_type=type_key)
        return PlaybackDecision(False, "type_disabled")

    try:
        credential = decrypt_token(config.token)
    except (DecryptionError, ConfigurationError) as ex:
        logger.warning("playback_skipped", reason="decrypt_failed", user_id=tag, error=str(ex))
        return PlaybackDecision(False, "decrypt_failed")

    secondary: str | None = None
    if config.wants_anilist:
        try:
            secondary = decode_secondary_token(config.anilist_token)
        except DecryptionError as ex:
            logger.warning("anilist_token_unusable", user_id=tag, error=str(ex))

    try:
        match = await _lookup(simkl, ref, credential)
    except LookupMiss as ex:
        logger.info("playback_skipped", reason="lookup_miss", user_id=tag, detail=str(ex))
        return PlaybackDecision(False, "lookup_miss")

    s = get_settings()
    threshold = config.threshold or s.scrobble_threshold
    p = delay.plan(match.runtime_minutes, threshold, min_runtime_minutes=float(s.min_runtime_minutes))
    if not p.fire:
        logger.info(
            "playback_skipped",
            reason="below_min_runtime",
            user_id=tag,
            runtime_minutes=match.runtime_minutes,
            label=ref.display_id,
        )
        return PlaybackDecision(False, "below_min_runtime")

    kind = _content_kind(content_type, ref, match)
    try:
        spec = _build_spec(config.token, kind, ref, match, credential, secondary)
    except ValueError as ex:
        logger.info("playback_skipped", reason="invalid_item", user_id=tag, error=str(ex))
        return PlaybackDecision(False, "invalid_item")

    try:
        job_id = await scheduler.schedule(config.token, spec, p.wait_ms)
    except JobStoreUnavailable as ex:
        logger.error("playback_schedule_failed", user_id=tag, error=str(ex))
        return PlaybackDecision(False, "store_unavailable")

    logger.info(
        "playback_scheduled",
        user_id=tag,
        job_id=job_id,
        label=ref.display_id,
        runtime_minutes=match.runtime_minutes,
        threshold=p.threshold,
        wait_ms=p.wait_ms,
    )
    return PlaybackDecision(True, "scheduled", job_id=job_id, wait_ms=p.wait_ms)
