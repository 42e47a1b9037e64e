from __future__ import annotations

from typing import Any

from simkl_scrobbler import __version__

ADDON_ID = "com.simkl.scrobbler"


def build_manifest(*, configured: bool = False) -> dict[str, Any]:
    """
    Stremio addon manifest.

    Only the subtitles resource is served; Stremio requests it when a stream
    opens, which is the playback-start signal.
    """
    return {
        "id": ADDON_ID,
        "version": __version__,
        "name": "Simkl Scrobbler",
        "description": "Marks movies, episodes and anime as watched on Simkl (and AniList) as you play them",
        "resources": ["subtitles"],
        "types": ["movie", "series", "anime"],
        "idPrefixes": ["tt", "kitsu:"],
        "catalogs": [],
        "behaviorHints": {
            "configurable": True,
            "configurationRequired": not configured,
        },
        "config": [
            {"key": "token", "type": "text", "title": "Simkl Access Token (auto-filled after OAuth)"},
            {
                "key": "threshold",
                "type": "text",
                "title": "Scrobble Threshold (0.1-1.0, default: 0.8)",
                "default": "0.8",
            },
        ],
    }
