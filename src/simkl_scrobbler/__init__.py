"""
Simkl Scrobbler: marks Stremio playback as watched on Simkl (and optionally AniList)
once a configurable fraction of the runtime has elapsed.
"""

__version__ = "1.2.0"
