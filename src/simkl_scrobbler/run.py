from __future__ import annotations

import uvicorn

from simkl_scrobbler.config import get_settings


def main() -> None:
    s = get_settings()
    uvicorn.run(
        "simkl_scrobbler.server:app",
        host=str(s.host),
        port=int(s.port),
        reload=False,
        log_config=None,
        # Addon URLs embed user tokens; http_done logs the route template instead.
        access_log=False,
    )


if __name__ == "__main__":
    main()
