"""Run the entitlement service: ``python -m entitlements``."""

from __future__ import annotations

import uvicorn

from entitlements.config import load_settings


def main() -> None:
    settings = load_settings()
    config = uvicorn.Config(
        "entitlements.main:app",
        host=settings.host,
        port=settings.port,
        log_level="debug" if settings.debug else "info",
        # RequestLoggingMiddleware emits the access log.
        access_log=False,
    )
    uvicorn.Server(config).run()


if __name__ == "__main__":
    main()
