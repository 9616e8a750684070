from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import APP_VERSION, reminder_scheduler, router
from .config import get_settings, runtime_secret_issues

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set NOTIFIER_ENABLED=false or provide the notifier credentials, "
                + "and replace ADMIN_API_TOKEN with a real secret."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if settings.reminder_scheduler_enabled:
            reminder_scheduler.start()
        try:
            yield
        finally:
            reminder_scheduler.stop()

    app = FastAPI(title=settings.app_name, version=APP_VERSION, lifespan=lifespan)

    portal_origin = settings.portal_base_url.rstrip("/")
    if "://" in portal_origin:
        portal_origin = "/".join(portal_origin.split("/")[:3])

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[portal_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


app = create_app()
