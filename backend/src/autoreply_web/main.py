from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router
from .config import get_settings, runtime_config_issues

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    config_issues = runtime_config_issues(settings)
    if config_issues:
        if settings.runtime_config_guard_mode == "enforce":
            raise RuntimeError(
                "runtime config guard blocked startup: "
                + "; ".join(config_issues)
                + ". Remediation: set REPLY_GENERATOR_TYPE=template, configure the generator and "
                + "DATABASE_URL, or fix DEALERSHIP_TIMEZONE."
            )
        if settings.runtime_config_guard_mode == "warn":
            for issue in config_issues:
                logger.warning("runtime config guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


app = create_app()
