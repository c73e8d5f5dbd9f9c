"""Local runner for the Puyer billing API (use APP_RELOAD=true while developing)."""

import uvicorn

from apps.api.settings import settings


def main():
    options = {"reload": True, "reload_dirs": ["apps"]} if settings.APP_RELOAD else {}
    uvicorn.run(
        "apps.api.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        log_level=settings.LOG_LEVEL.lower(),
        **options,
    )


if __name__ == "__main__":
    main()
