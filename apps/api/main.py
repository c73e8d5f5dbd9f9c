# File: apps/api/main.py
from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# --- Local Imports ---
from .settings import settings
from .logging_config import configure_logging
from .billing.router import router as billing_router

configure_logging(settings.LOG_LEVEL)


# --- FastAPI App ---

app = FastAPI(title="Puyer Billing API")

app.add_middleware(
    CORSMiddleware,
    # Explicit origins are required when using credentials (Authorization headers).
    # CORS_ORIGINS is a comma-separated list configurable via apps/.env.
    allow_origins=list((
        {o.strip().rstrip("/") for o in (settings.CORS_ORIGINS or "").split(",")}
        | {str(settings.PUBLIC_BASE_URL or "").rstrip("/")}
    ) - {""}),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health():
    return {"status": "ok"}


# Recurring invoices and reminders are driven by the /cron/* trigger endpoints;
# the API process itself runs no background scheduler.
app.include_router(billing_router)
