# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with resticops Integration.

This example mounts the resticops admin endpoints next to an existing
application. Backups requested over HTTP are queued; run the worker in a
second process to execute them:

    resticops work

Run with:
    uvicorn examples.basic_app:app --reload

Environment variables:
    RESTICOPS_PROJECT_ROOT: Live project directory
    RESTIC_REPOSITORY / RESTIC_PASSWORD: Restic repository and password
    DB_CONNECTION, DB_DATABASE, ...: Application database
    RESTICOPS_ADMIN_API_KEY: API key for admin endpoints
"""

import os

from fastapi import FastAPI

from resticops.builder import create_settings
from resticops.env import compliance_retention, create_settings_from_env
from resticops.exceptions import ConfigurationError
from resticops.integrations.fastapi import resticops_lifespan


def create_resticops_settings():
    """
    Create resticops settings from environment variables.

    Production deployments keep snapshots long enough for audits.
    """
    settings = create_settings_from_env()

    if os.getenv("APP_ENV", "production") == "production":
        settings = compliance_retention(settings)

    return settings


# Initialize settings
try:
    resticops_settings = create_resticops_settings()
except ConfigurationError as e:
    print(f"Failed to create resticops settings: {e}")
    # Local repository for development
    resticops_settings = create_settings(
        os.getcwd(),
        restic_repository="./restic-repo",
        restic_password="development",
    )

# Create FastAPI app
app = FastAPI(
    title="My App with resticops",
    description="Example application exposing backup administration endpoints",
    version="1.0.0",
    lifespan=lambda app: resticops_lifespan(app, resticops_settings),
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Welcome to My App with resticops",
        "docs": "/docs",
        "resticops_admin": "/admin/resticops/runs",
    }


# ============================================================================
# resticops Admin Endpoints (registered on startup)
# ============================================================================
#
# GET  /admin/resticops/runs            - List runs (type, status, since, until)
# GET  /admin/resticops/runs/{run_id}   - One run with its meta tree
# GET  /admin/resticops/lock            - Current lock holder
# POST /admin/resticops/lock/release    - Release a stale lock
# POST /admin/resticops/backups         - Queue a backup
#
# All admin endpoints require: Authorization: Bearer <RESTICOPS_ADMIN_API_KEY>


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
