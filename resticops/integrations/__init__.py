# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI admin endpoints.
"""

from resticops.integrations.fastapi import (
    register_resticops_routes,
    resticops_lifespan,
    verify_api_key,
)

__all__ = [
    "register_resticops_routes",
    "resticops_lifespan",
    "verify_api_key",
]
