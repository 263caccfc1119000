"""OpenAPI customization for rate limited routes.

Enriches the generated schema with:
- Tags metadata
- ``X-RateLimit-*`` / ``Retry-After`` header documentation on every
  operation that declares a 429 response
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

_RATE_LIMIT_HEADERS: Dict[str, Any] = {
    "X-RateLimit-Limit": {
        "description": "Effective requests per window after load adaptation.",
        "schema": {"type": "integer"},
    },
    "X-RateLimit-Remaining": {
        "description": "Requests left in the current window.",
        "schema": {"type": "integer"},
    },
}

_RETRY_AFTER_HEADER: Dict[str, Any] = {
    "Retry-After": {
        "description": "Seconds to wait before retrying.",
        "schema": {"type": "integer", "minimum": 1},
    },
}


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to document rate limit headers."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        schema = original_openapi()

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        desired_tags = [
            {
                "name": "Rate limits",
                "description": "Routes guarded by the adaptive rate limiter.",
            },
            {
                "name": "Health",
                "description": "Liveness check with limiter counters (never limited).",
            },
        ]
        for tag in desired_tags:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        for methods in schema.get("paths", {}).values():
            for method_obj in methods.values():
                if not isinstance(method_obj, dict):
                    continue
                responses = method_obj.get("responses", {})
                if "429" not in responses:
                    continue
                responses["429"].setdefault("headers", {}).update(_RETRY_AFTER_HEADER)
                success = responses.get("200")
                if success is not None:
                    success.setdefault("headers", {}).update(_RATE_LIMIT_HEADERS)

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
