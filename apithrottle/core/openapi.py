"""OpenAPI metadata and customization utilities.

Enriches the generated schema with:
- Tags metadata
- The admin API key security scheme (``X-API-Key``), required only on the
  policy management routes
- A ``429`` response on every throttled operation, documenting ``Retry-After``
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

_THROTTLE_PREFIX = "/v1/throttle"

_TOO_MANY_REQUESTS: Dict[str, Any] = {
    "description": "Quota exceeded for one of the configured windows.",
    "headers": {
        "Retry-After": {
            "description": "Seconds to wait before retrying (always >= 1).",
            "schema": {"type": "integer"},
        },
    },
}


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to add metadata and security."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        schema = original_openapi()

        security_schemes = schema.setdefault("components", {}).setdefault("securitySchemes", {})
        security_schemes.setdefault(
            "ApiKeyAuth",
            {
                "type": "apiKey",
                "in": "header",
                "name": "X-API-Key",
                "description": "Admin API key for policy management.",
            },
        )

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        desired_tags = [
            {"name": "Values", "description": "Sample resources behind the throttle policy."},
            {"name": "Throttle", "description": "Inspect and hot-swap the throttle policy."},
            {"name": "Health", "description": "Liveness checks (never throttled)."},
        ]
        for tag in desired_tags:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        for path, methods in schema.get("paths", {}).items():
            for method_obj in methods.values():
                if not isinstance(method_obj, dict):
                    continue
                if path.startswith(_THROTTLE_PREFIX):
                    method_obj["security"] = [{"ApiKeyAuth": []}]
                elif "Values" in method_obj.get("tags", []):
                    method_obj.setdefault("responses", {}).setdefault("429", _TOO_MANY_REQUESTS)

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
