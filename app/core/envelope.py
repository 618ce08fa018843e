"""Success envelope shared by all JSON endpoints."""

from typing import Any


def success(message: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"status": "success", "message": message}
    if data is not None:
        body["data"] = data
    return body
