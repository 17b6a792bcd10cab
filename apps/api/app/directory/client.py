from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from app.context import get_correlation_id
from app.core.config import Settings


logger = logging.getLogger("app.crm.directory")
tracer = trace.get_tracer("app.directory.client")

DEFAULT_FETCH_ERROR = "Failed to fetch directory businesses"


class DirectoryFetchError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class DirectoryClient(Protocol):
    def list_businesses(self) -> list[dict[str, Any]]: ...


def _vendor_message(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("message"), str) and body["message"]:
        return body["message"]
    return None


class HttpDirectoryClient:
    businesses_path = "/api/admin/businesses"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpDirectoryClient:
        return cls(
            settings.directory_api_url,
            settings.directory_api_key,
            timeout=settings.directory_api_timeout_seconds,
        )

    def list_businesses(self) -> list[dict[str, Any]]:
        with tracer.start_as_current_span("directory.list_businesses") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            with httpx.Client(
                base_url=self.base_url,
                headers={"x-api-key": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                try:
                    response = client.get(self.businesses_path)
                    response.raise_for_status()
                    body = response.json()
                except httpx.HTTPStatusError as exc:
                    message = _vendor_message(exc.response) or DEFAULT_FETCH_ERROR
                    logger.error(
                        "directory.fetch_failed",
                        extra={"status_code": exc.response.status_code, "error": exc.response.text},
                    )
                    raise DirectoryFetchError(message, status_code=exc.response.status_code) from exc
                except (httpx.HTTPError, ValueError) as exc:
                    logger.error("directory.fetch_failed", extra={"error": str(exc)})
                    raise DirectoryFetchError(DEFAULT_FETCH_ERROR) from exc

            businesses = body.get("businesses") if isinstance(body, dict) else None
            if not isinstance(businesses, list):
                businesses = []
            span.set_attribute("business_count", len(businesses))
            logger.info("directory.fetched", extra={"count": len(businesses)})
            return businesses
