# stocksync/errors.py
# Exception taxonomy shared by the ERP client, storefront client, executor and orchestrator.
from __future__ import annotations

from typing import Literal

import httpx

ErrorClass = Literal["transient", "not_found", "failed"]


class StockSyncError(Exception):
    """Base class for every error raised by stocksync."""


class ConfigurationError(StockSyncError):
    """Missing credentials, no sites configured, ... Fatal to a batch."""


class UpstreamError(StockSyncError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class ErpApiError(UpstreamError):
    pass


class StorefrontApiError(UpstreamError):
    pass


def classify_error(exc: BaseException) -> ErrorClass:
    """Map an exception raised while syncing one item to a result class."""
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return "transient"
    if isinstance(exc, UpstreamError):
        if exc.status_code == 404:
            return "not_found"
        if exc.retryable:
            return "transient"
    return "failed"
