"""Closed set of pipeline failure kinds.

Provider and renderer errors are classified into these types once, at the
boundary where they occur. Everything downstream branches on the type (or its
``kind``), never on error text.
"""

from enum import Enum
from typing import Any, Dict, Optional


class FailureKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    QUOTA_EXCEEDED = "quota_exceeded"
    MALFORMED_RESPONSE = "malformed_response"
    PROVIDER_ERROR = "provider_error"
    ASSET_MISSING = "asset_missing"
    RENDER_TIMEOUT = "render_timeout"
    RENDER_FAILED = "render_failed"
    BROWSER_LAUNCH_FAILURE = "browser_launch_failure"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    ALL_VARIANTS_FAILED = "all_variants_failed"
    REQUEST_TIMEOUT = "request_timeout"


class PipelineError(Exception):
    kind: FailureKind = FailureKind.PROVIDER_ERROR
    http_status: int = 500

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.details = details

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"message": self.message, "kind": self.kind.value}
        body.update(self.details)
        return body


class InvalidRequest(PipelineError):
    kind = FailureKind.INVALID_REQUEST
    http_status = 400


class QuotaExceeded(PipelineError):
    """Provider rate/usage limit. Retryable by the caller, never retried here."""
    kind = FailureKind.QUOTA_EXCEEDED
    http_status = 429

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        body["quotaExceeded"] = True
        return body


class MalformedResponse(PipelineError):
    kind = FailureKind.MALFORMED_RESPONSE


class ProviderError(PipelineError):
    kind = FailureKind.PROVIDER_ERROR
    http_status = 502


class AssetMissing(PipelineError):
    kind = FailureKind.ASSET_MISSING


class RenderTimeout(PipelineError):
    kind = FailureKind.RENDER_TIMEOUT


class RenderFailed(PipelineError):
    """The browser crashed or a page operation failed mid-render."""
    kind = FailureKind.RENDER_FAILED


class BrowserLaunchFailure(PipelineError):
    kind = FailureKind.BROWSER_LAUNCH_FAILURE


class InsufficientCredits(PipelineError):
    kind = FailureKind.INSUFFICIENT_CREDITS
    http_status = 403


class AllVariantsFailed(PipelineError):
    kind = FailureKind.ALL_VARIANTS_FAILED

    def __init__(self, message: str = "", batch: Optional[Any] = None, **details: Any):
        super().__init__(message, **details)
        self.batch = batch


class RequestTimeout(PipelineError):
    kind = FailureKind.REQUEST_TIMEOUT
    http_status = 504
