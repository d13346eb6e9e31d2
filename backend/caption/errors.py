"""
Error taxonomy for transcript retrieval.

Every failure a retrieval can end in is a CaptionError subclass. The class
attributes tell the orchestrator whether to retry and tell the API layer
which status and machine-readable code to answer with:

- video-attributable: VideoNotFound, VideoUnplayable, CaptionsDisabled
- proxy/upstream-attributable: UpstreamBlocked, UpstreamUnavailable
- payload-attributable: MalformedPayload
- resource-attributable: PoolExhausted, RateLimited
- fatal at startup: ConfigurationError
"""


class CaptionError(Exception):
    """
    Base exception for transcript retrieval errors.

    Attributes:
        message: Error description
        video_id: Video the retrieval was for (if known)
        proxy: Masked proxy label the failure is attributed to (if any)
        original_error: Underlying exception if available
        state: Retrieval state the failure ended in (set by the retriever)
    """

    code = "caption_error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        video_id: str | None = None,
        proxy: str | None = None,
        original_error: Exception | None = None,
    ):
        self.message = message
        self.video_id = video_id
        self.proxy = proxy
        self.original_error = original_error
        self.state: str | None = None
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.video_id:
            parts.append(f"video={self.video_id}")
        if self.proxy:
            parts.append(f"proxy={self.proxy}")
        return " | ".join(parts)

    def to_dict(self) -> dict:
        """Machine-readable error body for API responses."""
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class InvalidVideoReference(CaptionError):
    """Raised when a video id or URL fails format validation."""

    code = "invalid_video_reference"
    status_code = 400


class VideoNotFound(CaptionError):
    """Raised when the upstream reports the video as unavailable."""

    code = "video_not_found"
    status_code = 404


class VideoUnplayable(VideoNotFound):
    """
    Raised when the video exists but cannot be played (age gate, region, etc.).

    Attributes:
        reason: Upstream reason string
        subreasons: Additional upstream detail lines
    """

    code = "video_unplayable"

    def __init__(
        self,
        message: str,
        reason: str | None = None,
        subreasons: list[str] | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.reason = reason
        self.subreasons = subreasons or []


class CaptionsDisabled(CaptionError):
    """Raised when the video has no caption tracks."""

    code = "captions_disabled"
    status_code = 404


class UpstreamBlocked(CaptionError):
    """Raised when the upstream rejects the network origin (proxy) of a request."""

    code = "upstream_blocked"
    status_code = 503
    retryable = True


class UpstreamUnavailable(CaptionError):
    """
    Raised on transient upstream or network failures.

    Attributes:
        status_code_upstream: Upstream HTTP status if a response was received
    """

    code = "upstream_unavailable"
    status_code = 503
    retryable = True

    def __init__(
        self,
        message: str,
        status_code_upstream: int | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.status_code_upstream = status_code_upstream


class MalformedPayload(CaptionError):
    """Raised when a caption payload does not match any known timed-text schema."""

    code = "malformed_payload"
    status_code = 502
    retryable = True


class PoolExhausted(CaptionError):
    """Raised when no proxy endpoint is currently healthy."""

    code = "pool_exhausted"
    status_code = 503
    retryable = True


class RateLimited(CaptionError):
    """
    Raised when a quota scope has no capacity left.

    Attributes:
        retry_after: Seconds until the scope is expected to admit a call
        scope: Scope key that denied the call
    """

    code = "rate_limited"
    status_code = 429
    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: float,
        scope: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.retry_after = max(0.0, retry_after)
        self.scope = scope

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["retry_after"] = round(self.retry_after, 3)
        return body


class ConfigurationError(CaptionError):
    """Raised at startup when settings or proxy configuration are invalid."""

    code = "configuration_error"
    status_code = 500
