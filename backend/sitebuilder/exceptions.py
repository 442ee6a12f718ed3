"""Exception hierarchy for the site builder backend and client."""


class SiteBuilderError(Exception):
    """Base exception for site builder errors."""
    pass


class MissingApiKeyError(SiteBuilderError):
    """A provider credential was not supplied by header, body or settings."""

    def __init__(self, provider: str, message: str | None = None):
        self.provider = provider
        super().__init__(
            message
            or f"{provider} API key is required. Please provide it in the "
            "request headers or configure it in your environment."
        )


class UpstreamError(SiteBuilderError):
    """Non-2xx answer from a third-party service (Firecrawl, LLM, sandbox)."""

    def __init__(self, service: str, status_code: int | None, body: str = ""):
        self.service = service
        self.status_code = status_code
        self.body = body
        status = f" ({status_code})" if status_code is not None else ""
        super().__init__(f"{service} API error{status}: {body}")


class SandboxError(SiteBuilderError):
    """Sandbox provisioning or command errors."""
    pass


class GenerationError(SiteBuilderError):
    """Fatal failure of a generation request (error event or aborted read)."""
    pass


class InvalidTransitionError(SiteBuilderError):
    """Illegal generation state change."""
    pass
