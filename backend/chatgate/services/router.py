import structlog

from chatgate.core.config import Settings
from chatgate.errors import CapabilityUnavailable
from chatgate.providers.base import CapabilitySource, Provider
from chatgate.providers.local_provider import LocalProvider
from chatgate.providers.openai_provider import OpenAIProvider, get_breaker

logger = structlog.get_logger()


class BackendCapabilitySource(CapabilitySource):
    """
    Resolves the configured backend into a Provider. Acquisition is an
    explicit call so a missing prerequisite surfaces as CapabilityUnavailable
    instead of failing deep inside generation.
    """

    def __init__(self, settings: Settings, instructions: str | None = None):
        self.settings = settings
        self.instructions = settings.INSTRUCTIONS if instructions is None else instructions

    async def acquire(self) -> Provider:
        backend = self.settings.BACKEND
        if backend == "local":
            return LocalProvider(instructions=self.instructions)
        if backend == "openai":
            if not self.settings.UPSTREAM_BASE_URL:
                logger.warning("capability_unavailable", backend=backend, reason="no upstream url")
                raise CapabilityUnavailable("Generation backend is not configured")
            if get_breaker(self.settings).current_state == "open":
                raise CapabilityUnavailable("Upstream generation service is temporarily unavailable")
            return OpenAIProvider(self.settings, instructions=self.instructions)
        raise CapabilityUnavailable(f"Unknown generation backend: {backend}")
