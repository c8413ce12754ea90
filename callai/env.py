"""Environment lookup for call-ai settings."""

import logging
import os
from collections.abc import Mapping

logger = logging.getLogger(__name__)

# Each setting is looked up bare first, then with the Vite build prefix
ENV_PREFIXES = ("", "VITE_")

DEFAULT_CHAT_URL = "https://openrouter.ai"
DEFAULT_IMG_URL = "https://vibecode.garden"
DEFAULT_REFRESH_ENDPOINT = "https://vibecode.garden"
DEFAULT_REFRESH_TOKEN = "use-vibes"
DEFAULT_API_BASE_URL = "https://vibes-diy-api.com"


class CallAIEnv:
    """
    Resolve call-ai configuration from one or more environment mappings.

    Lookups try every prefix in ENV_PREFIXES against every source in order,
    returning the first non-empty value.
    """

    def __init__(self, sources: list[Mapping[str, str]] | None = None):
        """
        Initialize the environment view.

        Args:
            sources: Mappings to read from. Defaults to the process environment.
        """
        self._sources: list[Mapping[str, str]] = (
            list(sources) if sources is not None else [os.environ]
        )

    def get(self, key: str) -> str | None:
        """Return the first non-empty value for key across prefixes and sources."""
        for prefix in ENV_PREFIXES:
            for source in self._sources:
                value = source.get(prefix + key)
                if value:
                    return value
        return None

    def override_env(self, env: Mapping[str, str]) -> None:
        """Replace all sources with a single mapping."""
        self._sources = [env]

    @property
    def api_key(self) -> str | None:
        return (
            self.get("CALLAI_API_KEY")
            or self.get("OPENROUTER_API_KEY")
            or self.get("LOW_BALANCE_OPENROUTER_API_KEY")
        )

    @property
    def chat_url(self) -> str:
        return self.get("CALLAI_CHAT_URL") or DEFAULT_CHAT_URL

    @property
    def img_url(self) -> str:
        return self.get("CALLAI_IMG_URL") or DEFAULT_IMG_URL

    @property
    def api_base_url(self) -> str:
        return self.get("API_BASE_URL") or DEFAULT_API_BASE_URL

    @property
    def callai_endpoint(self) -> str:
        """Endpoint for app-side model calls such as library selection."""
        return self.get("CALLAI_ENDPOINT") or self.api_base_url

    @property
    def refresh_endpoint(self) -> str:
        return self.get("CALLAI_REFRESH_ENDPOINT") or DEFAULT_REFRESH_ENDPOINT

    @property
    def refresh_token(self) -> str:
        return self.get("CALL_AI_REFRESH_TOKEN") or DEFAULT_REFRESH_TOKEN

    @property
    def debug(self) -> bool:
        return bool(self.get("CALLAI_DEBUG"))


call_ai_env = CallAIEnv()


def configure_debug_logging(env: CallAIEnv | None = None) -> None:
    """Lower the callai logger to DEBUG when CALLAI_DEBUG is set."""
    env = env or call_ai_env
    if env.debug:
        logging.getLogger("callai").setLevel(logging.DEBUG)
        logger.debug("call-ai debug logging enabled")
