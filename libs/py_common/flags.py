import logging

import ldclient
from ldclient import Context
from ldclient.config import Config

from .config import settings

logger = logging.getLogger(__name__)


class _DisabledClient:
    """Stand-in used when LaunchDarkly is not configured: every flag is off."""

    def variation(self, flag_name, context, default):
        return default

    def close(self):
        pass


class LaunchDarklyClient:
    _client = None

    @classmethod
    def get_client(cls):
        if cls._client is None:
            sdk_key = settings.launchdarkly_sdk_key
            if not sdk_key:
                logger.warning("LAUNCHDARKLY_SDK_KEY not set. Feature flags will default to False.")
                cls._client = _DisabledClient()
            else:
                try:
                    ldclient.set_config(Config(sdk_key))
                    cls._client = ldclient.get()
                    logger.info("LaunchDarkly client initialized successfully.")
                except Exception as e:
                    logger.error(f"Failed to initialize LaunchDarkly client: {e}. Feature flags will default to False.")
                    cls._client = _DisabledClient()
        return cls._client


def is_enabled(flag_name: str, context_key: str = 'system') -> bool:
    client = LaunchDarklyClient.get_client()
    context = Context.builder(context_key).kind("provider").build()
    try:
        return bool(client.variation(flag_name, context, False))
    except Exception as e:
        logger.error(f"Error checking flag {flag_name} for {context_key}: {e}. Defaulting to False.")
        return False


def close_ld_client():
    client = LaunchDarklyClient._client
    if client is not None:
        try:
            client.close()
            logger.info("LaunchDarkly client closed.")
        except Exception as e:
            logger.error(f"Error closing LaunchDarkly client: {e}")
    LaunchDarklyClient._client = None
