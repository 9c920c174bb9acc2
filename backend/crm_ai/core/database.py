"""
Supabase connection for the CRM entity store, audit log and usage counters.

The supabase client is synchronous; ``run_sync`` moves each query onto the
default executor so pipeline coroutines never block the event loop.
"""
import asyncio
from functools import partial
from typing import Any, Callable, Optional, TypeVar

from supabase import Client, create_client

from crm_ai.core.config import Settings, get_settings
from crm_ai.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_client: Optional[Client] = None


def get_supabase_client(settings: Optional[Settings] = None) -> Optional[Client]:
    """Create (once) and return the Supabase client, or None if unconfigured."""
    global _client
    if _client is not None:
        return _client

    settings = settings or get_settings()
    if not settings.supabase_url or not settings.supabase_key:
        logger.warning(
            "supabase_credentials_missing",
            message="Check SUPABASE_URL and SUPABASE_SERVICE_KEY; in-memory stores will be used",
        )
        return None

    if not settings.supabase_url.startswith("http"):
        logger.error(
            "supabase_url_invalid",
            url=settings.supabase_url,
            message="Should start with http:// or https://",
        )
        return None

    try:
        _client = create_client(settings.supabase_url, settings.supabase_key)
        logger.info("supabase_client_created", url_prefix=settings.supabase_url[:30])
        return _client
    except Exception as e:
        logger.error(
            "supabase_client_creation_failed",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return None


async def run_sync(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking database call in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))
