"""
Network utilities for FM4 Mirror - simplified HTTP client functions
"""
import httpx
import logging

from fm4mirror import __version__

logger = logging.getLogger(__name__)

USER_AGENT = f"FM4-Mirror/{__version__}"


def create_httpx_client(**kwargs) -> httpx.AsyncClient:
    """
    Create an httpx AsyncClient with the service User-Agent.

    Args:
        **kwargs: Additional arguments for AsyncClient

    Returns:
        Configured httpx.AsyncClient
    """
    headers = {'User-Agent': USER_AGENT}
    headers.update(kwargs.pop('headers', None) or {})
    return httpx.AsyncClient(headers=headers, follow_redirects=True, **kwargs)
