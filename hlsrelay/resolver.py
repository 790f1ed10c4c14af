"""Contract with whatever discovers stream URLs (site scraper, API, user input).

The pipeline only needs a manifest URL and, when that URL has expired, a way
to ask for a fresh one for the same episode.
"""

import abc
import logging
from typing import Callable, Optional

LOG = logging.getLogger(__name__)


class ManifestSource(abc.ABC):
    @abc.abstractmethod
    def manifest_url(self) -> str:
        pass

    def can_refresh(self) -> bool:
        return False

    def refresh(self) -> str:
        """Re-resolve an expired manifest URL and return the new one."""
        raise NotImplementedError(f"{type(self).__name__} cannot re-resolve manifest URLs")


class StaticManifestSource(ManifestSource):
    def __init__(self, url: str):
        self._url = url

    def manifest_url(self) -> str:
        return self._url


class CallbackManifestSource(ManifestSource):
    """Wraps a resolver callback, e.g. ``lambda: scraper.stream_url(anime_id, ep)``."""

    def __init__(self, url: str, refresh_callback: Optional[Callable[[], str]] = None):
        self._url = url
        self._refresh = refresh_callback

    def manifest_url(self) -> str:
        return self._url

    def can_refresh(self) -> bool:
        return self._refresh is not None

    def refresh(self) -> str:
        if self._refresh is None:
            return super().refresh()
        new_url = self._refresh()
        if not new_url:
            raise ValueError("Resolver returned an empty manifest URL")
        LOG.info("Re-resolved manifest URL")
        self._url = new_url
        return new_url


def as_manifest_source(value) -> ManifestSource:
    if isinstance(value, ManifestSource):
        return value
    if isinstance(value, str) and value:
        return StaticManifestSource(value)
    raise TypeError(f"Expected a manifest URL or ManifestSource, got {type(value).__name__}")
