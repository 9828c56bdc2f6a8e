from abc import ABC, abstractmethod

from ..abc import ResolvedFeed


class SourceDiscoverer(ABC):
    """Base class for resolving an URL into a feed document"""

    @abstractmethod
    def discover(self, url: str) -> ResolvedFeed:
        """Fetch the feed behind the URL"""
        pass
