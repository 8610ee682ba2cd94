"""
Reference-counted cache of the library resolver and its cloned repositories.

Concurrent scratch builds share one clone of the official-images repository.
The clone happens when the first user acquires the cache and its directory is
deleted when the last user releases it.
"""
import logging
import shutil
import tempfile
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

from .library_resolver import LibraryResolver

logger = logging.getLogger(__name__)

LIBRARY_CACHE_KEY = "library"

ResolverFactory = Callable[[str], LibraryResolver]


class LibraryCache:
    """
    Shared handle on a LibraryResolver and its working directory.
    """

    def __init__(self, resolver_factory: Optional[ResolverFactory] = None,
                 prefix: str = "coreprov-scratch-"):
        """
        :param resolver_factory: Builds a resolver inside a fresh directory.
        :param prefix: Prefix of the temporary working directory.
        """
        self._factory = resolver_factory or LibraryResolver.build
        self._prefix = prefix
        self._lock = threading.Lock()
        self._ref_count = 0
        self._path: Optional[str] = None
        self._resolver: Optional[LibraryResolver] = None

    @property
    def ref_count(self) -> int:
        return self._ref_count

    @property
    def path(self) -> Optional[str]:
        return self._path

    def acquire(self) -> LibraryResolver:
        """
        Takes a reference, building the resolver on the first acquire.

        A failed build leaves the count at zero and no directory behind.
        """
        with self._lock:
            if self._ref_count == 0:
                path = tempfile.mkdtemp(prefix=self._prefix)
                try:
                    resolver = self._factory(path)
                except BaseException:
                    shutil.rmtree(path, ignore_errors=True)
                    raise
                self._path, self._resolver = path, resolver
            self._ref_count += 1
            return self._resolver

    def release(self) -> None:
        """
        Drops a reference, deleting the working directory with the last one.
        """
        with self._lock:
            if self._ref_count == 0:
                logger.warning("Library cache released more times than acquired")
                return
            self._ref_count -= 1
            if self._ref_count == 0:
                logger.debug("Removing library cache %s", self._path)
                shutil.rmtree(self._path, ignore_errors=True)
                self._path, self._resolver = None, None

    @contextmanager
    def library(self) -> Iterator[LibraryResolver]:
        """
        Acquires the resolver for the duration of a with block.
        """
        resolver = self.acquire()
        try:
            yield resolver
        finally:
            self.release()


class CacheRegistry:
    """
    Process-wide registry of named library caches.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._caches: Dict[str, LibraryCache] = {}

    def get(self, key: str = LIBRARY_CACHE_KEY,
            resolver_factory: Optional[ResolverFactory] = None) -> LibraryCache:
        with self._lock:
            cache = self._caches.get(key)
            if cache is None:
                cache = LibraryCache(resolver_factory)
                self._caches[key] = cache
            return cache


_registry = CacheRegistry()


def library_cache() -> LibraryCache:
    """
    Returns the process-wide library cache.
    """
    return _registry.get(LIBRARY_CACHE_KEY)
