# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import time
import shutil
import hashlib
import threading
from dataclasses import dataclass

import requests

import kiln.typing as T
from kiln.utils import file_lock, download_file
from kiln.errors import IntegrityError
from kiln.logging import log

__all__ = ['ContentCache', 'CacheStats']


@dataclass
class CacheStats:
    downloads: int = 0  # network transfers performed
    hits: int = 0  # requests served from an existing entry
    evictions: int = 0  # entries dropped because they failed verification


class ContentCache:
    '''
    Cache for upstream source artifacts, shared by all build sessions of a run.

    Entries are keyed by the artifact URL and its declared checksum, so a
    changed checksum in a descriptor never reuses an old download. Writers for
    the same entry are serialized with a lock file (this also works across
    processes), readers of complete entries need no lock since entries only
    ever appear through an atomic rename.
    '''

    def __init__(
        self,
        cache_dir: T.PathUnion,
        *,
        retries: int = 3,
        backoff: float = 2.0,
        timeout: float = 60.0,
        session: T.Optional[requests.Session] = None,
        sleep: T.Callable[[float], None] = time.sleep,
    ):
        self._cache_dir = os.path.abspath(str(cache_dir))
        self._entries_dir = os.path.join(self._cache_dir, 'entries')
        self._locks_dir = os.path.join(self._cache_dir, 'locks')
        os.makedirs(self._entries_dir, exist_ok=True)
        os.makedirs(self._locks_dir, exist_ok=True)

        self._retries = retries
        self._backoff = backoff
        self._timeout = timeout
        self._session = session
        self._sleep = sleep

        self._stats_lock = threading.Lock()
        self.stats = CacheStats()

    @classmethod
    def from_config(cls, lconf, **kwargs) -> 'ContentCache':
        return cls(
            lconf.cache_dir,
            retries=lconf.fetch.retries,
            backoff=lconf.fetch.backoff,
            timeout=lconf.fetch.timeout,
            **kwargs,
        )

    @property
    def cache_dir(self) -> str:
        return self._cache_dir

    @staticmethod
    def key_for(url: str, checksum: T.Optional[str] = None) -> str:
        h = hashlib.sha256()
        h.update(url.encode('utf-8'))
        h.update(b'\0')
        if checksum:
            h.update(checksum.lower().encode('utf-8'))
        return h.hexdigest()

    def entry_path(self, url: str, checksum: T.Optional[str] = None) -> str:
        key = self.key_for(url, checksum)
        fname = os.path.basename(url.rstrip('/')) or 'artifact'
        return os.path.join(self._entries_dir, key[0:2], key, fname)

    def lookup(self, url: str, checksum: T.Optional[str] = None) -> T.Optional[str]:
        '''Return the path of a complete cache entry, or None.'''
        path = self.entry_path(url, checksum)
        return path if os.path.isfile(path) else None

    def evict(self, url: str, checksum: T.Optional[str] = None):
        entry_dir = os.path.dirname(self.entry_path(url, checksum))
        if os.path.isdir(entry_dir):
            shutil.rmtree(entry_dir)
            with self._stats_lock:
                self.stats.evictions += 1

    def _count(self, what: str):
        with self._stats_lock:
            setattr(self.stats, what, getattr(self.stats, what) + 1)

    def _download(self, url: str, dest: str):
        tmp_fname = dest + '.part'
        last_error = None
        for attempt in range(self._retries + 1):
            if attempt > 0:
                delay = self._backoff * (2 ** (attempt - 1))
                log.info('Retrying download of %s in %.1fs (attempt %d of %d)', url, delay, attempt + 1, self._retries + 1)
                self._sleep(delay)
            try:
                download_file(url, tmp_fname, check=True, session=self._session, timeout=self._timeout)
            except (requests.RequestException, OSError) as e:
                last_error = e
                log.warning('Download of %s failed: %s', url, str(e))
                if os.path.exists(tmp_fname):
                    os.unlink(tmp_fname)
                continue

            self._count('downloads')
            os.rename(tmp_fname, dest)
            return

        raise IntegrityError(
            'Unable to fetch {} after {} attempts: {}'.format(url, self._retries + 1, str(last_error)), url=url
        )

    def fetch(
        self,
        url: str,
        checksum: T.Optional[str] = None,
        *,
        verify: T.Optional[T.Callable[[str], None]] = None,
    ) -> str:
        '''
        Retrieve :url into the cache, unless a valid entry exists already.

        :param url: Remote location of the artifact.
        :param checksum: Declared checksum, part of the cache key.
        :param verify: Callable raising :IntegrityError if the file at the given path is not
                       acceptable. A cached entry failing it is downloaded again, a fresh
                       download failing it is dropped and the error propagated.
        :return: Path to the cached artifact.
        '''

        key = self.key_for(url, checksum)
        path = self.entry_path(url, checksum)

        with file_lock(self._locks_dir, key, wait=True):
            if os.path.isfile(path):
                try:
                    if verify:
                        verify(path)
                    self._count('hits')
                    log.debug('Using cached copy of %s', url)
                    return path
                except IntegrityError as e:
                    log.warning('Cached copy of %s is not valid (%s), fetching it again.', url, str(e))
                    self.evict(url, checksum)

            os.makedirs(os.path.dirname(path), exist_ok=True)
            log.info('Downloading %s', url)
            self._download(url, path)
            if verify:
                try:
                    verify(path)
                except IntegrityError:
                    self.evict(url, checksum)
                    raise

        return path
