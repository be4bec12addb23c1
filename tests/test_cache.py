# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import hashlib

import pytest

URL = 'https://example.org/releases/hello-1.0.tar.gz'


def _checker(expected):
    from kiln.errors import IntegrityError

    def verify(path):
        with open(path, 'rb') as f:
            if hashlib.sha256(f.read()).hexdigest() != expected:
                raise IntegrityError('checksum mismatch', url=URL)

    return verify


def test_fetch_is_idempotent(tmp_path, fake_http):
    from kiln.cache import ContentCache

    content = b'hello world'
    checksum = hashlib.sha256(content).hexdigest()
    fake_http.add(URL, content)

    cache = ContentCache(tmp_path / 'cache', session=fake_http, sleep=lambda s: None)
    path = cache.fetch(URL, checksum, verify=_checker(checksum))
    assert os.path.basename(path) == 'hello-1.0.tar.gz'
    with open(path, 'rb') as f:
        assert f.read() == content
    assert cache.stats.downloads == 1
    assert len(fake_http.requests) == 1

    # a second fetch is served from the cache, without any transfer
    path2 = cache.fetch(URL, checksum, verify=_checker(checksum))
    assert path2 == path
    assert cache.stats.downloads == 1
    assert cache.stats.hits == 1
    assert len(fake_http.requests) == 1
    assert cache.lookup(URL, checksum) == path

    # a different checksum is a different entry
    assert cache.lookup(URL, 'sha256:0000') is None


def test_fetch_retries(tmp_path, fake_http):
    from kiln.cache import ContentCache
    from kiln.errors import IntegrityError

    delays = []
    fake_http.add(URL, b'data')
    fake_http.failures[URL] = 2

    cache = ContentCache(tmp_path / 'cache', retries=3, backoff=1.5, session=fake_http, sleep=delays.append)
    cache.fetch(URL)
    assert len(fake_http.requests) == 3
    assert delays == [1.5, 3.0]
    assert cache.stats.downloads == 1

    # retries exhausted
    other_url = 'https://example.org/releases/missing.tar.gz'
    fake_http.failures[other_url] = 10
    delays.clear()
    cache = ContentCache(tmp_path / 'cache2', retries=2, backoff=1.0, session=fake_http, sleep=delays.append)
    with pytest.raises(IntegrityError) as e:
        cache.fetch(other_url)
    assert 'after 3 attempts' in str(e.value)
    assert e.value.url == other_url
    assert delays == [1.0, 2.0]
    assert cache.lookup(other_url) is None


def test_fetch_http_error(tmp_path, fake_http):
    from kiln.cache import ContentCache
    from kiln.errors import IntegrityError

    cache = ContentCache(tmp_path / 'cache', retries=1, backoff=0, session=fake_http, sleep=lambda s: None)
    with pytest.raises(IntegrityError) as e:
        cache.fetch('https://example.org/404.tar.gz')
    assert 'Status: 404' in str(e.value)
    assert len(fake_http.requests) == 2


def test_corrupted_entries(tmp_path, fake_http):
    from kiln.cache import ContentCache
    from kiln.errors import IntegrityError

    content = b'pristine upstream release'
    checksum = hashlib.sha256(content).hexdigest()
    fake_http.add(URL, content)
    cache = ContentCache(tmp_path / 'cache', session=fake_http, sleep=lambda s: None)

    path = cache.fetch(URL, checksum, verify=_checker(checksum))
    with open(path, 'wb') as f:
        f.write(b'corrupted on disk')

    # a damaged entry is dropped and downloaded again
    path = cache.fetch(URL, checksum, verify=_checker(checksum))
    with open(path, 'rb') as f:
        assert f.read() == content
    assert cache.stats.evictions == 1
    assert cache.stats.downloads == 2

    # a tampered upstream artifact never stays in the cache
    fake_http.add(URL, b'tampered')
    cache.evict(URL, checksum)
    with pytest.raises(IntegrityError):
        cache.fetch(URL, checksum, verify=_checker(checksum))
    assert cache.lookup(URL, checksum) is None


def test_concurrent_fetch_downloads_once(tmp_path, fake_http):
    import threading

    from kiln.cache import ContentCache

    content = b'shared tarball'
    checksum = hashlib.sha256(content).hexdigest()
    fake_http.add(URL, content)
    cache = ContentCache(tmp_path / 'cache', session=fake_http, sleep=lambda s: None)

    n_threads = 8
    barrier = threading.Barrier(n_threads)
    paths = []
    errors = []

    def fetch():
        barrier.wait()
        try:
            paths.append(cache.fetch(URL, checksum, verify=_checker(checksum)))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=fetch) for _ in range(n_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(set(paths)) == 1
    assert cache.stats.downloads == 1
    assert cache.stats.hits == n_threads - 1
    assert len(fake_http.requests) == 1
    with open(paths[0], 'rb') as f:
        assert f.read() == content
