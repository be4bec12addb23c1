# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import re
import time
import fcntl
from contextlib import contextmanager

import requests

import kiln.typing as T
from kiln.logging import log


re_remote_url = re.compile('^(https?|ftps?)://')


def is_remote_url(uri):
    '''Check if string contains a remote URI.'''
    return re_remote_url.match(uri) is not None


def download_file(url, fname, check=False, headers: dict = None, session=None, timeout: float = 60, **kwargs):
    if not headers:
        headers = {}
    if not session:
        session = requests

    from kiln import __version__

    hdr = {'user-agent': 'kiln/{}'.format(__version__)}
    hdr.update(headers)

    r = session.get(url, stream=True, headers=hdr, timeout=timeout, **kwargs)
    if r.status_code == 200:
        with open(fname, 'wb') as f:
            for chunk in r.iter_content(chunk_size=64 * 1024):
                f.write(chunk)
        return r.status_code

    if check:
        raise requests.HTTPError('Unable to download file "{}". Status: {}'.format(url, r.status_code), response=r)
    return r.status_code


class LockError(Exception):
    pass


class FileLock:
    """
    Lock a named resource via a lock file, so that only one thread or process
    can work on it at a time.
    """

    def __init__(self, lock_dir: T.PathUnion, name: str):
        """
        :param lock_dir: Directory to place the lock file in.
        :param name: Unique name of the lock.
        """
        self._name = name
        self._lock_dir = str(lock_dir)
        self._lock_file_fd = -1
        os.makedirs(self._lock_dir, exist_ok=True)

    @property
    def lock_filename(self) -> str:
        return os.path.join(self._lock_dir, self._name + '.lock')

    def acquire(self, raise_error=True) -> bool:
        """
        Try to acquire the lock.
        :param raise_error: True if we should raise an error, instead of just returning False if lock can't be acquired.
        :return: True if lock was acquired.
        """
        # flock() locks belong to the open file description, so this also
        # excludes other threads of the same process which opened the file separately
        fd = os.open(self.lock_filename, os.O_RDWR | os.O_CREAT)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except (IOError, BlockingIOError):
            # another instance is holding it
            self._lock_file_fd = -1
            os.close(fd)
            if raise_error:
                raise LockError(
                    'Unable to acquire lock "{}": Lock held by other instance or thread!'.format(self.lock_filename)
                )
            return False
        self._lock_file_fd = fd
        return True

    def acquire_wait(self, poll_interval: float = 0.2):
        if self.acquire(raise_error=False):
            return
        log.info(
            'Waiting on lock "%s". Will continue once the other operation holding the lock has completed.', self._name
        )
        while True:
            time.sleep(poll_interval)
            if self.acquire(raise_error=False):
                return

    def release(self):
        """Release an acquired lock. Does nothing if no lock was taken."""
        if self._lock_file_fd < 0:
            return
        fcntl.flock(self._lock_file_fd, fcntl.LOCK_UN)
        os.close(self._lock_file_fd)
        self._lock_file_fd = -1


@contextmanager
def file_lock(lock_dir: T.PathUnion, name: str, *, raise_error=True, wait=False):
    flock = FileLock(lock_dir, name)
    if wait:
        flock.acquire_wait()
    else:
        flock.acquire(raise_error)
    try:
        yield flock
    finally:
        flock.release()
