# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import logging as log
import datetime
import threading
from contextlib import contextmanager

__all__ = [
    'log',
    'build_log',
    'set_verbose',
    'get_verbose',
    'configure_build_logger',
    'package_log_handler',
]

__verbose_logging = False
_lock = threading.RLock()

build_log = log.getLogger('kiln_build')  # special logger recording the results of a build run

log.basicConfig(level=log.INFO, format='%(asctime)s - %(levelname)s: %(message)s', datefmt='%Y-%d-%m %H:%M:%S')


def set_verbose(enabled):
    global __verbose_logging

    __verbose_logging = enabled

    if enabled:
        log.basicConfig(level=log.DEBUG, format='%(asctime)s - %(levelname)s: %(message)s', datefmt='%Y-%d-%m %H:%M:%S')
        log.getLogger().setLevel(log.DEBUG)
    else:
        log.basicConfig(level=log.INFO, format='%(asctime)s - %(levelname)s: %(message)s', datefmt='%Y-%d-%m %H:%M:%S')
        log.getLogger().setLevel(log.INFO)


def get_verbose():
    return __verbose_logging


def configure_build_logger(log_dir: str):
    '''
    Record build run results (one line per finished package) in a weekly
    log file below :log_dir, in addition to the regular console output.
    '''

    with _lock:
        date_today = datetime.date.today()
        run_log_dir = os.path.join(log_dir, date_today.strftime("%Y"))
        os.makedirs(run_log_dir, exist_ok=True)
        fname = os.path.join(run_log_dir, 'kiln-build-w{}.log'.format(date_today.isocalendar().week))

        # check if we're already configured for this file
        for h in build_log.handlers:
            if isinstance(h, log.FileHandler) and h.baseFilename == os.path.abspath(fname):
                return

        build_log.setLevel(log.INFO)
        fh = log.FileHandler(fname)
        formatter = log.Formatter('%(levelname).1s: %(asctime)s: %(message)s', datefmt='%Y-%d-%m %H:%M:%S')
        fh.setFormatter(formatter)
        build_log.handlers.clear()
        build_log.addHandler(fh)


@contextmanager
def package_log_handler(fname: str):
    '''
    Copy all log messages emitted by the current thread into a per-package
    log file while a build session is running.
    '''

    os.makedirs(os.path.dirname(fname), exist_ok=True)
    thread_id = threading.get_ident()

    handler = log.FileHandler(fname, mode='w')
    handler.setFormatter(log.Formatter('%(asctime)s - %(levelname)s: %(message)s', datefmt='%Y-%d-%m %H:%M:%S'))
    handler.addFilter(lambda record: record.thread == thread_id)
    log.getLogger().addHandler(handler)
    try:
        yield handler
    finally:
        log.getLogger().removeHandler(handler)
        handler.close()


#
# Global module configuration, to auto-reload it when using multiprocess
# or multithreading code.
#
set_verbose(__verbose_logging)
