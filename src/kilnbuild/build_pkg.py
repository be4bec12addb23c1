# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import sys
import signal

import rich
import click
from rich.table import Table
from rich.markup import escape

import kiln.typing as T
from kiln.cache import ContentCache
from kiln.errors import KilnError
from kiln.source import SourceResolver
from kiln.logging import log, configure_build_logger
from kiln.scheduler import BuildScheduler
from kilnbuild.utils import (
    EXIT_OK,
    EXIT_BUILD_FAILED,
    console,
    get_config,
    print_report,
    get_universe,
)


@click.command()
@click.option('--arch', default=None, help='Architecture to fetch sources for (sources are the same for all).')
@click.argument('names', nargs=-1)
def fetch(arch: T.Optional[str], names: T.Tuple[str, ...]):
    '''Download and verify the sources of packages.

    Populates the source cache; nothing is extracted or built.
    Without package names, the sources of all packages are fetched.
    '''

    lconf = get_config()
    universe = get_universe(lconf, names)
    if arch:
        log.debug('Fetching sources for architecture %s', arch)

    cache = ContentCache.from_config(lconf)
    resolver = SourceResolver(cache, keyring_dirs=[lconf.trusted_keyring_dir])

    table = Table(box=rich.box.MINIMAL, title='Fetched Sources')
    table.add_column('Package', no_wrap=True)
    table.add_column('Sources')
    table.add_column('Result')

    failed = 0
    selected = names if names else universe.names
    for name in selected:
        spec = universe.get(name)
        try:
            fetched = resolver.fetch(spec)
        except KilnError as e:
            failed += 1
            log.error('Unable to fetch sources of %s: %s', name, str(e))
            table.add_row(name, str(len(spec.sources)), '[bold red]✘[/bold red] ' + escape(str(e)))
            continue
        unverified = len([f for f in fetched if not f.verified])
        note = '[bold green]✔[/bold green]'
        if unverified:
            note += ' [yellow]{} unverified[/yellow]'.format(unverified)
        table.add_row(name, str(len(fetched)), note)

    console.print(table)
    log.info('Cache: %d download(s), %d hit(s)', cache.stats.downloads, cache.stats.hits)
    sys.exit(EXIT_BUILD_FAILED if failed else EXIT_OK)


@click.command()
@click.option('--arch', default=None, help='Architecture to build for (defaults to the configured one).')
@click.option('--jobs', '-j', type=click.IntRange(min=1), default=None, help='Number of packages to build in parallel.')
@click.option(
    '--keep-staging', is_flag=True, default=False, help='Keep working directories of builds for debugging.'
)
@click.argument('names', nargs=-1)
def build(arch: T.Optional[str], jobs: T.Optional[int], keep_staging: bool, names: T.Tuple[str, ...]):
    '''Build packages and their build dependencies.

    Without package names, all packages are built. Packages are built in
    dependency order; a failed package causes everything depending on it
    to be skipped.
    '''

    lconf = get_config()
    universe = get_universe(lconf, names)
    configure_build_logger(lconf.log_root_dir)

    scheduler = BuildScheduler(
        universe,
        lconf=lconf,
        jobs=jobs,
        arch=arch,
        keep_staging=True if keep_staging else None,
    )

    def on_signal(signum, frame):
        scheduler.cancel()

    prev_int = signal.signal(signal.SIGINT, on_signal)
    prev_term = signal.signal(signal.SIGTERM, on_signal)
    try:
        report = scheduler.run(names)
    finally:
        signal.signal(signal.SIGINT, prev_int)
        signal.signal(signal.SIGTERM, prev_term)

    print_report(report)
    sys.exit(EXIT_OK if report.ok else EXIT_BUILD_FAILED)
