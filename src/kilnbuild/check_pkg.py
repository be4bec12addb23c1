# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import sys

import rich
import click
from rich.table import Table
from rich.markup import escape

import kiln.typing as T
from kiln.changelog import validate_changelog
from kilnbuild.utils import (
    EXIT_OK,
    EXIT_BUILD_FAILED,
    console,
    fail_input,
    get_config,
    get_universe,
)


@click.command()
@click.argument('names', nargs=-1)
def check(names: T.Tuple[str, ...]):
    '''Validate package descriptors and show the build order.

    All descriptors are loaded and checked for schema violations, unknown
    build dependencies and dependency cycles.
    '''

    lconf = get_config()
    universe = get_universe(lconf, names)
    order = universe.topological_order(names)

    console.print('[bold green]✔[/bold green] {} package descriptor(s) are valid.'.format(len(universe)))
    for i, name in enumerate(order, start=1):
        click.echo('{:>3}. {}'.format(i, name))


@click.command('list')
def cmd_list():
    '''List all known packages.'''

    lconf = get_config()
    universe = get_universe(lconf)

    table = Table(box=rich.box.MINIMAL)
    table.add_column('Package', no_wrap=True)
    table.add_column('Version', style='magenta', no_wrap=True)
    table.add_column('License')
    table.add_column('Build Requires')
    table.add_column('Sub-packages')

    for spec in universe:
        table.add_row(
            spec.name,
            str(spec.evr),
            escape(spec.license),
            ', '.join(sorted(spec.build_requires)),
            ', '.join([sp.name for sp in spec.effective_subpackages()]),
        )
    rich.print(table)


@click.command('check-changelog')
@click.argument('fname', default='CHANGELOG.md', type=click.Path(dir_okay=False))
def check_changelog(fname: str):
    '''Check that all headers of a changelog are release versions.'''

    if not os.path.isfile(fname):
        fail_input('Changelog file "{}" does not exist.'.format(fname))

    bad = validate_changelog(fname)
    if not bad:
        console.print('[bold green]✔[/bold green] CHANGELOG validation passed!')
        sys.exit(EXIT_OK)

    for lineno, line in bad:
        console.print('{}:{}: {}'.format(escape(fname), lineno, escape(line)))
    console.print(
        '[bold red]✘[/bold red] CHANGELOG validation failed! Headers must match the regex '
        + escape("'^# v[0-9]+\\.[0-9]+\\.[0-9]+'")
    )
    sys.exit(EXIT_BUILD_FAILED)
