# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import sys

import rich
import click
from rich.table import Table
from rich.markup import escape
from rich.console import Console

import kiln.typing as T
from kiln import LocalConfig
from kiln.errors import KilnError, ConfigError
from kiln.universe import PackageUniverse
from kiln.scheduler import PackageState, ScheduleReport

EXIT_OK = 0
EXIT_BUILD_FAILED = 1
EXIT_BAD_INPUT = 2

console = Console(stderr=True)

_STATE_STYLES = {
    PackageState.SUCCESS: 'green',
    PackageState.FAILED: 'bold red',
    PackageState.SKIPPED: 'yellow',
    PackageState.CANCELLED: 'magenta',
}


def fail_input(message: str):
    '''Report invalid configuration or descriptors and exit.'''
    console.print('[bold red]✘[/bold red] {}'.format(escape(message)))
    sys.exit(EXIT_BAD_INPUT)


def get_config() -> LocalConfig:
    ctx = click.get_current_context()
    fname = ctx.obj.get('config_fname') if ctx.obj else None
    try:
        return LocalConfig(fname)
    except ConfigError as e:
        fail_input(str(e))
    except OSError as e:
        fail_input('Unable to read configuration: {}'.format(str(e)))


def get_universe(lconf: LocalConfig, names: T.Sequence[str] = ()) -> PackageUniverse:
    '''Load all package descriptors, exiting if they are not usable.'''
    try:
        universe = PackageUniverse.load(lconf.packages_dir)
        for name in names:
            universe.get(name)
    except KilnError as e:
        fail_input(str(e))
    return universe


def print_report(report: ScheduleReport):
    '''Print a summary table for a build run to stderr.'''

    table = Table(box=rich.box.MINIMAL, title='Build Summary')
    table.add_column('Package', no_wrap=True)
    table.add_column('State', no_wrap=True)
    table.add_column('Stage')
    table.add_column('Error')

    for name in report.order:
        outcome = report.outcomes[name]
        style = _STATE_STYLES.get(outcome.state, '')
        error = ''
        if outcome.error is not None:
            # full output is in the package log, keep the table readable
            error = str(outcome.error).splitlines()[0] if str(outcome.error) else type(outcome.error).__name__
        table.add_row(
            name,
            '[{}]{}[/{}]'.format(style, outcome.state, style) if style else str(outcome.state),
            outcome.stage if outcome.stage else '',
            escape(error),
        )
    console.print(table)

    problems = report.problems
    if problems:
        console.print(
            '[bold red]✘[/bold red] {} of {} package(s) were not built.'.format(len(problems), len(report.order))
        )
    else:
        console.print('[bold green]✔[/bold green] All {} package(s) were built.'.format(len(report.order)))
