# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import sys

import click

from kilnbuild.utils import EXIT_OK, EXIT_BAD_INPUT


@click.group(invoke_without_command=True)
@click.option('--verbose', envvar='VERBOSE', default=False, is_flag=True, help='Enable debug messages.')
@click.option('--version', default=False, is_flag=True, help='Display the version of Kiln itself.')
@click.option(
    '--config',
    'config_fname',
    envvar='KILN_CONFIG',
    default=None,
    type=click.Path(dir_okay=False),
    help='Configuration file to use instead of the system-wide one.',
)
@click.pass_context
def cli(ctx, verbose, version, config_fname):
    '''Build packages from their descriptors

    Fetches and verifies upstream sources, applies patches, runs the build
    procedure of each package and splits the installed files into
    sub-package artifacts, building packages in dependency order.
    '''
    from kiln.logging import set_verbose

    set_verbose(verbose)
    if version:
        from kiln import __version__

        print(__version__)
        sys.exit(EXIT_OK)

    ctx.ensure_object(dict)
    ctx.obj['config_fname'] = config_fname

    if ctx.invoked_subcommand is None:
        click.echo('No subcommand was provided. Can not continue.')
        sys.exit(EXIT_BAD_INPUT)


def _register_commands():
    '''Register kiln-build subcommands.'''

    import kilnbuild.build_pkg as bpkg

    cli.add_command(bpkg.fetch)
    cli.add_command(bpkg.build)

    import kilnbuild.check_pkg as cpkg

    cli.add_command(cpkg.check)
    cli.add_command(cpkg.cmd_list)
    cli.add_command(cpkg.check_changelog)


def run(mainfile, args):
    from rich.traceback import install

    if len(args) == 0:
        print('Need a subcommand to proceed!')
        sys.exit(EXIT_BAD_INPUT)

    install(show_locals=True, suppress=[click])
    cli()  # pylint: disable=no-value-for-parameter


def main():
    run(sys.argv[0], sys.argv[1:])


_register_commands()
