# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import platform
from dataclasses import field, dataclass

import tomlkit

import kiln.typing as T
from kiln.errors import ConfigError

# Filesystem layout of the target image. Keys may be used as `{libdir}`-style
# variables in file manifest rules and are exported to build steps.
DEFAULT_PATH_VARS = {
    'prefix': '/usr',
    'bindir': '/usr/bin',
    'sbindir': '/usr/sbin',
    'libdir': '/usr/lib',
    'libexecdir': '/usr/libexec',
    'includedir': '/usr/include',
    'datadir': '/usr/share',
    'sysconfdir': '/etc',
    'localstatedir': '/var',
    'docdir': '/usr/share/doc',
    'licensedir': '/usr/share/licenses',
    'pkgconfigdir': '/usr/lib/pkgconfig',
    'unitdir': '/usr/lib/systemd/system',
    'tmpfilesdir': '/usr/lib/tmpfiles.d',
    'factorydir': '/usr/share/factory',
}


def get_config_file(fname):
    '''
    Determine the path of a local Kiln configuration file.
    '''

    path = os.path.join('/etc/kiln/', fname)
    if os.path.isfile(path):
        return path
    path = os.path.join('config', fname)
    if os.path.isfile(path):
        return path
    return None


def default_target_triple(arch: str) -> str:
    return '{}-bottlerocket-linux-gnu'.format(arch)


class LocalConfig:
    '''
    Local, machine-specific configuration for Kiln.
    '''

    @dataclass
    class BuildConfig:
        '''
        Settings for running build sessions.
        The configuration is loaded from a :LocalConfig.
        '''

        arch: str = field(default_factory=platform.machine)
        target_triple: T.Optional[str] = None
        jobs: int = 1
        step_timeout: T.Optional[float] = None
        keep_staging: bool = False

    @dataclass
    class FetchConfig:
        '''
        Settings for retrieving upstream source artifacts.
        '''

        retries: int = 3
        backoff: float = 2.0
        timeout: float = 60.0

    instance = None

    class __LocalConfig:
        def __init__(self, fname=None):
            if not fname:
                fname = get_config_file('base-config.toml')
            self.fname = fname
            if not self.fname:
                raise ConfigError('Unable to find base configuration (usually in `/etc/kiln/base-config.toml`)')

            cdata = {}
            if os.path.isfile(fname):
                with open(fname) as toml_file:
                    cdata = tomlkit.load(toml_file)

            self._workspace = cdata.get('Workspace')
            if not self._workspace:
                raise ConfigError(
                    'No "Workspace" directory set in local config file. Please specify a persistent workspace location!'
                )
            self._workspace = str(self._workspace)

            # location of the shared content cache for upstream sources, can be deleted at any time
            self._cache_dir = str(cdata.get('CacheLocation', os.path.join(self._workspace, 'cache')))

            self._packages_dir = str(cdata.get('PackagesDir', 'packages'))
            self._output_dir = str(cdata.get('OutputDir', os.path.join(self._workspace, 'output')))
            self._trusted_keyring_dir = cdata.get('TrustedKeyringDir')
            if self._trusted_keyring_dir:
                self._trusted_keyring_dir = str(self._trusted_keyring_dir)

            self._build = LocalConfig.BuildConfig()
            bconf = cdata.get('Build', {})
            if 'arch' in bconf:
                self._build.arch = str(bconf['arch'])
            target = bconf.get('target_triple')
            self._build.target_triple = str(target) if target else default_target_triple(self._build.arch)
            self._build.jobs = int(bconf.get('jobs', os.cpu_count() or 1))
            if self._build.jobs < 1:
                raise ConfigError('Build.jobs must be a positive number, got {}'.format(self._build.jobs))
            step_timeout = bconf.get('step_timeout')
            self._build.step_timeout = float(step_timeout) if step_timeout else None
            self._build.keep_staging = bool(bconf.get('keep_staging', False))

            self._fetch = LocalConfig.FetchConfig()
            fconf = cdata.get('Fetch', {})
            self._fetch.retries = int(fconf.get('retries', self._fetch.retries))
            self._fetch.backoff = float(fconf.get('backoff', self._fetch.backoff))
            self._fetch.timeout = float(fconf.get('timeout', self._fetch.timeout))

            self._path_vars = dict(DEFAULT_PATH_VARS)
            for key, value in cdata.get('Paths', {}).items():
                if not str(value).startswith('/'):
                    raise ConfigError('Path variable "{}" must be an absolute path, got "{}"'.format(key, value))
                self._path_vars[str(key)] = str(value)

        @property
        def workspace(self) -> str:
            return self._workspace

        @property
        def cache_dir(self) -> str:
            return self._cache_dir

        @property
        def packages_dir(self) -> str:
            '''Directory containing one subdirectory with a descriptor per package.'''
            return self._packages_dir

        @property
        def output_dir(self) -> str:
            '''Directory where finished package artifacts are placed.'''
            return self._output_dir

        @property
        def build_root_dir(self) -> str:
            return os.path.join(self._workspace, 'build')

        @property
        def log_root_dir(self) -> str:
            return os.path.join(self._workspace, 'logs')

        @property
        def trusted_keyring_dir(self) -> T.Optional[str]:
            '''Directory holding extra keyrings that signature keyring references may be resolved against.'''
            return self._trusted_keyring_dir

        @property
        def build(self):
            return self._build

        @property
        def fetch(self):
            return self._fetch

        @property
        def path_vars(self) -> T.Dict[str, str]:
            return self._path_vars

    def __init__(self, fname=None):
        if not LocalConfig.instance:
            LocalConfig.instance = LocalConfig.__LocalConfig(fname)

    def __getattr__(self, name):
        return getattr(self.instance, name)

    @staticmethod
    def reset():
        '''Drop the loaded configuration, so the next instantiation reads a file again.'''
        LocalConfig.instance = None
