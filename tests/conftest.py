# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import io
import os
import tarfile

import pytest
import tomlkit

from kiln import LocalConfig
from kiln.logging import set_verbose

# unconditionally enable verbose mode
set_verbose(True)


@pytest.fixture(scope='session')
def samples_dir():
    '''
    Fixture responsible for returning the location of static
    test data the test may use.
    '''
    from . import source_root

    samples_dir = os.path.join(source_root, 'tests', 'test_data')
    if not os.path.isdir(samples_dir):
        raise Exception('Unable to find test samples directory in {}'.format(samples_dir))
    return samples_dir


@pytest.fixture
def localconfig(samples_dir, tmp_path):
    '''
    Retrieve a Kiln LocalConfig object which is set up for testing,
    with all of its directories in a temporary location.
    '''

    config_tmpl_fname = os.path.join(samples_dir, 'config', 'base-config.toml')
    with open(config_tmpl_fname, 'r') as f:
        config_toml = tomlkit.load(f)

    workspace = tmp_path / 'workspace'
    config_toml['Workspace'] = str(workspace)
    config_toml['PackagesDir'] = str(tmp_path / 'packages')
    config_toml['CacheLocation'] = str(tmp_path / 'cache')
    config_toml['OutputDir'] = str(tmp_path / 'output')

    config_fname = tmp_path / 'base-config.toml'
    with open(config_fname, 'w') as f:
        tomlkit.dump(config_toml, f)

    LocalConfig.reset()
    conf = LocalConfig(str(config_fname))
    assert conf.workspace == str(workspace)
    assert conf.build.arch == 'x86_64'
    assert conf.build.target_triple == 'x86_64-bottlerocket-linux-gnu'
    os.makedirs(conf.packages_dir, exist_ok=True)

    yield conf
    LocalConfig.reset()


def write_tarball(fname, files, *, topdir=None):
    '''
    Write a gzipped tarball containing :files, a mapping of relative path to
    text content. Entries are placed below :topdir if given.
    '''
    os.makedirs(os.path.dirname(str(fname)), exist_ok=True)
    with tarfile.open(str(fname), 'w:gz') as tar:
        if topdir:
            info = tarfile.TarInfo(topdir)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for path, content in sorted(files.items()):
            data = content.encode('utf-8')
            info = tarfile.TarInfo(os.path.join(topdir, path) if topdir else path)
            info.size = len(data)
            info.mode = 0o755 if path.endswith('.sh') else 0o644
            tar.addfile(info, io.BytesIO(data))
    return str(fname)


@pytest.fixture
def make_tarball():
    return write_tarball


@pytest.fixture
def add_package(localconfig):
    '''
    Add a package to the test packages directory. :files are written next
    to the descriptor (patches, local sources, keyrings).
    '''

    def _add_package(name, descriptor, files=None):
        pkg_dir = os.path.join(localconfig.packages_dir, name)
        os.makedirs(pkg_dir, exist_ok=True)
        with open(os.path.join(pkg_dir, name + '.toml'), 'w') as f:
            f.write(descriptor)
        for fname, content in (files if files else {}).items():
            path = os.path.join(pkg_dir, fname)
            if isinstance(content, bytes):
                with open(path, 'wb') as f:
                    f.write(content)
            else:
                with open(path, 'w') as f:
                    f.write(content)
        return pkg_dir

    return _add_package


class FakeResponse:
    def __init__(self, status_code, content=b''):
        self.status_code = status_code
        self._content = content

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self._content), chunk_size):
            yield self._content[i : i + chunk_size]


class FakeHttpSession:
    '''
    Stands in for a requests session: serves registered URLs from memory
    and records every request made.
    '''

    def __init__(self):
        self.files = {}
        self.failures = {}  # url -> number of requests that fail before it is served
        self.requests = []

    def add(self, url, content):
        self.files[url] = content

    def get(self, url, stream=False, headers=None, timeout=None, **kwargs):
        import requests

        self.requests.append(url)
        if self.failures.get(url, 0) > 0:
            self.failures[url] -= 1
            raise requests.ConnectionError('Connection refused: {}'.format(url))
        if url not in self.files:
            return FakeResponse(404)
        return FakeResponse(200, self.files[url])


@pytest.fixture
def fake_http():
    return FakeHttpSession()
