# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import shutil
import hashlib
import subprocess

import pytest

from .conftest import write_tarball

requires_gpg = pytest.mark.skipif(shutil.which('gpg') is None, reason='GnuPG is not installed')


def _spec(directory, sources):
    from kiln.descriptor import PackageSpec

    return PackageSpec(
        name='hello', version='1.0', license='MIT', summary='Greeter', sources=tuple(sources), directory=str(directory)
    )


def _sha256(fname):
    with open(fname, 'rb') as f:
        return hashlib.sha256(f.read()).hexdigest()


@pytest.fixture
def resolver(tmp_path, fake_http):
    from kiln.cache import ContentCache
    from kiln.source import SourceResolver

    cache = ContentCache(tmp_path / 'cache', session=fake_http, sleep=lambda s: None)
    return SourceResolver(cache)


def test_resolve_local_sources(tmp_path, resolver):
    from kiln.descriptor import SourceRef

    pkg_dir = tmp_path / 'hello'
    tarball = write_tarball(
        pkg_dir / 'hello-1.0.tar.gz', {'configure': '#!/bin/sh\n', 'src/hello.c': 'int main() {}\n'}, topdir='hello-1.0'
    )
    (pkg_dir / 'hello.service').write_text('[Unit]\n')

    spec = _spec(
        pkg_dir,
        [
            SourceRef(url='hello-1.0.tar.gz', checksum='sha256:' + _sha256(tarball)),
            SourceRef(url='hello.service'),
        ],
    )
    res = resolver.resolve(spec, tmp_path / 'work' / 'source')

    assert res.source_dir == str(tmp_path / 'work' / 'source' / 'hello-1.0')
    assert os.path.isfile(os.path.join(res.source_dir, 'src', 'hello.c'))
    # plain files are placed next to the unpacked sources
    assert os.path.isfile(os.path.join(res.source_dir, 'hello.service'))
    assert res.files == [tarball, str(pkg_dir / 'hello.service')]
    assert res.unverified == ['hello.service']


def test_tampered_source_is_rejected(tmp_path, resolver):
    from kiln.errors import IntegrityError
    from kiln.descriptor import SourceRef

    pkg_dir = tmp_path / 'hello'
    tarball = write_tarball(pkg_dir / 'hello-1.0.tar.gz', {'README': 'original\n'}, topdir='hello-1.0')
    checksum = _sha256(tarball)

    # replace the artifact after its checksum was recorded
    write_tarball(pkg_dir / 'hello-1.0.tar.gz', {'README': 'evil\n'}, topdir='hello-1.0')
    spec = _spec(pkg_dir, [SourceRef(url='hello-1.0.tar.gz', checksum=checksum)])

    dest = tmp_path / 'work' / 'source'
    with pytest.raises(IntegrityError) as e:
        resolver.resolve(spec, dest)
    assert 'Checksum mismatch' in str(e.value)
    assert e.value.package == 'hello'
    # nothing was extracted
    assert not dest.exists() or not os.listdir(dest)


def test_missing_local_source(tmp_path, resolver):
    from kiln.errors import IntegrityError
    from kiln.descriptor import SourceRef

    spec = _spec(tmp_path, [SourceRef(url='nonexistent.tar.gz')])
    with pytest.raises(IntegrityError):
        resolver.fetch(spec)


def test_remote_fetch_is_idempotent(tmp_path, resolver, fake_http):
    from kiln.descriptor import SourceRef

    tarball = write_tarball(tmp_path / 'upstream' / 'hello-1.0.tar.gz', {'README': 'hi\n'}, topdir='hello-1.0')
    url = 'https://example.org/hello-1.0.tar.gz'
    with open(tarball, 'rb') as f:
        fake_http.add(url, f.read())
    spec = _spec(tmp_path, [SourceRef(url=url, checksum=_sha256(tarball))])

    fetched = resolver.fetch(spec)
    assert fetched[0].verified
    assert len(fake_http.requests) == 1

    res = resolver.resolve(spec, tmp_path / 'work')
    assert len(fake_http.requests) == 1
    assert os.path.isfile(os.path.join(res.source_dir, 'README'))


def _gpg(gpghome, *args):
    subprocess.run(
        ['gpg', '--homedir', str(gpghome), '--batch', '--no-tty', '--pinentry-mode', 'loopback', '--passphrase', '']
        + list(args),
        check=True,
        capture_output=True,
    )


@pytest.fixture
def signing_key(tmp_path):
    '''Create a throwaway signing key, returning its GnuPG home and the exported public key.'''
    gpghome = tmp_path / 'gnupg'
    gpghome.mkdir(mode=0o700)
    _gpg(gpghome, '--quick-generate-key', 'Kiln Test <test@example.org>', 'ed25519', 'sign', 'never')
    keyfile = tmp_path / 'keys' / 'test-key.asc'
    keyfile.parent.mkdir()
    _gpg(gpghome, '--armor', '--output', str(keyfile), '--export', 'test@example.org')
    yield gpghome, keyfile
    subprocess.run(['gpgconf', '--homedir', str(gpghome), '--kill', 'all'], check=False, capture_output=True)


@requires_gpg
def test_signature_verification(tmp_path, resolver, signing_key):
    from kiln.errors import IntegrityError
    from kiln.descriptor import SourceRef

    gpghome, keyfile = signing_key
    pkg_dir = tmp_path / 'hello'
    tarball = write_tarball(pkg_dir / 'hello-1.0.tar.gz', {'README': 'signed\n'}, topdir='hello-1.0')
    _gpg(gpghome, '--detach-sign', '--output', tarball + '.sig', tarball)
    shutil.copy(keyfile, pkg_dir / 'test-key.asc')

    src = SourceRef(url='hello-1.0.tar.gz', signature_url='hello-1.0.tar.gz.sig', keyring='test-key.asc')
    spec = _spec(pkg_dir, [src])
    fetched = resolver.fetch(spec)
    assert fetched[0].verified

    # the signature no longer matches once the artifact was modified
    write_tarball(pkg_dir / 'hello-1.0.tar.gz', {'README': 'evil\n'}, topdir='hello-1.0')
    with pytest.raises(IntegrityError) as e:
        resolver.resolve(spec, tmp_path / 'work')
    assert 'Signature verification' in str(e.value)
    assert not (tmp_path / 'work').exists() or not os.listdir(tmp_path / 'work')

    # a keyring which is nowhere to be found
    spec = _spec(pkg_dir, [SourceRef(url=src.url, signature_url=src.signature_url, keyring='missing.asc')])
    with pytest.raises(IntegrityError) as e:
        resolver.fetch(spec)
    assert 'was not found' in str(e.value)
