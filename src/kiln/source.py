# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import shutil
import tarfile
import hashlib
from dataclasses import field, dataclass
from urllib.parse import urlparse

import kiln.typing as T
from kiln.cache import ContentCache
from kiln.utils import is_remote_url, extract_tarball
from kiln.errors import IntegrityError
from kiln.logging import log
from kiln.descriptor import SourceRef, PackageSpec
from kiln.utils.gpg import GpgException, verify_detached

__all__ = ['SourceResolver', 'ResolvedSources', 'FetchedSource', 'file_checksum']


def file_checksum(fname: T.PathUnion, algo: str = 'sha256') -> str:
    '''Return the hex digest of the file at :fname.'''
    h = hashlib.new(algo)
    with open(fname, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            h.update(chunk)
    return h.hexdigest()


@dataclass
class FetchedSource:
    ref: SourceRef
    path: str  # local path of the verified artifact
    verified: bool


@dataclass
class ResolvedSources:
    '''Result of resolving all sources of a package.'''

    source_dir: str  # root of the extracted source tree
    files: T.List[str] = field(default_factory=list)  # local path of each source, in declaration order
    unverified: T.List[str] = field(default_factory=list)  # URLs which had no integrity material


class SourceResolver:
    '''
    Turns the source references of a package into a local, verified and
    extracted source tree.
    '''

    def __init__(self, cache: ContentCache, *, keyring_dirs: T.Optional[T.List[str]] = None):
        self._cache = cache
        self._keyring_dirs = [d for d in keyring_dirs if d] if keyring_dirs else []

    def _local_path(self, spec: PackageSpec, url: str) -> str:
        if url.startswith('file://'):
            return urlparse(url).path
        return spec.local_path(url)

    def _keyring_path(self, spec: PackageSpec, keyring: str) -> str:
        candidates = [spec.local_path(keyring)]
        candidates.extend([os.path.join(d, keyring) for d in self._keyring_dirs])
        for path in candidates:
            if os.path.isfile(path):
                return path
        raise IntegrityError(
            'Keyring "{}" for package {} was not found (tried: {})'.format(keyring, spec.name, ', '.join(candidates)),
            package=spec.name,
        )

    def _retrieve(self, spec: PackageSpec, url: str, checksum=None, verify=None) -> str:
        if is_remote_url(url):
            return self._cache.fetch(url, checksum, verify=verify)

        path = self._local_path(spec, url)
        if not os.path.isfile(path):
            raise IntegrityError('Source file {} does not exist.'.format(path), url=url, package=spec.name)
        if verify:
            verify(path)
        return path

    def verify(self, spec: PackageSpec, src: SourceRef, path: str, signature_path: T.Optional[str] = None):
        '''
        Check the artifact at :path against the integrity material declared by :src.
        Raises :IntegrityError if any of it does not match.
        '''

        if src.checksum:
            algo, expected = src.checksum_parts()
            actual = file_checksum(path, algo)
            if actual != expected:
                raise IntegrityError(
                    'Checksum mismatch for {}: expected {}:{}, got {}:{}'.format(src.url, algo, expected, algo, actual),
                    url=src.url,
                    package=spec.name,
                )
            log.debug('Checksum of %s is valid', src.url)

        if src.signature_url:
            keyring = self._keyring_path(spec, src.keyring)
            try:
                sig = verify_detached(path, signature_path, [keyring])
            except GpgException as e:
                raise IntegrityError(
                    'Signature verification of {} failed: {}'.format(src.url, str(e)), url=src.url, package=spec.name
                )
            if sig.weak_signature:
                log.warning('Source %s is signed using a weak digest algorithm.', src.url)
            log.debug('Signature of %s is valid (key %s)', src.url, sig.primary_fingerprint)

    def fetch(self, spec: PackageSpec) -> T.List[FetchedSource]:
        '''
        Retrieve and verify all sources of :spec, without extracting anything.
        '''

        fetched = []
        for src in spec.sources:
            sig_path = None
            if src.signature_url:
                sig_path = self._retrieve(spec, src.signature_url)

            path = self._retrieve(
                spec, src.url, src.checksum, verify=lambda p, src=src, sig_path=sig_path: self.verify(spec, src, p, sig_path)
            )
            if not src.has_integrity:
                log.warning('Source %s of package %s is unverified: it has no signature or checksum.', src.url, spec.name)
            fetched.append(FetchedSource(ref=src, path=path, verified=src.has_integrity))

        return fetched

    def extract(self, spec: PackageSpec, fetched: T.List[FetchedSource], dest_dir: T.PathUnion) -> ResolvedSources:
        '''
        Unpack the archives among the already verified :fetched sources into :dest_dir.

        The source tree root is the single top-level directory of the first
        archive if it has one (the usual ``name-version/`` layout), :dest_dir otherwise.
        '''

        dest_dir = str(dest_dir)
        os.makedirs(dest_dir, exist_ok=True)

        result = ResolvedSources(source_dir=dest_dir)
        plain_files = []
        first_archive = True
        for fsrc in fetched:
            result.files.append(fsrc.path)
            if not fsrc.verified:
                result.unverified.append(fsrc.ref.url)
            if not fsrc.ref.is_archive:
                plain_files.append(fsrc)
                continue

            log.info('Extracting %s', fsrc.ref.filename)
            try:
                created = extract_tarball(fsrc.path, dest_dir)
            except (tarfile.TarError, OSError) as e:
                raise IntegrityError(
                    'Unable to extract {}: {}'.format(fsrc.ref.url, str(e)), url=fsrc.ref.url, package=spec.name
                )
            if first_archive:
                first_archive = False
                if len(created) == 1 and os.path.isdir(os.path.join(dest_dir, created[0])):
                    result.source_dir = os.path.join(dest_dir, created[0])

        # auxiliary files end up next to the unpacked sources
        for fsrc in plain_files:
            shutil.copy2(fsrc.path, os.path.join(result.source_dir, fsrc.ref.filename))

        return result

    def resolve(self, spec: PackageSpec, dest_dir: T.PathUnion) -> ResolvedSources:
        '''
        Fetch, verify and extract all sources of :spec into :dest_dir.
        Everything is verified before the first archive is unpacked.
        '''
        return self.extract(spec, self.fetch(spec), dest_dir)
