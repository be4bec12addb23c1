# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import gzip
import stat
import tarfile
import hashlib
from dataclasses import dataclass

import kiln.typing as T
from kiln.logging import log
from kiln.manifest import Partition
from kiln.descriptor import PackageSpec
from kiln.utils.json import json_stable_dump

__all__ = ['ArtifactWriter', 'PackageArtifact', 'source_date_epoch']


def source_date_epoch() -> int:
    '''Timestamp used for all archive members, from ``SOURCE_DATE_EPOCH`` if set.'''
    value = os.environ.get('SOURCE_DATE_EPOCH')
    if value and value.isdigit():
        return int(value)
    return 0


@dataclass
class PackageArtifact:
    name: str  # sub-package name
    archive: str  # path of the tarball
    manifest: str  # path of the JSON metadata file


class ArtifactWriter:
    '''
    Writes one reproducible tarball (plus a JSON description) per
    sub-package into the output directory.
    '''

    def __init__(self, output_dir: T.PathUnion, arch: str, *, mtime: T.Optional[int] = None):
        self._output_dir = str(output_dir)
        self._arch = arch
        self._mtime = mtime if mtime is not None else source_date_epoch()

    def basename_for(self, spec: PackageSpec, subpkg_name: str) -> str:
        return '{}-{}.{}'.format(subpkg_name, str(spec.evr), self._arch)

    def _normalize(self, info: tarfile.TarInfo) -> tarfile.TarInfo:
        info.uid = 0
        info.gid = 0
        info.uname = 'root'
        info.gname = 'root'
        info.mtime = self._mtime
        info.mode = stat.S_IMODE(info.mode)
        return info

    def _write_tarball(self, fname: str, install_root: str, paths: T.List[str]):
        tmp_fname = fname + '.tmp'
        with open(tmp_fname, 'wb') as raw:
            # no file name or timestamp in the gzip header
            with gzip.GzipFile(filename='', mode='wb', fileobj=raw, mtime=0) as gz:
                with tarfile.open(fileobj=gz, mode='w', format=tarfile.PAX_FORMAT) as tar:
                    for path in sorted(paths):
                        rel = path.lstrip('/')
                        tar.add(
                            os.path.join(install_root, rel), arcname=rel, recursive=False, filter=self._normalize
                        )
        os.rename(tmp_fname, fname)

    @staticmethod
    def _file_info(install_root: str, path: str) -> T.Dict[str, T.Any]:
        full = os.path.join(install_root, path.lstrip('/'))
        st = os.lstat(full)
        info: T.Dict[str, T.Any] = {'path': path, 'mode': '{:04o}'.format(stat.S_IMODE(st.st_mode))}
        if stat.S_ISLNK(st.st_mode):
            info['type'] = 'symlink'
            info['target'] = os.readlink(full)
        elif stat.S_ISDIR(st.st_mode):
            info['type'] = 'dir'
        else:
            info['type'] = 'file'
            info['size'] = st.st_size
            h = hashlib.sha256()
            with open(full, 'rb') as f:
                for chunk in iter(lambda: f.read(65536), b''):
                    h.update(chunk)
            info['sha256'] = h.hexdigest()
        return info

    def write(self, spec: PackageSpec, partition: Partition, install_root: T.PathUnion) -> T.List[PackageArtifact]:
        install_root = str(install_root)
        os.makedirs(self._output_dir, exist_ok=True)

        evr = spec.evr
        artifacts = []
        for sp in spec.effective_subpackages():
            paths = partition.files.get(sp.name, [])
            base = os.path.join(self._output_dir, self.basename_for(spec, sp.name))
            archive_fname = base + '.tar.gz'
            manifest_fname = base + '.json'

            self._write_tarball(archive_fname, install_root, paths)

            requires = set(sp.requires)
            if sp.name == spec.name:
                requires.update(spec.runtime_requires)
            meta = {
                'name': sp.name,
                'source_package': spec.name,
                'epoch': evr.epoch if evr.epoch else 0,
                'version': evr.version,
                'release': evr.release,
                'arch': self._arch,
                'license': spec.license,
                'summary': sp.summary if sp.summary else spec.summary,
                'requires': sorted(requires),
                'files': [self._file_info(install_root, p) for p in sorted(paths)],
                'licenses': sorted(partition.licenses.get(sp.name, [])),
            }
            with open(manifest_fname, 'w', encoding='utf-8') as f:
                f.write(json_stable_dump(meta))

            log.info('Wrote %s (%d entries)', os.path.basename(archive_fname), len(paths))
            artifacts.append(PackageArtifact(name=sp.name, archive=archive_fname, manifest=manifest_fname))

        return artifacts
