# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import shutil
import threading
from contextlib import nullcontext
from dataclasses import field, dataclass

import kiln.typing as T
from kiln.build import BuildInvoker
from kiln.cache import ContentCache
from kiln.patch import PatchApplier
from kiln.utils import LockError, file_lock
from kiln.errors import (
    KilnError,
    ManifestError,
    BuildStepError,
    BuildCancelledError,
)
from kiln.source import SourceResolver
from kiln.logging import log, package_log_handler
from kiln.artifact import ArtifactWriter, PackageArtifact
from kiln.manifest import Partition, ManifestPartitioner
from kiln.descriptor import PackageSpec
from kiln.localconfig import LocalConfig

__all__ = ['BuildSession', 'BuildResult', 'STAGES']

STAGES = ('fetch', 'extract', 'patch', 'build', 'install', 'partition', 'package')


@dataclass
class BuildResult:
    package: str
    evr: str
    artifacts: T.List[PackageArtifact] = field(default_factory=list)
    unverified_sources: T.List[str] = field(default_factory=list)
    partition: T.Optional[Partition] = None
    log_file: T.Optional[str] = None
    staging_dir: T.Optional[str] = None  # only set if the staging area was kept


class BuildSession:
    '''
    Builds a single package from its sources to its output artifacts.

    The session exclusively owns the working directory of the package
    (``<workspace>/build/<name>-<version>``) and removes it again when it
    is done, unless staging areas are kept for debugging.
    '''

    def __init__(
        self,
        spec: PackageSpec,
        cache: ContentCache,
        *,
        lconf: T.Optional[LocalConfig] = None,
        arch: T.Optional[str] = None,
        jobs: T.Optional[int] = None,
        keep_staging: T.Optional[bool] = None,
        cancel_event: T.Optional[threading.Event] = None,
        patcher: T.Optional[PatchApplier] = None,
    ):
        if not lconf:
            lconf = LocalConfig()
        self._spec = spec
        self._lconf = lconf
        self._arch = arch if arch else lconf.build.arch
        self._jobs = jobs if jobs else lconf.build.jobs
        self._keep_staging = keep_staging if keep_staging is not None else lconf.build.keep_staging
        self._cancel_event = cancel_event if cancel_event else threading.Event()

        self._resolver = SourceResolver(cache, keyring_dirs=[lconf.trusted_keyring_dir])
        self._patcher = patcher if patcher else PatchApplier()
        target = lconf.build.target_triple
        if arch and arch != lconf.build.arch:
            # the configured target belongs to the configured architecture
            target = None
        self._invoker = BuildInvoker(
            arch=self._arch,
            target_triple=target,
            jobs=self._jobs,
            step_timeout=lconf.build.step_timeout,
            path_vars=lconf.path_vars,
            cancel_event=self._cancel_event,
        )
        self._partitioner = ManifestPartitioner(lconf.path_vars)
        self._writer = ArtifactWriter(lconf.output_dir, self._arch)

        self._stage: T.Optional[str] = None
        self.work_dir = os.path.join(lconf.build_root_dir, '{}-{}'.format(spec.name, spec.version))
        self.log_file = os.path.join(lconf.log_root_dir, '{}-{}.log'.format(spec.name, str(spec.evr)))

    @property
    def stage(self) -> T.Optional[str]:
        '''The stage the session is currently in (or failed in).'''
        return self._stage

    def _enter_stage(self, stage: str):
        if self._cancel_event.is_set():
            raise BuildCancelledError('Build of {} was cancelled'.format(self._spec.name))
        self._stage = stage
        log.info('[%s] Stage: %s', self._spec.name, stage)

    def _install_licenses(self, source_dir: str, install_root: str) -> T.Dict[str, str]:
        '''
        Copy the license files declared by each sub-package into its own
        license directory of the install root.
        '''
        licensedir = self._lconf.path_vars.get('licensedir', '/usr/share/licenses')
        reserved = {}
        for sp in self._spec.effective_subpackages():
            if not sp.licenses:
                continue
            target_dir = os.path.join(licensedir, sp.name)
            dest_dir = os.path.join(install_root, target_dir.lstrip('/'))
            os.makedirs(dest_dir, exist_ok=True)
            for lic in sp.licenses:
                src = os.path.join(source_dir, lic)
                if not os.path.isfile(src):
                    raise ManifestError(
                        'License file "{}" of {} does not exist in the source tree.'.format(lic, sp.name)
                    )
                shutil.copy2(src, os.path.join(dest_dir, os.path.basename(lic)))
            reserved[target_dir] = sp.name
        return reserved

    def _run(self) -> BuildResult:
        spec = self._spec
        result = BuildResult(package=spec.name, evr=str(spec.evr), log_file=self.log_file)

        source_root = os.path.join(self.work_dir, 'source')
        install_root = os.path.join(self.work_dir, 'root')
        helpers_dir = os.path.join(self.work_dir, 'helpers')

        self._enter_stage('fetch')
        fetched = self._resolver.fetch(spec)

        self._enter_stage('extract')
        sources = self._resolver.extract(spec, fetched, source_root)
        result.unverified_sources = sources.unverified

        self._enter_stage('patch')
        self._patcher.apply_all(spec, sources.source_dir)

        self._enter_stage('build')
        for variant in spec.build.effective_variants():
            bootstrap = [spec.patch_by_sequence(seq) for seq in variant.patches]
            # only variants with bootstrap patches need the tree to be pristine afterwards
            scope = self._patcher.scoped(spec, sources.source_dir, bootstrap) if bootstrap else nullcontext()
            with scope:
                self._invoker.run_variant(
                    spec,
                    variant,
                    work_dir=self.work_dir,
                    source_dir=sources.source_dir,
                    install_root=install_root,
                    helpers_dir=helpers_dir,
                    sources=sources.files,
                )

        self._enter_stage('partition')
        reserved = self._install_licenses(sources.source_dir, install_root)
        result.partition = self._partitioner.partition(install_root, spec, reserved=reserved)

        self._enter_stage('package')
        result.artifacts = self._writer.write(spec, result.partition, install_root)

        return result

    def run(self) -> BuildResult:
        '''
        Run all stages for the package.

        :raises KilnError: Any failure, with ``package`` and ``stage`` set.
        '''
        spec = self._spec
        os.makedirs(self._lconf.build_root_dir, exist_ok=True)
        with package_log_handler(self.log_file):
            log.info('Building %s %s for %s', spec.name, str(spec.evr), self._arch)
            try:
                with file_lock(os.path.join(self._lconf.build_root_dir, '.locks'), spec.name):
                    if os.path.exists(self.work_dir):
                        log.debug('Removing stale working directory %s', self.work_dir)
                        shutil.rmtree(self.work_dir)
                    os.makedirs(self.work_dir)
                    try:
                        result = self._run()
                    finally:
                        self._release_work_dir()
            except LockError as e:
                raise KilnError(str(e), package=spec.name, stage='lock')
            except KilnError as e:
                if not e.package:
                    e.package = spec.name
                if not e.stage:
                    e.stage = self._stage
                    if isinstance(e, BuildStepError) and e.step_index >= len(spec.build.steps):
                        e.stage = 'install'
                log.error('Build of %s failed in stage %s: %s', spec.name, e.stage, str(e))
                raise

            if self._keep_staging:
                result.staging_dir = self.work_dir
            log.info('Build of %s %s completed', spec.name, str(spec.evr))
            return result

    def _release_work_dir(self):
        if self._keep_staging:
            log.info('Keeping staging area of %s: %s', self._spec.name, self.work_dir)
            return
        shutil.rmtree(self.work_dir, ignore_errors=True)
