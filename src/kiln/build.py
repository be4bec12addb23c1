# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import re
import shutil
import threading
from contextlib import contextmanager

import kiln.typing as T
from kiln.utils import run_shell_step, check_filepath_safe
from kiln.errors import BuildStepError, DescriptorError, BuildCancelledError
from kiln.logging import log
from kiln.descriptor import BuildStep, PackageSpec, BuildVariant
from kiln.localconfig import DEFAULT_PATH_VARS

__all__ = ['BuildInvoker']

re_env_key = re.compile(r'[^A-Za-z0-9_]')


def _env_key(name: str) -> str:
    return re_env_key.sub('_', name).upper()


class BuildInvoker:
    '''
    Runs the build procedure of a package, one variant at a time, each in
    its own build directory.
    '''

    def __init__(
        self,
        *,
        arch: str,
        target_triple: T.Optional[str] = None,
        jobs: int = 1,
        step_timeout: T.Optional[float] = None,
        path_vars: T.Optional[T.Dict[str, str]] = None,
        cancel_event: T.Optional[threading.Event] = None,
    ):
        self._arch = arch
        self._default_target = target_triple
        self._jobs = jobs
        self._step_timeout = step_timeout
        self._path_vars = path_vars if path_vars else dict(DEFAULT_PATH_VARS)
        self._cancel_event = cancel_event

    def target_for(self, spec: PackageSpec, variant: BuildVariant) -> str:
        if variant.target_triple:
            return variant.target_triple
        if spec.build.target_triple:
            return spec.build.target_triple
        if self._default_target:
            return self._default_target
        return '{}-linux-gnu'.format(self._arch)

    def environment(
        self,
        spec: PackageSpec,
        variant: BuildVariant,
        *,
        source_dir: str,
        build_dir: str,
        install_root: str,
        helpers_dir: str,
        sources: T.Sequence[str] = (),
    ) -> T.Dict[str, str]:
        '''
        Environment for the build steps of :variant. Variant options override
        the options of the build procedure.
        '''

        env = dict(os.environ)
        env.update(
            {
                'KILN_NAME': spec.name,
                'KILN_VERSION': spec.version,
                'KILN_RELEASE': str(spec.release),
                'KILN_VARIANT': variant.name,
                'KILN_TARGET': self.target_for(spec, variant),
                'KILN_ARCH': self._arch,
                'KILN_SOURCE_DIR': source_dir,
                'KILN_BUILD_DIR': build_dir,
                'KILN_INSTALL_ROOT': install_root,
                'DESTDIR': install_root,
                'KILN_HELPERS_DIR': helpers_dir,
                'KILN_JOBS': str(self._jobs),
            }
        )
        for i, fname in enumerate(sources):
            env['KILN_SOURCE{}'.format(i)] = fname
        for key, value in self._path_vars.items():
            env['KILN_' + _env_key(key)] = value

        options = dict(spec.build.options)
        options.update(variant.options)
        for key, value in options.items():
            env['KILN_OPT_' + _env_key(key)] = value

        return env

    @contextmanager
    def build_dir(self, work_dir: T.PathUnion, variant: BuildVariant):
        '''
        Create the exclusive build directory for :variant and remove it again
        when the context is left, no matter how.
        '''
        bdir = os.path.join(str(work_dir), 'build', variant.name)
        if os.path.exists(bdir):
            shutil.rmtree(bdir)
        os.makedirs(bdir)
        try:
            yield bdir
        finally:
            shutil.rmtree(bdir, ignore_errors=True)

    def run_steps(
        self,
        spec: PackageSpec,
        steps: T.Sequence[BuildStep],
        *,
        env: T.Dict[str, str],
        build_dir: str,
        variant_name: str,
        first_index: int = 0,
    ):
        for index, step in enumerate(steps, start=first_index):
            if self._cancel_event is not None and self._cancel_event.is_set():
                raise BuildCancelledError('Build of {} was cancelled'.format(spec.name), package=spec.name)

            cwd = build_dir
            if step.workdir:
                if not check_filepath_safe(step.workdir):
                    raise DescriptorError(
                        'Working directory "{}" of build step {} is not allowed.'.format(step.workdir, index),
                        package=spec.name,
                    )
                cwd = os.path.join(build_dir, step.workdir)
                os.makedirs(cwd, exist_ok=True)

            step_env = env
            if step.env:
                step_env = dict(env)
                step_env.update(step.env)

            timeout = step.timeout if step.timeout else self._step_timeout
            log.info('[%s/%s] Step %d: %s', spec.name, variant_name, index, step.run)
            res = run_shell_step(step.run, cwd=cwd, env=step_env, timeout=timeout, cancel_event=self._cancel_event)
            if res.output:
                log.debug('[%s/%s] Output of step %d:\n%s', spec.name, variant_name, index, res.output.rstrip())

            if res.cancelled:
                raise BuildCancelledError('Build of {} was cancelled'.format(spec.name), package=spec.name)
            if res.timed_out:
                raise BuildStepError(
                    index, step.run, res.output, variant=variant_name, timed_out=True, package=spec.name
                )
            if res.returncode != 0:
                raise BuildStepError(
                    index, step.run, res.output, variant=variant_name, returncode=res.returncode, package=spec.name
                )

    def run_variant(
        self,
        spec: PackageSpec,
        variant: BuildVariant,
        *,
        work_dir: str,
        source_dir: str,
        install_root: str,
        helpers_dir: str,
        sources: T.Sequence[str] = (),
    ):
        '''
        Build :spec once with the settings of :variant. If the variant installs,
        the install steps populate :install_root. Declared artifacts are kept
        in :helpers_dir for subsequent variants.
        '''

        os.makedirs(install_root, exist_ok=True)
        os.makedirs(helpers_dir, exist_ok=True)
        with self.build_dir(work_dir, variant) as bdir:
            env = self.environment(
                spec,
                variant,
                source_dir=source_dir,
                build_dir=bdir,
                install_root=install_root,
                helpers_dir=helpers_dir,
                sources=sources,
            )
            self.run_steps(spec, spec.build.steps, env=env, build_dir=bdir, variant_name=variant.name)
            if variant.install:
                self.run_steps(
                    spec,
                    spec.build.install,
                    env=env,
                    build_dir=bdir,
                    variant_name=variant.name,
                    first_index=len(spec.build.steps),
                )

            for artifact in variant.artifacts:
                if not check_filepath_safe(artifact):
                    raise DescriptorError(
                        'Build artifact path "{}" is not allowed.'.format(artifact), package=spec.name
                    )
                src = os.path.join(bdir, artifact)
                if not os.path.isfile(src):
                    raise BuildStepError(
                        len(spec.build.steps),
                        'keep artifact {}'.format(artifact),
                        'Expected build artifact {} was not produced.'.format(artifact),
                        variant=variant.name,
                        returncode=1,
                        package=spec.name,
                    )
                shutil.copy2(src, os.path.join(helpers_dir, os.path.basename(artifact)))
                log.debug('Kept helper artifact %s from variant %s', artifact, variant.name)
