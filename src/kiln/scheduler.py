# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import time
import threading
from enum import Enum
from dataclasses import field, dataclass
from concurrent.futures import FIRST_COMPLETED, wait

from pebble import ThreadPool

import kiln.typing as T
from kiln.cache import ContentCache
from kiln.errors import KilnError, DependencyError, BuildCancelledError
from kiln.logging import log, build_log
from kiln.session import BuildResult, BuildSession
from kiln.universe import PackageUniverse
from kiln.descriptor import PackageSpec
from kiln.localconfig import LocalConfig

__all__ = ['BuildScheduler', 'PackageState', 'PackageOutcome', 'ScheduleReport']


class PackageState(Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    SUCCESS = 'success'
    FAILED = 'failed'
    SKIPPED = 'skipped'
    CANCELLED = 'cancelled'

    def __str__(self):
        return self.value


@dataclass
class PackageOutcome:
    name: str
    state: PackageState = PackageState.PENDING
    error: T.Optional[BaseException] = None
    result: T.Optional[BuildResult] = None
    started: T.Optional[float] = None
    finished: T.Optional[float] = None

    @property
    def stage(self) -> T.Optional[str]:
        return getattr(self.error, 'stage', None)


@dataclass
class ScheduleReport:
    order: T.List[str] = field(default_factory=list)
    outcomes: T.Dict[str, PackageOutcome] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(o.state == PackageState.SUCCESS for o in self.outcomes.values())

    def with_state(self, state: PackageState) -> T.List[PackageOutcome]:
        return [self.outcomes[n] for n in self.order if self.outcomes[n].state == state]

    @property
    def problems(self) -> T.List[PackageOutcome]:
        '''Every package which did not build successfully, in build order.'''
        return [self.outcomes[n] for n in self.order if self.outcomes[n].state != PackageState.SUCCESS]


class BuildScheduler:
    '''
    Builds a set of packages in dependency order, running independent
    builds in parallel.

    A package is only started once all of its build dependencies were built
    successfully. If a build fails, everything depending on it is skipped,
    while unrelated builds carry on.
    '''

    def __init__(
        self,
        universe: PackageUniverse,
        cache: T.Optional[ContentCache] = None,
        *,
        lconf: T.Optional[LocalConfig] = None,
        jobs: T.Optional[int] = None,
        arch: T.Optional[str] = None,
        keep_staging: T.Optional[bool] = None,
        session_factory: T.Optional[T.Callable[[PackageSpec, threading.Event], T.Any]] = None,
    ):
        self._universe = universe
        self._lconf = lconf
        self._jobs = jobs
        self._arch = arch
        self._keep_staging = keep_staging
        self._cache = cache
        self._cancel_event = threading.Event()

        if session_factory:
            self._session_factory = session_factory
        else:
            if not self._lconf:
                self._lconf = LocalConfig()
            if not self._cache:
                self._cache = ContentCache.from_config(self._lconf)
            self._session_factory = self._new_session
        if not self._jobs:
            self._jobs = self._lconf.build.jobs if self._lconf else 1

    def _new_session(self, spec: PackageSpec, cancel_event: threading.Event) -> BuildSession:
        return BuildSession(
            spec,
            self._cache,
            lconf=self._lconf,
            arch=self._arch,
            jobs=self._jobs,
            keep_staging=self._keep_staging,
            cancel_event=cancel_event,
        )

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self):
        '''
        Stop the run: running builds are terminated at the next opportunity,
        nothing new is started.
        '''
        log.warning('Cancelling build run.')
        self._cancel_event.set()

    def _build_one(self, name: str):
        spec = self._universe.get(name)
        session = self._session_factory(spec, self._cancel_event)
        return session.run()

    def _ready(self, name: str, report: ScheduleReport) -> bool:
        for dep in self._universe.build_deps(name):
            outcome = report.outcomes.get(dep)
            if outcome and outcome.state != PackageState.SUCCESS:
                return False
        return True

    def _skip_dependents(self, failed: str, report: ScheduleReport):
        for name in sorted(self._universe.dependents(failed)):
            outcome = report.outcomes.get(name)
            if not outcome or outcome.state != PackageState.PENDING:
                continue
            outcome.state = PackageState.SKIPPED
            outcome.error = DependencyError(name, failed)
            log.warning('Skipping %s: build dependency %s failed.', name, failed)
            build_log.info('%s: skipped (dependency %s failed)', name, failed)

    def _finish(self, name: str, future, report: ScheduleReport):
        outcome = report.outcomes[name]
        outcome.finished = time.monotonic()
        try:
            outcome.result = future.result()
        except BuildCancelledError as e:
            outcome.state = PackageState.CANCELLED
            outcome.error = e
            build_log.info('%s: cancelled', name)
            return
        except KilnError as e:
            outcome.state = PackageState.FAILED
            outcome.error = e
        except Exception as e:
            log.exception('Unexpected error while building %s', name)
            outcome.state = PackageState.FAILED
            outcome.error = e
        else:
            outcome.state = PackageState.SUCCESS
            log.info('Package %s was built successfully.', name)
            build_log.info('%s: success (%.1fs)', name, outcome.finished - outcome.started)
            return

        build_log.info('%s: failed in stage %s: %s', name, outcome.stage, str(outcome.error))
        self._skip_dependents(name, report)

    def run(self, names: T.Optional[T.Iterable[str]] = None) -> ScheduleReport:
        '''
        Build :names (all packages if empty) together with their build
        dependencies.
        '''

        report = ScheduleReport(order=self._universe.topological_order(names))
        for name in report.order:
            report.outcomes[name] = PackageOutcome(name=name)
        log.info('Build order: %s', ', '.join(report.order))

        with ThreadPool(max_workers=self._jobs) as pool:
            running = {}
            while True:
                if not self._cancel_event.is_set():
                    for name in report.order:
                        outcome = report.outcomes[name]
                        if outcome.state != PackageState.PENDING or not self._ready(name, report):
                            continue
                        outcome.state = PackageState.RUNNING
                        outcome.started = time.monotonic()
                        log.debug('Scheduling build of %s', name)
                        running[pool.schedule(self._build_one, args=(name,))] = name

                if not running:
                    break

                done, _ = wait(list(running.keys()), return_when=FIRST_COMPLETED)
                for future in done:
                    self._finish(running.pop(future), future, report)

        for outcome in report.outcomes.values():
            if outcome.state == PackageState.PENDING:
                outcome.state = PackageState.CANCELLED
                outcome.error = BuildCancelledError('Build was cancelled before it started', package=outcome.name)

        return report
