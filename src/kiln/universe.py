# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import kiln.typing as T
from kiln.errors import DescriptorError
from kiln.descriptor import PackageSpec, load_descriptors

__all__ = ['PackageUniverse']


class PackageUniverse:
    '''
    All packages known to a build run, and the build dependency graph
    between them.

    A build requirement may name a package or one of the sub-packages it
    produces (e.g. ``libmnl-devel``); the edge always points at the package
    which builds it.
    '''

    def __init__(self, specs: T.Iterable[PackageSpec]):
        self._specs: T.Dict[str, PackageSpec] = {}
        self._providers: T.Dict[str, str] = {}

        for spec in specs:
            if spec.name in self._specs:
                raise DescriptorError('Package "{}" is defined more than once.'.format(spec.name), package=spec.name)
            self._specs[spec.name] = spec

        for spec in self._specs.values():
            for name in [spec.name] + [sp.name for sp in spec.effective_subpackages()]:
                other = self._providers.get(name)
                if other and other != spec.name:
                    raise DescriptorError(
                        'Packages "{}" and "{}" both produce "{}".'.format(other, spec.name, name), package=spec.name
                    )
                self._providers[name] = spec.name

        self._deps: T.Dict[str, T.Set[str]] = {}
        for spec in self._specs.values():
            deps = set()
            for req in sorted(spec.build_requires):
                provider = self._providers.get(req)
                if not provider:
                    raise DescriptorError(
                        'Package "{}" requires unknown package "{}" to build.'.format(spec.name, req), package=spec.name
                    )
                if provider == spec.name:
                    raise DescriptorError(
                        'Package "{}" requires itself to build (via "{}").'.format(spec.name, req), package=spec.name
                    )
                deps.add(provider)
            self._deps[spec.name] = deps

        self._check_cycles()

    @classmethod
    def load(cls, packages_dir: T.PathUnion) -> 'PackageUniverse':
        return cls(load_descriptors(packages_dir))

    def __len__(self):
        return len(self._specs)

    def __contains__(self, name):
        return name in self._specs

    def __iter__(self):
        return iter([self._specs[n] for n in sorted(self._specs.keys())])

    def get(self, name: str) -> PackageSpec:
        spec = self._specs.get(name)
        if not spec:
            raise DescriptorError('Package "{}" is unknown.'.format(name))
        return spec

    @property
    def names(self) -> T.List[str]:
        return sorted(self._specs.keys())

    def provider(self, name: str) -> T.Optional[str]:
        '''Name of the package which builds :name (a package or sub-package name).'''
        return self._providers.get(name)

    def build_deps(self, name: str) -> T.Set[str]:
        '''Direct build dependencies of package :name, as package names.'''
        return set(self._deps[name])

    def _check_cycles(self):
        # iterative DFS with three colors, reporting the first cycle found
        WHITE, GREY, BLACK = 0, 1, 2
        color = dict.fromkeys(self._specs.keys(), WHITE)
        for root in sorted(self._specs.keys()):
            if color[root] != WHITE:
                continue
            path = [root]
            stack = [iter(sorted(self._deps[root]))]
            color[root] = GREY
            while stack:
                dep = next(stack[-1], None)
                if dep is None:
                    color[path.pop()] = BLACK
                    stack.pop()
                    continue
                if color[dep] == GREY:
                    cycle = path[path.index(dep) :] + [dep]
                    raise DescriptorError(
                        'Build dependency cycle detected: {}'.format(' -> '.join(cycle)), package=cycle[0]
                    )
                if color[dep] == WHITE:
                    color[dep] = GREY
                    path.append(dep)
                    stack.append(iter(sorted(self._deps[dep])))

    def build_closure(self, names: T.Optional[T.Iterable[str]] = None) -> T.Set[str]:
        '''
        The packages in :names plus everything they need to build, transitively.
        All packages if :names is empty.
        '''
        if not names:
            return set(self._specs.keys())

        closure = set()
        todo = [self.get(n).name for n in names]
        while todo:
            name = todo.pop()
            if name in closure:
                continue
            closure.add(name)
            todo.extend(self._deps[name])
        return closure

    def topological_order(self, names: T.Optional[T.Iterable[str]] = None) -> T.List[str]:
        '''
        Build order for :names and their build closure: every package comes
        after all of its build dependencies. Ties are broken by name, so the
        order is stable.
        '''
        selected = self.build_closure(names)
        in_degree = {n: len(self._deps[n] & selected) for n in selected}

        ready = sorted([n for n, d in in_degree.items() if d == 0])
        order = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            for name in sorted(selected):
                if current in self._deps[name]:
                    in_degree[name] -= 1
                    if in_degree[name] == 0:
                        ready.append(name)
            ready.sort()

        if len(order) != len(selected):
            raise DescriptorError('Build dependency graph has a cycle.')
        return order

    def dependents(self, name: str) -> T.Set[str]:
        '''All packages which directly or transitively need :name to build.'''
        result = set()
        todo = [name]
        while todo:
            current = todo.pop()
            for other, deps in self._deps.items():
                if current in deps and other not in result:
                    result.add(other)
                    todo.append(other)
        return result
