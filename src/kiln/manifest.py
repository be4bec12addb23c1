# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import re
import functools
from dataclasses import field, dataclass

import kiln.typing as T
from kiln.utils import list_tree
from kiln.errors import (
    ManifestError,
    DescriptorError,
    UnclaimedFileError,
    DuplicateClaimError,
)
from kiln.logging import log
from kiln.descriptor import RuleMode, PackageSpec, FileManifestRule
from kiln.localconfig import DEFAULT_PATH_VARS

__all__ = ['ManifestPartitioner', 'Partition', 'glob_to_regex', 'expand_path_vars']

re_path_var = re.compile(r'\{([a-zA-Z_][a-zA-Z0-9_]*)\}')


def expand_path_vars(pattern: str, path_vars: T.Dict[str, str]) -> str:
    '''Replace ``{libdir}``-style variables in :pattern.'''

    def repl(m):
        key = m.group(1)
        if key not in path_vars:
            raise DescriptorError('Unknown path variable "{{{}}}" in pattern "{}"'.format(key, pattern))
        return path_vars[key]

    return re_path_var.sub(repl, pattern)


@functools.lru_cache(maxsize=1024)
def glob_to_regex(pattern: str) -> T.Pattern:
    '''
    Translate a path glob into a regular expression matching whole paths.

    ``*`` and ``?`` never match a slash, ``**`` matches across directories,
    ``**/`` also matches no directory at all. ``[...]`` is a character class.
    '''
    res = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == '*':
            if pattern.startswith('**', i):
                if pattern.startswith('**/', i):
                    res.append('(?:.*/)?')
                    i += 3
                else:
                    res.append('.*')
                    i += 2
                continue
            res.append('[^/]*')
        elif c == '?':
            res.append('[^/]')
        elif c == '[':
            j = pattern.find(']', i + 1)
            if j < 0:
                res.append(re.escape(c))
            else:
                cls = pattern[i + 1 : j]
                if cls.startswith('!'):
                    cls = '^' + cls[1:]
                res.append('[' + cls.replace('\\', '\\\\') + ']')
                i = j
        else:
            res.append(re.escape(c))
        i += 1
    return re.compile('^' + ''.join(res) + '$')


@dataclass
class Partition:
    '''
    Ownership of the entries of an install root. All paths are absolute
    paths in the target image (e.g. ``/usr/lib/libmnl.so.0``).
    '''

    files: T.Dict[str, T.List[str]] = field(default_factory=dict)  # sub-package -> owned paths
    directories: T.Dict[str, T.List[str]] = field(default_factory=dict)  # sub-package -> owned directories
    licenses: T.Dict[str, T.List[str]] = field(default_factory=dict)  # sub-package -> license files
    excluded: T.List[str] = field(default_factory=list)
    implicit_dirs: T.List[str] = field(default_factory=list)  # unowned directories holding other entries

    def owner(self, path: str) -> T.Optional[str]:
        for name, paths in self.files.items():
            if path in paths:
                return name
        return None


@dataclass
class _CompiledRule:
    regex: T.Pattern
    mode: RuleMode
    license: bool


class ManifestPartitioner:
    '''
    Splits the content of an install root into the sub-packages of a
    package, following their file manifest rules.

    INCLUDE and EXCLUDE rules apply to the matched path and everything
    below it, DIR rules only to the matched directory itself. Each
    sub-package uses its first matching rule. An entry must be claimed
    (INCLUDE or DIR) by exactly one sub-package, or be excluded. Directories
    which contain other entries are covered by their contents and need
    no claim of their own.
    '''

    def __init__(self, path_vars: T.Optional[T.Dict[str, str]] = None):
        self._path_vars = path_vars if path_vars else dict(DEFAULT_PATH_VARS)

    def _compile(self, rule: FileManifestRule) -> _CompiledRule:
        pattern = expand_path_vars(rule.pattern, self._path_vars).strip('/')
        if not pattern:
            raise DescriptorError('Manifest rule pattern "{}" matches nothing.'.format(rule.pattern))
        return _CompiledRule(regex=glob_to_regex(pattern), mode=rule.mode, license=rule.license)

    @staticmethod
    def _rule_matches(rule: _CompiledRule, rel: str, is_dir: bool) -> bool:
        if rule.mode == RuleMode.DIR:
            return is_dir and rule.regex.match(rel) is not None

        # subtree semantics: the path itself or any of its parent directories
        candidate = rel
        while candidate:
            if rule.regex.match(candidate):
                return True
            candidate = os.path.dirname(candidate)
        return False

    @staticmethod
    def _reserved_owner(reserved: T.Dict[str, str], rel: str) -> T.Optional[str]:
        for prefix, owner in reserved.items():
            if rel == prefix or rel.startswith(prefix + '/'):
                return owner
        return None

    def partition(
        self,
        install_root: T.PathUnion,
        spec: PackageSpec,
        *,
        reserved: T.Optional[T.Dict[str, str]] = None,
    ) -> Partition:
        '''
        Assign every entry below :install_root to one sub-package of :spec.

        :param reserved: Image paths (and their subtrees) owned by a given sub-package
                         regardless of any rule, used for installed license files.
        :raises UnclaimedFileError: A single entry is neither claimed nor excluded.
        :raises DuplicateClaimError: A single entry is claimed by more than one sub-package.
        :raises ManifestError: Several problems were found, listed in its ``problems``.
        '''

        install_root = str(install_root)
        subpackages = spec.effective_subpackages()
        compiled = [(sp.name, [self._compile(r) for r in sp.rules]) for sp in subpackages]
        reserved_rel = {}
        if reserved:
            reserved_rel = {p.strip('/'): owner for p, owner in reserved.items()}

        result = Partition()
        for sp in subpackages:
            result.files[sp.name] = []
            result.directories[sp.name] = []
            result.licenses[sp.name] = []

        entries = list_tree(install_root)
        has_children = set()
        for rel in entries:
            parent = os.path.dirname(rel)
            while parent:
                has_children.add(parent)
                parent = os.path.dirname(parent)

        problems: T.List[ManifestError] = []
        for rel in entries:
            full = os.path.join(install_root, rel)
            is_dir = os.path.isdir(full) and not os.path.islink(full)
            image_path = '/' + rel

            owner = self._reserved_owner(reserved_rel, rel)
            if owner:
                result.files[owner].append(image_path)
                if is_dir:
                    result.directories[owner].append(image_path)
                else:
                    result.licenses[owner].append(image_path)
                continue

            claims = []
            excluded = False
            for sp_name, rules in compiled:
                for rule in rules:
                    if not self._rule_matches(rule, rel, is_dir):
                        continue
                    if rule.mode == RuleMode.EXCLUDE:
                        excluded = True
                    else:
                        claims.append((sp_name, rule))
                    break

            if len(claims) > 1:
                problems.append(DuplicateClaimError(image_path, [c[0] for c in claims], package=spec.name))
                continue
            if len(claims) == 1:
                sp_name, rule = claims[0]
                result.files[sp_name].append(image_path)
                if is_dir:
                    result.directories[sp_name].append(image_path)
                if rule.license and not is_dir:
                    result.licenses[sp_name].append(image_path)
                continue
            if excluded:
                result.excluded.append(image_path)
                continue
            if is_dir and rel in has_children:
                result.implicit_dirs.append(image_path)
                continue
            problems.append(UnclaimedFileError(image_path, package=spec.name))

        if len(problems) == 1:
            raise problems[0]
        if problems:
            raise ManifestError(
                'File manifest of {} has {} problems:\n{}'.format(
                    spec.name, len(problems), '\n'.join([' * ' + str(p) for p in problems])
                ),
                problems=problems,
                package=spec.name,
            )

        for name, paths in result.files.items():
            log.debug('Sub-package %s owns %d entries', name, len(paths))
        if result.excluded:
            log.info('Excluded %d installed entries from %s', len(result.excluded), spec.name)

        return result
