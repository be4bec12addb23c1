# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import re
import functools

import kiln.typing as T

__all__ = ['version_compare', 'EVR']

_re_segment = re.compile(r'([0-9]+|[a-zA-Z]+|~|\^)')


def _segments(s: str) -> T.List[str]:
    # separators are anything that is not alphanumeric, tilde or caret
    return _re_segment.findall(s)


def _normalized(s: str) -> tuple:
    return tuple(int(p) if p.isdigit() else p for p in _segments(s))


def version_compare(a: str, b: str) -> int:
    '''
    Compare two version (or release) strings the way RPM does.

    Strings are split into runs of digits and runs of letters; numeric runs
    compare numerically and are newer than alphabetic runs. A tilde sorts
    before anything, even the end of the string (``1.0~rc1 < 1.0``), a caret
    sorts after the end of the string but before any other segment
    (``1.0 < 1.0^git1 < 1.0.1``).

    :return: negative if :a is older than :b, 0 if equal, positive if newer.
    '''
    if a == b:
        return 0

    sa = _segments(a)
    sb = _segments(b)
    ia = 0
    ib = 0
    while ia < len(sa) or ib < len(sb):
        ca = sa[ia] if ia < len(sa) else None
        cb = sb[ib] if ib < len(sb) else None

        if ca == '~' or cb == '~':
            if ca != '~':
                return 1
            if cb != '~':
                return -1
            ia += 1
            ib += 1
            continue

        if ca == '^' or cb == '^':
            if ca is None:
                return -1
            if cb is None:
                return 1
            if ca != '^':
                return 1
            if cb != '^':
                return -1
            ia += 1
            ib += 1
            continue

        if ca is None or cb is None:
            break

        a_num = ca.isdigit()
        b_num = cb.isdigit()
        if a_num != b_num:
            return 1 if a_num else -1
        if a_num:
            na = int(ca)
            nb = int(cb)
            if na != nb:
                return 1 if na > nb else -1
        elif ca != cb:
            return 1 if ca > cb else -1
        ia += 1
        ib += 1

    # whichever string has segments left over is newer
    rest_a = len(sa) - ia
    rest_b = len(sb) - ib
    if rest_a == rest_b:
        return 0
    return 1 if rest_a > rest_b else -1


@functools.total_ordering
class EVR:
    '''
    Epoch, version and release of a package. Instances are totally ordered:
    the epoch dominates, then the version, then the release.
    '''

    def __init__(self, version: str, release: T.Union[str, int] = '', epoch: T.Optional[int] = None):
        self.epoch = epoch
        self.version = str(version)
        self.release = str(release) if release is not None else ''

    @classmethod
    def parse(cls, s: str) -> 'EVR':
        '''Parse a ``[epoch:]version[-release]`` string.'''
        epoch = None
        if ':' in s:
            e, s = s.split(':', 1)
            epoch = int(e)
        if '-' in s:
            version, release = s.rsplit('-', 1)
        else:
            version, release = s, ''
        return cls(version, release, epoch)

    def _compare(self, other: 'EVR') -> int:
        ea = self.epoch if self.epoch else 0
        eb = other.epoch if other.epoch else 0
        if ea != eb:
            return 1 if ea > eb else -1
        r = version_compare(self.version, other.version)
        if r != 0:
            return r
        return version_compare(self.release, other.release)

    def __eq__(self, other):
        if not isinstance(other, EVR):
            return NotImplemented
        return self._compare(other) == 0

    def __lt__(self, other):
        if not isinstance(other, EVR):
            return NotImplemented
        return self._compare(other) < 0

    def __hash__(self):
        return hash((self.epoch if self.epoch else 0, _normalized(self.version), _normalized(self.release)))

    def __str__(self):
        s = self.version
        if self.release:
            s = '{}-{}'.format(s, self.release)
        if self.epoch:
            s = '{}:{}'.format(self.epoch, s)
        return s

    def __repr__(self):
        return 'EVR({})'.format(str(self))
