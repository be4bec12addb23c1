# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import re

import kiln.typing as T

__all__ = ['validate_changelog', 'CHANGELOG_HEADER_RE']

CHANGELOG_HEADER_RE = re.compile(r'^# v[0-9]+\.[0-9]+\.[0-9]+')


def validate_changelog(fname: T.PathUnion) -> T.List[T.Tuple[int, str]]:
    '''
    Check that every top-level ``# `` header of a Markdown changelog names
    a release version, like ``# v1.2.3``.

    :return: (line number, line) of each offending header; empty if the changelog is fine.
    '''
    bad = []
    with open(fname, 'r', encoding='utf-8') as f:
        for lineno, line in enumerate(f, start=1):
            line = line.rstrip('\n')
            if not line.startswith('# '):
                continue
            if not CHANGELOG_HEADER_RE.match(line):
                bad.append((lineno, line))
    return bad
