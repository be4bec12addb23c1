# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os


def test_changelog_valid(samples_dir):
    from kiln.changelog import validate_changelog

    assert validate_changelog(os.path.join(samples_dir, 'changelog', 'CHANGELOG-good.md')) == []


def test_changelog_invalid(samples_dir):
    from kiln.changelog import validate_changelog

    bad = validate_changelog(os.path.join(samples_dir, 'changelog', 'CHANGELOG-bad.md'))
    assert bad == [(5, '# Unreleased'), (9, '# 1.1.1')]


def test_changelog_subheaders_ignored(tmp_path):
    from kiln.changelog import validate_changelog

    fname = tmp_path / 'CHANGELOG.md'
    fname.write_text('# v0.1.0\n\n## Added\n\n#no-space heading\n- initial release\n')
    assert validate_changelog(fname) == []
