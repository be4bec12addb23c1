# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import re
import tarfile

import kiln.typing as T

# Match safe filenames
re_file_safe = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9_.~+-]*$')

# Match safe filenames, including slashes
re_file_safe_slash = re.compile(r'^[a-zA-Z0-9][/a-zA-Z0-9_.~+-]*$')


def check_filename_safe(fname: T.PathUnion) -> bool:
    """Check if a filename contains only safe characters"""
    if not re_file_safe.match(str(fname)):
        return False
    return True


def check_filepath_safe(path: T.PathUnion) -> bool:
    """Check if a relative path contains only safe characters and does not escape its base directory"""
    if not re_file_safe_slash.match(str(path)):
        return False
    return '..' not in str(path).split('/')


def list_tree(root: T.PathUnion) -> T.List[str]:
    '''
    Return the relative paths of all entries (files, directories, symlinks)
    below :root, sorted. Symlinks to directories are listed but not followed.
    '''
    root = str(root)
    entries = []
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = os.path.relpath(dirpath, root)
        for name in dirnames + filenames:
            entries.append(name if rel_dir == '.' else os.path.join(rel_dir, name))
    entries.sort()
    return entries


def extract_tarball(fname: T.PathUnion, dest_dir: T.PathUnion) -> T.List[str]:
    '''
    Extract a (possibly compressed) tarball to :dest_dir, refusing members
    with absolute paths, paths leaving :dest_dir or special files.

    :return: Sorted list of the top-level entries the archive created.
    '''
    dest_dir = str(dest_dir)
    os.makedirs(dest_dir, exist_ok=True)
    before = set(os.listdir(dest_dir))
    with tarfile.open(fname, 'r:*') as tar:
        tar.extractall(dest_dir, filter='data')
    return sorted(set(os.listdir(dest_dir)) - before)
