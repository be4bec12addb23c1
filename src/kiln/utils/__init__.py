# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

from kiln.utils.misc import (
    FileLock,
    LockError,
    file_lock,
    download_file,
    is_remote_url,
)
from kiln.utils.command import (
    StepResult,
    run_command,
    run_shell_step,
)
from kiln.utils.fileutil import (
    list_tree,
    extract_tarball,
    check_filename_safe,
    check_filepath_safe,
)

__all__ = [
    'run_command',
    'run_shell_step',
    'StepResult',
    'FileLock',
    'LockError',
    'file_lock',
    'is_remote_url',
    'download_file',
    'list_tree',
    'extract_tarball',
    'check_filename_safe',
    'check_filepath_safe',
]
