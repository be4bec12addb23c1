# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

# flake8: noqa
# pylint: disable=wildcard-import,unused-wildcard-import

import os
from typing import *

# type for file paths
PathUnion = Union[str, os.PathLike]
