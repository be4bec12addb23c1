# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

__version__ = '0.1.0'

from kiln.localconfig import LocalConfig, get_config_file

__all__ = ['LocalConfig', 'get_config_file', '__version__']
