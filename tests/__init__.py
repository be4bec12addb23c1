# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import sys

thisfile = __file__
if not os.path.isabs(thisfile):
    thisfile = os.path.normpath(os.path.join(os.getcwd(), thisfile))
source_root = os.path.normpath(os.path.join(os.path.dirname(thisfile), '..'))
sys.path.append(os.path.normpath(os.path.join(source_root, 'src')))


__all__ = ['source_root']
