# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import json


def json_stable_dump(obj):
    '''
    Convert :obj to an indented JSON string reproducibly.
    '''
    return json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True) + '\n'
