# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import pytest


def _spec(name, build_requires=(), subpackages=()):
    from kiln.descriptor import PackageSpec, SubPackageSpec

    return PackageSpec(
        name=name,
        version='1.0',
        license='MIT',
        summary=name,
        build_requires=frozenset(build_requires),
        subpackages=tuple(SubPackageSpec(name=n) for n in subpackages),
    )


def test_build_order():
    from kiln.universe import PackageUniverse

    universe = PackageUniverse(
        [
            _spec('libnftnl', ['libmnl-devel']),
            _spec('libmnl', ['glibc'], subpackages=['libmnl', 'libmnl-devel']),
            _spec('glibc'),
            _spec('iptables', ['libnftnl', 'libmnl']),
            _spec('chrony'),
        ]
    )
    assert len(universe) == 5
    assert universe.provider('libmnl-devel') == 'libmnl'
    assert universe.build_deps('libnftnl') == {'libmnl'}

    order = universe.topological_order()
    assert order == ['chrony', 'glibc', 'libmnl', 'libnftnl', 'iptables']

    assert universe.topological_order(['libnftnl']) == ['glibc', 'libmnl', 'libnftnl']
    assert universe.build_closure(['libmnl']) == {'glibc', 'libmnl'}
    assert universe.dependents('libmnl') == {'libnftnl', 'iptables'}
    assert universe.dependents('glibc') == {'libmnl', 'libnftnl', 'iptables'}
    assert universe.dependents('chrony') == set()


def test_universe_errors():
    from kiln.errors import DescriptorError
    from kiln.universe import PackageUniverse

    with pytest.raises(DescriptorError) as e:
        PackageUniverse([_spec('libnftnl', ['libmnl'])])
    assert 'unknown package "libmnl"' in str(e.value)

    with pytest.raises(DescriptorError) as e:
        PackageUniverse([_spec('libmnl'), _spec('libmnl')])
    assert 'defined more than once' in str(e.value)

    with pytest.raises(DescriptorError) as e:
        PackageUniverse([_spec('a', ['b']), _spec('b', ['c']), _spec('c', ['a'])])
    assert 'cycle' in str(e.value)
    assert 'a -> b -> c -> a' in str(e.value)

    with pytest.raises(DescriptorError) as e:
        PackageUniverse([_spec('libmnl', ['libmnl-devel'], subpackages=['libmnl', 'libmnl-devel'])])
    assert 'requires itself' in str(e.value)

    with pytest.raises(DescriptorError) as e:
        PackageUniverse([_spec('a', subpackages=['common']), _spec('b', subpackages=['common'])])
    assert 'both produce "common"' in str(e.value)

    universe = PackageUniverse([_spec('a')])
    with pytest.raises(DescriptorError):
        universe.topological_order(['nonexistent'])
