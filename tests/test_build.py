# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import threading

import pytest

from kiln.descriptor import BuildStep, PackageSpec, BuildVariant, BuildProcedure


def _spec(steps, install=(), variants=(), options=None, target=None):
    return PackageSpec(
        name='hello',
        version='1.0',
        release=3,
        license='MIT',
        summary='Greeter',
        build=BuildProcedure(
            steps=tuple(steps),
            install=tuple(install),
            variants=tuple(variants),
            options=options if options else {},
            target_triple=target,
        ),
    )


@pytest.fixture
def dirs(tmp_path):
    work = tmp_path / 'work'
    source = work / 'source'
    source.mkdir(parents=True)
    return {
        'work_dir': str(work),
        'source_dir': str(source),
        'install_root': str(work / 'root'),
        'helpers_dir': str(work / 'helpers'),
    }


def test_target_triple():
    from kiln.build import BuildInvoker

    invoker = BuildInvoker(arch='aarch64')
    spec = _spec([])
    assert invoker.target_for(spec, BuildVariant('target')) == 'aarch64-linux-gnu'

    invoker = BuildInvoker(arch='x86_64', target_triple='x86_64-bottlerocket-linux-gnu')
    assert invoker.target_for(spec, BuildVariant('target')) == 'x86_64-bottlerocket-linux-gnu'
    spec = _spec([], target='x86_64-unknown-linux-musl')
    assert invoker.target_for(spec, BuildVariant('target')) == 'x86_64-unknown-linux-musl'
    assert invoker.target_for(spec, BuildVariant('host', target_triple='x86_64-pc-linux-gnu')) == 'x86_64-pc-linux-gnu'


def test_environment(dirs):
    from kiln.build import BuildInvoker

    invoker = BuildInvoker(arch='x86_64', jobs=4)
    spec = _spec([], options={'with-docs': 'no', 'shared': 'yes'})
    variant = BuildVariant('static', options={'shared': 'no'})
    env = invoker.environment(
        spec,
        variant,
        source_dir=dirs['source_dir'],
        build_dir='/tmp/bdir',
        install_root=dirs['install_root'],
        helpers_dir=dirs['helpers_dir'],
        sources=['/cache/hello-1.0.tar.gz'],
    )
    assert env['KILN_NAME'] == 'hello'
    assert env['KILN_VERSION'] == '1.0'
    assert env['KILN_RELEASE'] == '3'
    assert env['KILN_VARIANT'] == 'static'
    assert env['KILN_TARGET'] == 'x86_64-linux-gnu'
    assert env['KILN_JOBS'] == '4'
    assert env['DESTDIR'] == dirs['install_root']
    assert env['KILN_SOURCE0'] == '/cache/hello-1.0.tar.gz'
    assert env['KILN_LIBDIR'] == '/usr/lib'
    assert env['KILN_OPT_WITH_DOCS'] == 'no'
    # variant options win
    assert env['KILN_OPT_SHARED'] == 'no'
    assert 'PATH' in env


def test_run_variant(dirs):
    from kiln.build import BuildInvoker

    spec = _spec(
        [
            BuildStep('echo "$KILN_VARIANT" > variant.txt'),
            BuildStep('pwd > "$KILN_SOURCE_DIR/../builddir.txt"'),
            BuildStep('echo "$GREETING" > sub-out.txt', workdir='sub', env={'GREETING': 'hi'}),
        ],
        install=[BuildStep('mkdir -p "$DESTDIR/usr/bin" && cp variant.txt "$DESTDIR/usr/bin/hello"')],
    )
    invoker = BuildInvoker(arch='x86_64')
    invoker.run_variant(spec, BuildVariant('target'), **dirs)

    with open(os.path.join(dirs['install_root'], 'usr', 'bin', 'hello')) as f:
        assert f.read() == 'target\n'
    with open(os.path.join(dirs['work_dir'], 'builddir.txt')) as f:
        builddir = f.read().strip()
    assert os.path.realpath(builddir) == os.path.realpath(os.path.join(dirs['work_dir'], 'build', 'target'))
    # the exclusive build directory is gone afterwards
    assert not os.path.exists(builddir)


def test_variants_and_artifacts(dirs):
    from kiln.build import BuildInvoker
    from kiln.errors import BuildStepError

    spec = _spec(
        [BuildStep('echo "built for $KILN_TARGET" > tool; test ! -f "$KILN_HELPERS_DIR/nope"')],
        install=[BuildStep('cp "$KILN_HELPERS_DIR/tool" "$DESTDIR/host-tool"')],
    )
    invoker = BuildInvoker(arch='x86_64')

    host = BuildVariant('host', target_triple='x86_64-pc-linux-gnu', artifacts=('tool',), install=False)
    invoker.run_variant(spec, host, **dirs)
    assert os.path.isfile(os.path.join(dirs['helpers_dir'], 'tool'))
    # a non-installing variant does not touch the install root
    assert os.listdir(dirs['install_root']) == []

    invoker.run_variant(spec, BuildVariant('target'), **dirs)
    with open(os.path.join(dirs['install_root'], 'host-tool')) as f:
        assert f.read() == 'built for x86_64-pc-linux-gnu\n'

    missing = BuildVariant('other', artifacts=('does-not-exist',), install=False)
    with pytest.raises(BuildStepError) as e:
        invoker.run_variant(spec, missing, **dirs)
    assert 'was not produced' in e.value.output


def test_failing_step(dirs):
    from kiln.build import BuildInvoker
    from kiln.errors import BuildStepError

    spec = _spec(
        [BuildStep('echo configuring'), BuildStep('echo "oh no" >&2; exit 3'), BuildStep('touch never')],
        install=[BuildStep('touch "$DESTDIR/installed"')],
    )
    with pytest.raises(BuildStepError) as e:
        BuildInvoker(arch='x86_64').run_variant(spec, BuildVariant('target'), **dirs)

    assert e.value.step_index == 1
    assert e.value.returncode == 3
    assert e.value.variant == 'target'
    assert e.value.package == 'hello'
    assert not e.value.timed_out
    assert 'oh no' in e.value.output
    assert not os.path.exists(os.path.join(dirs['install_root'], 'installed'))
    # build dir is removed on failure too
    assert not os.path.exists(os.path.join(dirs['work_dir'], 'build', 'target'))

    # install steps are numbered after the build steps
    spec = _spec([BuildStep('true')], install=[BuildStep('false')])
    with pytest.raises(BuildStepError) as e:
        BuildInvoker(arch='x86_64').run_variant(spec, BuildVariant('target'), **dirs)
    assert e.value.step_index == 1


def test_step_timeout(dirs):
    from kiln.build import BuildInvoker
    from kiln.errors import BuildStepError

    spec = _spec([BuildStep('sleep 30', timeout=0.5)])
    with pytest.raises(BuildStepError) as e:
        BuildInvoker(arch='x86_64', step_timeout=600).run_variant(spec, BuildVariant('target'), **dirs)
    assert e.value.timed_out
    assert 'timed out' in str(e.value)


def test_cancelled_build(dirs):
    from kiln.build import BuildInvoker
    from kiln.errors import BuildCancelledError

    event = threading.Event()
    event.set()
    spec = _spec([BuildStep('touch "$KILN_SOURCE_DIR/ran"')])
    with pytest.raises(BuildCancelledError):
        BuildInvoker(arch='x86_64', cancel_event=event).run_variant(spec, BuildVariant('target'), **dirs)
    assert not os.path.exists(os.path.join(dirs['source_dir'], 'ran'))

    # cancelling while a step runs kills it
    event = threading.Event()
    timer = threading.Timer(0.5, event.set)
    timer.start()
    try:
        with pytest.raises(BuildCancelledError):
            BuildInvoker(arch='x86_64', cancel_event=event).run_variant(
                _spec([BuildStep('sleep 30')]), BuildVariant('target'), **dirs
            )
    finally:
        timer.cancel()


def test_unsafe_workdir(dirs):
    from kiln.build import BuildInvoker
    from kiln.errors import DescriptorError

    spec = _spec([BuildStep('true', workdir='../../escape')])
    with pytest.raises(DescriptorError):
        BuildInvoker(arch='x86_64').run_variant(spec, BuildVariant('target'), **dirs)
