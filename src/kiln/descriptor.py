# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import re
import enum
from glob import glob
from dataclasses import field, dataclass

import tomlkit
from tomlkit.exceptions import TOMLKitError
from voluptuous import All, Any, Range, Match, Length, Schema, Invalid, Required

import kiln.typing as T
from kiln.errors import DescriptorError
from kiln.version import EVR
from kiln.logging import log
from kiln.utils import check_filename_safe

__all__ = [
    'RuleMode',
    'SourceRef',
    'PatchRef',
    'BuildStep',
    'BuildVariant',
    'BuildProcedure',
    'FileManifestRule',
    'SubPackageSpec',
    'PackageSpec',
    'load_descriptor',
    'load_descriptors',
    'DESCRIPTOR_SUFFIX',
]

DESCRIPTOR_SUFFIX = '.toml'

CHECKSUM_ALGORITHMS = ('sha256', 'sha512', 'sha1', 'blake2b')

_ARCHIVE_SUFFIXES = ('.tar', '.tar.gz', '.tgz', '.tar.bz2', '.tbz2', '.tar.xz', '.txz')

re_checksum = re.compile(r'^((?P<algo>[a-z0-9]+):)?(?P<digest>[0-9a-fA-F]+)$')


class RuleMode(enum.Enum):
    '''
    How a file manifest rule treats the paths it matches.
    '''

    INCLUDE = 'include'  # claim the path (and everything below it)
    EXCLUDE = 'exclude'  # intentionally leave the path out of this package
    DIR = 'dir'  # claim the directory entry only, not its contents

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class SourceRef:
    url: str
    signature_url: T.Optional[str] = None
    keyring: T.Optional[str] = None
    checksum: T.Optional[str] = None
    extract: T.Optional[bool] = None

    @property
    def has_integrity(self) -> bool:
        return bool(self.signature_url or self.checksum)

    @property
    def filename(self) -> str:
        return os.path.basename(self.url.rstrip('/'))

    @property
    def is_archive(self) -> bool:
        if self.extract is not None:
            return self.extract
        return self.filename.lower().endswith(_ARCHIVE_SUFFIXES)

    def checksum_parts(self) -> T.Tuple[str, str]:
        '''Return the (algorithm, hex digest) pair of the declared checksum.'''
        m = re_checksum.match(self.checksum)
        algo = m.group('algo') if m.group('algo') else 'sha256'
        return algo, m.group('digest').lower()


@dataclass(frozen=True)
class PatchRef:
    sequence: int
    content: str
    strip: int = 1
    bootstrap: bool = False


@dataclass(frozen=True)
class BuildStep:
    run: str
    workdir: T.Optional[str] = None
    env: T.Dict[str, str] = field(default_factory=dict)
    timeout: T.Optional[float] = None


@dataclass(frozen=True)
class BuildVariant:
    '''
    One invocation of the build procedure. A package may be built several
    times with different settings, e.g. once for a host helper tool and once
    for the real target.
    '''

    name: str
    options: T.Dict[str, str] = field(default_factory=dict)
    target_triple: T.Optional[str] = None
    patches: T.Tuple[int, ...] = field(default_factory=tuple)  # bootstrap patches applied only for this run
    artifacts: T.Tuple[str, ...] = field(default_factory=tuple)  # files to keep for later variants
    install: bool = True


@dataclass(frozen=True)
class BuildProcedure:
    steps: T.Tuple[BuildStep, ...] = field(default_factory=tuple)
    install: T.Tuple[BuildStep, ...] = field(default_factory=tuple)
    target_triple: T.Optional[str] = None
    options: T.Dict[str, str] = field(default_factory=dict)
    variants: T.Tuple[BuildVariant, ...] = field(default_factory=tuple)

    def effective_variants(self) -> T.List[BuildVariant]:
        if self.variants:
            return list(self.variants)
        return [BuildVariant(name='target', install=True)]


@dataclass(frozen=True)
class FileManifestRule:
    pattern: str
    mode: RuleMode = RuleMode.INCLUDE
    license: bool = False


@dataclass(frozen=True)
class SubPackageSpec:
    name: str
    summary: T.Optional[str] = None
    requires: T.Tuple[str, ...] = field(default_factory=tuple)
    rules: T.Tuple[FileManifestRule, ...] = field(default_factory=tuple)
    licenses: T.Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class PackageSpec:
    '''
    Declarative recipe for building one upstream component.
    '''

    name: str
    version: str
    license: str
    summary: str
    release: int = 1
    epoch: T.Optional[int] = None
    url: T.Optional[str] = None
    sources: T.Tuple[SourceRef, ...] = field(default_factory=tuple)
    patches: T.Tuple[PatchRef, ...] = field(default_factory=tuple)
    build_requires: T.FrozenSet[str] = field(default_factory=frozenset)
    runtime_requires: T.FrozenSet[str] = field(default_factory=frozenset)
    build: BuildProcedure = field(default_factory=BuildProcedure)
    subpackages: T.Tuple[SubPackageSpec, ...] = field(default_factory=tuple)
    directory: T.Optional[str] = None

    @property
    def evr(self) -> EVR:
        return EVR(self.version, self.release, self.epoch)

    @property
    def nvr(self) -> str:
        return '{}-{}-{}'.format(self.name, self.version, self.release)

    def ordered_patches(self) -> T.List[PatchRef]:
        '''Patches which are part of the regular patch series, in application order.'''
        return sorted([p for p in self.patches if not p.bootstrap], key=lambda p: p.sequence)

    def patch_by_sequence(self, sequence: int) -> PatchRef:
        for p in self.patches:
            if p.sequence == sequence:
                return p
        raise KeyError(sequence)

    def effective_subpackages(self) -> T.List[SubPackageSpec]:
        '''
        The packages produced by this build. Without explicit sub-packages,
        the main package owns everything that was installed.
        '''
        if self.subpackages:
            return list(self.subpackages)
        return [
            SubPackageSpec(
                name=self.name,
                summary=self.summary,
                requires=tuple(sorted(self.runtime_requires)),
                rules=(FileManifestRule('**'),),
            )
        ]

    def local_path(self, ref: str) -> str:
        '''Resolve a file reference relative to the descriptor's directory.'''
        if os.path.isabs(ref):
            return ref
        return os.path.join(self.directory if self.directory else '.', ref)


def _checksum_valid(value):
    m = re_checksum.match(value)
    if not m:
        raise Invalid('checksum must be "<algorithm>:<hex digest>"')
    algo = m.group('algo')
    if algo and algo not in CHECKSUM_ALGORITHMS:
        raise Invalid('unsupported checksum algorithm "{}"'.format(algo))
    return value


_name_str = All(str, Length(min=1), Match(r'^[a-zA-Z0-9][a-zA-Z0-9_.+-]*$'), msg='Must be a valid package name')

_step_schema = Any(
    All(str, Length(min=1)),
    Schema(
        {
            Required('run'): All(str, Length(min=1)),
            'workdir': str,
            'env': {str: Any(str, int, float, bool)},
            'timeout': All(Any(int, float), Range(min=0, min_included=False)),
        }
    ),
)

_rule_schema = Any(
    All(str, Length(min=1)),
    Schema(
        {
            Required('pattern'): All(str, Length(min=1)),
            'mode': Any('include', 'exclude', 'dir'),
            'license': bool,
        }
    ),
)

schema_descriptor = Schema(
    {
        Required('name'): _name_str,
        Required('version'): All(str, Length(min=1), Match(r'^[^\s-]+$'), msg='Must be a valid version string'),
        'release': All(int, Range(min=0)),
        'epoch': All(int, Range(min=0)),
        Required('license'): All(str, Length(min=1)),
        Required('summary'): All(str, Length(min=1)),
        'url': str,
        'source': [
            Schema(
                {
                    Required('url'): All(str, Length(min=1)),
                    'signature_url': All(str, Length(min=1)),
                    'keyring': All(str, Length(min=1)),
                    'checksum': All(str, _checksum_valid),
                    'extract': bool,
                }
            )
        ],
        'patch': [
            Schema(
                {
                    Required('sequence'): All(int, Range(min=0)),
                    Required('content'): All(str, Length(min=1)),
                    'strip': All(int, Range(min=0)),
                    'bootstrap': bool,
                }
            )
        ],
        'build_requires': [_name_str],
        'requires': [_name_str],
        'build': Schema(
            {
                'steps': [_step_schema],
                'install': [_step_schema],
                'target_triple': All(str, Length(min=1)),
                'options': {str: Any(str, int, float, bool)},
                'variant': [
                    Schema(
                        {
                            Required('name'): All(str, Match(r'^[a-zA-Z0-9_.-]+$')),
                            'options': {str: Any(str, int, float, bool)},
                            'target_triple': All(str, Length(min=1)),
                            'patches': [int],
                            'artifacts': [All(str, Length(min=1))],
                            'install': bool,
                        }
                    )
                ],
            }
        ),
        'subpackage': [
            Schema(
                {
                    Required('name'): _name_str,
                    'summary': str,
                    'requires': [_name_str],
                    'rules': [_rule_schema],
                    'licenses': [All(str, Length(min=1))],
                }
            )
        ],
    }
)


def _option_map(data) -> T.Dict[str, str]:
    res = {}
    for k, v in data.items():
        if isinstance(v, bool):
            v = 'yes' if v else 'no'
        res[k] = str(v)
    return res


def _make_step(data) -> BuildStep:
    if isinstance(data, str):
        return BuildStep(run=data)
    return BuildStep(
        run=data['run'],
        workdir=data.get('workdir'),
        env=_option_map(data.get('env', {})),
        timeout=data.get('timeout'),
    )


def _make_rule(data) -> FileManifestRule:
    if isinstance(data, str):
        return FileManifestRule(pattern=data)
    return FileManifestRule(
        pattern=data['pattern'],
        mode=RuleMode(data.get('mode', 'include')),
        license=data.get('license', False),
    )


def _expand_url(url: T.Optional[str], name: str, version: str) -> T.Optional[str]:
    if not url:
        return url
    return url.replace('{name}', name).replace('{version}', version)


def descriptor_from_data(data: T.Dict[str, T.Any], *, directory: T.Optional[str] = None, origin: str = '<data>'):
    '''
    Validate raw descriptor data (as loaded from TOML) and turn it into a :PackageSpec.
    '''

    try:
        data = schema_descriptor(data)
    except Invalid as e:
        raise DescriptorError('{}: Invalid package descriptor: {}'.format(origin, str(e)))

    name = data['name']
    version = data['version']

    sources = []
    for sdata in data.get('source', []):
        src = SourceRef(
            url=_expand_url(sdata['url'], name, version),
            signature_url=_expand_url(sdata.get('signature_url'), name, version),
            keyring=sdata.get('keyring'),
            checksum=sdata.get('checksum'),
            extract=sdata.get('extract'),
        )
        if bool(src.signature_url) != bool(src.keyring):
            raise DescriptorError(
                '{}: Source "{}" must declare both a signature URL and a keyring, or neither.'.format(origin, src.url),
                package=name,
            )
        sources.append(src)

    patches = []
    seen_seq = set()
    for pdata in data.get('patch', []):
        seq = pdata['sequence']
        if seq in seen_seq:
            raise DescriptorError('{}: Duplicate patch sequence number {}'.format(origin, seq), package=name)
        seen_seq.add(seq)
        patches.append(
            PatchRef(
                sequence=seq,
                content=pdata['content'],
                strip=pdata.get('strip', 1),
                bootstrap=pdata.get('bootstrap', False),
            )
        )
    bootstrap_seqs = set([p.sequence for p in patches if p.bootstrap])

    bdata = data.get('build', {})
    variants = []
    for vdata in bdata.get('variant', []):
        if vdata['name'] in [v.name for v in variants]:
            raise DescriptorError(
                '{}: Duplicate build variant name "{}"'.format(origin, vdata['name']), package=name
            )
        vpatches = vdata.get('patches', [])
        if len(set(vpatches)) != len(vpatches):
            raise DescriptorError(
                '{}: Build variant "{}" lists a patch more than once.'.format(origin, vdata['name']), package=name
            )
        for seq in vpatches:
            if seq not in bootstrap_seqs:
                raise DescriptorError(
                    '{}: Build variant "{}" references patch {}, which is not a bootstrap patch.'.format(
                        origin, vdata['name'], seq
                    ),
                    package=name,
                )
        variants.append(
            BuildVariant(
                name=vdata['name'],
                options=_option_map(vdata.get('options', {})),
                target_triple=vdata.get('target_triple'),
                patches=tuple(sorted(vpatches)),
                artifacts=tuple(vdata.get('artifacts', [])),
                install=vdata.get('install', True),
            )
        )
    if variants and not any(v.install for v in variants):
        raise DescriptorError('{}: No build variant installs anything.'.format(origin), package=name)

    build = BuildProcedure(
        steps=tuple(_make_step(s) for s in bdata.get('steps', [])),
        install=tuple(_make_step(s) for s in bdata.get('install', [])),
        target_triple=bdata.get('target_triple'),
        options=_option_map(bdata.get('options', {})),
        variants=tuple(variants),
    )

    subpackages = []
    for spdata in data.get('subpackage', []):
        if spdata['name'] in [sp.name for sp in subpackages]:
            raise DescriptorError(
                '{}: Duplicate sub-package name "{}"'.format(origin, spdata['name']), package=name
            )
        for lic in spdata.get('licenses', []):
            if os.path.isabs(lic) or '..' in lic.split('/'):
                raise DescriptorError(
                    '{}: License file "{}" must be relative to the source tree.'.format(origin, lic), package=name
                )
        subpackages.append(
            SubPackageSpec(
                name=spdata['name'],
                summary=spdata.get('summary'),
                requires=tuple(spdata.get('requires', [])),
                rules=tuple(_make_rule(r) for r in spdata.get('rules', [])),
                licenses=tuple(spdata.get('licenses', [])),
            )
        )

    return PackageSpec(
        name=name,
        version=version,
        release=data.get('release', 1),
        epoch=data.get('epoch'),
        license=data['license'],
        summary=data['summary'],
        url=data.get('url'),
        sources=tuple(sources),
        patches=tuple(patches),
        build_requires=frozenset(data.get('build_requires', [])),
        runtime_requires=frozenset(data.get('requires', [])),
        build=build,
        subpackages=tuple(subpackages),
        directory=directory,
    )


def load_descriptor(fname: T.PathUnion) -> PackageSpec:
    '''
    Load a package descriptor from a TOML file.
    '''

    fname = str(fname)
    try:
        with open(fname, 'r') as f:
            data = tomlkit.load(f).unwrap()
    except TOMLKitError as e:
        raise DescriptorError('{}: Unable to parse descriptor: {}'.format(fname, str(e)))

    directory = os.path.dirname(os.path.abspath(fname))
    spec = descriptor_from_data(data, directory=directory, origin=fname)

    if not check_filename_safe(spec.name):
        raise DescriptorError('{}: Package name "{}" is not safe to use in file names'.format(fname, spec.name))

    return spec


def load_descriptors(packages_dir: T.PathUnion) -> T.List[PackageSpec]:
    '''
    Load all package descriptors from a directory tree laid out as
    ``<packages_dir>/<name>/<name>.toml``.
    '''

    packages_dir = str(packages_dir)
    if not os.path.isdir(packages_dir):
        raise DescriptorError('Packages directory "{}" does not exist.'.format(packages_dir))

    specs = []
    for fname in sorted(glob(os.path.join(packages_dir, '*', '*' + DESCRIPTOR_SUFFIX))):
        pkg_dirname = os.path.basename(os.path.dirname(fname))
        if os.path.basename(fname) != pkg_dirname + DESCRIPTOR_SUFFIX:
            log.debug('Ignoring stray TOML file: %s', fname)
            continue
        specs.append(load_descriptor(fname))

    return specs
