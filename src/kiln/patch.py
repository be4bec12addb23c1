# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import stat
import shutil
import hashlib
from contextlib import contextmanager

import kiln.typing as T
from kiln.utils import list_tree, run_command
from kiln.errors import KilnError, PatchConflictError, StateCorruptionError
from kiln.logging import log
from kiln.descriptor import PatchRef, PackageSpec

__all__ = ['PatchApplier', 'tree_snapshot', 'tree_digest', 'diff_snapshots']

# leftovers of failed patch runs, never part of a pristine tree
_IGNORED_SUFFIXES = ('.orig', '.rej')


def tree_snapshot(tree: T.PathUnion) -> T.Dict[str, T.Tuple]:
    '''
    Record the state of every entry below :tree: its type, permission bits,
    and the content hash (files) or target (symlinks).
    '''
    snapshot = {}
    tree = str(tree)
    for rel in list_tree(tree):
        if rel.endswith(_IGNORED_SUFFIXES):
            continue
        path = os.path.join(tree, rel)
        st = os.lstat(path)
        if stat.S_ISLNK(st.st_mode):
            snapshot[rel] = ('l', os.readlink(path))
        elif stat.S_ISDIR(st.st_mode):
            snapshot[rel] = ('d', stat.S_IMODE(st.st_mode))
        else:
            h = hashlib.sha256()
            with open(path, 'rb') as f:
                for chunk in iter(lambda: f.read(65536), b''):
                    h.update(chunk)
            snapshot[rel] = ('f', stat.S_IMODE(st.st_mode), h.hexdigest())
    return snapshot


def tree_digest(tree: T.PathUnion) -> str:
    '''Deterministic digest over the complete state of a directory tree.'''
    h = hashlib.sha256()
    for rel, state in sorted(tree_snapshot(tree).items()):
        h.update(rel.encode('utf-8', errors='surrogateescape'))
        h.update(b'\0')
        h.update(repr(state).encode('utf-8', errors='surrogateescape'))
        h.update(b'\n')
    return h.hexdigest()


def diff_snapshots(before: T.Dict[str, T.Tuple], after: T.Dict[str, T.Tuple]) -> T.List[str]:
    '''Return the sorted list of paths which differ between two snapshots.'''
    changed = set(before.keys()) ^ set(after.keys())
    for rel in set(before.keys()) & set(after.keys()):
        if before[rel] != after[rel]:
            changed.add(rel)
    return sorted(changed)


class PatchApplier:
    '''
    Applies the patch series of a package to its extracted source tree.
    '''

    def __init__(self, *, patch_exe: T.Optional[str] = None):
        if not patch_exe:
            patch_exe = shutil.which('patch')
            if not patch_exe:
                patch_exe = '/usr/bin/patch'
        self._patch_exe = patch_exe

    def _run_patch(self, tree: str, patch_fname: str, strip: int, *, reverse=False, dry_run=False):
        cmd = [
            self._patch_exe,
            '-p{}'.format(strip),
            '--batch',
            '--no-backup-if-mismatch',
            '-d',
            tree,
            '-i',
            os.path.abspath(patch_fname),
        ]
        if reverse:
            cmd.append('--reverse')
        else:
            cmd.append('--forward')
        if dry_run:
            cmd.append('--dry-run')
        out, err, ret = run_command(cmd)
        output = '\n'.join([s for s in (out, err) if s])
        return output, ret

    def _patch_file(self, spec: PackageSpec, patch: PatchRef) -> str:
        fname = spec.local_path(patch.content)
        if not os.path.isfile(fname):
            raise PatchConflictError(patch.sequence, 'Patch file {} does not exist.'.format(fname), package=spec.name)
        return fname

    def apply(self, spec: PackageSpec, patch: PatchRef, tree: T.PathUnion):
        '''
        Apply a single patch. The patch is checked with a dry run first,
        so a conflicting patch never leaves a half-patched tree behind.
        '''
        tree = str(tree)
        fname = self._patch_file(spec, patch)

        output, ret = self._run_patch(tree, fname, patch.strip, dry_run=True)
        if ret != 0:
            raise PatchConflictError(patch.sequence, output, package=spec.name)

        output, ret = self._run_patch(tree, fname, patch.strip)
        if ret != 0:
            raise PatchConflictError(patch.sequence, output, package=spec.name)
        log.debug('Applied patch %d (%s)', patch.sequence, patch.content)

    def revert(self, spec: PackageSpec, patch: PatchRef, tree: T.PathUnion):
        tree = str(tree)
        fname = self._patch_file(spec, patch)

        output, ret = self._run_patch(tree, fname, patch.strip, reverse=True, dry_run=True)
        if ret == 0:
            output, ret = self._run_patch(tree, fname, patch.strip, reverse=True)
        if ret != 0:
            raise StateCorruptionError(
                'Unable to revert patch {}: {}'.format(patch.sequence, output.strip()), package=spec.name
            )
        log.debug('Reverted patch %d (%s)', patch.sequence, patch.content)

    def apply_all(self, spec: PackageSpec, tree: T.PathUnion, patches: T.Optional[T.List[PatchRef]] = None):
        '''
        Apply the regular patch series of :spec (or the given :patches) in
        ascending sequence order.
        '''
        if patches is None:
            patches = spec.ordered_patches()
        patches = sorted(patches, key=lambda p: p.sequence)
        for i in range(1, len(patches)):
            if patches[i].sequence == patches[i - 1].sequence:
                raise PatchConflictError(
                    patches[i].sequence, 'Duplicate patch sequence number.', package=spec.name
                )

        for patch in patches:
            self.apply(spec, patch, tree)
        if patches:
            log.info('Applied %d patch(es) to %s', len(patches), spec.name)

    def check_clean(self, spec: PackageSpec, tree: T.PathUnion, before: T.Dict[str, T.Tuple]):
        '''Ensure :tree is in exactly the state recorded in :before.'''
        changed = diff_snapshots(before, tree_snapshot(tree))
        if changed:
            shown = ', '.join(changed[:10])
            if len(changed) > 10:
                shown += ', ...'
            raise StateCorruptionError(
                'Source tree is not clean after reverting patches ({} paths differ: {})'.format(len(changed), shown),
                changed=changed,
                package=spec.name,
            )

    @contextmanager
    def scoped(self, spec: PackageSpec, tree: T.PathUnion, patches: T.List[PatchRef]):
        '''
        Apply :patches (in ascending sequence order) for the duration of the
        context, then revert them in reverse order and verify the tree is
        byte-identical to its state before the first patch.
        '''

        before = tree_snapshot(tree)
        applied = []
        try:
            for patch in sorted(patches, key=lambda p: p.sequence):
                self.apply(spec, patch, tree)
                applied.append(patch)
            yield applied
        except BaseException:
            # restore what we can, the original error is what gets reported
            try:
                for patch in reversed(applied):
                    self.revert(spec, patch, tree)
                self.check_clean(spec, tree, before)
            except KilnError as e:
                log.error('Could not restore source tree of %s: %s', spec.name, str(e))
            raise
        else:
            for patch in reversed(applied):
                self.revert(spec, patch, tree)
            self.check_clean(spec, tree, before)
