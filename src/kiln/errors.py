# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import kiln.typing as T

__all__ = [
    'KilnError',
    'ConfigError',
    'DescriptorError',
    'IntegrityError',
    'PatchConflictError',
    'StateCorruptionError',
    'BuildStepError',
    'BuildCancelledError',
    'ManifestError',
    'UnclaimedFileError',
    'DuplicateClaimError',
    'DependencyError',
]


class KilnError(Exception):
    '''
    Base class for all errors raised while building a package.

    :package and :stage are filled in by the build session as the error
    travels upwards, so reports can name where things went wrong.
    '''

    def __init__(self, message: str, *, package: T.Optional[str] = None, stage: T.Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.package = package
        self.stage = stage

    def __str__(self):
        return self.message


class ConfigError(KilnError):
    pass


class DescriptorError(KilnError):
    '''A package descriptor is invalid, or references something that does not exist.'''

    pass


class IntegrityError(KilnError):
    '''A source artifact could not be retrieved or failed signature/checksum verification.'''

    def __init__(self, message: str, *, url: T.Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.url = url


class PatchConflictError(KilnError):
    def __init__(self, sequence: int, output: str = '', **kwargs):
        super().__init__('Patch {} does not apply cleanly'.format(sequence), **kwargs)
        self.sequence = sequence
        self.output = output

    def __str__(self):
        if self.output:
            return '{}:\n{}'.format(self.message, self.output.rstrip())
        return self.message


class StateCorruptionError(KilnError):
    '''Reverting scoped patches did not restore the pristine source tree.'''

    def __init__(self, message: str, *, changed: T.Optional[T.List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.changed = changed if changed else []


class BuildStepError(KilnError):
    def __init__(
        self,
        step_index: int,
        command: str,
        output: str = '',
        *,
        variant: T.Optional[str] = None,
        returncode: T.Optional[int] = None,
        timed_out: bool = False,
        **kwargs,
    ):
        if timed_out:
            msg = 'Build step {} ({}) timed out'.format(step_index, command)
        else:
            msg = 'Build step {} ({}) failed with exit code {}'.format(step_index, command, returncode)
        if variant:
            msg = '[{}] {}'.format(variant, msg)
        super().__init__(msg, **kwargs)
        self.step_index = step_index
        self.command = command
        self.output = output
        self.variant = variant
        self.returncode = returncode
        self.timed_out = timed_out


class BuildCancelledError(KilnError):
    pass


class ManifestError(KilnError):
    '''
    The staged files do not match the file manifest rules.
    When several problems were found, they are all listed in :problems.
    '''

    def __init__(self, message: str, *, problems: T.Optional[T.List['ManifestError']] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.problems = problems if problems else []


class UnclaimedFileError(ManifestError):
    def __init__(self, path: str, **kwargs):
        super().__init__('Installed file is not claimed by any package: {}'.format(path), **kwargs)
        self.path = path


class DuplicateClaimError(ManifestError):
    def __init__(self, path: str, claimants: T.Sequence[str], **kwargs):
        super().__init__(
            'Installed file is claimed by more than one package ({}): {}'.format(', '.join(claimants), path), **kwargs
        )
        self.path = path
        self.claimants = list(claimants)


class DependencyError(KilnError):
    '''A package was not built because one of its build dependencies failed.'''

    def __init__(self, package: str, failed_dependency: str, **kwargs):
        super().__init__(
            'Skipped: build dependency "{}" failed'.format(failed_dependency), package=package, **kwargs
        )
        self.failed_dependency = failed_dependency
