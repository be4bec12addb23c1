# -*- coding: utf-8 -*-
#
# Copyright (C) 2011-2018 Ansgar Burchardt <ansgar@debian.org>
# Copyright (C) 2024-2026 Kiln Developers
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import datetime
import tempfile
import subprocess
from typing import List, Union, Optional
from pathlib import Path

from kiln.logging import log


class GpgException(Exception):
    pass


def _gpg_exe() -> str:
    import shutil

    gpg = shutil.which('gpg')
    return gpg if gpg else '/usr/bin/gpg'


def import_keyfile(gpghome: Union[Path, str], fname: Union[Path, str]) -> List[str]:
    """Import a GPG (public) keyfile into the keyring set by :gpghome"""

    args = [
        _gpg_exe(),
        '--no-default-keyring',
        '--homedir',
        str(gpghome),
        '--no-tty',
        '--batch',
        '--status-fd=1',
        '--import',
        str(fname),
    ]

    proc = subprocess.run(args, capture_output=True, check=False)
    if proc.returncode != 0:
        raise GpgException('Unable to import key: {!r}{!r}'.format(proc.stderr, proc.stdout))

    key_fingerprints = []
    for line in str(proc.stdout, 'utf-8').splitlines():
        if line.startswith('[GNUPG:] IMPORT_OK'):
            parts = line.split(' ')
            key_fingerprints.append(parts[3])
    if not key_fingerprints:
        raise GpgException('Imported key, but unable to determine fingerprint of the new key.:')

    return key_fingerprints


class DetachedSignature:
    '''verify a file against a detached PGP signature

    The following attributes are available after verification:
      valid               - Boolean indicating a valid signature was found
      expired             - the signature or the signing key has expired
      weak_signature      - signature uses a weak algorithm (e.g. SHA-1)
      fingerprint         - fingerprint of the key used for signing
      primary_fingerprint - fingerprint of the primary key associated to the key used for signing
    '''

    def __init__(
        self,
        data_fname: Union[Path, str],
        signature_fname: Union[Path, str],
        keyrings: Optional[List[str]],
        *,
        require_signature=True,
    ):
        '''
        @param data_fname: the signed file
        @param signature_fname: the detached signature of :data_fname
        @param keyrings: key files (armored or binary) the signature is checked against
        @param require_signature: if True (the default), will raise an exception if no valid signature was found
        '''
        if not keyrings:
            keyrings = []

        self.keyrings = keyrings

        self.valid = False
        self.expired = False
        self.invalid = False
        self.weak_signature = False
        self.signature_timestamp = None
        self.fingerprints: List[str] = []
        self.primary_fingerprints: List[str] = []

        self._verify(str(data_fname), str(signature_fname), require_signature)

    @property
    def fingerprint(self):
        assert len(self.fingerprints) == 1
        return self.fingerprints[0]

    @property
    def primary_fingerprint(self):
        assert len(self.primary_fingerprints) == 1
        return self.primary_fingerprints[0]

    def _verify(self, data_fname, signature_fname, require_signature):
        if not self.keyrings:
            raise GpgException('No keyring to verify the signature of "{}" against.'.format(data_fname))

        # use a throwaway GnuPG home, so only keys from the given keyrings are trusted
        with tempfile.TemporaryDirectory(prefix='kiln-gpg-') as gpghome:
            os.chmod(gpghome, 0o700)
            for keyring in self.keyrings:
                import_keyfile(gpghome, keyring)

            args = [
                _gpg_exe(),
                '--homedir',
                gpghome,
                '--status-fd=1',
                '--batch',
                '--no-tty',
                '--trust-model',
                'always',
                '--fixed-list-mode',
                '--verify',
                signature_fname,
                data_fname,
            ]
            log.debug('Calling GPG: %s', ' '.join(args))
            proc = subprocess.run(args, capture_output=True, check=False)

        self.status = proc.stdout
        self.stderr = proc.stderr
        if self.status == b'':
            stderr = self.stderr.decode('ascii', errors='replace')
            raise GpgException(
                'No status output from GPG. (GPG exited with status code %s)\n%s' % (proc.returncode, stderr)
            )

        for line in self.status.splitlines():
            if line.startswith(b'[GNUPG:]'):
                self._parse_status(line)

        if self.invalid:
            self.valid = False

        if require_signature and not self.valid:
            stderr = self.stderr.decode('ascii', errors='replace')
            raise GpgException(
                'No valid signature found. (GPG exited with status code %s)\n%s' % (proc.returncode, stderr)
            )

        assert len(self.fingerprints) == len(self.primary_fingerprints)

    def _parse_timestamp(self, timestamp):
        '''parse timestamp in GnuPG's format

        @rtype:   L{datetime.datetime}
        @returns: datetime object for the given timestamp
        '''
        if b'T' in timestamp:
            raise GpgException('No support for ISO 8601 timestamps.')
        return datetime.datetime.fromtimestamp(int(timestamp), tz=datetime.timezone.utc)

    def _parse_status(self, line):
        fields = line.split()

        # VALIDSIG    <fingerprint in hex> <sig_creation_date> <sig-timestamp>
        #             <expire-timestamp> <sig-version> <reserved> <pubkey-algo>
        #             <hash-algo> <sig-class> <primary-key-fpr>
        if fields[1] == b'VALIDSIG':
            # RFC 4880, table 9.4:
            #   1 - MD5
            #   2 - SHA-1
            #   3 - RIPE-MD/160
            if fields[9] == b'1':
                raise GpgException('Digest algorithm MD5 is not trusted.')
            if fields[9] in (b'2', b'3'):
                self.weak_signature = True

            self.valid = True
            self.fingerprints.append(fields[2].decode('ascii'))
            self.primary_fingerprints.append(fields[11].decode('ascii'))
            self.signature_timestamp = self._parse_timestamp(fields[4])

        elif fields[1] == b'BADARMOR':
            raise GpgException('Bad armor.')

        elif fields[1] == b'NODATA':
            raise GpgException('No data.')

        elif fields[1] in (b'EXPSIG', b'EXPKEYSIG'):
            self.expired = True
            self.invalid = True

        elif fields[1] in (b'REVKEYSIG', b'BADSIG', b'ERRSIG', b'KEYREVOKED', b'NO_PUBKEY'):
            self.invalid = True

        else:
            # informational (GOODSIG, NEWSIG, KEY_CONSIDERED, TRUST_*, ...)
            log.debug('GPG status: %s', line.decode('utf-8', errors='replace'))


def verify_detached(
    data_fname: Union[Path, str], signature_fname: Union[Path, str], keyrings: List[str]
) -> DetachedSignature:
    '''Verify :data_fname against its detached signature, raising :GpgException on failure.'''
    return DetachedSignature(data_fname, signature_fname, keyrings, require_signature=True)
