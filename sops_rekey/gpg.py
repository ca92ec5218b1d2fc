import logging
import os
import pathlib
import subprocess
import typing

import attr

from .keys import RecipientEntry
from .utils import KeyImportError, stderr_lines

log = logging.getLogger(__name__)

PRIVATE = 'private'

# IMPORT_OK flag for "contains private key".
SECRET_KEY_FLAG = 16


@attr.s(frozen=True)
class Imported:
    """Keys gpg reported in the status output of an import."""
    fingerprints: typing.Tuple[str, ...] = attr.ib(converter=tuple, default=())
    secret: typing.Tuple[str, ...] = attr.ib(converter=tuple, default=())
    problems: typing.Tuple[str, ...] = attr.ib(converter=tuple, default=())

    @classmethod
    def parse(cls, status: str) -> 'Imported':
        fingerprints: typing.List[str] = []
        secret: typing.List[str] = []
        problems: typing.List[str] = []

        for line in status.splitlines():
            parts = line.split()
            if len(parts) < 2 or parts[0] != '[GNUPG:]':
                continue
            if parts[1] == 'IMPORT_OK' and len(parts) >= 4:
                flags, fingerprint = int(parts[2]), parts[3]
                if fingerprint not in fingerprints:
                    fingerprints.append(fingerprint)
                if flags & SECRET_KEY_FLAG and fingerprint not in secret:
                    secret.append(fingerprint)
            elif parts[1] == 'IMPORT_PROBLEM':
                problems.append(' '.join(parts[2:]))

        return cls(fingerprints, secret, problems)


@attr.s(frozen=True)
class GPG:
    verbose: bool = attr.ib(default=False)
    home: typing.Optional[pathlib.Path] = attr.ib(default=None)
    binary: str = attr.ib(default='gpg')

    def command(self, arguments: typing.Sequence[str]) -> typing.Tuple[str, ...]:
        command: typing.Tuple[str, ...] = (
            self.binary, '--batch', '--no-tty', '--status-fd', '1')
        if self.verbose:
            command = (*command, '--verbose')
        return (*command, *arguments)

    def env(self) -> typing.Dict[str, str]:
        env = dict(os.environ)
        if self.home:
            env['GNUPGHOME'] = self.home.as_posix()
        return env

    def run(self,
            arguments: typing.Sequence[str],
            stdin: typing.Optional[bytes] = None) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                self.command(arguments),
                input=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self.env(),
                check=True)
        except subprocess.CalledProcessError as error:
            for line in stderr_lines(error.stderr):
                log.error(line)
            raise
        if self.verbose:
            for line in stderr_lines(result.stderr):
                log.debug(line)
        return result

    def import_key(self, key: bytes) -> Imported:
        """Import a key from STDIN so it is never written outside GNUPGHOME."""
        result = self.run(['--import'], stdin=key)
        return Imported.parse(result.stdout.decode('utf-8', errors='replace'))

    def secret_keys(self) -> typing.Tuple[str, ...]:
        """List the fingerprints of secret keys already in the keyring."""
        result = self.run(['--with-colons', '--list-secret-keys'])
        fingerprints: typing.List[str] = []
        primary = False
        for line in result.stdout.decode('utf-8', errors='replace').splitlines():
            fields = line.split(':')
            if fields[0] in ('sec', 'ssb'):
                primary = fields[0] == 'sec'
            elif fields[0] == 'fpr' and primary and len(fields) > 9:
                fingerprints.append(fields[9])
                primary = False
        return tuple(fingerprints)


@attr.s(frozen=True, kw_only=True)
class ImportOutcome:
    identifier: str = attr.ib()
    succeeded: bool = attr.ib()
    detail: str = attr.ib(default='')
    fingerprints: typing.Tuple[str, ...] = attr.ib(converter=tuple, default=())
    private: bool = attr.ib(default=False)


@attr.s(frozen=True)
class Identity:
    fingerprints: typing.Tuple[str, ...] = attr.ib(converter=tuple)

    @property
    def fingerprint(self) -> str:
        return self.fingerprints[0]


@attr.s
class Keyring:
    """
    The transient trust store used for a single run.

    Recipient imports never raise, their outcomes are collected so every key
    is attempted. Failing to import the private key is fatal.
    """
    gpg: GPG = attr.ib(factory=GPG)
    outcomes: typing.List[ImportOutcome] = attr.ib(factory=list)

    def import_private(self, key: bytes) -> Identity:
        log.info("Importing private key")
        try:
            imported = self.gpg.import_key(key)
            secret = imported.secret
            if not secret and imported.fingerprints:
                # An unchanged secret key is reported without the secret flag.
                known = self.gpg.secret_keys()
                secret = tuple(f for f in imported.fingerprints if f in known)
        except (subprocess.CalledProcessError, OSError) as error:
            self.outcomes.append(ImportOutcome(
                identifier=PRIVATE, succeeded=False, detail=describe(error), private=True))
            raise KeyImportError(f"Failed to import private key: {describe(error)}")

        if not secret:
            detail = "no secret key found in the private key material"
            self.outcomes.append(ImportOutcome(
                identifier=PRIVATE, succeeded=False, detail=detail, private=True))
            raise KeyImportError(f"Failed to import private key: {detail}")

        self.outcomes.append(ImportOutcome(
            identifier=PRIVATE,
            succeeded=True,
            detail=', '.join(secret),
            fingerprints=secret,
            private=True))
        log.info(f"Imported private key {', '.join(secret)}")
        return Identity(secret)

    def import_recipient(self, entry: RecipientEntry) -> ImportOutcome:
        log.info(f"Importing public key for {entry.identifier}")
        try:
            imported = self.gpg.import_key(entry.key)
        except (subprocess.CalledProcessError, OSError) as error:
            outcome = ImportOutcome(
                identifier=entry.identifier, succeeded=False, detail=describe(error))
        else:
            if imported.fingerprints:
                outcome = ImportOutcome(
                    identifier=entry.identifier,
                    succeeded=True,
                    detail=', '.join(imported.fingerprints),
                    fingerprints=imported.fingerprints)
            else:
                outcome = ImportOutcome(
                    identifier=entry.identifier,
                    succeeded=False,
                    detail='; '.join(imported.problems) or "gpg imported no keys")

        if not outcome.succeeded:
            log.warning(f"Failed to import key for {entry.identifier}: {outcome.detail}")
        self.outcomes.append(outcome)
        return outcome

    def import_recipients(
            self,
            entries: typing.Iterable[RecipientEntry]) -> typing.List[ImportOutcome]:
        return [self.import_recipient(entry) for entry in entries]

    @property
    def recipients(self) -> typing.Tuple[str, ...]:
        """Fingerprints of every recipient key that was imported, in order."""
        fingerprints: typing.List[str] = []
        for outcome in self.outcomes:
            if outcome.private or not outcome.succeeded:
                continue
            for fingerprint in outcome.fingerprints:
                if fingerprint not in fingerprints:
                    fingerprints.append(fingerprint)
        return tuple(fingerprints)

    @property
    def failures(self) -> typing.List[ImportOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]


def describe(error: Exception) -> str:
    """Summarise an engine failure using its STDERR where there is one."""
    if isinstance(error, subprocess.CalledProcessError):
        lines = stderr_lines(error.stderr)
        if lines:
            return lines[-1]
        return f"{error.cmd[0]} exited with status {error.returncode}"
    return str(error)
