import logging
import os
import pathlib
import tempfile
import typing

import attr

from .sops import Sops
from .utils import SecretException, SecretIOError

log = logging.getLogger(__name__)


@attr.s(frozen=True, kw_only=True)
class Secret:
    path: pathlib.Path = attr.ib()

    def __str__(self):
        return self.path.as_posix()

    def re_encrypt(
            self,
            sops: Sops,
            recipients: typing.Sequence[str],
            dry_run: bool = False) -> None:
        """
        Replace the recipients of an encrypted file.

        The plaintext only exists in memory. The file is replaced in a single
        rename once the new ciphertext exists, so it is never left half
        written.
        """
        plaintext = sops.decrypt(self.path)
        if dry_run:
            log.debug(f"Decrypted {self.path}, skipping re-encryption")
            return
        ciphertext = sops.encrypt(plaintext, self.path, recipients)
        self.replace(ciphertext)

    def replace(self, ciphertext: bytes) -> None:
        log.debug(f"Writing {self.path}")
        try:
            mode = self.path.stat().st_mode & 0o7777
            fd, temporary = tempfile.mkstemp(
                dir=self.path.parent, prefix=f'.{self.path.name}.', suffix='.tmp')
        except OSError as error:
            raise SecretIOError(f"Failed to write {self.path}: {error}")

        try:
            with os.fdopen(fd, 'wb') as stream:
                stream.write(ciphertext)
            os.chmod(temporary, mode)
            os.replace(temporary, self.path)
        except OSError as error:
            try:
                os.unlink(temporary)
            except FileNotFoundError:
                pass
            raise SecretIOError(f"Failed to write {self.path}: {error}")


@attr.s(frozen=True)
class FileOutcome:
    path: pathlib.Path = attr.ib()
    error: typing.Optional[SecretException] = attr.ib(default=None)
    skipped: bool = attr.ib(default=False)

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.skipped


@attr.s(frozen=True, kw_only=True)
class RunResult:
    total_files: int = attr.ib()
    succeeded: typing.Tuple[pathlib.Path, ...] = attr.ib(converter=tuple, default=())
    failed: typing.Tuple[typing.Tuple[pathlib.Path, SecretException], ...] = attr.ib(
        converter=tuple, default=())
    skipped: typing.Tuple[pathlib.Path, ...] = attr.ib(converter=tuple, default=())

    @classmethod
    def fold(cls, outcomes: typing.Sequence[FileOutcome]) -> 'RunResult':
        return cls(
            total_files=len(outcomes),
            succeeded=[o.path for o in outcomes if o.succeeded],
            failed=[(o.path, o.error) for o in outcomes if o.error is not None],
            skipped=[o.path for o in outcomes if o.skipped])

    @property
    def ok(self) -> bool:
        return not self.failed


@attr.s(frozen=True)
class SecretKeeper:
    secrets: typing.Tuple[pathlib.Path, ...] = attr.ib(converter=tuple)

    directory: pathlib.Path = attr.ib(factory=pathlib.Path.cwd)
    sops: Sops = attr.ib(factory=Sops)

    def __getitem__(self, path: pathlib.Path) -> Secret:
        return Secret(path=self.directory / path)

    def __len__(self):
        return len(self.secrets)

    def outcome(
            self,
            path: pathlib.Path,
            recipients: typing.Sequence[str],
            dry_run: bool) -> FileOutcome:
        try:
            self[path].re_encrypt(self.sops, recipients, dry_run=dry_run)
        except SecretException as error:
            log.error(f"Failed to re-encrypt {path}: {error.message}")
            return FileOutcome(path, error)
        log.info(f"Re-encrypted {path}")
        return FileOutcome(path)

    def outcomes(
            self,
            recipients: typing.Sequence[str],
            dry_run: bool = False) -> typing.Iterator[FileOutcome]:
        """Re-encrypt each secret in turn, yielding an outcome per file."""
        log.info(f"Re-encrypting {len(self)} secrets for {len(recipients)} recipients")
        for path in self.secrets:
            yield self.outcome(path, recipients, dry_run)

    def re_encrypt(
            self,
            recipients: typing.Sequence[str],
            dry_run: bool = False) -> RunResult:
        return RunResult.fold(list(self.outcomes(recipients, dry_run)))

    def skip(self) -> typing.Iterator[FileOutcome]:
        """Leave every secret untouched."""
        log.info(f"Leaving {len(self)} secrets unchanged")
        return iter([FileOutcome(path, skipped=True) for path in self.secrets])
