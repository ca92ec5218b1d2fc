import logging
import os
import pathlib
import re
import subprocess
import typing

import attr

from .utils import DecryptError, EncryptError, stderr_lines

log = logging.getLogger(__name__)

FORMATS = {
    '.yaml': 'yaml',
    '.yml': 'yaml',
    '.json': 'json',
    '.ini': 'ini',
    '.env': 'dotenv',
}

VERSION = re.compile(r'(\d+\.\d+\.\d+)')


def file_format(path: pathlib.Path) -> str:
    """Guess the sops store for a file from its name, as sops does."""
    return FORMATS.get(path.suffix.lower(), 'binary')


@attr.s(frozen=True)
class Sops:
    verbose: bool = attr.ib(default=False)
    home: typing.Optional[pathlib.Path] = attr.ib(default=None)
    binary: str = attr.ib(default='sops')
    directory: typing.Optional[pathlib.Path] = attr.ib(default=None)

    def command(self, arguments: typing.Sequence[str]) -> typing.Tuple[str, ...]:
        command: typing.Tuple[str, ...] = (self.binary,)
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
                cwd=self.directory,
                check=True)
        except subprocess.CalledProcessError as error:
            for line in stderr_lines(error.stderr):
                log.error(line)
            raise
        if self.verbose:
            for line in stderr_lines(result.stderr):
                log.debug(line)
        return result

    def version(self) -> typing.Optional[str]:
        """Return the installed sops version, or None if it can't be run."""
        try:
            result = self.run(['--version'])
        except (subprocess.CalledProcessError, OSError) as error:
            log.warning(f"Could not run {self.binary} --version: {error}")
            return None
        match = VERSION.search(result.stdout.decode('utf-8', errors='replace'))
        return match.group(1) if match else None

    def filename(self, path: pathlib.Path) -> str:
        """The name sops would see for a path when run from the directory."""
        if self.directory is not None and path.is_absolute():
            try:
                return path.relative_to(self.directory).as_posix()
            except ValueError:
                pass
        return path.as_posix()

    def decrypt(self, path: pathlib.Path) -> bytes:
        """Decrypt a file to memory."""
        log.debug(f"Decrypting {path}")
        kind = file_format(path)
        try:
            return self.run([
                '--decrypt',
                '--input-type', kind,
                '--output-type', kind,
                str(path),
            ]).stdout
        except subprocess.CalledProcessError as error:
            raise DecryptError(f"Failed to decrypt {path}: {reason(error)}")
        except OSError as error:
            raise DecryptError(f"Failed to decrypt {path}: {error}")

    def encrypt(
            self,
            plaintext: bytes,
            path: pathlib.Path,
            recipients: typing.Sequence[str]) -> bytes:
        """
        Encrypt plaintext from memory for exactly the given fingerprints.

        The path is passed as the file name so sops applies the matching
        creation rule from .sops.yaml, and chooses the file format. Nothing is
        written to it.
        """
        log.debug(f"Encrypting {path} for {len(recipients)} recipients")
        if not recipients:
            raise EncryptError(f"Failed to encrypt {path}: no recipients")

        kind = file_format(path)
        try:
            return self.run([
                '--encrypt',
                '--pgp', ','.join(recipients),
                '--input-type', kind,
                '--output-type', kind,
                '--filename-override', self.filename(path),
                '/dev/stdin',
            ], stdin=plaintext).stdout
        except subprocess.CalledProcessError as error:
            raise EncryptError(f"Failed to encrypt {path}: {reason(error)}")
        except OSError as error:
            raise EncryptError(f"Failed to encrypt {path}: {error}")


def reason(error: subprocess.CalledProcessError) -> str:
    lines = stderr_lines(error.stderr)
    if lines:
        return lines[-1]
    return f"sops exited with status {error.returncode}"
