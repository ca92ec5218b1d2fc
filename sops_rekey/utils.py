import typing

import click


def stderr_lines(stderr: typing.Union[str, bytes, None]) -> typing.List[str]:
    """Split the STDERR of an engine into non-empty lines."""
    if not stderr:
        return []
    if isinstance(stderr, bytes):
        stderr = stderr.decode('utf-8', errors='replace')
    return [line for line in stderr.splitlines() if line.strip()]


class RekeyException(click.ClickException):
    pass


class DecodeError(RekeyException):
    """Key material is not valid base64 or is empty."""


class PayloadError(RekeyException):
    """The public key payload is not a JSON list of users."""


class KeyImportError(RekeyException):
    """gpg refused to import a key."""


class PatternError(RekeyException):
    """The secrets pattern can't be used to search for files."""


class EmptyRecipientsError(RekeyException):
    pass


class SecretException(RekeyException):
    """Base class for failures that only affect a single secret."""


class DecryptError(SecretException):
    pass


class EncryptError(SecretException):
    pass


class SecretIOError(SecretException):
    pass


class RunFailed(RekeyException):
    pass
