import logging
import pathlib
import typing

import attr
import click

from . import __doc__, __version__
from .api import DEFAULT_PUBLIC_KEYS, POLICIES, SKIP, Rekey, Reporter, rekey
from .gpg import ImportOutcome
from .keys import RecipientSet
from .search import DEFAULT_PATTERN
from .secrets import FileOutcome, RunResult, SecretKeeper
from .utils import RunFailed

log = logging.getLogger(__name__)

DEFAULT_SOPS_VERSION = '3.10.2'


class PathType(click.Path):
    def convert(self, value, param, ctx):
        return pathlib.Path(super().convert(value, param, ctx))


def ok(text: str) -> str:
    return click.style(text, fg='green')


def warn(text: str) -> str:
    return click.style(text, fg='yellow')


def bad(text: str) -> str:
    return click.style(text, fg='red')


def echo_import(outcome: ImportOutcome) -> None:
    if outcome.succeeded:
        click.echo(ok(f"Imported key for {outcome.identifier} ({outcome.detail})"))
    else:
        click.echo(warn(f"Failed to import key for {outcome.identifier}: "
                        f"{outcome.detail}"), err=True)


def summary(result: RunResult) -> str:
    text = (f"Re-encryption complete: {len(result.succeeded)} of "
            f"{result.total_files} secrets succeeded")
    if result.skipped:
        text += f", {len(result.skipped)} left unchanged"
    if result.failed:
        text += f", {len(result.failed)} failed"
    return text


@attr.s(frozen=True, kw_only=True)
class EchoReporter(Reporter):
    pattern: str = attr.ib()
    sops_version: str = attr.ib()
    dry_run: bool = attr.ib(default=False)

    def started(self, run: Rekey) -> None:
        installed = run.sops.version()
        if installed and installed != self.sops_version:
            click.echo(warn(f"Expected sops {self.sops_version} but found {installed}"),
                       err=True)
        click.echo("Importing keys...")

    def imported(self, run: Rekey, recipients: RecipientSet) -> None:
        for warning in recipients.warnings:
            click.echo(warn(f"Skipped recipient: {warning}"), err=True)
        for outcome in run.keyring.outcomes:
            echo_import(outcome)
        click.echo(f"Imported {len(run.keyring.recipients)} recipient keys "
                   f"from {len(recipients)} supplied: "
                   f"{', '.join(recipients.identifiers) or 'none'}")

    def found(self, keeper: SecretKeeper) -> None:
        click.echo(f"Found {len(keeper)} secret file(s) matching {self.pattern}")

    def outcome(self, outcome: FileOutcome) -> None:
        path = outcome.path.as_posix()
        if outcome.error is not None:
            click.echo(bad(f"Failed to re-encrypt {path}: {outcome.error.message}"),
                       err=True)
        elif outcome.skipped:
            click.echo(warn(f"Left {path} unchanged"))
        elif self.dry_run:
            click.echo(ok(f"Decrypted {path}"))
        else:
            click.echo(ok(f"Re-encrypted {path}"))


@click.command(help=__doc__)
@click.version_option(__version__, prog_name='sops-rekey')
@click.option(
    '--private-key',
    envvar='INPUT_PRIVATE_KEY',
    required=True,
    type=click.STRING,
    help="Base64 encoded GPG private key able to decrypt every secret.")
@click.option(
    '--public-keys',
    envvar='INPUT_PUBLIC_KEYS',
    default=DEFAULT_PUBLIC_KEYS,
    show_default=True,
    type=click.STRING,
    help="JSON object with a list of users and their base64 encoded public keys.")
@click.option(
    '--flux-key',
    envvar='INPUT_FLUX_KEY',
    default='',
    type=click.STRING,
    help="Base64 encoded public key that is always a recipient.")
@click.option(
    '--secrets-pattern', 'pattern',
    envvar='INPUT_SECRETS_PATTERN',
    default=DEFAULT_PATTERN,
    show_default=True,
    type=click.STRING,
    help="Glob pattern selecting the secrets to re-encrypt.")
@click.option(
    '--sops-version',
    envvar='INPUT_SOPS_VERSION',
    default=DEFAULT_SOPS_VERSION,
    show_default=True,
    type=click.STRING,
    help="Expected sops version, a warning is shown if it differs.")
@click.option(
    '--on-empty-recipients', 'on_empty',
    envvar='INPUT_ON_EMPTY_RECIPIENTS',
    default=SKIP,
    show_default=True,
    type=click.Choice(POLICIES),
    help="Leave secrets unchanged, encrypt for the private key only, "
         "or fail when no recipient key is imported.")
@click.option(
    '--dry-run/--no-dry-run',
    envvar='INPUT_DRY_RUN',
    default=False,
    help="Check every secret can be decrypted without changing it.")
@click.option(
    '-p', '--path', 'directory',
    type=PathType(
        file_okay=False,
        dir_okay=True,
        exists=True),
    default=pathlib.Path.cwd,
    help="Directory to search for secrets, defaults to the current directory.")
@click.option(
    '--gnupghome',
    envvar='GNUPGHOME',
    type=PathType(file_okay=False, dir_okay=True),
    default=None,
    help="Keyring directory, defaults to a temporary directory.")
@click.option(
    '--sops-binary',
    envvar='SOPS_BINARY',
    default='sops',
    show_default=True,
    type=click.STRING)
@click.option(
    '-d', '--debug', 'debug',
    default=False,
    is_flag=True,
    help="Enable debug logging.")
@click.option(
    '-v', '--verbose', 'verbose',
    default=False,
    is_flag=True,
    help="Display the normal STDERR output of gpg and sops.")
def main(
        private_key: str,
        public_keys: str,
        flux_key: str,
        pattern: str,
        sops_version: str,
        on_empty: str,
        dry_run: bool,
        directory: pathlib.Path,
        gnupghome: typing.Optional[pathlib.Path],
        sops_binary: str,
        debug: bool,
        verbose: bool):
    logging.basicConfig(level=(logging.DEBUG if debug else logging.WARNING))
    directory = directory.resolve()

    result = rekey(
        directory,
        private_key=private_key,
        public_keys=public_keys,
        fixed_keys=[flux_key],
        pattern=pattern,
        on_empty=on_empty,
        dry_run=dry_run,
        home=gnupghome,
        verbose=verbose,
        sops_binary=sops_binary,
        reporter=EchoReporter(pattern=pattern, sops_version=sops_version, dry_run=dry_run))
    click.echo(summary(result))

    if not result.ok:
        raise RunFailed(
            f"Failed to re-encrypt {len(result.failed)} secret(s): "
            f"{', '.join(path.as_posix() for path, _ in result.failed)}")
