import contextlib
import logging
import pathlib
import tempfile
import typing

import attr

from .gpg import GPG, PRIVATE, Identity, Keyring
from .keys import RecipientSet, collect_recipients, decode_key
from .search import DEFAULT_PATTERN, find_secrets, validate
from .secrets import FileOutcome, RunResult, SecretKeeper
from .sops import Sops
from .utils import EmptyRecipientsError, RekeyException

log = logging.getLogger(__name__)

DEFAULT_PUBLIC_KEYS = '{"users":[]}'

# What to do when no recipient key could be imported.
SKIP = 'skip'
SELF = 'self'
FAIL = 'fail'
POLICIES = (SKIP, SELF, FAIL)


@contextlib.contextmanager
def trust_store(
        home: typing.Optional[pathlib.Path] = None) -> typing.Iterator[pathlib.Path]:
    """Yield a GNUPGHOME, creating a temporary one that is removed afterwards."""
    if home is not None:
        home.mkdir(mode=0o700, parents=True, exist_ok=True)
        yield home
        return

    with tempfile.TemporaryDirectory(prefix='sops-rekey-') as directory:
        path = pathlib.Path(directory)
        path.chmod(0o700)
        log.debug(f"Using temporary GNUPGHOME {path}")
        yield path


@attr.s(kw_only=True)
class Rekey:
    directory: pathlib.Path = attr.ib(factory=pathlib.Path.cwd)
    pattern: str = attr.ib(default=DEFAULT_PATTERN)
    on_empty: str = attr.ib(
        default=SKIP, validator=attr.validators.in_(POLICIES))
    dry_run: bool = attr.ib(default=False)

    gpg: GPG = attr.ib(factory=GPG)
    sops: Sops = attr.ib(factory=Sops)
    keyring: Keyring = attr.ib(
        default=attr.Factory(lambda self: Keyring(self.gpg), takes_self=True))

    identity: typing.Optional[Identity] = attr.ib(default=None, init=False)

    def import_keys(
            self,
            private_key: str,
            public_keys: str = DEFAULT_PUBLIC_KEYS,
            fixed_keys: typing.Iterable[str] = ()) -> RecipientSet:
        """
        Import the private key and every recipient key into the keyring.

        Anything that would stop the run is checked before the keyring is
        touched, and a private key that can't be imported stops the run
        before any secret is read.
        """
        validate(self.pattern)
        private = decode_key(private_key or '', PRIVATE)
        recipients = collect_recipients(public_keys, fixed_keys)

        self.identity = self.keyring.import_private(private)
        self.keyring.import_recipients(recipients)
        return recipients

    def find(self) -> SecretKeeper:
        return SecretKeeper(
            secrets=find_secrets(self.directory, self.pattern),
            directory=self.directory,
            sops=self.sops)

    def fingerprints(self) -> typing.Tuple[str, ...]:
        """
        The fingerprints every secret will be encrypted for.

        Empty when no recipient key was imported and the policy is to leave
        secrets untouched.
        """
        recipients = self.keyring.recipients
        if recipients:
            return recipients

        if self.on_empty == FAIL:
            raise EmptyRecipientsError("No recipient keys were imported")

        if self.on_empty == SELF:
            if self.identity is None:
                raise RekeyException("The private key has not been imported")
            log.warning("No recipient keys were imported, "
                        "encrypting for the private key only")
            return self.identity.fingerprints

        log.warning("No recipient keys were imported, leaving secrets unchanged")
        return ()

    def outcomes(self, keeper: SecretKeeper) -> typing.Iterator[FileOutcome]:
        recipients = self.fingerprints()
        if not recipients:
            return keeper.skip()
        return keeper.outcomes(recipients, dry_run=self.dry_run)


class Reporter:
    """Called as a run progresses, the default does nothing."""

    def started(self, run: Rekey) -> None:
        pass

    def imported(self, run: Rekey, recipients: RecipientSet) -> None:
        pass

    def found(self, keeper: SecretKeeper) -> None:
        pass

    def outcome(self, outcome: FileOutcome) -> None:
        pass


def rekey(
        directory: pathlib.Path,
        private_key: str,
        public_keys: str = DEFAULT_PUBLIC_KEYS,
        fixed_keys: typing.Iterable[str] = (),
        pattern: str = DEFAULT_PATTERN,
        on_empty: str = SKIP,
        dry_run: bool = False,
        home: typing.Optional[pathlib.Path] = None,
        verbose: bool = False,
        sops_binary: str = 'sops',
        gpg: typing.Optional[GPG] = None,
        sops: typing.Optional[Sops] = None,
        reporter: typing.Optional[Reporter] = None) -> RunResult:
    """Re-encrypt every secret matching a pattern for the supplied keys."""
    reporter = reporter or Reporter()
    outcomes: typing.List[FileOutcome] = []

    with trust_store(home) as gnupghome:
        run = Rekey(
            directory=directory,
            pattern=pattern,
            on_empty=on_empty,
            dry_run=dry_run,
            gpg=gpg or GPG(verbose=verbose, home=gnupghome),
            sops=sops or Sops(
                verbose=verbose, home=gnupghome, binary=sops_binary, directory=directory))
        reporter.started(run)

        recipients = run.import_keys(private_key, public_keys, fixed_keys)
        reporter.imported(run, recipients)

        keeper = run.find()
        reporter.found(keeper)

        for outcome in run.outcomes(keeper):
            reporter.outcome(outcome)
            outcomes.append(outcome)

    return RunResult.fold(outcomes)
