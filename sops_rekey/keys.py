"""
Key material supplied to a run, and the recipient set built from it.

Keys arrive base64 encoded. The public keys are a JSON object with a list of
users, in either of these forms:

    {"users": [{"identifier": "alice", "public_key": "<base64>"}]}
    {"users": [{"login": "alice", "gpg_keys_base64": ["<base64>", ...]}]}

Fixed keys (the flux key) are appended to the users before duplicates are
removed, so they are handled exactly like any other recipient.
"""

import base64
import binascii
import json
import logging
import typing

import attr

from .utils import DecodeError, PayloadError

log = logging.getLogger(__name__)

FIXED = 'fixed'


def decode_key(value: str, identifier: str) -> bytes:
    """Decode a base64 key blob, ignoring any line wrapping."""
    compact = ''.join(value.split())
    try:
        key = base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as error:
        raise DecodeError(f"Key {identifier} is not valid base64: {error}")
    if not key:
        raise DecodeError(f"Key {identifier} is empty")
    return key


@attr.s(frozen=True, kw_only=True)
class RecipientEntry:
    identifier: str = attr.ib()
    key: bytes = attr.ib(repr=False)

    def __str__(self):
        return self.identifier


@attr.s(frozen=True)
class RecipientSet:
    entries: typing.Tuple[RecipientEntry, ...] = attr.ib(converter=tuple, default=())
    warnings: typing.Tuple[str, ...] = attr.ib(converter=tuple, default=())

    @classmethod
    def build(
            cls,
            candidates: typing.Iterable[typing.Tuple[str, str]]) -> 'RecipientSet':
        """
        Decode (identifier, base64) pairs into a set of recipients.

        Keys that can't be decoded are skipped with a warning. Duplicates
        are detected by key content and the first identifier is kept.
        """
        entries: typing.List[RecipientEntry] = []
        warnings: typing.List[str] = []
        seen: typing.Set[bytes] = set()

        for identifier, value in candidates:
            try:
                key = decode_key(value, identifier)
            except DecodeError as error:
                log.warning(f"Skipping recipient: {error.message}")
                warnings.append(error.message)
                continue

            if key in seen:
                log.info(f"Skipping duplicate key for {identifier}")
                continue

            seen.add(key)
            entries.append(RecipientEntry(identifier=identifier, key=key))

        return cls(entries, warnings)

    def __iter__(self) -> typing.Iterator[RecipientEntry]:
        return iter(self.entries)

    def __len__(self):
        return len(self.entries)

    def __bool__(self):
        return bool(self.entries)

    @property
    def identifiers(self) -> typing.Tuple[str, ...]:
        return tuple(entry.identifier for entry in self.entries)


def parse_users(payload: str) -> typing.List[typing.Tuple[str, str]]:
    """Flatten the public key payload into (identifier, base64) pairs."""
    if not payload or not payload.strip():
        return []

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as error:
        raise PayloadError(f"Public keys are not valid JSON: {error}")

    if isinstance(data, dict):
        users = data.get('users', [])
    else:
        users = data

    if not isinstance(users, list):
        raise PayloadError("Public keys should contain a list of users")

    candidates: typing.List[typing.Tuple[str, str]] = []
    for index, user in enumerate(users):
        if not isinstance(user, dict):
            raise PayloadError(f"User {index} in public keys is not an object")
        candidates.extend(user_keys(user, index))
    return candidates


def user_keys(
        user: typing.Dict[str, typing.Any],
        index: int) -> typing.List[typing.Tuple[str, str]]:
    identifier = str(user.get('identifier') or user.get('login') or f"user-{index}")

    if 'gpg_keys_base64' in user:
        keys = user['gpg_keys_base64'] or []
        if not isinstance(keys, list):
            raise PayloadError(f"Keys for {identifier} should be a list")
        if len(keys) == 1:
            return [(identifier, str(keys[0]))]
        return [(f"{identifier}#{n}", str(key)) for n, key in enumerate(keys, start=1)]

    key = user.get('public_key')
    if key is None:
        raise PayloadError(f"User {identifier} has no public key")
    return [(identifier, str(key))]


def fixed_keys(values: typing.Iterable[str]) -> typing.List[typing.Tuple[str, str]]:
    """Label out-of-band keys, ignoring empty values."""
    present = [value for value in values if value and value.strip()]
    return [(FIXED if n == 1 else f"{FIXED}#{n}", value)
            for n, value in enumerate(present, start=1)]


def collect_recipients(
        payload: str,
        fixed: typing.Iterable[str] = ()) -> RecipientSet:
    recipients = RecipientSet.build([*parse_users(payload), *fixed_keys(fixed)])
    log.info(f"Collected {len(recipients)} recipient keys")
    return recipients
