"""
Search a directory for the secrets that will be re-encrypted.

Patterns use the same syntax as pathlib globbing: '*', '?' and '[...]' match
within a path component and '**' matches any number of directories.
"""

import logging
import pathlib
import typing

from .utils import PatternError

log = logging.getLogger(__name__)

DEFAULT_PATTERN = '**/application.secrets.env'


def validate(pattern: str) -> typing.Tuple[str, ...]:
    """Check a pattern can be used, returning its path components."""
    if not pattern or not pattern.strip():
        raise PatternError("Secrets pattern is empty")

    if pattern.startswith('/'):
        raise PatternError(
            f"Secrets pattern {pattern!r} must be relative to the search directory")

    components = tuple(part for part in pattern.split('/') if part and part != '.')
    if not components:
        raise PatternError(f"Secrets pattern {pattern!r} does not match any files")

    for component in components:
        if component == '..':
            raise PatternError(
                f"Secrets pattern {pattern!r} must not leave the search directory")
        if '**' in component and component != '**':
            raise PatternError(
                f"Secrets pattern {pattern!r} is invalid: "
                f"'**' can only be an entire path component")
        if unclosed_bracket(component):
            raise PatternError(
                f"Secrets pattern {pattern!r} is invalid: unclosed '['")

    return components


def unclosed_bracket(component: str) -> bool:
    index = 0
    while index < len(component):
        if component[index] == '[':
            end = index + 1
            if end < len(component) and component[end] == '!':
                end += 1
            if end < len(component) and component[end] == ']':
                end += 1
            end = component.find(']', end)
            if end == -1:
                return True
            index = end + 1
        else:
            index += 1
    return False


def find_secrets(
        directory: pathlib.Path,
        pattern: str = DEFAULT_PATTERN) -> typing.Tuple[pathlib.Path, ...]:
    """
    Find files matching a pattern, relative to the directory.

    Each file is returned once, sorted by path. Directories matching the
    pattern are ignored.
    """
    components = validate(pattern)
    log.info(f"Searching for secrets matching {pattern} in {directory}")

    try:
        matches = directory.glob('/'.join(components))
        found = {path.relative_to(directory) for path in matches if path.is_file()}
    except (ValueError, NotImplementedError) as error:
        raise PatternError(f"Secrets pattern {pattern!r} is invalid: {error}")

    log.info(f"Search found {len(found)} secrets in {directory}")
    return tuple(sorted(found))
