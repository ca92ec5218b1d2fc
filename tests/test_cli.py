from sops_rekey import __version__

from conftest import (
    ALICE_KEY, BOB_KEY, FINGERPRINTS, FLUX_KEY, PRIVATE_KEY, REJECTED_KEY, b64,
    read_recipients)


def test_version(invoke):
    result = invoke(['--version'])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_rekey_from_environment(invoke, workspace, public_keys):
    result = invoke(['-p', str(workspace)], env={
        'INPUT_PRIVATE_KEY': b64(PRIVATE_KEY),
        'INPUT_PUBLIC_KEYS': public_keys,
        'INPUT_FLUX_KEY': b64(FLUX_KEY),
    })

    assert result.exit_code == 0, result.output
    assert 'Re-encrypted a/application.secrets.env' in result.output
    assert 'Re-encrypted b/c/application.secrets.env' in result.output
    assert 'Re-encryption complete: 2 of 2 secrets succeeded' in result.output
    assert read_recipients(workspace / 'a' / 'application.secrets.env') == [
        FINGERPRINTS[ALICE_KEY], FINGERPRINTS[BOB_KEY], FINGERPRINTS[FLUX_KEY]]


def test_failed_file_exits_non_zero(invoke, workspace):
    (workspace / 'b' / 'c' / 'application.secrets.env').write_bytes(b'garbage')

    result = invoke([
        '-p', str(workspace),
        '--private-key', b64(PRIVATE_KEY),
        '--flux-key', b64(FLUX_KEY),
    ])

    assert result.exit_code == 1
    assert 'Failed to re-encrypt b/c/application.secrets.env' in result.output
    assert '1 of 2 secrets succeeded, 1 failed' in result.output
    assert 'Error: Failed to re-encrypt 1 secret(s): b/c/application.secrets.env' \
        in result.output


def test_private_key_failure(invoke, workspace, fake_sops):
    result = invoke(['-p', str(workspace), '--private-key', b64(REJECTED_KEY)])
    assert result.exit_code == 1
    assert 'Failed to import private key' in result.output
    assert fake_sops.calls == []


def test_missing_private_key(invoke, workspace):
    result = invoke(['-p', str(workspace)], env={'INPUT_PRIVATE_KEY': None})
    assert result.exit_code == 2
    assert '--private-key' in result.output


def test_no_secrets(invoke, tmp_path):
    empty = tmp_path / 'empty'
    empty.mkdir()
    result = invoke(['-p', str(empty), '--private-key', b64(PRIVATE_KEY)])
    assert result.exit_code == 0
    assert 'Found 0 secret file(s)' in result.output
    assert '0 of 0 secrets succeeded' in result.output


def test_skipped_recipients_are_reported(invoke, workspace):
    public_keys = (
        '{"users": [{"identifier": "mallory", "public_key": "%%%"}, '
        f'{{"identifier": "rejected", "public_key": "{b64(REJECTED_KEY)}"}}, '
        f'{{"identifier": "alice", "public_key": "{b64(ALICE_KEY)}"}}]}}'
    )
    result = invoke([
        '-p', str(workspace),
        '--private-key', b64(PRIVATE_KEY),
        '--public-keys', public_keys,
    ])
    assert result.exit_code == 0, result.output
    assert 'Skipped recipient: Key mallory is not valid base64' in result.output
    assert 'Failed to import key for rejected' in result.output
    assert 'Imported 1 recipient keys from 2 supplied: rejected, alice' in result.output


def test_dry_run(invoke, workspace, fake_sops):
    result = invoke([
        '-p', str(workspace),
        '--private-key', b64(PRIVATE_KEY),
        '--flux-key', b64(FLUX_KEY),
        '--dry-run',
    ])
    assert result.exit_code == 0
    assert 'Decrypted a/application.secrets.env' in result.output
    assert {call for call, _ in fake_sops.calls} == {'decrypt'}


def test_sops_version_mismatch(invoke, workspace, fake_sops):
    fake_sops.installed = '3.8.1'
    result = invoke([
        '-p', str(workspace),
        '--private-key', b64(PRIVATE_KEY),
    ])
    assert 'Expected sops 3.10.2 but found 3.8.1' in result.output


def test_bad_pattern(invoke, workspace):
    result = invoke([
        '-p', str(workspace),
        '--private-key', b64(PRIVATE_KEY),
        '--secrets-pattern', 'secrets**/x.env',
    ])
    assert result.exit_code == 1
    assert "'**' can only be an entire path component" in result.output


def test_no_recipients_leaves_secrets_unchanged(invoke, workspace, fake_sops):
    result = invoke(['-p', str(workspace), '--private-key', b64(PRIVATE_KEY)])
    assert result.exit_code == 0, result.output
    assert 'Left a/application.secrets.env unchanged' in result.output
    assert 'Left b/c/application.secrets.env unchanged' in result.output
    assert 'Re-encrypted' not in result.output
    assert '0 of 2 secrets succeeded, 2 left unchanged' in result.output
    assert fake_sops.calls == []


def test_wrapped_flux_key_is_one_recipient(invoke, workspace):
    value = b64(FLUX_KEY)
    wrapped = '\n'.join(value[i:i + 16] for i in range(0, len(value), 16))
    result = invoke(['-p', str(workspace)], env={
        'INPUT_PRIVATE_KEY': b64(PRIVATE_KEY),
        'INPUT_FLUX_KEY': wrapped,
    })
    assert result.exit_code == 0, result.output
    assert 'from 1 supplied: fixed' in result.output
    assert read_recipients(workspace / 'a' / 'application.secrets.env') == [
        FINGERPRINTS[FLUX_KEY]]
