"""
Re-encrypt SOPS secrets for a new set of GPG recipients.

Every secret matching the pattern is decrypted with the private key and
encrypted again for exactly the supplied public keys, replacing its previous
recipients. Plaintext is only held in memory, and a secret that can't be
re-encrypted is left unchanged.

Keys are imported into a temporary GNUPGHOME that is removed when the run
ends. Inputs are usually supplied as environment variables:

\b
    $ export INPUT_PRIVATE_KEY="$(gpg --export-secret-keys ci@example.invalid | base64 -w0)"
    $ export INPUT_PUBLIC_KEYS='{"users": [{"identifier": "alice", "public_key": "..."}]}'
    $ export INPUT_FLUX_KEY="$(base64 -w0 flux.asc)"
    $ sops-rekey

The exit status is non-zero if any secret could not be re-encrypted.
"""

__version__ = '1.0.0'
