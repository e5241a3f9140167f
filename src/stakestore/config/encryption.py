"""Signer key storage in age-encrypted files.

The key is encrypted to an SSH public key with the ``age`` CLI and decrypted
with the matching private key at startup, so it never sits in ``.env``.
"""

import subprocess
from pathlib import Path
from typing import Optional

from eth_account import Account

DEFAULT_SSH_PRIVATE_KEY = "~/.ssh/id_ed25519"
DEFAULT_SSH_PUBLIC_KEY = "~/.ssh/id_ed25519.pub"


def normalize_signer_key(key: str) -> str:
    """Return a private key as 64 hex characters without the 0x prefix.

    Raises:
        ValueError: If the key is not 32 bytes of hex
    """
    key = key.strip()
    if key[:2] in ("0x", "0X"):
        key = key[2:]
    if len(key) != 64:
        raise ValueError("Private key must be 64 hex characters (without 0x prefix)")
    try:
        bytes.fromhex(key)
    except ValueError:
        raise ValueError("Private key must be valid hex") from None
    return key


def signer_address(key: str) -> str:
    """Checksummed address controlled by a private key."""
    return Account.from_key(normalize_signer_key(key)).address


def _existing(path: str, what: str) -> Path:
    resolved = Path(path).expanduser().resolve()
    if not resolved.exists():
        raise FileNotFoundError(f"{what} not found: {resolved}")
    return resolved


def _age(args: list[str], stdin: Optional[bytes] = None) -> bytes:
    try:
        result = subprocess.run(["age", *args], input=stdin, capture_output=True, check=True)
    except subprocess.CalledProcessError as e:
        raise ValueError(f"age failed: {e.stderr.decode().strip()}") from e
    return result.stdout


def encrypt_signer_key(
    private_key: str,
    output_file: str = "secrets.age",
    public_key_path: str = DEFAULT_SSH_PUBLIC_KEY,
) -> str:
    """Validate a signer key and encrypt it to ``output_file``.

    Returns:
        The signer's address, so the caller can confirm which account was stored

    Raises:
        ValueError: If the key is malformed or age fails
        FileNotFoundError: If the SSH public key is missing
    """
    key = normalize_signer_key(private_key)
    recipient = _existing(public_key_path, "SSH public key")
    _age(["-R", str(recipient), "-o", str(Path(output_file).resolve())], stdin=key.encode("ascii"))
    return signer_address(key)


def decrypt_signer_key(
    secrets_file: str = "secrets.age",
    private_key_path: str = DEFAULT_SSH_PRIVATE_KEY,
) -> str:
    """Decrypt the signer key and check that it is one.

    Raises:
        FileNotFoundError: If the encrypted file or the SSH private key is missing
        ValueError: If age fails or the file does not hold a private key
    """
    encrypted = _existing(secrets_file, "Encrypted key file")
    identity = _existing(private_key_path, "SSH private key")
    plaintext = _age(["-d", "-i", str(identity), str(encrypted)])

    try:
        return normalize_signer_key(plaintext.decode("utf-8"))
    except ValueError as e:
        raise ValueError(f"{encrypted} does not hold a signer key: {e}") from e
