"""Ansible Vault 1.1/1.2 AES256 envelope.

Layout of a vault file::

    $ANSIBLE_VAULT;1.1;AES256
    <hex(hex(salt) "\\n" hex(hmac) "\\n" hex(ciphertext)), 80 columns>

Keys come from PBKDF2-HMAC-SHA256 (10000 iterations) over the password:
32 bytes of AES-256-CTR key, 32 bytes of HMAC-SHA256 key, then a 16 byte
counter block. The plaintext is PKCS7-padded before encryption.
"""

from __future__ import annotations

import binascii
import os

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from pullagent.errors import SecretsError

HEADER_PREFIX = "$ANSIBLE_VAULT"
CIPHER_NAME = "AES256"
KEY_LENGTH = 32
IV_LENGTH = 16
SALT_LENGTH = 32
KDF_ITERATIONS = 10000
LINE_WIDTH = 80


def is_vault_payload(data: bytes | str) -> bool:
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    return text.lstrip().startswith(HEADER_PREFIX + ";")


def _derive_keys(password: bytes, salt: bytes) -> tuple[bytes, bytes, bytes]:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=2 * KEY_LENGTH + IV_LENGTH,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    derived = kdf.derive(password)
    return derived[:KEY_LENGTH], derived[KEY_LENGTH : 2 * KEY_LENGTH], derived[2 * KEY_LENGTH :]


def _split_envelope(data: bytes | str) -> tuple[list[str], str]:
    try:
        text = data.decode("utf-8") if isinstance(data, bytes) else data
    except UnicodeDecodeError as exc:
        raise SecretsError("secrets bundle is not a text vault payload") from exc
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    if not lines or not is_vault_payload(lines[0]):
        raise SecretsError("secrets bundle has no vault header")
    header = lines[0].split(";")
    return header, "".join(lines[1:])


def decrypt_vault(data: bytes | str, password: str) -> bytes:
    """Decrypt a vault payload and return the plaintext bytes.

    Raises:
        SecretsError: unsupported header, corrupted payload, or wrong password.
    """
    header, body = _split_envelope(data)
    if len(header) < 3 or header[1] not in ("1.1", "1.2"):
        raise SecretsError(f"unsupported vault format version: {';'.join(header[:2])}")
    if header[2].strip() != CIPHER_NAME:
        raise SecretsError(f"unsupported vault cipher: {header[2]}")

    try:
        salt_hex, hmac_hex, ciphertext_hex = binascii.unhexlify(body).split(b"\n", 2)
        salt = binascii.unhexlify(salt_hex)
        expected_hmac = binascii.unhexlify(hmac_hex)
        ciphertext = binascii.unhexlify(ciphertext_hex)
    except (binascii.Error, ValueError) as exc:
        raise SecretsError("secrets bundle payload is corrupted") from exc

    cipher_key, hmac_key, iv = _derive_keys(password.encode("utf-8"), salt)

    mac = hmac.HMAC(hmac_key, hashes.SHA256())
    mac.update(ciphertext)
    try:
        mac.verify(expected_hmac)
    except InvalidSignature as exc:
        raise SecretsError("vault HMAC mismatch (wrong password or tampered bundle)") from exc

    decryptor = Cipher(algorithms.AES(cipher_key), modes.CTR(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise SecretsError("secrets bundle padding is invalid") from exc


def encrypt_vault(plaintext: bytes, password: str, vault_id: str | None = None) -> str:
    """Encrypt ``plaintext`` into a vault payload readable by ``ansible-vault``."""
    salt = os.urandom(SALT_LENGTH)
    cipher_key, hmac_key, iv = _derive_keys(password.encode("utf-8"), salt)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(cipher_key), modes.CTR(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    mac = hmac.HMAC(hmac_key, hashes.SHA256())
    mac.update(ciphertext)
    digest = mac.finalize()

    inner = b"\n".join(
        [binascii.hexlify(salt), binascii.hexlify(digest), binascii.hexlify(ciphertext)]
    )
    body = binascii.hexlify(inner).decode("ascii")

    if vault_id:
        header = f"{HEADER_PREFIX};1.2;{CIPHER_NAME};{vault_id}"
    else:
        header = f"{HEADER_PREFIX};1.1;{CIPHER_NAME}"
    lines = [body[i : i + LINE_WIDTH] for i in range(0, len(body), LINE_WIDTH)]
    return "\n".join([header, *lines]) + "\n"
