"""Auto-login password obfuscation (``/etc/kcpassword``).

macOS reads the auto-login password from a file whose bytes are the password
XOR-ed against a fixed, publicly known key. This is obfuscation only: anyone
who can read the file can recover the password. Its protection is the file's
owner-only permissions, not the encoding.
"""

from itertools import cycle

KCPASSWORD_KEY = bytes([0x7D, 0x89, 0x52, 0x23, 0xD2, 0xBC, 0xDD, 0xEA, 0xA3, 0xB9, 0x1F])
BLOCK_SIZE = 12


def encode_kcpassword(password: str) -> bytes:
    """Obfuscate ``password`` into the kcpassword byte layout.

    The password is zero-padded to the next multiple of 12 bytes, always
    leaving at least one terminating zero, then XOR-ed with the repeating key.
    """
    raw = password.encode("utf-8")
    padded_len = (len(raw) // BLOCK_SIZE + 1) * BLOCK_SIZE
    padded = raw.ljust(padded_len, b"\x00")
    return bytes(b ^ k for b, k in zip(padded, cycle(KCPASSWORD_KEY), strict=False))


def decode_kcpassword(data: bytes) -> str:
    """Recover the password from kcpassword bytes, dropping the zero padding."""
    plain = bytes(b ^ k for b, k in zip(data, cycle(KCPASSWORD_KEY), strict=False))
    return plain.split(b"\x00", 1)[0].decode("utf-8")
