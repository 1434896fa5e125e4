import secrets
import string
import time

BASE36_ALPHABET = string.digits + string.ascii_lowercase


def random_base36(length: int = 9) -> str:
    return "".join(secrets.choice(BASE36_ALPHABET) for _ in range(length))


def generate_id(prefix: str) -> str:
    """Returns ``<prefix>-<epoch-ms>-<random-base36>``, e.g. ``session-1717171717171-k3j9x0a2b``."""
    return f"{prefix}-{int(time.time() * 1000)}-{random_base36()}"
