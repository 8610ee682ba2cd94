"""
Random password generation for accounts that must not have an empty password.
"""
import secrets
import string

CHARSET = string.ascii_letters + string.digits


def random_password() -> str:
    """
    Returns a random alphanumeric password between 100 and 199 characters long.
    """
    length = 100 + secrets.randbelow(100)
    return ''.join(secrets.choice(CHARSET) for _ in range(length))
