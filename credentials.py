# Stratus Credential Vault: provider API tokens encrypted at rest
# Tokens are stored as Fernet tokens; the key comes from STRATUS_CREDENTIAL_KEY.
# Any passphrase is accepted: it is stretched to a Fernet key with SHA-256.

import base64
import hashlib
import logging
import os

from cryptography.fernet import Fernet, InvalidToken

log = logging.getLogger("stratus")

_DEV_SECRET = "stratus-dev-credential-key"
_warned_dev_key = False


def _fernet() -> Fernet:
    global _warned_dev_key
    secret = os.environ.get("STRATUS_CREDENTIAL_KEY", "")
    if not secret:
        if not _warned_dev_key:
            log.warning("STRATUS_CREDENTIAL_KEY not set — using development key, "
                        "do not run production like this")
            _warned_dev_key = True
        secret = _DEV_SECRET
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_secret(plaintext: str) -> str:
    if not plaintext:
        return ""
    return _fernet().encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt_secret(token: str) -> str:
    """Return the plaintext, or "" when the blob is empty or does not decrypt.

    Callers treat "" as missing credentials; a key rotation without
    re-encryption therefore surfaces as MissingCredentials, not a crash.
    """
    if not token:
        return ""
    try:
        return _fernet().decrypt(token.encode("ascii")).decode("utf-8")
    except (InvalidToken, ValueError):
        log.warning("Stored provider credential could not be decrypted")
        return ""


def mask_secret(plaintext: str) -> str:
    if not plaintext:
        return ""
    if len(plaintext) <= 8:
        return "*" * len(plaintext)
    return f"{plaintext[:4]}…{plaintext[-4:]}"
