# kms_utils.py
"""
KMS helpers for shop access tokens at rest.

Tokens are stored as ENCRYPTED(base64_ciphertext) so a plain table read never
exposes a usable Shopify credential. Every call uses the same encryption
context: {"app": "wholesale-shipping-rules"}

Usage:
    from kms_utils import kms_encrypt, kms_decrypt_wrapped

    wrapped = kms_encrypt("shpat_...", key_arn)      # "ENCRYPTED(...)"
    token = kms_decrypt_wrapped(wrapped, key_arn)    # "shpat_..."
"""

import base64
import logging
from typing import Optional, Union

import boto3
from botocore.exceptions import ClientError

from config_loader import load_settings

logger = logging.getLogger(__name__)

ENCRYPTION_CONTEXT = {"app": "wholesale-shipping-rules"}

_PREFIX = "ENCRYPTED("

# Cache KMS client
_kms_client = None


def _get_kms_client():
    """Get or create KMS client (cached)."""
    global _kms_client
    if _kms_client is None:
        _kms_client = boto3.client("kms", region_name=load_settings()["region"])
    return _kms_client


def is_wrapped(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(_PREFIX) and value.endswith(")")


def _unwrap_encrypted(value: str) -> str:
    if is_wrapped(value):
        return value[len(_PREFIX):-1]
    return value


def kms_encrypt(plaintext: Union[str, bytes], kms_key_arn: Optional[str] = None) -> str:
    """
    Encrypt plaintext with KMS and return it in ENCRYPTED(base64) form.

    Raises:
        ValueError: no key ARN given and TOKEN_KMS_KEY_ARN is unset
        ClientError: KMS rejected the call
    """
    kms_key_arn = kms_key_arn or load_settings()["token_kms_key_arn"]
    if not kms_key_arn:
        raise ValueError("kms_key_arn required: pass as argument or set TOKEN_KMS_KEY_ARN")

    plaintext_bytes = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext

    try:
        response = _get_kms_client().encrypt(
            KeyId=kms_key_arn,
            Plaintext=plaintext_bytes,
            EncryptionContext=ENCRYPTION_CONTEXT,
        )
    except ClientError as e:
        logger.error(f"[KMS] Encryption failed: {e}")
        raise

    ciphertext_base64 = base64.b64encode(response["CiphertextBlob"]).decode("utf-8")
    return f"{_PREFIX}{ciphertext_base64})"


def kms_decrypt(ciphertext_wrapped: str, kms_key_arn: Optional[str] = None) -> bytes:
    """
    Decrypt an ENCRYPTED(base64) value (or bare base64) and return bytes.
    """
    if not ciphertext_wrapped:
        raise ValueError("Cannot decrypt empty/None value")

    try:
        ciphertext_blob = base64.b64decode(_unwrap_encrypted(ciphertext_wrapped))
    except Exception as e:
        raise ValueError(f"Invalid base64 ciphertext: {e}")

    params = {"CiphertextBlob": ciphertext_blob, "EncryptionContext": ENCRYPTION_CONTEXT}
    if kms_key_arn:
        params["KeyId"] = kms_key_arn

    try:
        response = _get_kms_client().decrypt(**params)
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        error_msg = e.response.get("Error", {}).get("Message", str(e))
        logger.error(f"[KMS] Decryption failed: {error_code} - {error_msg}")
        raise
    return response["Plaintext"]


def kms_decrypt_wrapped(blob: Optional[str], kms_key_arn: Optional[str] = None) -> str:
    """
    Decrypt a wrapped value to a string. Values without the ENCRYPTED()
    wrapper are returned as-is (plaintext passthrough).
    """
    if not blob:
        return ""
    if not is_wrapped(blob):
        return blob
    try:
        return kms_decrypt(blob, kms_key_arn).decode("utf-8")
    except Exception as e:
        raise ValueError(f"Failed to decrypt wrapped value: {e}")


def mask_secret(secret: Optional[str], keep: int = 4) -> str:
    """Mask a secret for logs, e.g. "********abcd"."""
    if not secret:
        return ""
    if len(secret) <= keep:
        return "*" * len(secret)
    return "*" * (len(secret) - keep) + secret[-keep:]


__all__ = [
    "kms_encrypt",
    "kms_decrypt",
    "kms_decrypt_wrapped",
    "mask_secret",
    "is_wrapped",
    "ENCRYPTION_CONTEXT",
]
