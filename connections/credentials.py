import os
from typing import Optional

from utils.errors import DatabaseConnectionError, ValidationError

CREDENTIAL_SCHEMES = ("env", "literal")


def validate_credential_ref(ref: Optional[str]) -> None:
    if ref is None or ref == "":
        return
    scheme, sep, value = str(ref).partition(":")
    if not sep or scheme not in CREDENTIAL_SCHEMES:
        raise ValidationError("credential_ref must look like 'env:VAR_NAME' or 'literal:secret'")
    if scheme == "env" and not value.strip():
        raise ValidationError("credential_ref 'env:' needs a variable name")


def resolve_secret(ref: Optional[str]) -> Optional[str]:
    """Return the secret behind a credential reference, or None when no reference is set."""
    if ref is None or ref == "":
        return None
    scheme, _, value = str(ref).partition(":")
    if scheme == "literal":
        return value
    if scheme == "env":
        secret = os.getenv(value.strip())
        if secret is None:
            raise DatabaseConnectionError(f"Credential environment variable is not set: {value.strip()}")
        return secret
    raise ValidationError(f"Unsupported credential scheme: {scheme}")
