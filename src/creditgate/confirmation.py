"""Signed purchase confirmations: Ed25519 JWT validation.

The payment collaborator signs ``{sub: tenant, package_id, payment_reference}``
with its Ed25519 key. No replay store is kept here; the payment reference
is the settlement idempotency key, so a replayed token settles nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import jwt
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from creditgate.errors import ConfirmationError

logger = logging.getLogger(__name__)

# Confirmation schema identifiers this engine understands.
UNDERSTOOD_CONFIRMATION_TYPES: frozenset[str] = frozenset({"credit-purchase-v1"})


def normalize_public_key(raw: str) -> str:
    """Accept a bare base64 key body or full PEM and return PEM."""
    stripped = raw.strip()
    if stripped.startswith("-----"):
        return stripped
    return f"-----BEGIN PUBLIC KEY-----\n{stripped}\n-----END PUBLIC KEY-----"


@dataclass(frozen=True)
class PurchaseConfirmation:
    tenant_id: str
    package_id: str
    payment_reference: str


def verify_confirmation(
    token: str,
    public_key: str,
    *,
    understood_types: frozenset[str] | None = None,
) -> PurchaseConfirmation:
    """Verify a payment collaborator's signed purchase confirmation.

    Args:
        token: The compact JWT delivered with the webhook.
        public_key: The collaborator's Ed25519 public key, bare base64 or PEM.
        understood_types: Accepted ``confirmation_type`` claims. Defaults to
            ``UNDERSTOOD_CONFIRMATION_TYPES``.

    Raises:
        ConfirmationError: On invalid, expired, tampered or incomplete tokens.
    """
    try:
        key = load_pem_public_key(normalize_public_key(public_key).encode())
    except (ValueError, TypeError) as e:
        raise ConfirmationError(f"Invalid confirmation public key: {e}") from e

    try:
        claims = jwt.decode(
            token, key, algorithms=["EdDSA"], options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise ConfirmationError("Purchase confirmation has expired.") from e
    except jwt.InvalidSignatureError as e:
        raise ConfirmationError("Purchase confirmation signature is invalid.") from e
    except jwt.DecodeError as e:
        raise ConfirmationError(f"Purchase confirmation could not be decoded: {e}") from e
    except jwt.InvalidTokenError as e:
        raise ConfirmationError(f"Invalid purchase confirmation: {e}") from e

    types = understood_types or UNDERSTOOD_CONFIRMATION_TYPES
    kind = claims.get("confirmation_type")
    if kind not in types:
        raise ConfirmationError(
            f"Unsupported confirmation type {kind!r}. "
            f"Supported: {', '.join(sorted(types))}"
        )

    package_id = claims.get("package_id")
    reference = claims.get("payment_reference")
    if not package_id or not reference:
        raise ConfirmationError("Purchase confirmation missing package_id or payment_reference.")

    logger.debug("Verified purchase confirmation %s for %s.", reference, claims["sub"])
    return PurchaseConfirmation(
        tenant_id=str(claims["sub"]),
        package_id=str(package_id),
        payment_reference=str(reference),
    )
