"""Custodial signing keys, stored Fernet-encrypted on the user row.

The decrypted keypair lives only as long as one reposition needs it.
"""

import logging

import base58
from cryptography.fernet import Fernet, InvalidToken
from solders.keypair import Keypair

from rebalancer.config import settings
from rebalancer.engine.errors import RebalancerError
from rebalancer.models.user import User

logger = logging.getLogger(__name__)

_cipher: Fernet | None = None


class WalletError(RebalancerError):
    """A stored wallet secret is missing, undecryptable or mismatched."""


def _get_cipher() -> Fernet:
    global _cipher
    if _cipher is None:
        if not settings.encryption_key:
            raise WalletError(
                "RB_ENCRYPTION_KEY not set. Generate one with: "
                "python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
        _cipher = Fernet(settings.encryption_key.encode())
    return _cipher


def reset_cipher():
    """Forget the cached cipher so a changed RB_ENCRYPTION_KEY takes effect."""
    global _cipher
    _cipher = None


def _parse_secret(secret_b58: str) -> Keypair:
    try:
        key_bytes = base58.b58decode(secret_b58)
    except ValueError as e:
        raise WalletError(f"Invalid secret key: {e}") from e
    if len(key_bytes) != 64:
        raise WalletError(f"Invalid secret key: decoded to {len(key_bytes)} bytes, expected 64")
    try:
        return Keypair.from_bytes(key_bytes)
    except ValueError as e:
        raise WalletError(f"Invalid secret key: {e}") from e


def seal_secret(secret_b58: str) -> tuple[str, str]:
    """Validate a base58 secret key; return (public address, ciphertext)."""
    secret_b58 = secret_b58.strip()
    keypair = _parse_secret(secret_b58)
    return str(keypair.pubkey()), _get_cipher().encrypt(secret_b58.encode()).decode()


def load_keypair(user: User) -> Keypair:
    """Decrypt the user's signing key and check it matches the stored address."""
    if not user.wallet_secret_encrypted:
        raise WalletError(f"User {user.id} has no wallet secret")
    try:
        secret = _get_cipher().decrypt(user.wallet_secret_encrypted.encode()).decode()
    except InvalidToken as e:
        raise WalletError(f"User {user.id} wallet secret cannot be decrypted") from e
    keypair = _parse_secret(secret)
    if str(keypair.pubkey()) != user.wallet_address:
        logger.error(f"User {user.id}: decrypted key does not match stored wallet address")
        raise WalletError(f"User {user.id} wallet secret does not match {user.wallet_address}")
    return keypair
