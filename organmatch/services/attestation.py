"""
Hospital attestation of death certificates.

A hospital signs the certificate hash (UTF-8 bytes) with its Ed25519 key;
the signature travels hex-encoded. Only hospitals registered in
AUTHORIZED_HOSPITAL_KEYS can confirm a death.
"""
import logging
from typing import Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from organmatch.core.exceptions import UnauthorizedError
from organmatch.services.interfaces import AttestationVerifier

logger = logging.getLogger(__name__)


def load_public_key(key_hex: str) -> Ed25519PublicKey:
    return Ed25519PublicKey.from_public_bytes(bytes.fromhex(key_hex))


class Ed25519AttestationVerifier(AttestationVerifier):
    def __init__(self, hospital_keys: Dict[str, str]):
        self._keys: Dict[str, Ed25519PublicKey] = {}
        for hospital_id, key_hex in hospital_keys.items():
            try:
                self._keys[hospital_id] = load_public_key(key_hex)
            except ValueError as e:
                logger.error(f"Ignoring invalid public key for hospital {hospital_id}: {e}")
        logger.info(f"Attestation verifier loaded {len(self._keys)} hospital key(s)")

    async def verify(self, certificate_hash: str, signature: str) -> str:
        if not certificate_hash:
            raise UnauthorizedError("Missing death certificate hash")
        try:
            signature_bytes = bytes.fromhex(signature or "")
        except ValueError:
            raise UnauthorizedError("Attestation signature is not valid hex")

        message = certificate_hash.encode("utf-8")
        for hospital_id, key in self._keys.items():
            try:
                key.verify(signature_bytes, message)
            except InvalidSignature:
                continue
            return hospital_id

        logger.warning(f"Attestation for certificate {certificate_hash[:16]} matched no authorized hospital")
        raise UnauthorizedError("Attestation does not come from an authorized hospital")


class StaticAttestationVerifier(AttestationVerifier):
    """Maps known signatures straight to hospital ids."""

    def __init__(self, signatures: Optional[Dict[str, str]] = None):
        self.signatures = dict(signatures or {})

    async def verify(self, certificate_hash: str, signature: str) -> str:
        hospital_id = self.signatures.get(signature)
        if not certificate_hash or hospital_id is None:
            raise UnauthorizedError("Attestation does not come from an authorized hospital")
        return hospital_id
