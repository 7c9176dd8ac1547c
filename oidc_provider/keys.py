"""
RSA signing keys for ID tokens.
Keys live in a JSON file (newest first): [{"kid", "private_key" (PKCS8 PEM), "created_at"}, ...].
The newest key signs; every stored key is published in the JWKS. The file is watched: an external
edit reloads the whole set, a deleted file triggers generation of a fresh keypair. Tokens signed
with a key that is no longer in the file can not be verified anymore.
"""
import base64
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, generate_private_key

from oidc_provider.config import SIGNING_KEY_PATH

logger = logging.getLogger(__name__)

_KEY_BITS = 2048
SIGNING_ALG = "RS256"


@dataclass(frozen=True)
class SigningKey:
    kid: str
    private_key: RSAPrivateKey
    created_at: int

    @property
    def public_key(self):
        return self.private_key.public_key()


def _generate_key() -> RSAPrivateKey:
    return generate_private_key(public_exponent=65537, key_size=_KEY_BITS)


def _serialize_private(key: RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def _deserialize_private(pem: str) -> RSAPrivateKey:
    return serialization.load_pem_private_key(pem.encode("ascii"), password=None)


def _b64url_uint(value: int) -> str:
    return base64.urlsafe_b64encode(value.to_bytes((value.bit_length() + 7) // 8, "big")).rstrip(b"=").decode("ascii")


def public_key_to_jwk(public_key, kid: str) -> dict:
    """Export cryptography RSA public key to JWK with given kid."""
    numbers = public_key.public_numbers()
    return {
        "kty": "RSA",
        "kid": kid,
        "alg": SIGNING_ALG,
        "use": "sig",
        "n": _b64url_uint(numbers.n),
        "e": _b64url_uint(numbers.e),
    }


class SigningKeyProvider:
    """
    Process-wide key cache backed by a watched file. The cached tuple of keys is replaced
    wholesale under a lock, never mutated in place.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._keys: tuple[SigningKey, ...] = ()
        self._stamp: tuple[int, int] | None = None
        self._loaded = False

    def current(self) -> SigningKey:
        """Key for signing new tokens; generates and persists one if none exists."""
        self._check_for_changes()
        keys = self._keys
        if keys:
            return keys[0]
        with self._lock:
            if not self._keys:
                self._keys = (self._new_key(),)
                self._persist()
            return self._keys[0]

    def public_key_set(self) -> list[dict]:
        """JWKS entries for every stored key; empty if there are none."""
        self._check_for_changes()
        return [public_key_to_jwk(k.public_key, k.kid) for k in self._keys]

    def get_public_key(self, kid: str):
        self._check_for_changes()
        for k in self._keys:
            if k.kid == kid:
                return k.public_key
        return None

    def reload(self) -> None:
        """Re-read the key file; regenerate if it is gone."""
        with self._lock:
            self._load_locked()

    def rotate(self, keep_previous: bool = True) -> SigningKey:
        """Generate a new signing key. Previous keys stay published only if keep_previous."""
        with self._lock:
            if not self._loaded:
                self._load_locked()
            key = self._new_key()
            self._keys = (key,) + (self._keys if keep_previous else ())
            self._persist()
            logger.info("Rotated signing key, new kid=%s (kept %d previous)", key.kid, len(self._keys) - 1)
            return key

    def _check_for_changes(self) -> None:
        if self._loaded and self._file_stamp() == self._stamp:
            return
        with self._lock:
            if self._loaded and self._file_stamp() == self._stamp:
                return
            self._load_locked()

    def _file_stamp(self) -> tuple[int, int] | None:
        try:
            st = self.path.stat()
        except OSError:
            return None
        return (st.st_mtime_ns, st.st_size)

    def _load_locked(self) -> None:
        self._loaded = True
        if not self.path.exists():
            if self._keys:
                logger.warning("Signing key file %s vanished; generating a new keypair", self.path)
            else:
                logger.info("No signing key file at %s; generating a keypair", self.path)
            self._keys = (self._new_key(),)
            self._persist()
            return
        try:
            entries = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(entries, list):
                raise ValueError("key file must hold a JSON list")
            keys = tuple(
                SigningKey(
                    kid=str(e["kid"]),
                    private_key=_deserialize_private(e["private_key"]),
                    created_at=int(e.get("created_at", 0)),
                )
                for e in entries
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            # Keep the previous complete set rather than a half-read one
            logger.warning("Failed to load signing keys from %s: %s", self.path, e)
            self._stamp = self._file_stamp()
            return
        self._keys = keys
        self._stamp = self._file_stamp()
        logger.info("Loaded %d signing key(s) from %s", len(keys), self.path)

    def _new_key(self) -> SigningKey:
        now_ms = int(time.time() * 1000)
        kid = str(now_ms)
        if any(k.kid == kid for k in self._keys):
            kid = f"{now_ms}-{len(self._keys)}"
        return SigningKey(kid=kid, private_key=_generate_key(), created_at=now_ms // 1000)

    def _persist(self) -> None:
        entries = [
            {"kid": k.kid, "private_key": _serialize_private(k.private_key), "created_at": k.created_at}
            for k in self._keys
        ]
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            tmp.write_text(json.dumps(entries), encoding="utf-8")
            os.replace(tmp, self.path)
            logger.info("Saved %d signing key(s) to %s", len(entries), self.path)
        except OSError as e:
            logger.warning("Could not save signing keys to %s: %s", self.path, e)
        self._stamp = self._file_stamp()


_provider: SigningKeyProvider | None = None
_provider_lock = threading.Lock()


def get_key_provider() -> SigningKeyProvider:
    """Dependency: the process-wide key provider (override in tests)."""
    global _provider
    if _provider is None:
        with _provider_lock:
            if _provider is None:
                _provider = SigningKeyProvider(SIGNING_KEY_PATH)
    return _provider
