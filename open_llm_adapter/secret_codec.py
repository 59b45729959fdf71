from __future__ import annotations

import base64
import binascii
import logging
import os
import threading
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from open_llm_adapter.config.settings import Settings, get_settings
from open_llm_adapter.errors import DecryptError, KeyInitError

logger = logging.getLogger("uvicorn.error")

# OAEP with SHA-256 reserves 2 * digest_size + 2 bytes of every block.
_OAEP_OVERHEAD_BYTES = 2 * 32 + 2


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


class SecretCodec:
    """RSA-OAEP codec for credential secrets stored encrypted in provider YAML.

    Plaintext longer than one RSA block is split into blocks; the ciphertext
    is the base64 encoding of the concatenated encrypted blocks.
    """

    def __init__(
        self,
        private_key: rsa.RSAPrivateKey | None,
        public_key: rsa.RSAPublicKey | None = None,
    ) -> None:
        if private_key is None and public_key is None:
            raise KeyInitError("a private or public key is required")
        self._private_key = private_key
        self._public_key = public_key or private_key.public_key()  # type: ignore[union-attr]

    @property
    def key_bytes(self) -> int:
        return (self._public_key.key_size + 7) // 8

    @property
    def can_decrypt(self) -> bool:
        return self._private_key is not None

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("plaintext must be non-empty")
        data = plaintext.encode("utf-8")
        block_size = self.key_bytes - _OAEP_OVERHEAD_BYTES
        blocks = [
            self._public_key.encrypt(data[offset : offset + block_size], _oaep())
            for offset in range(0, len(data), block_size)
        ]
        return base64.b64encode(b"".join(blocks)).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if self._private_key is None:
            raise DecryptError("no private key is loaded")
        if not isinstance(ciphertext, str) or not ciphertext.strip():
            raise DecryptError("ciphertext is empty")
        try:
            raw = base64.b64decode(ciphertext.strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptError("ciphertext is not valid base64") from exc

        size = self.key_bytes
        if not raw or len(raw) % size:
            raise DecryptError(
                f"ciphertext length {len(raw)} is not a multiple of the "
                f"{size}-byte key block"
            )
        try:
            plain_blocks = [
                self._private_key.decrypt(raw[offset : offset + size], _oaep())
                for offset in range(0, len(raw), size)
            ]
        except ValueError as exc:
            raise DecryptError("ciphertext does not match the loaded key") from exc
        try:
            return b"".join(plain_blocks).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptError("decrypted secret is not valid UTF-8") from exc

    @classmethod
    def generate(cls, key_size: int = 2048) -> SecretCodec:
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=key_size))

    def private_pem(self) -> bytes:
        if self._private_key is None:
            raise KeyInitError("no private key is loaded")
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_pem(self) -> bytes:
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )


def write_keypair(codec: SecretCodec, private_path: str | Path, public_path: str | Path) -> None:
    private_file = Path(private_path)
    public_file = Path(public_path)
    private_file.parent.mkdir(parents=True, exist_ok=True)
    public_file.parent.mkdir(parents=True, exist_ok=True)
    private_file.write_bytes(codec.private_pem())
    os.chmod(private_file, 0o600)
    public_file.write_bytes(codec.public_pem())


def load_secret_codec(
    private_path: str | Path | None,
    public_path: str | Path | None = None,
) -> SecretCodec:
    try:
        if private_path is not None and Path(private_path).exists():
            private_key = serialization.load_pem_private_key(
                Path(private_path).read_bytes(), password=None
            )
            if not isinstance(private_key, rsa.RSAPrivateKey):
                raise KeyInitError(f"'{private_path}' does not hold an RSA private key")
            return SecretCodec(private_key)
        if public_path is not None and Path(public_path).exists():
            public_key = serialization.load_pem_public_key(Path(public_path).read_bytes())
            if not isinstance(public_key, rsa.RSAPublicKey):
                raise KeyInitError(f"'{public_path}' does not hold an RSA public key")
            return SecretCodec(None, public_key)
    except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyInitError(f"failed to load RSA key material: {exc}") from exc
    raise KeyInitError(
        f"RSA key material not found (private key '{private_path}', "
        f"public key '{public_path}')"
    )


_codec_lock = threading.Lock()
_codec: SecretCodec | None = None
_codec_error: KeyInitError | None = None


def _initialize_codec(settings: Settings) -> SecretCodec:
    private_path = Path(settings.rsa_private_key_path)
    if not private_path.exists() and settings.rsa_generate_keys_if_missing:
        codec = SecretCodec.generate(settings.rsa_key_size)
        write_keypair(codec, private_path, settings.rsa_public_key_path)
        logger.warning(
            "rsa_keypair_generated private_key=%s public_key=%s",
            private_path,
            settings.rsa_public_key_path,
        )
        return codec
    codec = load_secret_codec(private_path)
    logger.info("rsa_keypair_loaded private_key=%s", private_path)
    return codec


def get_secret_codec(settings: Settings | None = None) -> SecretCodec:
    """Process-wide codec, initialised at most once; a failed init stays failed."""
    global _codec, _codec_error
    codec = _codec
    if codec is not None:
        return codec
    with _codec_lock:
        if _codec is not None:
            return _codec
        if _codec_error is not None:
            raise _codec_error
        try:
            _codec = _initialize_codec(settings or get_settings())
        except KeyInitError as exc:
            _codec_error = exc
            raise
        return _codec


def reset_secret_codec() -> None:
    global _codec, _codec_error
    with _codec_lock:
        _codec = None
        _codec_error = None
