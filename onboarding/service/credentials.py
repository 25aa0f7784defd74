from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError as Argon2HashingError
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError


class HashingError(Exception):
    """The password hasher failed internally."""


class InvalidDigestError(Exception):
    """A stored password digest could not be parsed."""


class CredentialVerifier:
    """argon2id password hashing with a tunable work factor.

    Each digest embeds its own random salt and parameters, so verification
    needs only the digest and raising the work factor later is transparent:
    :meth:`needs_rehash` reports digests made with weaker settings.
    """

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, plaintext: str) -> str:
        try:
            return self._hasher.hash(plaintext)
        except Argon2HashingError as exc:
            raise HashingError("password hashing failed") from exc

    def verify(self, plaintext: str, digest: str) -> bool:
        """Return whether ``plaintext`` matches ``digest``.

        A mismatch is ``False``; only a malformed digest raises.
        """
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except InvalidHashError as exc:
            raise InvalidDigestError("stored password digest is malformed") from exc
        except VerificationError:
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHashError as exc:
            raise InvalidDigestError("stored password digest is malformed") from exc
