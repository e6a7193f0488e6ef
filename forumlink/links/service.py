"""Link an external identity to a forum account via an encrypted user API key."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from ..forum.client import ForumClient, KeyValidation
from .crypto import DecryptionError, EnvelopeCrypto
from .nonces import NonceRecord, NonceStore

logger = logging.getLogger(__name__)


class InvalidNonceError(ValueError):
    """Raised when a nonce is unknown, expired, or bound to another client."""


class InvalidPayloadError(ValueError):
    """Raised when the returned envelope cannot be decrypted."""


@dataclass(frozen=True)
class LinkInvitation:
    auth_url: str
    nonce: str
    expires_at: datetime


@dataclass(frozen=True)
class LinkedAccount:
    user_api_key: str
    username: str
    user_id: int


def _nonce_suffix(nonce: str) -> str:
    return nonce[-6:] if isinstance(nonce, str) else ""


@dataclass
class LinkService:
    forum: ForumClient
    nonces: NonceStore
    crypto: EnvelopeCrypto
    scopes: tuple[str, ...] = ("read", "write")

    async def initiate_link(self, client_id: str, application_name: str) -> LinkInvitation:
        key_pair = await asyncio.to_thread(self.crypto.generate_key_pair)
        nonce = self.nonces.create(client_id, key_pair.private_key)
        expires_at_ms = self.nonces.get_expiration(nonce)
        if expires_at_ms is None:
            raise InvalidNonceError("Failed to compute nonce expiration")
        auth_url = self.forum.build_auth_url(
            client_id=client_id,
            application_name=application_name,
            nonce=nonce,
            public_key=key_pair.public_key,
            scopes=",".join(self.scopes),
        )
        expires_at = datetime.fromtimestamp(expires_at_ms / 1000, tz=timezone.utc)
        logger.info(
            "Generated forum auth URL client=%s application=%s expires_at=%s",
            client_id,
            application_name,
            expires_at.isoformat(),
        )
        return LinkInvitation(auth_url=auth_url, nonce=nonce, expires_at=expires_at)

    async def complete_link(
        self,
        nonce: str,
        payload: str,
        client_id: str | None = None,
    ) -> LinkedAccount:
        record = self._active_record(nonce, client_id)
        # Claimed before the first await: a concurrent completion of the same
        # nonce fails the lookup above.
        self.nonces.consume(nonce)
        try:
            user_api_key = await asyncio.to_thread(
                self.crypto.decrypt_payload, payload, record.private_key
            )
        except DecryptionError as exc:
            logger.warning("Failed to decrypt forum payload: %s", exc)
            raise InvalidPayloadError("Invalid or expired payload") from exc

        user = await self.forum.get_current_user(user_api_key)
        logger.info("Completed forum link user=%s", user.username)
        return LinkedAccount(user_api_key=user_api_key, username=user.username, user_id=user.id)

    async def validate_user_api_key(self, user_api_key: str) -> KeyValidation:
        return await self.forum.validate_user_api_key(user_api_key)

    def _active_record(self, nonce: str, client_id: str | None) -> NonceRecord:
        record = self.nonces.get(nonce)
        if record is None:
            logger.debug("Nonce lookup status=missing nonce=...%s", _nonce_suffix(nonce))
            raise InvalidNonceError("Invalid or expired nonce")
        provided = (client_id or "").strip()
        if provided and not self.nonces.verify(nonce, provided):
            logger.debug(
                "Nonce lookup status=invalid nonce=...%s client=%s provided=%s",
                _nonce_suffix(nonce),
                record.client_id,
                provided,
            )
            raise InvalidNonceError("Invalid or expired nonce")
        logger.debug("Nonce lookup status=verified nonce=...%s", _nonce_suffix(nonce))
        return record
