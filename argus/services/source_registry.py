"""
Argus Escrow — Source Payout Addresses
Resolves a source to the shielded address it gets paid at.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from argus.encryption import mask_address
from argus.exceptions import InvalidAddress
from argus.models import SourcePaymentAddress
from argus.services.payout_backend import PayoutBackend

logger = logging.getLogger("argus.sources")


class SourceRegistry:
    """Per-source payout address book. Addresses are encrypted at rest."""

    def __init__(self, session: AsyncSession, backend: PayoutBackend):
        self._session = session
        self._backend = backend

    async def _addresses(self, source_id: uuid.UUID) -> list[SourcePaymentAddress]:
        result = await self._session.execute(
            select(SourcePaymentAddress)
            .where(
                SourcePaymentAddress.source_id == source_id,
                SourcePaymentAddress.chain == self._backend.asset,
            )
            .order_by(SourcePaymentAddress.created_at)
        )
        return list(result.scalars().all())

    async def register_address(self, source_id: uuid.UUID, address: str) -> tuple[SourcePaymentAddress, bool]:
        """
        Register ``address`` as the source's primary payout address.

        Returns (record, created). Re-registering a known address only makes
        it primary again.
        """
        address = address.strip()
        if not self._backend.validate_address(address):
            raise InvalidAddress(
                "Invalid shielded address. Must be a Sapling (zs1…) or unified (u1…) address."
            )

        existing = await self._addresses(source_id)
        match = None
        for record in existing:
            # ciphertexts differ per write, so compare decrypted values
            if record.address == address:
                match = record
            record.is_primary = False

        created = match is None
        if created:
            match = SourcePaymentAddress(
                source_id=source_id,
                chain=self._backend.asset,
                address=address,
            )
            self._session.add(match)
        match.is_primary = True
        await self._session.flush()

        if created:
            logger.info("Registered %s payout address %s for source %s",
                        self._backend.asset, mask_address(address), source_id)
        return match, created

    async def resolve_payout_address(self, source_id: uuid.UUID) -> Optional[str]:
        """The source's primary payout address, if any."""
        for record in reversed(await self._addresses(source_id)):
            if record.is_primary:
                return record.address
        return None
