"""
Offer lifecycle: pending -> accepted, or pending -> rejected. Both end states
are final.

Every step that changes an offer or its request runs under the request's
workflow lock, and the writes themselves are conditional, so of two racing
responses on the same request exactly one wins.

Offers that were still pending when another one got accepted are left as
they are; the fulfilled request makes them unreachable.
"""

import logging

from donorlink.database import OfferRepository, RequestRepository
from donorlink.errors import (
    AlreadyFulfilled,
    DuplicateOffer,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from donorlink.models import BloodRequest, Offer, OfferStatus, User
from donorlink.realtime import RealtimeCoordinator

logger = logging.getLogger(__name__)

OFFER_MESSAGE_MAX_LENGTH = 500

OFFER_RECEIVED = "offer-received"
OFFER_ACCEPTED = "offer-accepted"
OFFER_REJECTED = "offer-rejected"
REQUEST_FULFILLED = "request-fulfilled"


class OfferLifecycle:
    def __init__(
        self,
        offers: OfferRepository,
        requests: RequestRepository,
        coordinator: RealtimeCoordinator | None = None,
    ) -> None:
        self._offers = offers
        self._requests = requests
        self._coordinator = coordinator

    async def _get_request(self, request_id: str) -> BloodRequest:
        request = await self._requests.find_by_id(request_id)
        if request is None:
            raise NotFound(f"Blood request {request_id} not found")
        return request

    async def _get_offer(self, offer_id: str) -> Offer:
        offer = await self._offers.find_by_id(offer_id)
        if offer is None:
            raise NotFound(f"Offer {offer_id} not found")
        return offer

    async def _notify(self, user_id: str, event: str, data: dict) -> None:
        if self._coordinator is not None:
            await self._coordinator.notify(user_id, event, data)

    async def create_offer(
        self, request_id: str, donor: User, message: str | None = ""
    ) -> Offer:
        if message is None:
            message = ""
        if len(message) > OFFER_MESSAGE_MAX_LENGTH:
            raise ValidationError(
                f"Offer message exceeds {OFFER_MESSAGE_MAX_LENGTH} characters"
            )

        request = await self._get_request(request_id)
        if not donor.is_donor:
            raise Forbidden("Only donors can send offers")
        if request.requester_id == donor.id:
            raise Forbidden("You cannot send an offer to your own request")

        async with self._requests.workflow(request_id):
            # Re-read: the request may have been fulfilled while we waited.
            request = await self._get_request(request_id)
            if request.fulfilled:
                raise AlreadyFulfilled(f"Blood request {request_id} is already fulfilled")
            existing = await self._offers.find_pending_by_donor_and_request(
                donor.id, request_id
            )
            if existing is not None:
                raise DuplicateOffer("You have already sent an offer for this request")

            offer = await self._offers.create(
                Offer(request_id=request_id, donor_id=donor.id, message=message.strip())
            )

        logger.info("Donor %s offered to fulfill request %s", donor.id, request_id)
        await self._notify(
            request.requester_id,
            OFFER_RECEIVED,
            {
                "offer": offer.to_wire(),
                "donor": {
                    "id": donor.id,
                    "name": donor.name,
                    "bloodType": donor.blood_type,
                    "location": donor.location,
                },
            },
        )
        return offer

    async def _authorize(self, offer_id: str, acting_user: User) -> tuple[Offer, BloodRequest]:
        offer = await self._get_offer(offer_id)
        request = await self._get_request(offer.request_id)
        if request.requester_id != acting_user.id:
            raise Forbidden("Only the requester can respond to offers")
        return offer, request

    async def accept_offer(self, offer_id: str, acting_user: User) -> Offer:
        offer, request = await self._authorize(offer_id, acting_user)

        async with self._requests.workflow(request.id):
            offer = await self._get_offer(offer_id)
            request = await self._get_request(offer.request_id)
            if request.fulfilled:
                raise AlreadyFulfilled(f"Blood request {request.id} is already fulfilled")
            if offer.status != OfferStatus.PENDING:
                raise AlreadyFulfilled(f"Offer {offer_id} is already {offer.status}")

            fulfilled = await self._requests.conditional_fulfill(
                request.id, offer.donor_id, offer.id
            )
            if fulfilled is None:
                raise AlreadyFulfilled(f"Blood request {request.id} is already fulfilled")

            accepted = await self._offers.update_status(
                offer.id, OfferStatus.ACCEPTED, expected=OfferStatus.PENDING
            )
            if accepted is None:
                await self._requests.reopen(request.id, offer.id)
                raise InvalidTransition(f"Offer {offer_id} was answered concurrently")

        logger.info(
            "Request %s fulfilled by donor %s via offer %s",
            request.id,
            offer.donor_id,
            offer.id,
        )

        await self._notify(
            offer.donor_id,
            OFFER_ACCEPTED,
            {"offer": accepted.to_wire(), "request": fulfilled.to_wire()},
        )
        if self._coordinator is not None:
            await self._coordinator.publish(
                request.id, REQUEST_FULFILLED, fulfilled.to_wire()
            )
        return accepted

    async def reject_offer(self, offer_id: str, acting_user: User) -> Offer:
        offer, request = await self._authorize(offer_id, acting_user)

        async with self._requests.workflow(request.id):
            offer = await self._get_offer(offer_id)
            if offer.status != OfferStatus.PENDING:
                raise InvalidTransition(f"Offer {offer_id} is already {offer.status}")

            rejected = await self._offers.update_status(
                offer.id, OfferStatus.REJECTED, expected=OfferStatus.PENDING
            )
            if rejected is None:
                raise InvalidTransition(f"Offer {offer_id} was answered concurrently")

        logger.info("Offer %s on request %s rejected", offer.id, request.id)
        await self._notify(
            offer.donor_id,
            OFFER_REJECTED,
            {"offer": rejected.to_wire(), "requestId": request.id},
        )
        return rejected

    async def offers_for_request(self, request_id: str, acting_user: User) -> list[Offer]:
        """All offers on a request, newest first. Only the requester may look."""
        request = await self._get_request(request_id)
        if request.requester_id != acting_user.id:
            raise Forbidden("Only the requester can list offers on this request")
        offers = await self._offers.find_by_request(request_id)
        return sorted(offers, key=lambda o: o.created_at, reverse=True)

    async def offers_by_donor(self, donor: User) -> list[Offer]:
        offers = await self._offers.find_by_donor(donor.id)
        return sorted(offers, key=lambda o: o.created_at, reverse=True)

    async def accepted_offers(self, donor: User) -> list[Offer]:
        offers = [
            o
            for o in await self._offers.find_by_donor(donor.id)
            if o.status == OfferStatus.ACCEPTED
        ]
        return sorted(
            offers, key=lambda o: o.responded_at or o.created_at, reverse=True
        )
