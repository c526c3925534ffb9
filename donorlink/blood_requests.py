import logging
from typing import Any

from donorlink.compatibility import parse_blood_type
from donorlink.database import RequestRepository
from donorlink.errors import AlreadyFulfilled, Forbidden, NotFound, ValidationError
from donorlink.models import BloodRequest, GeoPoint, Urgency, User, parse_coordinates
from donorlink.offers import REQUEST_FULFILLED
from donorlink.realtime import NEW_BLOOD_REQUEST, RealtimeCoordinator

logger = logging.getLogger(__name__)


class BloodRequestService:
    """Creating blood requests and fulfilling them without an offer."""

    def __init__(
        self,
        requests: RequestRepository,
        coordinator: RealtimeCoordinator | None = None,
    ) -> None:
        self._requests = requests
        self._coordinator = coordinator

    async def create_request(
        self,
        requester: User,
        blood_type: str,
        location: str,
        urgency: Urgency | str = Urgency.MEDIUM,
        hospital: str = "",
        coordinates: GeoPoint | dict[str, Any] | None = None,
    ) -> BloodRequest:
        """
        Validate and store a new request, then announce it to every
        connected donor except the requester.
        """
        if not location or not location.strip():
            raise ValidationError("Location is required")

        request = BloodRequest(
            requester_id=requester.id,
            blood_type=parse_blood_type(blood_type),
            location=location.strip(),
            hospital=(hospital or "").strip(),
            urgency=Urgency.parse(urgency),
            coordinates=parse_coordinates(coordinates),
        )
        await self._requests.create(request)
        logger.info(
            "Request %s created by %s for %s (%s)",
            request.id,
            requester.id,
            request.blood_type,
            request.urgency,
        )

        if self._coordinator is not None:
            await self._coordinator.broadcast_global(
                NEW_BLOOD_REQUEST,
                request.to_wire(),
                where=lambda user: user.is_donor and user.id != requester.id,
            )
        return request

    async def get_request(self, request_id: str) -> BloodRequest:
        request = await self._requests.find_by_id(request_id)
        if request is None:
            raise NotFound(f"Blood request {request_id} not found")
        return request

    async def list_requests(self, include_fulfilled: bool = False) -> list[BloodRequest]:
        """Newest first. Only open requests unless include_fulfilled is set."""
        if include_fulfilled:
            requests = await self._requests.find_all()
        else:
            requests = await self._requests.find_unfulfilled()
        return sorted(requests, key=lambda r: r.created_at, reverse=True)

    async def quick_fulfill(self, request_id: str, acting_user: User) -> BloodRequest:
        """
        A donor or hospital marks a request fulfilled directly. Goes through
        the same conditional write as offer acceptance.
        """
        request = await self.get_request(request_id)
        if not (acting_user.is_donor or acting_user.is_hospital):
            raise Forbidden("Only donors and hospitals can fulfill requests")
        if request.requester_id == acting_user.id:
            raise Forbidden("You cannot fulfill your own request")
        if request.fulfilled:
            raise AlreadyFulfilled(f"Blood request {request_id} is already fulfilled")

        async with self._requests.workflow(request_id):
            fulfilled = await self._requests.conditional_fulfill(request_id, acting_user.id)
        if fulfilled is None:
            raise AlreadyFulfilled(f"Blood request {request_id} is already fulfilled")

        logger.info("Request %s fulfilled directly by %s", request_id, acting_user.id)
        if self._coordinator is not None:
            await self._coordinator.publish(request_id, REQUEST_FULFILLED, fulfilled.to_wire())
            await self._coordinator.notify(
                request.requester_id, REQUEST_FULFILLED, fulfilled.to_wire()
            )
        return fulfilled
