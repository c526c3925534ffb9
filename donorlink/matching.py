"""
Which requests a donor can answer, and which donors can answer a request.

Two parties are considered near each other when they share a location
label, or when both have real coordinates within the search radius. A
party without coordinates can still match on its label.
"""

import logging

from donorlink import proximity
from donorlink.compatibility import can_donate, compatible_donor_types
from donorlink.config import Settings
from donorlink.database import DonorFilter, RequestRepository, UserDirectory
from donorlink.errors import NotFound
from donorlink.models import BloodRequest, GeoPoint, Urgency, User, WireModel
from donorlink.proximity import TravelEstimate
from donorlink.realtime import RealtimeCoordinator

logger = logging.getLogger(__name__)

URGENT_REQUEST = "urgent-request"


class RequestMatch(WireModel):
    request: BloodRequest
    distance_km: float | None = None
    label_match: bool = False
    travel: TravelEstimate | None = None


class DonorMatch(WireModel):
    donor: User
    distance_km: float | None = None
    label_match: bool = False
    travel: TravelEstimate | None = None


def same_location(a: str, b: str) -> bool:
    a, b = a.strip().casefold(), b.strip().casefold()
    return bool(a) and a == b


class MatchingService:
    def __init__(
        self,
        requests: RequestRepository,
        users: UserDirectory,
        settings: Settings | None = None,
        coordinator: RealtimeCoordinator | None = None,
    ) -> None:
        self._requests = requests
        self._users = users
        self._settings = settings or Settings()
        self._coordinator = coordinator

    def _proximity(
        self,
        a_location: str,
        a_point: GeoPoint | None,
        b_location: str,
        b_point: GeoPoint | None,
        radius_km: float,
    ) -> tuple[bool, float | None, bool]:
        """Return (near, distance_km, label_match) for two parties."""
        label_match = same_location(a_location, b_location)
        distance = proximity.distance_km(a_point, b_point)
        near = label_match or (distance is not None and distance <= radius_km)
        return near, distance, label_match

    async def rank_requests(
        self,
        donor: User,
        *,
        radius_km: float | None = None,
        urgency: Urgency | str | None = None,
        limit: int | None = None,
    ) -> list[RequestMatch]:
        """
        Open requests the donor can give blood to, nearest-labelled or within
        the radius, most urgent first and newest first within an urgency.
        """
        if not donor.is_donor or donor.blood_type is None:
            return []
        radius = self._settings.clamp_radius(radius_km)
        urgency_filter = Urgency.parse(urgency) if urgency is not None else None

        matches = []
        for request in await self._requests.find_unfulfilled():
            if request.requester_id == donor.id:
                continue
            if urgency_filter is not None and request.urgency != urgency_filter:
                continue
            if not can_donate(donor.blood_type, request.blood_type):
                continue
            near, distance, label_match = self._proximity(
                donor.location, donor.coordinates, request.location, request.coordinates, radius
            )
            if not near:
                continue
            matches.append(
                RequestMatch(
                    request=request,
                    distance_km=distance,
                    label_match=label_match,
                    travel=proximity.classify(distance),
                )
            )

        matches.sort(
            key=lambda m: (m.request.urgency.rank, m.request.created_at), reverse=True
        )
        if limit is not None:
            matches = matches[:limit]
        logger.debug("Donor %s matched %d open requests", donor.id, len(matches))
        return matches

    async def find_candidate_requests(self, donor: User, **options) -> list[BloodRequest]:
        return [m.request for m in await self.rank_requests(donor, **options)]

    async def rank_donors(
        self,
        request: BloodRequest,
        *,
        radius_km: float | None = None,
        limit: int | None = None,
    ) -> list[DonorMatch]:
        """
        Available donors whose blood the requester can receive. Donors with a
        known distance come first, closest first; label-only matches follow.
        The stored request is consulted, so a stale copy never yields donors
        for a request that has since been fulfilled.
        """
        stored = await self._requests.find_by_id(request.id)
        if stored is None:
            raise NotFound(f"Blood request {request.id} not found")
        request = stored
        if request.fulfilled:
            return []
        radius = self._settings.clamp_radius(radius_km)

        donors = await self._users.find_donors(
            DonorFilter(
                blood_types=compatible_donor_types(request.blood_type),
                exclude_ids={request.requester_id},
            )
        )

        matches = []
        for donor in donors:
            near, distance, label_match = self._proximity(
                request.location, request.coordinates, donor.location, donor.coordinates, radius
            )
            if not near:
                continue
            matches.append(
                DonorMatch(
                    donor=donor,
                    distance_km=distance,
                    label_match=label_match,
                    travel=proximity.classify(distance),
                )
            )

        matches.sort(
            key=lambda m: (0, m.distance_km)
            if m.distance_km is not None
            else (1, 0.0 if m.label_match else 1.0)
        )
        if limit is not None:
            matches = matches[:limit]
        return matches

    async def find_candidate_donors(self, request: BloodRequest, **options) -> list[User]:
        return [m.donor for m in await self.rank_donors(request, **options)]

    async def notify_nearby_donors(
        self, request: BloodRequest, *, radius_km: float | None = None
    ) -> int:
        """
        Push an urgent-request notification to every candidate donor.
        Returns the number of donors targeted, connected or not.
        """
        if self._coordinator is None:
            return 0
        radius = radius_km if radius_km is not None else self._settings.notify_radius_km
        matches = await self.rank_donors(request, radius_km=radius)
        for match in matches:
            await self._coordinator.notify(
                match.donor.id,
                URGENT_REQUEST,
                {
                    "request": request.to_wire(),
                    "distanceKm": match.distance_km,
                },
            )
        logger.info(
            "Notified %d nearby donors about request %s", len(matches), request.id
        )
        return len(matches)
