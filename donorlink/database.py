from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Hashable, Iterator, MutableMapping
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from donorlink.compatibility import BloodType
from donorlink.errors import NotFound, RepositoryError, ValidationError
from donorlink.models import (
    BloodRequest,
    GeoPoint,
    Message,
    Offer,
    OfferStatus,
    User,
    parse_coordinates,
    utcnow,
)

K = TypeVar("K")
V = TypeVar("V", bound=BaseModel)


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value document store.

    Values are copied on the way in and out so callers can never mutate
    stored documents behind the repository's back.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}

    def put(self, key: K, value: V) -> None:
        self._store[key] = value.model_copy(deep=True)

    def get(self, key: K) -> V | None:
        value = self._store.get(key)
        return None if value is None else value.model_copy(deep=True)

    def delete(self, key: K) -> None:
        self._store.pop(key, None)

    def all(self) -> list[V]:
        return [value.model_copy(deep=True) for value in self._store.values()]

    def clear(self) -> None:
        self._store.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._store

    def __iter__(self) -> Iterator[V]:
        return iter(self.all())

    def __len__(self) -> int:
        return len(self._store)


class KeyedLocks:
    """
    One asyncio.Lock per key. An entry lives only while some task holds or
    waits for it, so the table never outgrows the keys in use.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class _Repository:
    """Shared plumbing: simulated I/O latency and per-key write locks."""

    def __init__(self, latency: float = 0.0) -> None:
        self._latency = latency
        self._locks = KeyedLocks()

    async def _io(self) -> None:
        # Every call is a suspension point, like a real network round trip.
        await asyncio.sleep(self._latency)


class DonorFilter(BaseModel):
    blood_types: list[BloodType] | None = None
    available_only: bool = True
    exclude_ids: set[str] = set()


class UserDirectory(_Repository):
    def __init__(self, latency: float = 0.0) -> None:
        super().__init__(latency)
        self.table: InMemoryKeyValueDatabase[str, User] = InMemoryKeyValueDatabase()

    async def add(self, user: User) -> User:
        await self._io()
        self.table.put(user.id, user)
        return user

    async def find_by_id(self, user_id: str) -> User | None:
        await self._io()
        return self.table.get(user_id)

    async def update_location(
        self,
        user_id: str,
        coordinates: GeoPoint | dict[str, Any] | None,
        location: str | None = None,
    ) -> User:
        """
        Record where a user is. Coordinates are required and range checked;
        the location label is only replaced when a non-blank one is given.
        """
        point = parse_coordinates(coordinates)
        if point is None:
            raise ValidationError("Latitude and longitude are required")

        async with self._locks.hold(user_id):
            await self._io()
            user = self.table.get(user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            user.coordinates = point
            if location and location.strip():
                user.location = location.strip()
            self.table.put(user_id, user)
            return user

    async def find_donors(self, donor_filter: DonorFilter | None = None) -> list[User]:
        await self._io()
        donor_filter = donor_filter or DonorFilter()
        donors = []
        for user in self.table.all():
            if not user.is_donor or user.id in donor_filter.exclude_ids:
                continue
            if donor_filter.available_only and not user.available:
                continue
            if (
                donor_filter.blood_types is not None
                and user.blood_type not in donor_filter.blood_types
            ):
                continue
            donors.append(user)
        return donors


class RequestRepository(_Repository):
    def __init__(self, latency: float = 0.0) -> None:
        super().__init__(latency)
        self._workflows = KeyedLocks()
        self.table: InMemoryKeyValueDatabase[str, BloodRequest] = (
            InMemoryKeyValueDatabase()
        )

    async def create(self, request: BloodRequest) -> BloodRequest:
        await self._io()
        if request.id in self.table:
            raise RepositoryError(f"Blood request {request.id} already exists")
        self.table.put(request.id, request)
        return request

    async def find_by_id(self, request_id: str) -> BloodRequest | None:
        await self._io()
        return self.table.get(request_id)

    async def find_unfulfilled(self) -> list[BloodRequest]:
        await self._io()
        return [r for r in self.table.all() if not r.fulfilled]

    async def find_all(self) -> list[BloodRequest]:
        await self._io()
        return self.table.all()

    def workflow(self, request_id: str) -> AbstractAsyncContextManager[None]:
        """
        Lock serializing the multi-step operations on one request. It is
        separate from the write lock conditional_fulfill takes, so it can
        be held around that call.
        """
        return self._workflows.hold(request_id)

    async def conditional_fulfill(
        self,
        request_id: str,
        fulfilled_by: str,
        offer_id: str | None = None,
    ) -> BloodRequest | None:
        """
        Mark the request fulfilled only if it is still open.

        Returns the updated request, or None if another writer got there
        first. The check and the write happen under the request's lock, so
        concurrent callers resolve to exactly one winner.
        """
        async with self._locks.hold(request_id):
            await self._io()
            request = self.table.get(request_id)
            if request is None:
                raise NotFound(f"Blood request {request_id} not found")
            if request.fulfilled:
                return None

            request.fulfilled = True
            request.fulfilled_by = fulfilled_by
            request.fulfilled_at = utcnow()
            request.accepted_offer_id = offer_id
            self.table.put(request_id, request)
            return request

    async def reopen(self, request_id: str, offer_id: str) -> bool:
        """Undo a fulfilment made through offer_id. Returns False if it was not."""
        async with self._locks.hold(request_id):
            await self._io()
            request = self.table.get(request_id)
            if request is None or request.accepted_offer_id != offer_id:
                return False

            request.fulfilled = False
            request.fulfilled_by = None
            request.fulfilled_at = None
            request.accepted_offer_id = None
            self.table.put(request_id, request)
            return True


class OfferRepository(_Repository):
    def __init__(self, latency: float = 0.0) -> None:
        super().__init__(latency)
        self.table: InMemoryKeyValueDatabase[str, Offer] = InMemoryKeyValueDatabase()

    async def create(self, offer: Offer) -> Offer:
        await self._io()
        if offer.id in self.table:
            raise RepositoryError(f"Offer {offer.id} already exists")
        self.table.put(offer.id, offer)
        return offer

    async def find_by_id(self, offer_id: str) -> Offer | None:
        await self._io()
        return self.table.get(offer_id)

    async def find_by_request(self, request_id: str) -> list[Offer]:
        await self._io()
        return [o for o in self.table.all() if o.request_id == request_id]

    async def find_by_donor(self, donor_id: str) -> list[Offer]:
        await self._io()
        return [o for o in self.table.all() if o.donor_id == donor_id]

    async def find_pending_by_donor_and_request(
        self, donor_id: str, request_id: str
    ) -> Offer | None:
        await self._io()
        for offer in self.table.all():
            if (
                offer.donor_id == donor_id
                and offer.request_id == request_id
                and offer.status == OfferStatus.PENDING
            ):
                return offer
        return None

    async def update_status(
        self,
        offer_id: str,
        status: OfferStatus,
        *,
        expected: OfferStatus | None = None,
    ) -> Offer | None:
        """
        Set the offer status and response time.

        With ``expected`` set, the write only happens if the stored status
        still matches; otherwise None is returned.
        """
        async with self._locks.hold(offer_id):
            await self._io()
            offer = self.table.get(offer_id)
            if offer is None:
                raise RepositoryError(f"Offer {offer_id} disappeared during update")
            if expected is not None and offer.status != expected:
                return None

            offer.status = status
            offer.responded_at = utcnow()
            self.table.put(offer_id, offer)
            return offer


class MessageRepository(_Repository):
    def __init__(self, latency: float = 0.0) -> None:
        super().__init__(latency)
        self._rooms: dict[str, list[Message]] = {}

    async def append(self, room_id: str, message: Message) -> Message:
        await self._io()
        if message.room_id != room_id:
            raise RepositoryError(
                f"Message {message.id} belongs to room {message.room_id}, not {room_id}"
            )
        self._rooms.setdefault(room_id, []).append(message.model_copy(deep=True))
        return message

    async def list_by_room(
        self, room_id: str, since: datetime | None = None
    ) -> list[Message]:
        await self._io()
        messages = [
            m.model_copy(deep=True)
            for m in self._rooms.get(room_id, [])
            if since is None or m.created_at > since
        ]
        # Stable: equal timestamps keep append order.
        messages.sort(key=lambda m: m.created_at)
        return messages

    def clear(self) -> None:
        self._rooms.clear()


class Database:
    """Container for all repositories."""

    def __init__(self, latency: float = 0.0) -> None:
        self.users = UserDirectory(latency)
        self.requests = RequestRepository(latency)
        self.offers = OfferRepository(latency)
        self.messages = MessageRepository(latency)

    def clear(self) -> None:
        self.users.table.clear()
        self.requests.table.clear()
        self.offers.table.clear()
        self.messages.clear()


def load_sample_data(db: Database, path: Path | None = None) -> None:
    """Load users and blood requests from sample_data.json into the database."""
    if path is None:
        path = Path(__file__).parent.parent / "sample_data.json"
    with open(path) as f:
        data = json.load(f)

    for user_data in data["users"]:
        user = User(**user_data)
        db.users.table.put(user.id, user)

    for request_data in data["requests"]:
        request = BloodRequest(**request_data)
        db.requests.table.put(request.id, request)
