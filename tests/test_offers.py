import asyncio

import pytest

from donorlink.config import Settings
from donorlink.database import Database, OfferRepository, load_sample_data
from donorlink.errors import (
    AlreadyFulfilled,
    DuplicateOffer,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from donorlink.models import OfferStatus, User
from donorlink.offers import OfferLifecycle
from donorlink.services import Services


@pytest.mark.asyncio
async def test_create_offer_is_pending_and_notifies_requester(
    services: Services, users, connect
) -> None:
    requester_tab = connect(users["requester-ada"])
    await services.coordinator.connect(requester_tab)

    offer = await services.offers.create_offer(
        "req-ikeja-high", users["donor-olu"], "available now"
    )

    assert offer.status == OfferStatus.PENDING
    assert offer.message == "available now"
    stored = await services.db.offers.find_by_id(offer.id)
    assert stored.status == OfferStatus.PENDING

    [notice] = requester_tab.events("offer-received")
    assert notice["offer"]["id"] == offer.id
    assert notice["donor"]["bloodType"] == "O-"


@pytest.mark.asyncio
async def test_second_offer_from_same_donor_is_duplicate(services: Services, users) -> None:
    donor = users["donor-olu"]
    await services.offers.create_offer("req-ikeja-high", donor, "first")

    with pytest.raises(DuplicateOffer):
        await services.offers.create_offer("req-ikeja-high", donor, "second")


@pytest.mark.asyncio
async def test_concurrent_duplicate_offers_create_only_one(services: Services, users) -> None:
    donor = users["donor-olu"]
    results = await asyncio.gather(
        services.offers.create_offer("req-ikeja-high", donor, "a"),
        services.offers.create_offer("req-ikeja-high", donor, "b"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, DuplicateOffer) for r in results) == 1
    assert len(await services.db.offers.find_by_request("req-ikeja-high")) == 1


@pytest.mark.asyncio
async def test_create_offer_rejections(services: Services, users) -> None:
    with pytest.raises(NotFound):
        await services.offers.create_offer("missing", users["donor-olu"])

    with pytest.raises(Forbidden):
        await services.offers.create_offer("req-ikeja-high", users["requester-ada"])

    donor_requester = users["donor-mei"]
    request = await services.requests.create_request(donor_requester, "AB+", "Ikeja")
    with pytest.raises(Forbidden):
        await services.offers.create_offer(request.id, donor_requester)

    with pytest.raises(ValidationError):
        await services.offers.create_offer("req-ikeja-high", users["donor-olu"], "x" * 501)

    await services.db.requests.conditional_fulfill("req-ikeja-low", "donor-mei")
    with pytest.raises(AlreadyFulfilled):
        await services.offers.create_offer("req-ikeja-low", users["donor-olu"])


@pytest.mark.asyncio
async def test_accept_offer_fulfills_request(services: Services, users, connect) -> None:
    donor_tab = connect(users["donor-olu"])
    room_tab = connect(users["requester-ada"])
    await services.coordinator.connect(donor_tab)
    await services.coordinator.join("req-ikeja-high", room_tab)

    offer = await services.offers.create_offer("req-ikeja-high", users["donor-olu"])
    accepted = await services.offers.accept_offer(offer.id, users["requester-ada"])

    assert accepted.status == OfferStatus.ACCEPTED
    assert accepted.responded_at is not None

    request = await services.db.requests.find_by_id("req-ikeja-high")
    assert request.fulfilled is True
    assert request.fulfilled_by == "donor-olu"
    assert request.accepted_offer_id == offer.id
    assert request.fulfilled_at is not None

    assert donor_tab.events("offer-accepted")[0]["offer"]["status"] == "accepted"
    assert room_tab.events("request-fulfilled")[0]["fulfilledBy"] == "donor-olu"
    assert await services.matching.find_candidate_donors(request) == []


@pytest.mark.asyncio
async def test_only_requester_may_accept_or_reject(services: Services, users) -> None:
    offer = await services.offers.create_offer("req-ikeja-high", users["donor-olu"])

    with pytest.raises(Forbidden):
        await services.offers.accept_offer(offer.id, users["donor-mei"])
    with pytest.raises(Forbidden):
        await services.offers.reject_offer(offer.id, users["donor-olu"])

    stored = await services.db.offers.find_by_id(offer.id)
    assert stored.status == OfferStatus.PENDING
    request = await services.db.requests.find_by_id("req-ikeja-high")
    assert request.fulfilled is False


@pytest.mark.asyncio
async def test_accepting_twice_fails(services: Services, users) -> None:
    requester = users["requester-ada"]
    first = await services.offers.create_offer("req-ikeja-high", users["donor-olu"])
    second = await services.offers.create_offer("req-ikeja-high", users["donor-mei"])

    await services.offers.accept_offer(first.id, requester)

    with pytest.raises(AlreadyFulfilled):
        await services.offers.accept_offer(first.id, requester)
    with pytest.raises(AlreadyFulfilled):
        await services.offers.accept_offer(second.id, requester)

    still_pending = await services.db.offers.find_by_id(second.id)
    assert still_pending.status == OfferStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.parametrize("latency", [0.0, 0.01])
async def test_concurrent_accepts_have_exactly_one_winner(latency: float) -> None:
    services = Services(Settings(), Database(latency=latency))
    load_sample_data(services.db)
    users = {u.id: u for u in services.db.users.table.all()}
    requester = users["requester-ada"]

    first = await services.offers.create_offer("req-ikeja-high", users["donor-olu"])
    second = await services.offers.create_offer("req-ikeja-high", users["donor-mei"])

    results = await asyncio.gather(
        services.offers.accept_offer(first.id, requester),
        services.offers.accept_offer(second.id, requester),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], AlreadyFulfilled)

    request = await services.db.requests.find_by_id("req-ikeja-high")
    assert request.fulfilled_by == winners[0].donor_id
    offers = await services.db.offers.find_by_request("req-ikeja-high")
    assert [o.status for o in offers].count(OfferStatus.ACCEPTED) == 1


@pytest.mark.asyncio
async def test_reject_offer(services: Services, users, connect) -> None:
    donor_tab = connect(users["donor-olu"])
    await services.coordinator.connect(donor_tab)
    requester = users["requester-ada"]

    offer = await services.offers.create_offer("req-ikeja-high", users["donor-olu"])
    rejected = await services.offers.reject_offer(offer.id, requester)

    assert rejected.status == OfferStatus.REJECTED
    assert rejected.responded_at is not None
    assert donor_tab.events("offer-rejected")[0]["requestId"] == "req-ikeja-high"

    with pytest.raises(InvalidTransition):
        await services.offers.reject_offer(offer.id, requester)
    with pytest.raises(AlreadyFulfilled):
        await services.offers.accept_offer(offer.id, requester)

    # A rejected donor may try again with a fresh offer.
    again = await services.offers.create_offer("req-ikeja-high", users["donor-olu"])
    assert again.status == OfferStatus.PENDING


@pytest.mark.asyncio
async def test_unknown_offer(services: Services, users) -> None:
    with pytest.raises(NotFound):
        await services.offers.accept_offer("nope", users["requester-ada"])


@pytest.mark.asyncio
async def test_offer_listings(services: Services, users) -> None:
    requester = users["requester-ada"]
    olu = users["donor-olu"]
    first = await services.offers.create_offer("req-ikeja-high", olu)
    await asyncio.sleep(0.001)
    second = await services.offers.create_offer("req-ikeja-high", users["donor-mei"])
    await asyncio.sleep(0.001)
    other = await services.offers.create_offer("req-ikeja-low", olu)

    listed = await services.offers.offers_for_request("req-ikeja-high", requester)
    assert [o.id for o in listed] == [second.id, first.id]

    with pytest.raises(Forbidden):
        await services.offers.offers_for_request("req-ikeja-high", olu)

    mine = await services.offers.offers_by_donor(olu)
    assert [o.id for o in mine] == [other.id, first.id]

    await services.offers.accept_offer(first.id, requester)
    assert [o.id for o in await services.offers.accepted_offers(olu)] == [first.id]


@pytest.mark.asyncio
async def test_failed_notification_does_not_undo_offer(
    services: Services, users, connect
) -> None:
    requester_tab = connect(users["requester-ada"])
    requester_tab.fail = True
    await services.coordinator.connect(requester_tab)

    offer = await services.offers.create_offer("req-ikeja-high", users["donor-olu"])

    assert await services.db.offers.find_by_id(offer.id) is not None


@pytest.mark.asyncio
async def test_offer_to_acceptance_end_to_end(services: Services) -> None:
    requester = await services.db.users.add(User(name="Requester", location="L"))
    donor = await services.db.users.add(
        User(name="D", is_donor=True, blood_type="O-", location="L")
    )
    other_donor = await services.db.users.add(
        User(name="E", is_donor=True, blood_type="A+", location="L")
    )

    request = await services.requests.create_request(requester, "A+", "L", urgency="High")
    assert request.id in [r.id for r in await services.matching.find_candidate_requests(donor)]

    earlier = await services.offers.create_offer(request.id, other_donor, "on my way")
    offer = await services.offers.create_offer(request.id, donor, "available now")
    assert offer.status == OfferStatus.PENDING

    accepted = await services.offers.accept_offer(offer.id, requester)
    assert accepted.status == OfferStatus.ACCEPTED

    stored = await services.db.requests.find_by_id(request.id)
    assert stored.fulfilled is True
    assert stored.fulfilled_by == donor.id

    untouched = await services.db.offers.find_by_id(earlier.id)
    assert untouched.status == OfferStatus.PENDING

    for candidate in (donor, other_donor):
        visible = await services.matching.find_candidate_requests(candidate)
        assert request.id not in [r.id for r in visible]


@pytest.mark.asyncio
@pytest.mark.parametrize("latency", [0.0, 0.01])
async def test_racing_accept_and_reject_of_one_offer(latency: float) -> None:
    services = Services(Settings(), Database(latency=latency))
    load_sample_data(services.db)
    users = {u.id: u for u in services.db.users.table.all()}
    requester = users["requester-ada"]
    offer = await services.offers.create_offer("req-ikeja-high", users["donor-olu"])

    results = await asyncio.gather(
        services.offers.accept_offer(offer.id, requester),
        services.offers.reject_offer(offer.id, requester),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    assert len(succeeded) == 1
    stored = await services.db.offers.find_by_id(offer.id)
    assert stored.status == succeeded[0].status

    request = await services.db.requests.find_by_id("req-ikeja-high")
    assert request.fulfilled is (stored.status == OfferStatus.ACCEPTED)


@pytest.mark.asyncio
@pytest.mark.parametrize("latency", [0.0, 0.01])
async def test_offer_racing_an_acceptance_is_refused(latency: float) -> None:
    services = Services(Settings(), Database(latency=latency))
    load_sample_data(services.db)
    users = {u.id: u for u in services.db.users.table.all()}
    first = await services.offers.create_offer("req-ikeja-high", users["donor-olu"])

    results = await asyncio.gather(
        services.offers.accept_offer(first.id, users["requester-ada"]),
        services.offers.create_offer("req-ikeja-high", users["donor-mei"]),
        return_exceptions=True,
    )

    request = await services.db.requests.find_by_id("req-ikeja-high")
    assert request.fulfilled is True
    pending = [
        o
        for o in await services.db.offers.find_by_request("req-ikeja-high")
        if o.status == OfferStatus.PENDING
    ]
    if isinstance(results[1], Exception):
        assert isinstance(results[1], AlreadyFulfilled)
        assert pending == []
    else:
        # The offer got in first; it was created while the request was open.
        assert [o.id for o in pending] == [results[1].id]
        assert results[1].created_at <= request.fulfilled_at


@pytest.mark.asyncio
async def test_lost_offer_update_reopens_request(users) -> None:
    class AnsweredElsewhere(OfferRepository):
        async def update_status(self, offer_id, status, *, expected=None):
            if status == OfferStatus.ACCEPTED:
                return None
            return await super().update_status(offer_id, status, expected=expected)

    db = Database()
    load_sample_data(db)
    offers = OfferLifecycle(AnsweredElsewhere(), db.requests)
    offer = await offers.create_offer("req-ikeja-high", users["donor-olu"])

    with pytest.raises(InvalidTransition):
        await offers.accept_offer(offer.id, users["requester-ada"])

    request = await db.requests.find_by_id("req-ikeja-high")
    assert request.fulfilled is False
    assert request.fulfilled_by is None
    assert request.accepted_offer_id is None


@pytest.mark.asyncio
async def test_request_locks_are_released(services: Services, users) -> None:
    requester = users["requester-ada"]
    first = await services.offers.create_offer("req-ikeja-high", users["donor-olu"])
    second = await services.offers.create_offer("req-ikeja-high", users["donor-mei"])
    await services.offers.reject_offer(second.id, requester)
    await services.offers.accept_offer(first.id, requester)

    assert len(services.db.requests._workflows) == 0
    assert len(services.db.requests._locks) == 0
    assert len(services.db.offers._locks) == 0
