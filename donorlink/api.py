import json
import logging
from datetime import datetime
from typing import Any

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse

from donorlink.config import configure_logging
from donorlink.errors import (
    AlreadyFulfilled,
    DonorLinkError,
    DuplicateOffer,
    Forbidden,
    InvalidTransition,
    NotFound,
    RepositoryError,
    TransportError,
    ValidationError,
)
from donorlink.models import GeoPoint, User, WireModel
from donorlink.realtime import ClientConnection
from donorlink.services import get_services

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_STATUS: dict[type[DonorLinkError], int] = {
    ValidationError: 422,
    Forbidden: 403,
    NotFound: 404,
    AlreadyFulfilled: 409,
    DuplicateOffer: 409,
    InvalidTransition: 409,
    RepositoryError: 503,
}


class CreateRequestBody(WireModel):
    blood_type: str
    location: str
    urgency: str = "Medium"
    hospital: str = ""
    coordinates: GeoPoint | None = None


class CreateOfferBody(WireModel):
    request_id: str
    message: str = ""


class RegisterSessionBody(WireModel):
    device_id: str


class UpdateLocationBody(WireModel):
    latitude: float
    longitude: float
    address: str | None = None


async def current_user(x_user_id: str | None = Header(default=None)) -> User:
    """Resolve the acting user. Credential checks happen upstream."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header required"
        )
    user = await get_services().db.users.find_by_id(x_user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"User {x_user_id} not found",
        )
    return user


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/requests", status_code=status.HTTP_201_CREATED)
async def create_request(
    body: CreateRequestBody, user: User = Depends(current_user)
) -> dict[str, Any]:
    request = await get_services().requests.create_request(
        user,
        blood_type=body.blood_type,
        location=body.location,
        urgency=body.urgency,
        hospital=body.hospital,
        coordinates=body.coordinates,
    )
    return {"message": "Blood request created", "request": request.to_wire()}


@router.get("/requests")
async def list_requests(
    include_fulfilled: bool = False, user: User = Depends(current_user)
) -> dict[str, Any]:
    requests = await get_services().requests.list_requests(include_fulfilled)
    return {
        "requests": [r.to_wire() for r in requests],
        "totalCount": len(requests),
    }


@router.get("/requests/{request_id}")
async def get_request(
    request_id: str, user: User = Depends(current_user)
) -> dict[str, Any]:
    request = await get_services().requests.get_request(request_id)
    return {"request": request.to_wire()}


@router.post("/requests/{request_id}/fulfill")
async def quick_fulfill(
    request_id: str, user: User = Depends(current_user)
) -> dict[str, Any]:
    request = await get_services().requests.quick_fulfill(request_id, user)
    return {"message": "Blood request fulfilled", "request": request.to_wire()}


@router.post("/requests/{request_id}/notify-donors")
async def notify_donors(
    request_id: str,
    radius_km: float | None = Query(default=None, gt=0),
    user: User = Depends(current_user),
) -> dict[str, Any]:
    """Push an urgent notification to nearby donors (requester or hospital only)."""
    services = get_services()
    request = await services.requests.get_request(request_id)
    if request.requester_id != user.id and not user.is_hospital:
        raise Forbidden("Only the requester or a hospital can notify donors")
    notified = await services.matching.notify_nearby_donors(request, radius_km=radius_km)
    return {"notified": notified}


@router.get("/match/requests")
async def match_requests(
    radius_km: float | None = Query(default=None, gt=0),
    urgency: str | None = None,
    limit: int | None = Query(default=None, ge=1),
    user: User = Depends(current_user),
) -> dict[str, Any]:
    matches = await get_services().matching.rank_requests(
        user, radius_km=radius_km, urgency=urgency, limit=limit
    )
    return {
        "matches": [m.to_wire() for m in matches],
        "totalCount": len(matches),
    }


@router.get("/match/donors/{request_id}")
async def match_donors(
    request_id: str,
    radius_km: float | None = Query(default=None, gt=0),
    limit: int | None = Query(default=None, ge=1),
    user: User = Depends(current_user),
) -> dict[str, Any]:
    services = get_services()
    request = await services.requests.get_request(request_id)
    matches = await services.matching.rank_donors(request, radius_km=radius_km, limit=limit)
    return {
        "donors": [m.to_wire() for m in matches],
        "totalCount": len(matches),
    }


@router.post("/match/location")
async def update_location(
    body: UpdateLocationBody, user: User = Depends(current_user)
) -> dict[str, Any]:
    """Record the caller's position so coordinate matching can use it."""
    updated = await get_services().db.users.update_location(
        user.id,
        {"latitude": body.latitude, "longitude": body.longitude},
        body.address,
    )
    logger.info("Location updated for user %s", user.id)
    return {"message": "Location updated", "user": updated.to_wire()}


@router.post("/offers", status_code=status.HTTP_201_CREATED)
async def send_offer(
    body: CreateOfferBody, user: User = Depends(current_user)
) -> dict[str, Any]:
    offer = await get_services().offers.create_offer(body.request_id, user, body.message)
    return {"message": "Offer sent successfully", "offer": offer.to_wire()}


@router.get("/offers/request/{request_id}")
async def offers_for_request(
    request_id: str, user: User = Depends(current_user)
) -> dict[str, Any]:
    offers = await get_services().offers.offers_for_request(request_id, user)
    return {"offers": [o.to_wire() for o in offers]}


@router.get("/offers/mine")
async def my_offers(user: User = Depends(current_user)) -> dict[str, Any]:
    offers = await get_services().offers.offers_by_donor(user)
    return {"offers": [o.to_wire() for o in offers]}


@router.get("/offers/accepted")
async def accepted_offers(user: User = Depends(current_user)) -> dict[str, Any]:
    offers = await get_services().offers.accepted_offers(user)
    return {"acceptedOffers": [o.to_wire() for o in offers]}


@router.post("/offers/{offer_id}/accept")
async def accept_offer(
    offer_id: str, user: User = Depends(current_user)
) -> dict[str, Any]:
    offer = await get_services().offers.accept_offer(offer_id, user)
    return {"message": "Offer accepted successfully", "offer": offer.to_wire()}


@router.post("/offers/{offer_id}/reject")
async def reject_offer(
    offer_id: str, user: User = Depends(current_user)
) -> dict[str, Any]:
    offer = await get_services().offers.reject_offer(offer_id, user)
    return {"message": "Offer rejected", "offer": offer.to_wire()}


@router.get("/messages/{room_id}")
async def room_history(
    room_id: str,
    since: datetime | None = None,
    user: User = Depends(current_user),
) -> dict[str, Any]:
    messages = await get_services().coordinator.history(room_id, since)
    return {"messages": [m.to_wire() for m in messages]}


@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def register_session(
    body: RegisterSessionBody, user: User = Depends(current_user)
) -> dict[str, Any]:
    session = get_services().sessions.register(user.id, body.device_id)
    return {"session": session.to_wire()}


@router.post("/sessions/{session_id}/heartbeat")
async def heartbeat(session_id: str, user: User = Depends(current_user)) -> dict[str, Any]:
    sessions = get_services().sessions
    sessions.owned_by(session_id, user.id)
    session = sessions.touch(session_id)
    return {"session": session.to_wire()}


@router.get("/sessions/{session_id}/conflicts")
async def session_conflicts(
    session_id: str, user: User = Depends(current_user)
) -> dict[str, Any]:
    sessions = get_services().sessions
    sessions.owned_by(session_id, user.id)
    conflicts = sessions.conflict(session_id)
    return {
        "conflict": bool(conflicts),
        "sessions": [s.to_wire() for s in conflicts],
    }


@router.post("/sessions/{session_id}/logout-others")
async def logout_others(
    session_id: str, user: User = Depends(current_user)
) -> dict[str, Any]:
    sessions = get_services().sessions
    sessions.owned_by(session_id, user.id)
    invalidated = await sessions.force_logout_others(session_id)
    return {"invalidated": [s.session_id for s in invalidated]}


@router.delete("/sessions/{session_id}")
async def end_session(session_id: str, user: User = Depends(current_user)) -> dict[str, str]:
    sessions = get_services().sessions
    sessions.owned_by(session_id, user.id)
    await sessions.end(session_id)
    return {"status": "ended"}


class WebSocketConnection(ClientConnection):
    """Realtime connection over a FastAPI WebSocket; frames are {event, data}."""

    def __init__(
        self, websocket: WebSocket, user: User, session_id: str | None = None
    ) -> None:
        super().__init__(user, session_id)
        self._websocket = websocket

    async def send(self, event: str, data: Any) -> None:
        try:
            await self._websocket.send_json({"event": event, "data": data})
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise TransportError(f"Connection {self.id} is gone: {exc}") from exc


@router.websocket("/ws")
async def realtime(
    websocket: WebSocket, user_id: str, session_id: str | None = None
) -> None:
    services = get_services()
    user = await services.db.users.find_by_id(user_id)
    if user is None or (session_id and not services.sessions.is_active(session_id)):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    conn = WebSocketConnection(websocket, user, session_id)
    await services.coordinator.connect(conn)
    try:
        while True:
            raw = await websocket.receive_text()
            if session_id and not services.sessions.is_active(session_id):
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                break
            try:
                frame = json.loads(raw)
                if not isinstance(frame, dict):
                    raise ValidationError("Frames must be JSON objects")
                await services.coordinator.handle(conn, frame.get("event"), frame.get("data"))
            except DonorLinkError as exc:
                await websocket.send_json(
                    {"event": "error", "data": {"code": exc.code, "detail": exc.detail}}
                )
            except json.JSONDecodeError:
                await websocket.send_json(
                    {
                        "event": "error",
                        "data": {"code": ValidationError.code, "detail": "Invalid JSON"},
                    }
                )
    except WebSocketDisconnect:
        logger.debug("Client %s disconnected", conn.id)
    finally:
        await services.coordinator.disconnect(conn)


async def handle_domain_error(request: Request, exc: DonorLinkError) -> JSONResponse:
    status_code = next(
        (code for error, code in ERROR_STATUS.items() if isinstance(exc, error)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return JSONResponse(
        status_code=status_code, content={"detail": exc.detail, "code": exc.code}
    )


def create_app() -> FastAPI:
    configure_logging(get_services().settings.log_level)
    app = FastAPI(title="donorlink")
    app.include_router(router)
    app.add_exception_handler(DonorLinkError, handle_domain_error)
    return app
