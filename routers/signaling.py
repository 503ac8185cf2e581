from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import ValidationError
from schemas.signaling import (
    SdpRequest, SignalResponse, CandidateRequest, CandidatesResponse,
    EndRoomRequest, AckResponse, EndRoomResponse, RoomStatusResponse,
)
from backend import SignalBackend, get_signal_backend
from constants import ROLES, SIGNALING_PREFIX
from typing import Optional
from logging_config import get_logger

logger = get_logger(__name__)

signaling_router = APIRouter(prefix=SIGNALING_PREFIX, tags=["signaling"])


def client_host(request: Request) -> str:
    return request.client.host if request and request.client else "unknown"


@signaling_router.post("/{room_id}/offer", response_model=AckResponse)
async def post_offer(room_id: str, body: SdpRequest, request: Request,
                     backend: SignalBackend = Depends(get_signal_backend)):
    # Host publishes (or re-publishes, for renegotiation) its session description
    if not body.sdp:
        logger.warning(f"Offer rejected for room {room_id} from {client_host(request)}: missing sdp")
        raise HTTPException(status_code=400, detail="Missing sdp")
    signal = backend.set_offer(room_id, body.sdp)
    logger.info(f"Offer stored for room {room_id} from {client_host(request)} ({len(body.sdp)} bytes, ts={signal.timestamp})")
    return AckResponse()


@signaling_router.get("/{room_id}/offer", response_model=SignalResponse)
async def get_offer(room_id: str, backend: SignalBackend = Depends(get_signal_backend)):
    signal = backend.get_offer(room_id)
    if signal is None:
        # Guests poll here until the host has posted; not an error
        logger.debug(f"No offer yet for room {room_id}")
        raise HTTPException(status_code=404, detail="No offer")
    return SignalResponse(sdp=signal.sdp, timestamp=signal.timestamp)


@signaling_router.post("/{room_id}/answer", response_model=AckResponse)
async def post_answer(room_id: str, body: SdpRequest, request: Request,
                      backend: SignalBackend = Depends(get_signal_backend)):
    if not body.sdp:
        logger.warning(f"Answer rejected for room {room_id} from {client_host(request)}: missing sdp")
        raise HTTPException(status_code=400, detail="Missing sdp")
    signal = backend.set_answer(room_id, body.sdp)
    logger.info(f"Answer stored for room {room_id} from {client_host(request)} ({len(body.sdp)} bytes, ts={signal.timestamp})")
    return AckResponse()


@signaling_router.get("/{room_id}/answer", response_model=SignalResponse)
async def get_answer(room_id: str, backend: SignalBackend = Depends(get_signal_backend)):
    signal = backend.get_answer(room_id)
    if signal is None:
        logger.debug(f"No answer yet for room {room_id}")
        raise HTTPException(status_code=404, detail="No answer")
    return SignalResponse(sdp=signal.sdp, timestamp=signal.timestamp)


@signaling_router.post("/{room_id}/candidates", response_model=AckResponse)
async def post_candidate(room_id: str, body: CandidateRequest, request: Request,
                         backend: SignalBackend = Depends(get_signal_backend)):
    # POST /{room_id}/candidates Body: { "candidate": <opaque>, "from": "host" | "guest" }
    # The candidate goes into the sender's own queue; the other role drains it.
    if body.candidate is None or body.candidate == "" or not body.sender:
        logger.warning(f"Candidate rejected for room {room_id} from {client_host(request)}: missing candidate or from")
        raise HTTPException(status_code=400, detail="Missing candidate or from")
    if body.sender not in ROLES:
        logger.warning(f"Candidate rejected for room {room_id}: unknown role {body.sender!r}")
        raise HTTPException(status_code=400, detail="from must be 'host' or 'guest'")
    backend.push_candidate(room_id, body.sender, body.candidate)
    return AckResponse()


@signaling_router.get("/{room_id}/candidates", response_model=CandidatesResponse)
async def get_candidates(
    room_id: str,
    role: Optional[str] = Query(None, description="Role of the caller; the OTHER role's candidates are returned"),
    backend: SignalBackend = Depends(get_signal_backend),
):
    """
    Drain the candidates addressed to `role`.

    A host receives what the guest posted and a guest receives what the host
    posted. The returned candidates are removed from the room, so each one is
    delivered at most once; an empty list just means nothing new arrived.
    """
    if not role:
        logger.debug(f"Candidate poll for room {room_id} without role")
        raise HTTPException(status_code=404, detail="No candidates or role not provided")
    if role not in ROLES:
        logger.warning(f"Candidate poll for room {room_id} with unknown role {role!r}")
        raise HTTPException(status_code=400, detail="role must be 'host' or 'guest'")
    candidates = backend.drain_candidates(room_id, role)
    if candidates is None:
        logger.debug(f"Candidate poll for missing room {room_id}")
        raise HTTPException(status_code=404, detail="No candidates or role not provided")
    return CandidatesResponse(candidates=candidates)


@signaling_router.post("/{room_id}/end", response_model=EndRoomResponse)
async def end_room(room_id: str, request: Request, backend: SignalBackend = Depends(get_signal_backend)):
    # POST /{room_id}/end Body (optional): { "role": "host" | "guest" }
    # - host: the room and all its signals are deleted
    # - anyone else: acknowledged only, the host may still be in the room
    # Never fails, so an unreadable body counts as "no role".
    role = None
    try:
        payload = await request.json()
        role = EndRoomRequest.model_validate(payload).role
    except (ValueError, ValidationError) as e:
        logger.debug(f"End request for room {room_id} without a usable body: {e}")

    if not backend.room_exists(room_id):
        logger.info(f"End request for room {room_id} by {role or 'unknown role'}: already cleaned up")
        return EndRoomResponse(message="Room already cleaned up")

    if role == "host":
        if backend.delete_room(room_id):
            logger.info(f"Room {room_id} cleaned up by host")
            return EndRoomResponse(message="Room cleaned up")
        # Deleted by a concurrent request between the two calls
        return EndRoomResponse(message="Room already cleaned up")

    logger.info(f"Guest left room {room_id}")
    return EndRoomResponse(message="Guest left")


@signaling_router.get("/{room_id}", response_model=RoomStatusResponse)
async def get_room_status(room_id: str, backend: SignalBackend = Depends(get_signal_backend)):
    """
    Room details for diagnostics.

    Returns creation and activity timestamps, whether an offer and answer are
    present, how many candidates wait in each queue, and when each role was
    last seen. Reading the status does not count as activity.
    """
    status = backend.get_room_status(room_id)
    if status is None:
        logger.debug(f"Room status requested for missing room {room_id}")
        raise HTTPException(status_code=404, detail="Room not found")
    return RoomStatusResponse(**status)
