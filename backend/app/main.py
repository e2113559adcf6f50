from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Form, HTTPException, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from petsos.errors import Forbidden, InvalidArgument, InvalidState, NotFound, PetSOSError
from petsos.live_sync import CallbackTransport, PushChannel, SyncEvent, responder_topic
from petsos.models import Coordinates, DistressCase
from petsos.system import PetEmergencySystem, build_system

from .auth import Principal, decode_token, get_principal, role_guard
from .config import ADVISORY_WORKERS, CORS_ORIGINS, ROLE_REPORTER, ROLE_RESPONDER

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = {
    InvalidArgument: status.HTTP_400_BAD_REQUEST,
    Forbidden: status.HTTP_403_FORBIDDEN,
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidState: status.HTTP_409_CONFLICT,
}


def get_system(request: Request) -> PetEmergencySystem:
    return request.app.state.system


def can_view(principal: Principal, reporter_id: str, selected_responder_id: Optional[str]) -> bool:
    """Reporters see their own cases; once a responder is selected, only that responder joins them."""
    if principal.role == ROLE_REPORTER:
        return reporter_id == principal.user_id
    return selected_responder_id is None or selected_responder_id == principal.user_id


def ensure_can_view(case: DistressCase, principal: Principal) -> None:
    if not can_view(principal, case.reporter_id, case.selected_responder_id):
        raise Forbidden(f"case {case.case_id} is only visible to its reporter and selected responder")


def _nearby_payload(system: PetEmergencySystem, nearby) -> dict:
    return {
        "cases": [item.to_dict() for item in nearby],
        "interval_seconds": system.settings.nearby_poll_seconds,
    }


async def _stream_topic(
    websocket: WebSocket,
    system: PetEmergencySystem,
    topic: str,
    visible: Optional[Callable[[SyncEvent], bool]] = None,
) -> None:
    """Forward channel events for ``topic`` to one websocket until the client leaves.

    When ``visible`` rejects an event the session is told it was revoked and
    closed, and nothing past that point reaches it.
    """
    channel = system.channel
    if not isinstance(channel, PushChannel) or not isinstance(channel.transport, CallbackTransport):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="live sync runs in poll mode")
        return

    await websocket.accept()
    session_id = uuid4().hex
    queue: asyncio.Queue = asyncio.Queue()
    loop = asyncio.get_running_loop()
    channel.transport.register(session_id, lambda event: loop.call_soon_threadsafe(queue.put_nowait, event))
    system.subscribe(topic, session_id)

    async def pump() -> None:
        while True:
            event = await queue.get()
            if visible is not None and not visible(event):
                system.unsubscribe(topic, session_id)
                await websocket.send_json({"type": "revoked", "topic": topic})
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                logger.info("websocket session %s lost access to %s", session_id, topic)
                return
            await websocket.send_json(event.to_dict())

    await websocket.send_json({"type": "subscribed", "topic": topic})
    sender = asyncio.create_task(pump())
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        sender.cancel()
        system.disconnect(session_id)
        channel.transport.unregister(session_id)
        logger.debug("websocket session %s left %s", session_id, topic)


def _socket_principal(token: str) -> Optional[Principal]:
    try:
        return decode_token(token)
    except HTTPException:
        return None


def create_app(system: Optional[PetEmergencySystem] = None) -> FastAPI:
    if system is None:
        system = build_system(executor=ThreadPoolExecutor(max_workers=ADVISORY_WORKERS))

    app = FastAPI(title="PetSOS Distress Coordination")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.system = system

    @app.exception_handler(PetSOSError)
    async def handle_case_error(request: Request, exc: PetSOSError) -> JSONResponse:
        return JSONResponse(status_code=STATUS_BY_ERROR.get(type(exc), 400), content=exc.to_dict())

    @app.get("/health")
    def health():
        return {"status": "ok", "sync_mode": "push" if system.channel.supports_push else "poll"}

    @app.post("/cases")
    def create_case(
        description: str = Form(...),
        latitude: float = Form(...),
        longitude: float = Form(...),
        principal: Principal = Depends(get_principal),
        system: PetEmergencySystem = Depends(get_system),
    ):
        role_guard(principal, ROLE_REPORTER)
        result = system.report_distress(
            principal.user_id, Coordinates(latitude=latitude, longitude=longitude), description
        )
        return {
            "case": result.case.to_dict(),
            "notified_responders": [
                {"responder_id": match.responder_id, "distance_meters": round(match.distance_meters, 1)}
                for match in result.matches
            ],
        }

    @app.get("/cases/active")
    def active_case(principal: Principal = Depends(get_principal), system: PetEmergencySystem = Depends(get_system)):
        role_guard(principal, ROLE_REPORTER)
        case = system.cases.active_case_for(principal.user_id)
        if case is None:
            raise NotFound(f"reporter {principal.user_id} has no open case")
        return case.to_dict()

    @app.get("/cases/nearby")
    def nearby_cases(principal: Principal = Depends(get_principal), system: PetEmergencySystem = Depends(get_system)):
        role_guard(principal, ROLE_RESPONDER)
        return _nearby_payload(system, system.nearby_cases(principal.user_id))

    @app.get("/cases/mine")
    def my_cases(principal: Principal = Depends(get_principal), system: PetEmergencySystem = Depends(get_system)):
        role_guard(principal, ROLE_RESPONDER)
        return [
            case.to_dict()
            for case in system.cases.cases_for_responder(principal.user_id)
            if can_view(principal, case.reporter_id, case.selected_responder_id)
        ]

    @app.get("/cases/{case_id}")
    def get_case(
        case_id: str, principal: Principal = Depends(get_principal), system: PetEmergencySystem = Depends(get_system)
    ):
        case = system.cases.get_case(case_id)
        ensure_can_view(case, principal)
        return case.to_dict()

    @app.get("/cases/{case_id}/poll")
    def poll_case(
        case_id: str,
        since: Optional[int] = None,
        principal: Principal = Depends(get_principal),
        system: PetEmergencySystem = Depends(get_system),
    ):
        ensure_can_view(system.cases.get_case(case_id), principal)
        return system.poll_case(case_id, since).to_dict()

    @app.post("/cases/{case_id}/offers")
    def submit_offer(
        case_id: str,
        mode: str = Form(...),
        message: str = Form(""),
        eta_minutes: Optional[float] = Form(None),
        principal: Principal = Depends(get_principal),
        system: PetEmergencySystem = Depends(get_system),
    ):
        role_guard(principal, ROLE_RESPONDER)
        case = system.submit_offer(case_id, principal.user_id, mode, message=message, eta_minutes=eta_minutes)
        return case.to_dict()

    @app.post("/cases/{case_id}/select")
    def select_responder(
        case_id: str,
        responder_id: str = Form(...),
        mode: Optional[str] = Form(None),
        principal: Principal = Depends(get_principal),
        system: PetEmergencySystem = Depends(get_system),
    ):
        case = system.select_responder(case_id, principal.user_id, responder_id, mode)
        return case.to_dict()

    @app.post("/cases/{case_id}/location")
    def update_location(
        case_id: str,
        latitude: float = Form(...),
        longitude: float = Form(...),
        principal: Principal = Depends(get_principal),
        system: PetEmergencySystem = Depends(get_system),
    ):
        system.update_location(case_id, principal.user_id, Coordinates(latitude=latitude, longitude=longitude))
        return {"ok": True, "case_id": case_id}

    @app.post("/cases/{case_id}/resolve")
    def resolve_case(
        case_id: str, principal: Principal = Depends(get_principal), system: PetEmergencySystem = Depends(get_system)
    ):
        return system.resolve(case_id, principal.user_id).to_dict()

    @app.post("/cases/{case_id}/cancel")
    def cancel_case(
        case_id: str, principal: Principal = Depends(get_principal), system: PetEmergencySystem = Depends(get_system)
    ):
        return system.cancel(case_id, principal.user_id).to_dict()

    @app.post("/responders/heartbeat")
    def responder_heartbeat(
        latitude: float = Form(...),
        longitude: float = Form(...),
        principal: Principal = Depends(get_principal),
        system: PetEmergencySystem = Depends(get_system),
    ):
        role_guard(principal, ROLE_RESPONDER)
        nearby = system.responder_heartbeat(principal.user_id, Coordinates(latitude=latitude, longitude=longitude))
        return _nearby_payload(system, nearby)

    @app.post("/responders/availability")
    def responder_availability(
        available: bool = Form(...),
        principal: Principal = Depends(get_principal),
        system: PetEmergencySystem = Depends(get_system),
    ):
        role_guard(principal, ROLE_RESPONDER)
        nearby = system.set_availability(principal.user_id, available)
        return {"available": available, **_nearby_payload(system, nearby)}

    @app.get("/responders/inbox/poll")
    def poll_inbox(
        since: Optional[int] = None,
        principal: Principal = Depends(get_principal),
        system: PetEmergencySystem = Depends(get_system),
    ):
        role_guard(principal, ROLE_RESPONDER)
        return system.poll_inbox(principal.user_id, since).to_dict()

    @app.websocket("/ws/cases/{case_id}")
    async def case_socket(websocket: WebSocket, case_id: str, token: str = ""):
        principal = _socket_principal(token)
        case = system.store.load_case(case_id)
        if principal is None or case is None:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        if not can_view(principal, case.reporter_id, case.selected_responder_id):
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        def visible(event: SyncEvent) -> bool:
            return can_view(principal, event.snapshot["reporter_id"], event.snapshot.get("selected_responder_id"))

        await _stream_topic(websocket, system, case_id, visible)

    @app.websocket("/ws/inbox")
    async def inbox_socket(websocket: WebSocket, token: str = ""):
        principal = _socket_principal(token)
        if principal is None or principal.role != ROLE_RESPONDER:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        await _stream_topic(websocket, system, responder_topic(principal.user_id))

    return app


app = create_app()
