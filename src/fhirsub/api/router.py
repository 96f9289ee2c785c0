"""
FastAPI router for the fhirsub API.

Endpoints:
- POST   /Subscription                 - Register a subscription (FHIR Subscription resource)
- GET    /Subscription                 - List subscriptions (Bundle)
- GET    /Subscription/{id}            - Read a subscription
- DELETE /Subscription/{id}            - Turn a subscription off (?purge=true removes it)
- GET    /Subscription/{id}/$channel   - State of the subscription's channel

Resource writes (no persistence, dispatch only):
- POST   /{ResourceType}               - Create; the server assigns the id
- PUT    /{ResourceType}/{id}          - Update with a client-chosen id

WebSocket:
- /websocket                           - "bind <id>" notification channel

Errors are reported as FHIR OperationOutcome in the HTTPException detail:
422 for validation failures, 404 for unknown subscription ids.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response, WebSocket

from ..app import SubscriptionServer
from ..core.errors import NotFound, ValidationError
from ..core.types import ChannelInfo, SubscriptionIn


# Create router
router = APIRouter()


def get_server(request: Request) -> SubscriptionServer:
    """Get the server owning this app."""
    return request.app.state.server


def operation_outcome(code: str, diagnostics: list[str]) -> dict[str, Any]:
    """Build a FHIR OperationOutcome with one issue per message."""
    return {
        "resourceType": "OperationOutcome",
        "issue": [
            {"severity": "error", "code": code, "diagnostics": message}
            for message in diagnostics
        ],
    }


def validation_failed(error: ValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail=operation_outcome("invalid", error.errors))


def not_found(error: NotFound) -> HTTPException:
    return HTTPException(status_code=404, detail=operation_outcome("not-found", [str(error)]))


# === Subscriptions ===

@router.post("/Subscription", status_code=201)
async def create_subscription(
    body: SubscriptionIn,
    response: Response,
    server: SubscriptionServer = Depends(get_server),
) -> dict[str, Any]:
    """
    Register a subscription.

    Example request:
        {
            "resourceType": "Subscription",
            "criteria": "Observation?subject=Patient/1",
            "channel": {"type": "websocket"}
        }

    Returns the stored resource with its assigned id and status "active".
    """
    try:
        subscription = await server.create_subscription(body)
    except ValidationError as e:
        raise validation_failed(e)

    response.headers["Location"] = f"Subscription/{subscription.id}"
    return subscription.to_fhir()


@router.get("/Subscription")
async def list_subscriptions(
    status: Optional[str] = Query(None, description="Only subscriptions with this status"),
    server: SubscriptionServer = Depends(get_server),
) -> dict[str, Any]:
    """List subscriptions as a FHIR searchset Bundle."""
    subscriptions = server.registry.list_subscriptions()
    if status:
        subscriptions = [s for s in subscriptions if s.status.value == status]

    return {
        "resourceType": "Bundle",
        "type": "searchset",
        "total": len(subscriptions),
        "entry": [{"resource": s.to_fhir()} for s in subscriptions],
    }


@router.get("/Subscription/{subscription_id}")
async def read_subscription(
    subscription_id: str,
    server: SubscriptionServer = Depends(get_server),
) -> dict[str, Any]:
    try:
        return server.registry.get(subscription_id).to_fhir()
    except NotFound as e:
        raise not_found(e)


@router.get("/Subscription/{subscription_id}/$channel")
async def read_channel(
    subscription_id: str,
    server: SubscriptionServer = Depends(get_server),
) -> Optional[ChannelInfo]:
    """Channel snapshot for a subscription; null when nothing is attached."""
    try:
        server.registry.get(subscription_id)
    except NotFound as e:
        raise not_found(e)
    return server.channels.info(subscription_id)


@router.delete("/Subscription/{subscription_id}", status_code=204)
async def delete_subscription(
    subscription_id: str,
    purge: bool = Query(False, description="Remove the subscription instead of turning it off"),
    server: SubscriptionServer = Depends(get_server),
) -> Response:
    """Deactivate (or with purge, remove) a subscription and close its channel."""
    try:
        await server.delete_subscription(subscription_id, purge=purge)
    except NotFound as e:
        raise not_found(e)
    return Response(status_code=204)


# === Resource writes ===

@router.post("/{resource_type}", status_code=201)
async def create_resource(
    resource_type: str,
    response: Response,
    body: dict[str, Any] = Body(...),
    server: SubscriptionServer = Depends(get_server),
) -> dict[str, Any]:
    """Accept a new resource and notify matching subscriptions."""
    _check_resource_type(server, resource_type)
    try:
        resource, _ = await server.write_resource(resource_type, body)
    except ValidationError as e:
        raise validation_failed(e)

    response.headers["Location"] = f"{resource.type}/{resource.id}"
    return resource.as_dict()


@router.put("/{resource_type}/{resource_id}")
async def update_resource(
    resource_type: str,
    resource_id: str,
    body: dict[str, Any] = Body(...),
    server: SubscriptionServer = Depends(get_server),
) -> dict[str, Any]:
    """Accept an updated resource and notify matching subscriptions."""
    _check_resource_type(server, resource_type)
    try:
        resource, _ = await server.write_resource(resource_type, body, resource_id)
    except ValidationError as e:
        raise validation_failed(e)
    return resource.as_dict()


def _check_resource_type(server: SubscriptionServer, resource_type: str) -> None:
    if resource_type == "Subscription":
        raise HTTPException(
            status_code=405,
            detail=operation_outcome("not-supported", ["Subscriptions are managed through POST /Subscription"]),
        )
    if resource_type not in server.parser.resource_types:
        raise HTTPException(
            status_code=404,
            detail=operation_outcome("not-supported", [f"Unknown resource type '{resource_type}'"]),
        )


# === WebSocket ===

@router.websocket("/websocket")
async def websocket_endpoint(websocket: WebSocket):
    """
    Notification channel.

    Protocol:
        -> bind 5
        <- bound 5
        <- 5            (one frame per matched write, payload none)
        -> ping
        <- pong
    """
    server: SubscriptionServer = websocket.app.state.server
    await server.websocket_router.handle_connection(websocket)
