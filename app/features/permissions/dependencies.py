"""
FastAPI dependencies for route protection.

Implements:
- Principal lookup from the authentication layer
- Operation enforcement through the EnforcementPoint
- Ability-based policy checks
"""
import json
from typing import Any, Dict, Optional
from fastapi import Depends, HTTPException, Request, status

from app.features.permissions.ability import Ability
from app.features.permissions.enforcement import EnforcementPoint, PolicyHandler, RequestContext
from app.features.permissions.schemas import Decision, Principal
from app.utils import get_logger


log = get_logger(__name__)

FORBIDDEN_DETAIL = "Forbidden"


def forbidden() -> HTTPException:
    # Denial reasons go to the audit trail, never to the client
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=FORBIDDEN_DETAIL)


def get_principal(request: Request) -> Optional[Principal]:
    """
    Principal placed on ``request.state`` by the authentication middleware.

    Tokens are verified upstream; this only reads the result.
    """
    return getattr(request.state, "principal", None)


def get_enforcement_point(request: Request) -> EnforcementPoint:
    engine = getattr(request.app.state, "authz", None)
    if engine is None:
        log.error("Authorization engine not initialized")
        raise forbidden()
    return engine


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client:
        return request.client.host
    return "unknown"


async def _json_body(request: Request) -> Optional[Dict[str, Any]]:
    if request.method in ("GET", "HEAD", "DELETE", "OPTIONS"):
        return None
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        body = json.loads(await request.body() or b"null")
    except (ValueError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


async def build_request_context(
    request: Request,
    principal: Optional[Principal] = Depends(get_principal),
) -> RequestContext:
    return RequestContext(
        principal=principal,
        path_params=dict(request.path_params),
        body=await _json_body(request),
        query=dict(request.query_params),
        client_ip=get_client_ip(request),
    )


def require_operation(operation_id: str):
    """
    FastAPI dependency enforcing the permission declared for an operation.

    Usage:
        @router.patch("/projects/{projectId}/issues/{issue_id}")
        async def update_issue(
            ...,
            decision: Decision = Depends(require_operation("issues.update"))
        ):
            pass

    Returns:
        Dependency function that returns the Decision when access is allowed

    Raises:
        HTTPException: 403 on any denial
    """
    async def operation_dependency(
        ctx: RequestContext = Depends(build_request_context),
        engine: EnforcementPoint = Depends(get_enforcement_point),
    ) -> Decision:
        decision = await engine.enforce_operation(operation_id, ctx)
        if not decision.allowed:
            raise forbidden()
        return decision

    return operation_dependency


def check_policies(*handlers: PolicyHandler):
    """
    FastAPI dependency requiring every handler to accept the caller's ability.

    Usage:
        @router.get("/projects/{projectId}/settings")
        async def settings(
            _: Decision = Depends(check_policies(lambda ability: ability.can("update", "Project")))
        ):
            pass
    """
    async def policy_dependency(
        ctx: RequestContext = Depends(build_request_context),
        engine: EnforcementPoint = Depends(get_enforcement_point),
    ) -> Decision:
        decision = await engine.check_policies(ctx, *handlers)
        if not decision.allowed:
            raise forbidden()
        return decision

    return policy_dependency


async def get_ability(
    ctx: RequestContext = Depends(build_request_context),
    engine: EnforcementPoint = Depends(get_enforcement_point),
) -> Ability:
    """Caller's ability in the request's project, for handlers that check instances themselves."""
    if ctx.principal is None:
        raise forbidden()
    ability = await engine.ability_for(ctx)
    if isinstance(ability, Decision):
        raise forbidden()
    return ability
