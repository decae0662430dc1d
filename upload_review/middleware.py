# middleware.py
import time
from typing import Optional

import httpx
import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)

USER_HEADER = "x-user-email"
PUBLIC_PATHS = {"/health", "/docs", "/openapi.json"}

PERMISSION_UPLOAD = "imf:upload"
PERMISSION_READ = "imf:read"
PERMISSION_APPROVE = "imf:approve"
PERMISSION_REJECT = "imf:reject"
PERMISSION_PURGE = "imf:purge"


class AuthMiddleware:
    """
    Checks the service bearer token and resolves the acting user.
    The user identity lands on ``request.state.user``.
    """

    def __init__(self, app, service_token: Optional[str] = None):
        self.app = app
        self.service_token = service_token

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or scope["path"] in PUBLIC_PATHS:
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive=receive)
        auth_header = request.headers.get("authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            response = JSONResponse(
                {"error": "unauthorized", "message": "Authorization header missing or invalid", "code": 401},
                status_code=401,
            )
            await response(scope, receive, send)
            return

        token = auth_header.split(" ", 1)[1]
        if self.service_token and token != self.service_token:
            response = JSONResponse(
                {"error": "unauthorized", "message": "Invalid token", "code": 401},
                status_code=401,
            )
            await response(scope, receive, send)
            return

        user = request.headers.get(USER_HEADER)
        if not user:
            response = JSONResponse(
                {"error": "bad_request", "message": "missing user email", "code": 400},
                status_code=400,
            )
            await response(scope, receive, send)
            return

        scope.setdefault("state", {})["user"] = user
        await self.app(scope, receive, send)


class RequestLoggingMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        status_holder = {"status": 500}

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                status_holder["status"] = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            logger.info(
                "http.request",
                method=scope["method"],
                path=scope["path"],
                status=status_holder["status"],
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )


class AllowAllPermissionChecker:
    """Used when no permission service is configured."""

    async def has_permission(self, identity: str, permission: str) -> bool:
        return True


class RemotePermissionChecker:
    """
    Asks an external permissions endpoint whether ``identity`` holds ``permission``.
    Expects ``{"allowed": true|false}`` back.
    """

    def __init__(self, url: str, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 5.0):
        self.url = url
        self._transport = transport
        self._timeout = timeout

    async def has_permission(self, identity: str, permission: str) -> bool:
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            try:
                resp = await client.post(self.url, json={"user": identity, "permission": permission})
            except httpx.RequestError as e:
                raise HTTPException(
                    status_code=503,
                    detail={"error": "auth_unavailable", "message": f"Auth service unreachable: {str(e)}", "code": 503},
                ) from e

        if resp.status_code != 200:
            return False
        return bool(resp.json().get("allowed"))


def get_current_user(request: Request) -> str:
    user = getattr(request.state, "user", None)
    if not user:
        raise HTTPException(status_code=401, detail={"error": "unauthorized", "message": "no user", "code": 401})
    return user


def require_permission(permission: str):
    """Dependency factory: resolves to the acting user once ``permission`` is granted."""

    async def dependency(request: Request, user: str = Depends(get_current_user)) -> str:
        checker = request.app.state.permission_checker
        if not await checker.has_permission(user, permission):
            logger.info("auth.forbidden", user=user, permission=permission)
            raise HTTPException(
                status_code=403,
                detail={"error": "forbidden", "message": f"missing permission {permission}", "code": 403},
            )
        return user

    return dependency
