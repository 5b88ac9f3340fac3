from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_admin.context import get_correlation_id
from crm_admin.core.auth import Identity


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    client_ip: str | None
    user_agent: str | None


def resolve_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client is not None:
        return request.client.host
    return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None)
        request.state.context = RequestContext(
            request_id=correlation_id or "",
            correlation_id=correlation_id or "",
            user_id=None,
            client_ip=resolve_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response


@dataclass(frozen=True)
class ActorUser:
    """The verified caller plus the request facts recorded in the audit trail."""

    identity: Identity
    client_ip: str | None = None
    user_agent: str | None = None
    correlation_id: str | None = None

    @property
    def user_id(self) -> str:
        return self.identity.actor_id

    @classmethod
    def from_request(cls, request: Request, identity: Identity) -> "ActorUser":
        context = getattr(request.state, "context", None)
        return cls(
            identity=identity,
            client_ip=context.client_ip if context is not None else resolve_client_ip(request),
            user_agent=context.user_agent if context is not None else request.headers.get("user-agent"),
            correlation_id=get_correlation_id(),
        )
