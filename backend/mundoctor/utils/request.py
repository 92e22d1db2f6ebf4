"""
Request helpers shared by middleware and policy dependencies
"""

from fastapi import Request

from ..models import RequestContext


def get_client_ip(request: Request) -> str:
    """
    Get client IP address from request
    """
    # Check for forwarded headers first (behind proxy)
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


def build_request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        method=request.method,
        path=request.url.path,
    )


def route_template(request: Request) -> str:
    """Path template of the matched route (``/api/users/{id}``), falling back to the raw path"""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path
