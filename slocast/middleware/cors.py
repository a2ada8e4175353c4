"""
Permissive CORS Middleware.

Job handlers are invoked by an external scheduler and by browser tooling of
the surrounding platform. Every response carries the same fixed headers and
any OPTIONS request is answered with an empty 200 before routing.
"""

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


class PermissiveCORSMiddleware(BaseHTTPMiddleware):
    """Outermost middleware so error envelopes carry the headers too."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)
        response = await call_next(request)
        for header, value in CORS_HEADERS.items():
            response.headers[header] = value
        return response
