"""
Starlette middleware that meters API routes in credits.

Flow:
  1. Before the request: check the user can afford the route's operation
     (402 when not).
  2. The request is executed.
  3. After a 2xx response: deduct the operation's cost and report it in
     the X-Credits-Deducted / X-Credits-Remaining headers.
  Failed requests are never charged. A charge that cannot be written
  after the handler ran is logged and the response returned uncharged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..errors import CreditLedgerError, InsufficientCredits, StoreUnavailable
from ..services.credit_service import CreditService


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeteredRoute:
    path_prefix: str
    app_key: str
    operation: str
    methods: Optional[Sequence[str]] = None

    def matches(self, method: str, path: str) -> bool:
        prefix = self.path_prefix.rstrip("/")
        if path != prefix and not path.startswith(prefix + "/"):
            return False
        return self.methods is None or method.upper() in {m.upper() for m in self.methods}


class CreditMeteringMiddleware(BaseHTTPMiddleware):
    """
    Charges a fixed (app_key, operation) cost per successful request on the
    configured routes. The cost comes from the credit cost catalog, so it is
    the same amount the check was made against.
    """

    def __init__(
        self,
        app: Any,
        credit_service: CreditService,
        routes: Sequence[MeteredRoute],
        *,
        user_id_header: str = "X-User-Id",
        request_id_header: str = "X-Request-Id",
    ) -> None:
        super().__init__(app)
        self.credit_service = credit_service
        self.routes = tuple(routes)
        self.user_id_header = user_id_header
        self.request_id_header = request_id_header

    def _route_for(self, request: Request) -> Optional[MeteredRoute]:
        for route in self.routes:
            if route.matches(request.method, request.url.path):
                return route
        return None

    @staticmethod
    def _error(exc: CreditLedgerError) -> JSONResponse:
        content: dict[str, Any] = {"code": exc.code, "detail": exc.message}
        if isinstance(exc, InsufficientCredits):
            content.update(required=exc.required, available=exc.available)
        return JSONResponse(status_code=exc.http_status, content=content)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        route = self._route_for(request)
        if route is None:
            return await call_next(request)

        user_id = request.headers.get(self.user_id_header)
        if not user_id:
            return JSONResponse(
                status_code=401,
                content={"detail": f"Missing user identification ({self.user_id_header} header)."},
            )

        try:
            check = await self.credit_service.check_credits(user_id, route.app_key, route.operation)
        except CreditLedgerError as exc:
            return self._error(exc)
        if not check.sufficient:
            return self._error(InsufficientCredits(required=check.cost, available=check.balance))

        response = await call_next(request)
        if not 200 <= response.status_code < 300:
            return response

        try:
            result = await self.credit_service.deduct_credits(
                user_id,
                route.app_key,
                route.operation,
                reference_id=request.headers.get(self.request_id_header),
            )
        except (InsufficientCredits, StoreUnavailable) as exc:
            # Spent by a concurrent request after the check, or the store failed
            logger.warning(
                "Credit middleware: could not charge %s for %s: %s",
                user_id,
                request.url.path,
                exc.message,
            )
            return response

        response.headers["X-Credits-Deducted"] = str(check.cost)
        response.headers["X-Credits-Remaining"] = str(result.new_balance)
        return response
