"""
Engine dependency.

The dispatch engine is built once at start-up and parked on ``app.state``;
routes receive it through ``Depends(get_engine)`` and tests swap it via
``app.dependency_overrides[get_engine]``.
"""
from fastapi import Request

from fleet_dispatch.domain.services.dispatch_engine import DispatchEngine


async def get_engine(request: Request) -> DispatchEngine:
    return request.app.state.dispatch_engine
