"""
Chat Reply Webhook - driver replies from the group chat bridge

The bridge forwards every message a driver posts; only a message naming
exactly one order reference counts as an acceptance.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from fleet_dispatch.api.dependencies.engine import get_engine
from fleet_dispatch.api.routes.orders import AcceptOutcomeResponse
from fleet_dispatch.core.logging import get_logger
from fleet_dispatch.domain.services.dispatch_engine import DispatchEngine

logger = get_logger(__name__)

router = APIRouter()


class ChatReply(BaseModel):
    driver_id: str
    text: str = Field(max_length=2000)


@router.post("/replies", response_model=AcceptOutcomeResponse)
async def receive_reply(
    body: ChatReply,
    engine: DispatchEngine = Depends(get_engine),
):
    logger.info("Chat reply received", extra_data={"driver_id": body.driver_id})
    outcome = await engine.submit_reply(body.driver_id, body.text)
    return AcceptOutcomeResponse.from_outcome(outcome)
