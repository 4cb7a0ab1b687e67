import logging
import secrets
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from storyround.errors import ValidationError
from storyround.models.dc_models import (
    ConfirmPaymentModel,
    IntentRequestModel,
    IntentResponseModel,
    PaymentResultModel,
    RoundStatusModel,
    StoryRequestModel,
    TallyEntryModel,
    VoteRequestModel,
    VoteResultModel,
)
from storyround.redis_subscriber import RedisSubscriber

rest_router = APIRouter()
security = HTTPBasic(auto_error=False)


def get_services(request: Request):
    return request.app.state.services


def check_relay(
    request: Request, credentials: HTTPBasicCredentials | None = Depends(security)
) -> None:
    """Require the payment relay's basic credentials when they are configured."""
    services = request.app.state.services
    if not services.relay_username:
        return
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    username = secrets.compare_digest(credentials.username, services.relay_username)
    password = secrets.compare_digest(credentials.password, services.relay_password or "")
    if not (username and password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
            headers={"WWW-Authenticate": "Basic"},
        )


class RoundAPI:
    @staticmethod
    @rest_router.get("/", response_model=RoundStatusModel)
    async def get_status(services=Depends(get_services)):
        return services.engine.status()

    @staticmethod
    @rest_router.get("/tally", response_model=List[TallyEntryModel])
    async def get_tally(services=Depends(get_services)):
        return services.engine.tally()

    @staticmethod
    @rest_router.get("/tally/stream")
    async def stream_tally(services=Depends(get_services)):
        subscriber = RedisSubscriber(services.engine.tally())
        return StreamingResponse(
            subscriber.event_generator(services.redis), media_type="text/event-stream"
        )

    @staticmethod
    @rest_router.post("/vote", response_model=VoteResultModel)
    async def vote(body: VoteRequestModel, services=Depends(get_services)):
        return await services.engine.cast_vote(body.voter_id, body.target_id)


class EntryAPI:
    @staticmethod
    @rest_router.post("/intents", response_model=IntentResponseModel)
    async def create_intent(body: IntentRequestModel, services=Depends(get_services)):
        try:
            intent = await services.pipeline.create_intent(body.user_id, body.choice)
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.detail)
        return IntentResponseModel(
            reference=intent.reference,
            choice=intent.choice,
            payment_link=services.pipeline.payment_link(intent),
            expires_in=services.config.payment_timeout,
        )

    @staticmethod
    @rest_router.post("/intents/story", response_model=IntentResponseModel)
    async def submit_story(body: StoryRequestModel, services=Depends(get_services)):
        try:
            intent = await services.pipeline.submit_story(
                body.user_id, body.display_name, body.story, body.content_duration
            )
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.detail)
        return IntentResponseModel(
            reference=intent.reference,
            choice=intent.choice,
            payment_link=services.pipeline.payment_link(intent),
            expires_in=services.config.payment_timeout,
        )


class PaymentAPI:
    @staticmethod
    @rest_router.post(
        "/confirm-payment",
        response_model=PaymentResultModel,
        dependencies=[Depends(check_relay)],
    )
    async def confirm_payment(body: ConfirmPaymentModel, services=Depends(get_services)):
        try:
            return await services.pipeline.process_confirmed_payment(
                body.reference, body.user_id, body.amount, body.sender_wallet
            )
        except ValidationError as e:
            logging.info(f"Rejected payment confirmation: {e.detail}")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.detail)
