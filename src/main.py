from __future__ import annotations

from typing import Dict, List, Literal, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger
from pydantic import BaseModel, Field

from config import Configuration
from models import Location, ParticipantResponse, Recommendation, Restaurant, Session
from services.batches import BatchView
from services.coordinator import GroupCoordinator
from services.errors import (
    ConflictError,
    CoordinatorError,
    InvalidInputError,
    JoinCodeExhaustedError,
    NoSurvivorsError,
    NotFoundError,
    PermissionDeniedError,
    ProviderUnavailableError,
)
from services.join_code import format_join_code
from services.ranking import RankingOptions
from services.responses import EliminationKind
from services.stages import parse_stage

_STATUS_BY_ERROR = [
    (NotFoundError, 404),
    (InvalidInputError, 400),
    (PermissionDeniedError, 403),
    (NoSurvivorsError, 409),
    (ConflictError, 409),
    (ProviderUnavailableError, 502),
    (JoinCodeExhaustedError, 503),
]


class CreateSessionRequest(BaseModel):
    admin_id: str = Field(..., min_length=1, description="Anonymous id of the creating participant")
    admin_name: Optional[str] = None
    zip_code: Optional[str] = Field(None, description="US ZIP to geocode when no coordinates are given")
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    radius_m: Optional[float] = Field(None, gt=0)


class JoinRequest(BaseModel):
    join_code: str
    user_id: str = Field(..., min_length=1)
    user_name: Optional[str] = None


class EliminationRequest(BaseModel):
    user_id: str
    kind: EliminationKind
    key: str = Field(..., min_length=1)
    eliminated: Optional[bool] = Field(None, description="Explicit state; omit to toggle")


class StageRequest(BaseModel):
    user_id: str
    action: Literal["advance", "jump"] = "advance"
    target: Optional[str] = None


class FavoriteRequest(BaseModel):
    actor_id: str
    place_id: str
    favorited: bool = True


class ActorRequest(BaseModel):
    user_id: str


class RestaurantPayload(BaseModel):
    place_id: str
    name: str
    vicinity: str = ""
    rating: Optional[float] = None
    user_ratings_total: Optional[int] = None
    price_level: Optional[int] = None
    types: List[str] = []


class RecommendationPayload(BaseModel):
    restaurant: RestaurantPayload
    score: float
    elimination_count: int
    is_favorited: bool
    reasoning: str


class RecommendationsResponse(BaseModel):
    recommendations: List[RecommendationPayload]
    total_participants: int
    total_restaurants: int
    timestamp: int


class StatisticsResponse(BaseModel):
    session_id: str
    participant_count: int
    total_eliminations: int
    cuisine_elimination_counts: Dict[str, int]
    venue_elimination_counts: Dict[str, int]
    restaurant_elimination_counts: Dict[str, int]
    updated_at: int


class BatchResponse(BaseModel):
    offset: int
    size: int
    total: int
    page_number: int
    page_count: int
    has_next: bool
    restaurants: List[RestaurantPayload]


class LoadResponse(BaseModel):
    ready: bool
    waiting_on: List[str] = []
    restaurants: List[RestaurantPayload] = []


class JoinResponse(BaseModel):
    session: Session
    response: ParticipantResponse
    display_code: str


def _restaurant(r: Restaurant) -> RestaurantPayload:
    return RestaurantPayload(
        place_id=r.place_id,
        name=r.name,
        vicinity=r.vicinity,
        rating=r.rating,
        user_ratings_total=r.user_ratings_total,
        price_level=r.price_level,
        types=r.types,
    )


def _recommendation(rec: Recommendation) -> RecommendationPayload:
    return RecommendationPayload(
        restaurant=_restaurant(rec.restaurant),
        score=rec.score,
        elimination_count=rec.elimination_count,
        is_favorited=rec.is_favorited,
        reasoning=rec.reasoning,
    )


def _batch(view: BatchView) -> BatchResponse:
    return BatchResponse(
        offset=view.offset,
        size=view.size,
        total=view.total,
        page_number=view.page_number,
        page_count=view.page_count,
        has_next=view.has_next,
        restaurants=[_restaurant(r) for r in view.items],
    )


def create_app(coordinator: Optional[GroupCoordinator] = None) -> FastAPI:
    app = FastAPI(title="Group Restaurant Picker")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if coordinator is None:
        cfg = Configuration.from_env()
        logger.info("cfg: {}", cfg.log_summary())
        coordinator = GroupCoordinator(cfg)
    app.state.coordinator = coordinator
    coord = coordinator

    @app.exception_handler(CoordinatorError)
    async def coordinator_error(_request: Request, exc: CoordinatorError) -> JSONResponse:
        for error_type, status in _STATUS_BY_ERROR:
            if isinstance(exc, error_type):
                if status >= 500:
                    logger.warning("{}: {}", type(exc).__name__, exc)
                return JSONResponse(status_code=status, content={"detail": str(exc)})
        logger.exception("unhandled coordinator error: {}", exc)
        return JSONResponse(status_code=500, content={"detail": "internal error"})

    @app.get("/healthz")
    def healthz() -> dict:
        return {"status": "ok"}

    @app.post("/sessions", response_model=Session)
    def create_session(req: CreateSessionRequest) -> Session:
        location = None
        if req.latitude is not None and req.longitude is not None:
            location = Location(
                latitude=req.latitude,
                longitude=req.longitude,
                radius=req.radius_m or coord.cfg.default_radius_m,
            )
        return coord.create_session(
            req.admin_id,
            location=location,
            zip_code=req.zip_code,
            radius_m=req.radius_m,
            admin_name=req.admin_name,
        )

    @app.post("/sessions/join", response_model=JoinResponse)
    def join_session(req: JoinRequest) -> JoinResponse:
        response = coord.join(req.join_code, req.user_id, user_name=req.user_name)
        session = coord.get_session(response.session_id)
        return JoinResponse(session=session, response=response, display_code=format_join_code(session.join_code))

    @app.get("/sessions/{session_id}", response_model=Session)
    def get_session(session_id: str) -> Session:
        return coord.get_session(session_id)

    @app.get("/sessions/{session_id}/responses", response_model=List[ParticipantResponse])
    def list_responses(session_id: str) -> List[ParticipantResponse]:
        return coord.list_responses(session_id)

    @app.get("/sessions/{session_id}/responses/{user_id}", response_model=ParticipantResponse)
    def get_response(session_id: str, user_id: str) -> ParticipantResponse:
        return coord.get_response(session_id, user_id)

    @app.post("/sessions/{session_id}/eliminations", response_model=ParticipantResponse)
    def eliminate(session_id: str, req: EliminationRequest) -> ParticipantResponse:
        if req.eliminated is None:
            return coord.toggle_elimination(session_id, req.user_id, req.kind, req.key)
        return coord.set_elimination(session_id, req.user_id, req.kind, req.key, req.eliminated)

    @app.post("/sessions/{session_id}/stage", response_model=ParticipantResponse)
    def change_stage(session_id: str, req: StageRequest) -> ParticipantResponse:
        if req.action == "advance":
            return coord.advance_stage(session_id, req.user_id)
        if not req.target:
            raise InvalidInputError("target is required for a jump")
        return coord.jump_stage(session_id, req.user_id, parse_stage(req.target))

    @app.post("/sessions/{session_id}/favorites", response_model=Session)
    def favorite(session_id: str, req: FavoriteRequest) -> Session:
        return coord.set_favorite(session_id, req.actor_id, req.place_id, req.favorited)

    @app.get("/sessions/{session_id}/statistics", response_model=StatisticsResponse)
    def statistics(session_id: str) -> StatisticsResponse:
        stats = coord.statistics(session_id)
        return StatisticsResponse(**stats.__dict__)

    @app.get("/sessions/{session_id}/categories")
    def categories(session_id: str) -> dict:
        grouped = coord.categories(session_id)
        return {name: [item.__dict__ for item in items] for name, items in grouped.items()}

    @app.post("/sessions/{session_id}/restaurants/load", response_model=LoadResponse)
    async def load_restaurants(session_id: str, req: ActorRequest) -> LoadResponse:
        result = await coord.load_restaurants(session_id, req.user_id)
        return LoadResponse(
            ready=result.ready,
            waiting_on=result.waiting_on,
            restaurants=[_restaurant(r) for r in result.restaurants],
        )

    @app.get("/sessions/{session_id}/restaurants", response_model=List[RestaurantPayload])
    def restaurants(session_id: str) -> List[RestaurantPayload]:
        return [_restaurant(r) for r in coord.pool(session_id)]

    @app.get("/sessions/{session_id}/viable", response_model=List[RestaurantPayload])
    def viable(session_id: str) -> List[RestaurantPayload]:
        return [_restaurant(r) for r in coord.viable_restaurants(session_id)]

    @app.get("/sessions/{session_id}/batch", response_model=BatchResponse)
    def batch(session_id: str) -> BatchResponse:
        return _batch(coord.current_batch(session_id))

    @app.get("/sessions/{session_id}/recommendations", response_model=RecommendationsResponse)
    def recommendations(session_id: str, limit: Optional[int] = None) -> RecommendationsResponse:
        options = None
        if limit is not None:
            if limit < 1:
                raise InvalidInputError("limit must be positive")
            options = RankingOptions(
                max_recommendations=limit,
                favorite_boost=coord.cfg.favorite_boost,
                quality_weight=coord.cfg.quality_weight,
            )
        result = coord.recommendations(session_id, options)
        return RecommendationsResponse(
            recommendations=[_recommendation(r) for r in result.recommendations],
            total_participants=result.total_participants,
            total_restaurants=result.total_restaurants,
            timestamp=result.timestamp,
        )

    @app.post("/sessions/{session_id}/winner", response_model=Session)
    def lock_winner(session_id: str, req: ActorRequest) -> Session:
        return coord.lock_winner(session_id, req.user_id)

    @app.get("/sessions/{session_id}/report", response_class=PlainTextResponse)
    def report(session_id: str) -> str:
        return coord.report(session_id)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8010, reload=True)
