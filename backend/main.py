import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

import records
from battle import BattleService, question_deadline
from config import HOST, PORT
from database import DocumentStore, MongoStore, connect_store
from errors import BattleError
from logging_config import configure_logging
from questions import QuestionSource
from rooms import MemoryRoomRegistry, MongoRoomRegistry, RoomRegistry
from schemas import (
    AdvanceRequest, AnswerRequest, BulkQuestionsRequest, CreateBattleRequest, ExamResult,
    GenerateQuizRequest, JoinBattleRequest, MoveSavedQuestionRequest, NotificationRequest,
    PaymentRequest, PaymentStatusUpdate, QuestClaimRequest, QuestUpdateRequest, SaveQuestionRequest,
    StartBattleRequest, UserProfile, utcnow,
)

logger = logging.getLogger(__name__)

battles = APIRouter(prefix="/battles", tags=["battles"])
api = APIRouter(prefix="/api")


def get_battles(request: Request) -> BattleService:
    return request.app.state.battles


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


@battles.post("/create")
def create_battle(data: CreateBattleRequest, service: BattleService = Depends(get_battles)):
    room = service.create(data.userId, data.config, name=data.userName, avatar=data.avatar, college=data.college)
    return {"roomId": room.roomId}


@battles.post("/join")
def join_battle(data: JoinBattleRequest, service: BattleService = Depends(get_battles)):
    service.join(data.roomId, data.userId, name=data.userName, avatar=data.avatar, college=data.college)
    return {"success": True}


@battles.post("/start")
def start_battle(data: StartBattleRequest, service: BattleService = Depends(get_battles)):
    service.start(data.roomId, data.userId)
    return {"success": True}


@battles.get("/{room_id}")
def get_battle(room_id: str, service: BattleService = Depends(get_battles)):
    room = service.get_state(room_id)
    deadline = question_deadline(room)
    return {
        **room.model_dump(mode="json"),
        "allAnswered": room.all_answered(),
        "deadline": deadline.timestamp() if deadline else None,
        "serverTime": service.clock().timestamp(),
    }


@battles.post("/{room_id}/next-question")
def next_question(room_id: str, data: AdvanceRequest, service: BattleService = Depends(get_battles)):
    """Advance the room to ``nextIndex``.

    With ``userId`` the caller is a player: the host may advance at any time,
    anyone else only once the question has expired or everyone has answered.
    Omitting ``userId`` marks the call as coming from the trusted round timer,
    which is not checked; deployments exposing this route to players directly
    should have clients always send their id.
    """
    room = service.advance(room_id, data.nextIndex, caller_id=data.userId)
    return {"success": True, "status": room.status, "currentQuestionIndex": room.currentQuestionIndex}


@battles.post("/{room_id}/answer")
def submit_answer(room_id: str, data: AnswerRequest, service: BattleService = Depends(get_battles)):
    answer = service.submit_answer(room_id, data.userId, data.questionIndex, data.selectedOption, data.timeTaken)
    return {"success": True, "isCorrect": answer.isCorrect}


# --- Users ---

@api.post("/users/sync")
def sync_user(data: UserProfile, store: DocumentStore = Depends(get_store)):
    records.sync_user(store, data)
    return {"success": True}


@api.get("/users/{user_id}/stats")
def user_stats(user_id: str, store: DocumentStore = Depends(get_store)):
    return records.user_stats(store, user_id)


@api.post("/users/{user_id}/exam-results")
def exam_results(user_id: str, data: ExamResult, store: DocumentStore = Depends(get_store)):
    records.record_exam_result(store, user_id, data)
    return {"success": True}


@api.get("/users/{user_id}/saved-questions")
def saved_questions(user_id: str, store: DocumentStore = Depends(get_store)):
    return records.list_saved(store, user_id)


@api.post("/users/{user_id}/saved-questions")
def save_question(user_id: str, data: SaveQuestionRequest, store: DocumentStore = Depends(get_store)):
    saved_id = records.save_question(store, user_id, data.questionId, data.folder)
    return {"success": True, "id": saved_id}


@api.patch("/users/{user_id}/saved-questions/{saved_id}")
def move_saved_question(user_id: str, saved_id: str, data: MoveSavedQuestionRequest,
                        store: DocumentStore = Depends(get_store)):
    records.move_saved(store, user_id, saved_id, data.folder)
    return {"success": True}


@api.delete("/users/{user_id}/saved-questions/by-q/{question_id}")
def unsave_question(user_id: str, question_id: str, store: DocumentStore = Depends(get_store)):
    records.delete_saved_by_question(store, user_id, question_id)
    return {"success": True}


@api.delete("/users/{user_id}/saved-questions/{saved_id}")
def delete_saved_question(user_id: str, saved_id: str, store: DocumentStore = Depends(get_store)):
    records.delete_saved(store, user_id, saved_id)
    return {"success": True}


@api.get("/users/{user_id}/mistakes")
def mistakes(user_id: str, store: DocumentStore = Depends(get_store)):
    return records.list_mistakes(store, user_id)


@api.delete("/users/{user_id}/mistakes/{mistake_id}")
def delete_mistake(user_id: str, mistake_id: str, store: DocumentStore = Depends(get_store)):
    records.delete_mistake(store, user_id, mistake_id)
    return {"success": True}


@api.get("/leaderboard")
def leaderboard(store: DocumentStore = Depends(get_store)):
    return records.leaderboard(store)


# --- Quests ---

@api.post("/quests/update")
def update_quests(data: QuestUpdateRequest, store: DocumentStore = Depends(get_store)):
    quests = records.update_quest_progress(store, data.userId, data.actionType, data.value)
    return {"success": True, "quests": quests}


@api.post("/quests/claim")
def claim_quest(data: QuestClaimRequest, store: DocumentStore = Depends(get_store)):
    points = records.claim_quest(store, data.userId, data.questId, data.category)
    return {"success": True, "points": points}


# --- Question bank ---

@api.get("/admin/questions")
def bank_questions(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=200),
                   subject: Optional[str] = None, chapter: Optional[str] = None,
                   store: DocumentStore = Depends(get_store)):
    return records.list_bank(store, page=page, limit=limit, subject=subject, chapter=chapter)


@api.post("/admin/questions/bulk")
def bulk_questions(data: BulkQuestionsRequest, store: DocumentStore = Depends(get_store)):
    return {"success": True, "imported": records.add_bank_questions(store, data)}


@api.delete("/admin/questions/{question_id}")
def delete_question(question_id: str, store: DocumentStore = Depends(get_store)):
    records.delete_bank_question(store, question_id)
    return {"success": True}


@api.post("/quiz/generate-from-db")
def generate_quiz(data: GenerateQuizRequest, store: DocumentStore = Depends(get_store)):
    return records.generate_quiz(store, data)


@api.get("/quiz/past-paper/{exam_ref}")
def past_paper(exam_ref: str, store: DocumentStore = Depends(get_store)):
    return records.past_paper(store, exam_ref)


@api.get("/quiz/syllabus-stats")
def syllabus_stats(store: DocumentStore = Depends(get_store)):
    return records.syllabus_stats(store)


@api.get("/question-papers")
def question_papers(store: DocumentStore = Depends(get_store)):
    return records.list_question_papers(store)


@api.get("/exam-packs")
def exam_packs(store: DocumentStore = Depends(get_store)):
    return records.list_exam_packs(store)


# --- Payments & admin ---

@api.post("/payments")
def submit_payment(data: PaymentRequest, store: DocumentStore = Depends(get_store)):
    return {"success": True, "id": records.submit_payment(store, data)}


@api.get("/admin/payments")
def payments(store: DocumentStore = Depends(get_store)):
    return records.list_payments(store)


@api.put("/admin/payments/{payment_id}")
def update_payment(payment_id: str, data: PaymentStatusUpdate, store: DocumentStore = Depends(get_store)):
    records.set_payment_status(store, payment_id, data.status)
    return {"success": True}


@api.delete("/admin/payments/{payment_id}")
def delete_payment(payment_id: str, store: DocumentStore = Depends(get_store)):
    records.delete_payment(store, payment_id)
    return {"success": True}


@api.get("/admin/stats")
def admin_stats(store: DocumentStore = Depends(get_store)):
    return records.admin_stats(store)


# --- Notifications ---

@api.get("/notifications")
def notifications(store: DocumentStore = Depends(get_store)):
    return records.list_notifications(store)


@api.post("/admin/notifications")
def create_notification(data: NotificationRequest, store: DocumentStore = Depends(get_store)):
    return {"success": True, "id": records.create_notification(store, data)}


def build_registry(store: DocumentStore) -> RoomRegistry:
    if isinstance(store, MongoStore):
        return MongoRoomRegistry(store.db)
    return MemoryRoomRegistry()


def install_services(app: FastAPI, store: DocumentStore, registry: Optional[RoomRegistry] = None,
                     battle_service: Optional[BattleService] = None) -> None:
    app.state.store = store
    app.state.battles = battle_service or BattleService(registry or build_registry(store), QuestionSource(store))


def create_app(store: Optional[DocumentStore] = None, registry: Optional[RoomRegistry] = None,
               battle_service: Optional[BattleService] = None) -> FastAPI:
    """Build the API. Without a store the backend is chosen when the app starts."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        if getattr(app.state, "store", None) is None:
            install_services(app, connect_store())
        yield

    app = FastAPI(title="Quiz Battle API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BattleError)
    async def battle_error_handler(request: Request, exc: BattleError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(PyMongoError)
    async def storage_error_handler(request: Request, exc: PyMongoError):
        logger.error("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "StorageError", "detail": str(exc)})

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "InternalError", "detail": type(exc).__name__})

    @app.get("/")
    def root():
        backend = type(app.state.store).__name__ if getattr(app.state, "store", None) else None
        return {"message": "Backend OK", "storage": backend, "time": utcnow().isoformat()}

    app.include_router(battles)
    app.include_router(api)
    if store is not None:
        install_services(app, store, registry, battle_service)
    return app


app = create_app()


def run():
    uvicorn.run("main:app", host=HOST, port=PORT)


if __name__ == "__main__":
    run()
