"""Keyed-record features around the battle core: profiles, statistics, daily
quests, mistakes, saved questions, question bank and papers, exam packs,
payments and notifications."""

import copy
import logging
import random
import threading
from collections import defaultdict
from datetime import datetime, time
from typing import Any, Dict, List, Optional

from database import DocumentStore
from errors import InvalidState, NotFound
from questions import QUESTION_COLLECTION, bank_filter
from schemas import (
    BulkQuestionsRequest, ExamResult, GenerateQuizRequest, NotificationRequest,
    PaymentRequest, UserProfile, utcnow,
)

logger = logging.getLogger(__name__)

USER_COLLECTION = "user"
EXAM_RESULT_COLLECTION = "exam_result"
MISTAKE_COLLECTION = "mistake"
SAVED_COLLECTION = "saved_question"
PAYMENT_COLLECTION = "payment"
NOTIFICATION_COLLECTION = "notification"
PAPER_COLLECTION = "question_paper"
EXAM_PACK_COLLECTION = "exam_pack"

LEADERBOARD_FIELDS = ("uid", "displayName", "photoURL", "points", "college", "hscBatch", "target", "department")

QUEST_TEMPLATES = [
    {"type": "EXAM_COMPLETE", "title": "Model Test Hero", "description": "Finish 1 model test",
     "target": 1, "reward": 50, "icon": "FileCheck"},
    {"type": "EXAM_COMPLETE", "title": "Exam Marathon", "description": "Finish 3 model tests",
     "target": 3, "reward": 100, "icon": "FileCheck"},
    {"type": "HIGH_SCORE", "title": "Perfectionist", "description": "Score 80% in one exam",
     "target": 1, "reward": 80, "icon": "Target"},
    {"type": "STUDY_TIME", "title": "Bookworm", "description": "Track 20 minutes of study",
     "target": 20, "reward": 60, "icon": "Clock"},
    {"type": "PLAY_BATTLE", "title": "Battle Warrior", "description": "Play 1 quiz battle",
     "target": 1, "reward": 50, "icon": "Swords"},
    {"type": "WIN_BATTLE", "title": "Victory Lap", "description": "Win 1 quiz battle",
     "target": 1, "reward": 100, "icon": "Trophy"},
    {"type": "ASK_AI", "title": "Curious Mind", "description": "Ask the AI 2 questions",
     "target": 2, "reward": 40, "icon": "Bot"},
    {"type": "SAVE_QUESTION", "title": "Collector", "description": "Save 3 questions",
     "target": 3, "reward": 30, "icon": "Bookmark"},
]
DAILY_QUEST_COUNT = 3

DEFAULT_EXAM_PACKS = [
    {
        "id": "med-final-24",
        "title": "Medical Final Model Tests",
        "subtitle": "Last-minute full preparation in 100 model tests",
        "price": 500,
        "originalPrice": 1500,
        "totalExams": 100,
        "features": ["Full-syllabus exams", "Negative marking practice",
                     "Medical-standard questions", "Solution sheets with explanations"],
        "theme": "emerald",
        "tag": "Best Seller",
    },
]

# quest lists are rewritten whole, so their read-modify-write cycles are serialized
_quest_lock = threading.Lock()


def stat_key(name: str) -> str:
    # subject/topic names become document keys; the raw name is stored beside the counters
    return name.replace(".", "_").replace("$", "_") or "_"


def exam_points(result: ExamResult) -> int:
    return result.correct * 5 + 10 if result.score > 0 else 0


def accuracy_rows(stats: Dict[str, Dict[str, Any]], label: str) -> List[Dict[str, Any]]:
    rows = []
    for name, pair in (stats or {}).items():
        total = pair.get("total") or 0
        rows.append({label: pair.get("name", name), "accuracy": pair.get("correct", 0) / total * 100 if total > 0 else 0})
    return rows


# Users

def sync_user(store: DocumentStore, profile: UserProfile) -> None:
    fields = profile.model_dump(exclude_none=True)
    uid = fields.pop("uid")
    now = utcnow()
    store.update_one(
        USER_COLLECTION, {"uid": uid},
        values=fields,
        on_insert={"role": "student", "points": 0, "totalExams": 0,
                   "stats": {"totalCorrect": 0, "totalWrong": 0, "totalSkipped": 0,
                             "subjectStats": {}, "topicStats": {}},
                   "dailyQuests": generate_daily_quests(now), "weeklyQuests": [],
                   "lastQuestReset": now},
        upsert=True,
    )


def user_stats(store: DocumentStore, uid: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Profile summary; hands out a fresh set of daily quests on the first call of a day."""
    with _quest_lock:
        user = store.find_one(USER_COLLECTION, {"uid": uid})
        if user is not None:
            user = _reset_stale_quests(store, user, now or utcnow())
    if user is None:
        return {"points": 0, "totalExams": 0, "totalCorrect": 0, "totalWrong": 0,
                "subjectBreakdown": [], "strongestTopics": [], "weakestTopics": [],
                "quests": [], "weeklyQuests": []}
    stats = user.get("stats") or {}
    topics = accuracy_rows(stats.get("topicStats"), "topic")
    return {
        "points": user.get("points", 0),
        "totalExams": user.get("totalExams", 0),
        "totalCorrect": stats.get("totalCorrect", 0),
        "totalWrong": stats.get("totalWrong", 0),
        "subjectBreakdown": accuracy_rows(stats.get("subjectStats"), "subject"),
        "strongestTopics": sorted(topics, key=lambda r: -r["accuracy"])[:3],
        "weakestTopics": sorted(topics, key=lambda r: r["accuracy"])[:3],
        "quests": user.get("dailyQuests") or [],
        "weeklyQuests": user.get("weeklyQuests") or [],
        "user": user,
    }


def record_exam_result(store: DocumentStore, uid: str, result: ExamResult) -> None:
    now = utcnow()
    store.insert(EXAM_RESULT_COLLECTION, {
        "userId": uid,
        **result.model_dump(exclude={"mistakes"}),
        "timestamp": now,
    })

    if store.find_one(USER_COLLECTION, {"uid": uid}) is not None:
        names: Dict[str, str] = {}
        increments: Dict[str, float] = defaultdict(int)
        increments["totalExams"] = 1
        increments["points"] = exam_points(result)
        increments["stats.totalCorrect"] = result.correct
        increments["stats.totalWrong"] = result.wrong
        increments["stats.totalSkipped"] = result.skipped
        subject = stat_key(result.subject)
        names[f"stats.subjectStats.{subject}.name"] = result.subject
        increments[f"stats.subjectStats.{subject}.correct"] += result.correct
        increments[f"stats.subjectStats.{subject}.total"] += result.totalQuestions
        for topic in result.topicStats:
            key = stat_key(topic.topic)
            names[f"stats.topicStats.{key}.name"] = topic.topic
            increments[f"stats.topicStats.{key}.correct"] += topic.correct
            increments[f"stats.topicStats.{key}.total"] += topic.total
        store.update_one(USER_COLLECTION, {"uid": uid}, values=names, increments=dict(increments))
    else:
        logger.warning("Exam result for unknown user %s stored without stats", uid)

    for mistake in result.mistakes:
        store.update_one(
            MISTAKE_COLLECTION, {"userId": uid, "question": mistake.question},
            values={"lastMissed": now},
            increments={"wrongCount": 1},
            on_insert=mistake.model_dump(exclude={"question"}),
            upsert=True,
        )


def leaderboard(store: DocumentStore, limit: int = 100) -> List[Dict[str, Any]]:
    users = store.find(USER_COLLECTION, sort=[("points", -1)], limit=limit)
    return [{k: u[k] for k in LEADERBOARD_FIELDS if k in u} for u in users]


# Quests

def generate_daily_quests(now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    stamp = int((now or utcnow()).timestamp() * 1000)
    picked = random.sample(QUEST_TEMPLATES, DAILY_QUEST_COUNT)
    return [
        {"id": f"dq_{stamp}_{idx}", **template, "progress": 0,
         "completed": False, "claimed": False, "category": "DAILY"}
        for idx, template in enumerate(picked)
    ]


def start_of_day(now: datetime) -> datetime:
    return datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)


def _reset_stale_quests(store: DocumentStore, user: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    last_reset = user.get("lastQuestReset")
    if last_reset is not None and last_reset >= start_of_day(now):
        return user
    quests = generate_daily_quests(now)
    store.update_one(USER_COLLECTION, {"uid": user["uid"]}, values={"dailyQuests": quests, "lastQuestReset": now})
    logger.debug("Daily quests reset for %s", user["uid"])
    return {**user, "dailyQuests": quests, "lastQuestReset": now}


def update_quest_progress(store: DocumentStore, uid: str, action_type: str, value: int = 1) -> List[Dict[str, Any]]:
    """Count ``value`` towards every open quest of ``action_type`` and return the daily list."""
    with _quest_lock:
        user = store.find_one(USER_COLLECTION, {"uid": uid})
        if user is None:
            raise NotFound(f"user {uid} not found")
        daily = user.get("dailyQuests") or []
        weekly = user.get("weeklyQuests") or []
        changed = not daily
        if not daily:
            daily = generate_daily_quests()
        for quest in daily + weekly:
            if quest["type"] == action_type and not quest["completed"]:
                quest["progress"] = min(quest["target"], quest.get("progress", 0) + value)
                quest["completed"] = quest["progress"] >= quest["target"]
                changed = True
        if changed:
            store.update_one(USER_COLLECTION, {"uid": uid}, values={"dailyQuests": daily, "weeklyQuests": weekly})
        return daily


def claim_quest(store: DocumentStore, uid: str, quest_id: str, category: str = "DAILY") -> int:
    """Pay out a completed quest once; returns the user's new point total."""
    with _quest_lock:
        user = store.find_one(USER_COLLECTION, {"uid": uid})
        if user is None:
            raise NotFound(f"user {uid} not found")
        if category == "LIFETIME":
            # lifetime achievements are tracked client-side
            return user.get("points", 0)
        field = "weeklyQuests" if category == "WEEKLY" else "dailyQuests"
        quests = user.get(field) or []
        quest = next((q for q in quests if q.get("id") == quest_id), None)
        if quest is None or not quest.get("completed") or quest.get("claimed"):
            raise InvalidState("Quest not eligible or already claimed")
        quest["claimed"] = True
        store.update_one(USER_COLLECTION, {"uid": uid}, values={field: quests},
                         increments={"points": quest["reward"]})
        logger.info("User %s claimed quest %s for %d points", uid, quest_id, quest["reward"])
        return user.get("points", 0) + quest["reward"]


# Mistakes

def list_mistakes(store: DocumentStore, uid: str) -> List[Dict[str, Any]]:
    return store.find(MISTAKE_COLLECTION, {"userId": uid}, sort=[("lastMissed", -1)], limit=100)


def delete_mistake(store: DocumentStore, uid: str, mistake_id: str) -> None:
    if not store.delete_one(MISTAKE_COLLECTION, {"_id": mistake_id, "userId": uid}):
        raise NotFound(f"mistake {mistake_id} not found")


# Saved questions

def list_saved(store: DocumentStore, uid: str) -> List[Dict[str, Any]]:
    saved = []
    for entry in store.find(SAVED_COLLECTION, {"userId": uid}, sort=[("savedAt", -1)], limit=500):
        question = store.find_one(QUESTION_COLLECTION, {"_id": entry["questionId"]})
        if question is not None:
            saved.append({**entry, "questionId": question})
    return saved


def save_question(store: DocumentStore, uid: str, question_id: str, folder: str = "General") -> str:
    return store.insert(SAVED_COLLECTION, {"userId": uid, "questionId": question_id,
                                           "folder": folder, "savedAt": utcnow()})


def move_saved(store: DocumentStore, uid: str, saved_id: str, folder: str) -> None:
    if not store.update_one(SAVED_COLLECTION, {"_id": saved_id, "userId": uid}, values={"folder": folder}):
        raise NotFound(f"saved question {saved_id} not found")


def delete_saved(store: DocumentStore, uid: str, saved_id: str) -> None:
    if not store.delete_one(SAVED_COLLECTION, {"_id": saved_id, "userId": uid}):
        raise NotFound(f"saved question {saved_id} not found")


def delete_saved_by_question(store: DocumentStore, uid: str, question_id: str) -> None:
    if not store.delete_one(SAVED_COLLECTION, {"userId": uid, "questionId": question_id}):
        raise NotFound(f"question {question_id} is not saved")


# Question bank

def list_bank(store: DocumentStore, page: int = 1, limit: int = 10, subject: Optional[str] = None,
              chapter: Optional[str] = None) -> Dict[str, Any]:
    query = {}
    if subject:
        query["subject"] = subject
    if chapter:
        query["chapter"] = chapter
    questions = store.find(QUESTION_COLLECTION, query, sort=[("createdAt", -1)],
                           skip=(page - 1) * limit, limit=limit)
    return {"questions": questions, "total": store.count(QUESTION_COLLECTION, query)}


def add_bank_questions(store: DocumentStore, payload: BulkQuestionsRequest) -> int:
    ids = store.insert_many(QUESTION_COLLECTION, [q.model_dump() for q in payload.questions])
    logger.info("Imported %d questions into the bank", len(ids))
    if payload.metadata is not None:
        paper = payload.metadata
        store.update_one(PAPER_COLLECTION, {"id": paper.id}, values=paper.model_dump(), upsert=True)
    return len(ids)


def list_question_papers(store: DocumentStore) -> List[Dict[str, Any]]:
    return store.find(PAPER_COLLECTION, sort=[("year", -1)], limit=500)


def syllabus_stats(store: DocumentStore) -> Dict[str, Any]:
    """Question counts per subject, chapter and topic; untagged questions count as "General"."""
    tree: Dict[str, Any] = {}
    for (subject, chapter, topic), count in store.group_count(QUESTION_COLLECTION, ("subject", "chapter", "topic")):
        subject_node = tree.setdefault(subject, {"total": 0, "chapters": {}})
        chapter_node = subject_node["chapters"].setdefault(chapter, {"total": 0, "topics": {}})
        subject_node["total"] += count
        chapter_node["total"] += count
        topic = topic or "General"
        chapter_node["topics"][topic] = chapter_node["topics"].get(topic, 0) + count
    return tree


def delete_bank_question(store: DocumentStore, question_id: str) -> None:
    if not store.delete_one(QUESTION_COLLECTION, {"_id": question_id}):
        raise NotFound(f"question {question_id} not found")


def generate_quiz(store: DocumentStore, request: GenerateQuizRequest) -> List[Dict[str, Any]]:
    query = bank_filter(request.subject, request.chapter, request.topics)
    return store.sample(QUESTION_COLLECTION, query, request.count)


def past_paper(store: DocumentStore, exam_ref: str) -> List[Dict[str, Any]]:
    return store.find(QUESTION_COLLECTION, {"examRef": exam_ref}, limit=500)


# Exam packs

def list_exam_packs(store: DocumentStore) -> List[Dict[str, Any]]:
    return store.find(EXAM_PACK_COLLECTION, limit=100) or copy.deepcopy(DEFAULT_EXAM_PACKS)


# Payments

def submit_payment(store: DocumentStore, payment: PaymentRequest) -> str:
    return store.insert(PAYMENT_COLLECTION, {**payment.model_dump(), "status": "PENDING", "timestamp": utcnow()})


def list_payments(store: DocumentStore) -> List[Dict[str, Any]]:
    return store.find(PAYMENT_COLLECTION, sort=[("timestamp", -1)], limit=1000)


def set_payment_status(store: DocumentStore, payment_id: str, status: str) -> None:
    if not store.update_one(PAYMENT_COLLECTION, {"_id": payment_id}, values={"status": status}):
        raise NotFound(f"payment {payment_id} not found")
    logger.info("Payment %s marked %s", payment_id, status)


def delete_payment(store: DocumentStore, payment_id: str) -> None:
    if not store.delete_one(PAYMENT_COLLECTION, {"_id": payment_id}):
        raise NotFound(f"payment {payment_id} not found")


def admin_stats(store: DocumentStore) -> Dict[str, Any]:
    return {
        "totalRevenue": store.total(PAYMENT_COLLECTION, "amount", {"status": "APPROVED"}),
        "approvedEnrollments": store.count(PAYMENT_COLLECTION, {"status": "APPROVED"}),
        "pendingPayments": store.count(PAYMENT_COLLECTION, {"status": "PENDING"}),
        "totalUsers": store.count(USER_COLLECTION),
        "totalQuestions": store.count(QUESTION_COLLECTION),
        "totalExams": store.total(USER_COLLECTION, "totalExams"),
    }


# Notifications

def list_notifications(store: DocumentStore) -> List[Dict[str, Any]]:
    return store.find(NOTIFICATION_COLLECTION, sort=[("date", -1)], limit=50)


def create_notification(store: DocumentStore, notification: NotificationRequest) -> str:
    return store.insert(NOTIFICATION_COLLECTION, {**notification.model_dump(), "date": utcnow()})
