from datetime import timedelta

import pytest

import records
from errors import InvalidState, NotFound
from schemas import (
    BulkQuestionsRequest, ExamResult, MistakeEntry, PaymentRequest, QuestionBankEntry, QuestionPaper,
    TopicStat, UserProfile, utcnow,
)


@pytest.fixture
def user(store):
    records.sync_user(store, UserProfile(uid="u1", displayName="Rafi", college="Dhaka College"))
    return "u1"


def physics_result(correct=8, mistakes=()):
    return ExamResult(
        subject="Physics", totalQuestions=10, correct=correct, wrong=10 - correct, skipped=0, score=correct,
        topicStats=[TopicStat(topic="Optics", correct=correct, total=10)],
        mistakes=list(mistakes),
    )


def test_sync_creates_then_updates(store, user):
    records.sync_user(store, UserProfile(uid="u1", displayName="Rafiq"))
    docs = store.find("user", {"uid": "u1"})
    assert len(docs) == 1
    assert docs[0]["displayName"] == "Rafiq"
    assert docs[0]["college"] == "Dhaka College"
    assert docs[0]["points"] == 0


def test_unknown_user_stats_are_zero(store):
    stats = records.user_stats(store, "nobody")
    assert stats["points"] == 0
    assert stats["subjectBreakdown"] == []


def test_exam_result_accumulates_stats(store, user):
    records.record_exam_result(store, user, physics_result(correct=8))
    records.record_exam_result(store, user, ExamResult(
        subject="Physics", totalQuestions=10, correct=2, wrong=8, score=2,
        topicStats=[TopicStat(topic="Heat", correct=2, total=10)]))

    stats = records.user_stats(store, user)
    assert stats["totalExams"] == 2
    assert stats["points"] == (8 * 5 + 10) + (2 * 5 + 10)
    assert stats["totalCorrect"] == 10
    assert stats["totalWrong"] == 10
    assert stats["subjectBreakdown"] == [{"subject": "Physics", "accuracy": 50.0}]
    assert stats["strongestTopics"][0] == {"topic": "Optics", "accuracy": 80.0}
    assert stats["weakestTopics"][0] == {"topic": "Heat", "accuracy": 20.0}
    assert store.count("exam_result", {"userId": user}) == 2


def test_zero_score_earns_no_points(store, user):
    records.record_exam_result(store, user, ExamResult(subject="Physics", totalQuestions=5, wrong=5, score=0))
    assert records.user_stats(store, user)["points"] == 0


def test_mistakes_are_deduplicated(store, user):
    mistake = MistakeEntry(question="Unit of force?", options=["J", "N"], correctAnswerIndex=1, subject="Physics")
    records.record_exam_result(store, user, physics_result(mistakes=[mistake]))
    records.record_exam_result(store, user, physics_result(mistakes=[mistake]))

    mistakes = records.list_mistakes(store, user)
    assert len(mistakes) == 1
    assert mistakes[0]["wrongCount"] == 2
    assert mistakes[0]["options"] == ["J", "N"]

    records.delete_mistake(store, user, mistakes[0]["_id"])
    assert records.list_mistakes(store, user) == []
    with pytest.raises(NotFound):
        records.delete_mistake(store, user, mistakes[0]["_id"])


def test_saved_questions_join_bank(store, user):
    kept = store.insert("question", {"subject": "Physics", "question": "q1"})
    gone = store.insert("question", {"subject": "Physics", "question": "q2"})
    records.save_question(store, user, kept)
    saved_id = records.save_question(store, user, gone, folder="Hard")
    store.delete_one("question", {"_id": gone})

    saved = records.list_saved(store, user)
    assert len(saved) == 1
    assert saved[0]["questionId"]["question"] == "q1"
    assert saved[0]["folder"] == "General"

    records.move_saved(store, user, saved_id, "Revise")
    assert store.find_one("saved_question", {"_id": saved_id})["folder"] == "Revise"
    records.delete_saved_by_question(store, user, kept)
    with pytest.raises(NotFound):
        records.delete_saved(store, user, "missing")


def test_leaderboard_orders_by_points(store):
    for uid, points in (("a", 10), ("b", 30), ("c", 20)):
        store.insert("user", {"uid": uid, "points": points, "email": f"{uid}@x.org"})
    board = records.leaderboard(store)
    assert [u["uid"] for u in board] == ["b", "c", "a"]
    assert "email" not in board[0]


def test_payment_workflow_and_admin_stats(store, user):
    first = records.submit_payment(store, PaymentRequest(userId=user, amount=500, trxId="T1", senderNumber="017"))
    records.submit_payment(store, PaymentRequest(userId=user, amount=300, trxId="T2", senderNumber="017"))
    records.set_payment_status(store, first, "APPROVED")
    with pytest.raises(NotFound):
        records.set_payment_status(store, "missing", "APPROVED")

    stats = records.admin_stats(store)
    assert stats["totalRevenue"] == 500
    assert stats["approvedEnrollments"] == 1
    assert stats["pendingPayments"] == 1
    assert stats["totalUsers"] == 1

    records.delete_payment(store, first)
    assert len(records.list_payments(store)) == 1


def test_dotted_names_keep_their_spelling(store, user):
    records.record_exam_result(store, user, ExamResult(
        subject="Physics.1", totalQuestions=4, correct=2, wrong=2, score=2,
        topicStats=[TopicStat(topic="Newton's 2nd law v2.0", correct=1, total=4)]))
    stats = records.user_stats(store, user)
    assert stats["subjectBreakdown"] == [{"subject": "Physics.1", "accuracy": 50.0}]
    assert stats["weakestTopics"] == [{"topic": "Newton's 2nd law v2.0", "accuracy": 25.0}]


def test_new_user_gets_daily_quests(store, user):
    quests = records.user_stats(store, user)["quests"]
    assert len(quests) == records.DAILY_QUEST_COUNT
    assert len({q["id"] for q in quests}) == records.DAILY_QUEST_COUNT
    assert all(q["progress"] == 0 and not q["completed"] and not q["claimed"] for q in quests)
    assert records.user_stats(store, user)["quests"] == quests


def test_daily_quests_reset_next_day(store, user):
    quests = records.user_stats(store, user)["quests"]
    tomorrow = utcnow() + timedelta(days=1)
    fresh = records.user_stats(store, user, now=tomorrow)["quests"]
    assert {q["id"] for q in fresh}.isdisjoint(q["id"] for q in quests)
    assert records.user_stats(store, user, now=tomorrow)["quests"] == fresh


def test_quest_progress_and_claim(store, user):
    quest = records.user_stats(store, user)["quests"][0]
    with pytest.raises(InvalidState):
        records.claim_quest(store, user, quest["id"])

    for _ in range(quest["target"] + 2):
        quests = records.update_quest_progress(store, user, quest["type"])
    done = next(q for q in quests if q["id"] == quest["id"])
    assert done["progress"] == quest["target"]
    assert done["completed"] is True

    assert records.claim_quest(store, user, quest["id"]) == quest["reward"]
    assert records.user_stats(store, user)["points"] == quest["reward"]
    with pytest.raises(InvalidState):
        records.claim_quest(store, user, quest["id"])


def test_quests_need_a_known_user(store):
    with pytest.raises(NotFound):
        records.update_quest_progress(store, "ghost", "ASK_AI")
    with pytest.raises(NotFound):
        records.claim_quest(store, "ghost", "dq_1_0")


def test_lifetime_claim_reports_points(store, user):
    store.update_one("user", {"uid": user}, increments={"points": 70})
    assert records.claim_quest(store, user, "anything", category="LIFETIME") == 70


def test_bulk_upload_upserts_paper(store):
    questions = [QuestionBankEntry(subject="Biology", chapter="Cells", question="Q", options=["a", "b"],
                                   correctAnswerIndex=0, examRef="medical_23_24")]
    paper = QuestionPaper(id="medical_23_24", title="Medical Admission", year="2023", source="Medical")
    records.add_bank_questions(store, BulkQuestionsRequest(questions=questions, metadata=paper))
    records.add_bank_questions(store, BulkQuestionsRequest(
        questions=questions, metadata=paper.model_copy(update={"totalQuestions": 100})))
    records.add_bank_questions(store, BulkQuestionsRequest(
        questions=questions, metadata=QuestionPaper(id="eng_24", title="Engineering", year="2024", source="BUET")))

    papers = records.list_question_papers(store)
    assert [p["id"] for p in papers] == ["eng_24", "medical_23_24"]
    assert papers[1]["totalQuestions"] == 100
    assert len(records.past_paper(store, "medical_23_24")) == 3


def test_syllabus_stats(store):
    for chapter, topic in (("Optics", "Lenses"), ("Optics", "Lenses"), ("Optics", None), ("Heat", "Gas laws")):
        store.insert("question", {"subject": "Physics", "chapter": chapter, "topic": topic})
    store.insert("question", {"subject": "Biology", "chapter": "Cells"})

    stats = records.syllabus_stats(store)
    assert stats["Physics"]["total"] == 4
    assert stats["Physics"]["chapters"]["Optics"] == {"total": 3, "topics": {"Lenses": 2, "General": 1}}
    assert stats["Physics"]["chapters"]["Heat"] == {"total": 1, "topics": {"Gas laws": 1}}
    assert stats["Biology"] == {"total": 1, "chapters": {"Cells": {"total": 1, "topics": {"General": 1}}}}


def test_exam_packs_fall_back_to_defaults(store):
    packs = records.list_exam_packs(store)
    assert [p["id"] for p in packs] == ["med-final-24"]
    packs[0]["price"] = 0
    assert records.list_exam_packs(store)[0]["price"] == 500

    store.insert("exam_pack", {"id": "eng-24", "title": "Engineering Pack", "price": 700})
    assert [p["id"] for p in records.list_exam_packs(store)] == ["eng-24"]
