"""Question source for battle rooms: bank sample with a built-in fallback pool."""

import logging
from typing import Dict, List, Optional

from pymongo.errors import PyMongoError

from database import DocumentStore
from schemas import BattleQuestion

logger = logging.getLogger(__name__)

QUESTION_COLLECTION = "question"
FULL_SYLLABUS = "Full Syllabus"

# Seed data served when the bank cannot fill a room. Order matters: the
# fallback always takes the first ``count`` entries.
FALLBACK_QUESTIONS: List[BattleQuestion] = [
    BattleQuestion(question="What is the SI unit of force?",
                   options=["Joule", "Newton", "Watt", "Pascal"], correctAnswerIndex=1, subject="Physics"),
    BattleQuestion(question="Which gas do plants absorb during photosynthesis?",
                   options=["Oxygen", "Nitrogen", "Carbon dioxide", "Hydrogen"], correctAnswerIndex=2, subject="Biology"),
    BattleQuestion(question="What is the chemical symbol of sodium?",
                   options=["So", "Sd", "Na", "S"], correctAnswerIndex=2, subject="Chemistry"),
    BattleQuestion(question="What is the derivative of x^2?",
                   options=["x", "2x", "x^3 / 3", "2"], correctAnswerIndex=1, subject="Mathematics"),
    BattleQuestion(question="Which organelle is known as the powerhouse of the cell?",
                   options=["Nucleus", "Ribosome", "Golgi body", "Mitochondrion"], correctAnswerIndex=3, subject="Biology"),
    BattleQuestion(question="What is the speed of light in vacuum, approximately?",
                   options=["3 x 10^8 m/s", "3 x 10^6 m/s", "3 x 10^5 km/h", "340 m/s"], correctAnswerIndex=0, subject="Physics"),
    BattleQuestion(question="What is the pH of pure water at 25 C?",
                   options=["0", "5", "7", "14"], correctAnswerIndex=2, subject="Chemistry"),
    BattleQuestion(question="What is the value of sin 90 degrees?",
                   options=["0", "1", "1/2", "undefined"], correctAnswerIndex=1, subject="Mathematics"),
    BattleQuestion(question="Which blood cells carry oxygen?",
                   options=["Red blood cells", "White blood cells", "Platelets", "Plasma cells"], correctAnswerIndex=0, subject="Biology"),
    BattleQuestion(question="Which law states that every action has an equal and opposite reaction?",
                   options=["Newton's first law", "Newton's second law", "Newton's third law", "Hooke's law"], correctAnswerIndex=2, subject="Physics"),
]


def bank_filter(subject: str, chapter: Optional[str] = None, topics: Optional[List[str]] = None) -> Dict:
    query: Dict = {"subject": subject}
    if chapter and chapter != FULL_SYLLABUS:
        query["chapter"] = chapter
    if topics and topics[0] != FULL_SYLLABUS:
        query["topic"] = {"$in": list(topics)}
    return query


def to_battle_question(doc: Dict) -> BattleQuestion:
    return BattleQuestion(
        question=doc["question"],
        options=list(doc["options"]),
        correctAnswerIndex=int(doc["correctAnswerIndex"]),
        subject=doc.get("subject", ""),
    )


class QuestionSource:
    def __init__(self, store: DocumentStore, fallback: Optional[List[BattleQuestion]] = None):
        self.store = store
        self.fallback = FALLBACK_QUESTIONS if fallback is None else fallback

    def fetch(self, subject: str, count: int, chapter: Optional[str] = None) -> List[BattleQuestion]:
        """Return up to ``count`` questions for ``subject``.

        A random bank sample is used when it is complete; anything short of
        ``count`` is discarded in favour of the head of the fallback pool,
        which may itself be shorter than ``count``.
        """
        try:
            docs = self.store.sample(QUESTION_COLLECTION, bank_filter(subject, chapter), count)
        except PyMongoError:
            logger.exception("Question bank unavailable, using fallback pool")
            docs = []
        if len(docs) >= count:
            return [to_battle_question(doc) for doc in docs[:count]]
        logger.warning("Question bank has %d/%d questions for %s, using fallback pool", len(docs), count, subject)
        return list(self.fallback[:count])
