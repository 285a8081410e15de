from typing import List, Optional, Dict, Any, Literal
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


WAITING = "WAITING"
ACTIVE = "ACTIVE"
FINISHED = "FINISHED"

Mode = Literal["1v1", "2v2", "FFA"]
Status = Literal["WAITING", "ACTIVE", "FINISHED"]
Team = Literal["A", "B", "NONE"]

MODE_CAPACITY: Dict[str, int] = {"1v1": 2, "2v2": 4, "FFA": 5}
POINTS_PER_CORRECT = 10


# Battle Collection Schema
class BattleQuestion(BaseModel):
    """Question copied into a room at creation; never edited afterwards."""

    model_config = ConfigDict(frozen=True)

    question: str
    options: List[str]
    correctAnswerIndex: int
    subject: str = ""


class BattleConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject: str
    chapter: Optional[str] = None
    mode: Mode = "1v1"
    questionCount: int = Field(default=5, ge=1, le=50)
    timePerQuestion: int = Field(default=15, ge=1, le=600)  # seconds


class Player(BaseModel):
    uid: str
    name: str = ""
    avatar: str = ""
    college: str = ""
    score: int = 0
    totalTime: float = 0  # tie-break, lower ranks higher
    team: Team = "NONE"


class Answer(BaseModel):
    userId: str
    questionIndex: int
    selectedOption: int
    isCorrect: bool
    timeTaken: float
    timestamp: datetime = Field(default_factory=utcnow)


class Room(BaseModel):
    roomId: str
    hostId: str
    status: Status = WAITING
    config: BattleConfig
    questions: List[BattleQuestion] = []
    currentQuestionIndex: int = 0
    startTime: Optional[datetime] = None
    createdAt: datetime = Field(default_factory=utcnow)
    players: List[Player] = []
    answers: List[Answer] = []

    @property
    def capacity(self) -> int:
        return MODE_CAPACITY[self.config.mode]

    def find_player(self, uid: str) -> Optional[Player]:
        return next((p for p in self.players if p.uid == uid), None)

    def has_answered(self, uid: str, question_index: int) -> bool:
        return any(a.userId == uid and a.questionIndex == question_index for a in self.answers)

    def answer_count(self, question_index: int) -> int:
        return sum(1 for a in self.answers if a.questionIndex == question_index)

    def all_answered(self) -> bool:
        return bool(self.players) and self.answer_count(self.currentQuestionIndex) >= len(self.players)

    def team_sizes(self) -> Dict[str, int]:
        sizes = {"A": 0, "B": 0}
        for p in self.players:
            if p.team in sizes:
                sizes[p.team] += 1
        return sizes


# Battle request bodies
class PlayerProfile(BaseModel):
    userId: str = Field(min_length=1)
    userName: str = ""
    avatar: str = ""
    college: str = ""


class CreateBattleRequest(PlayerProfile):
    config: BattleConfig


class JoinBattleRequest(PlayerProfile):
    roomId: str = Field(min_length=1)


class StartBattleRequest(BaseModel):
    roomId: str = Field(min_length=1)
    userId: str = Field(min_length=1)


class AdvanceRequest(BaseModel):
    nextIndex: int
    userId: Optional[str] = None


class AnswerRequest(BaseModel):
    userId: str = Field(min_length=1)
    questionIndex: int
    selectedOption: int
    timeTaken: float = Field(default=0, ge=0)


# Users Collection Schema
class UserProfile(BaseModel):
    uid: str = Field(min_length=1)
    email: Optional[str] = None
    displayName: Optional[str] = None
    photoURL: Optional[str] = None
    college: Optional[str] = None
    hscBatch: Optional[str] = None
    department: Optional[str] = None
    target: Optional[str] = None


# Exam results / Mistakes Collection Schema
class TopicStat(BaseModel):
    topic: str
    correct: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)


class MistakeEntry(BaseModel):
    question: str
    options: List[str] = []
    correctAnswerIndex: int
    explanation: Optional[str] = None
    subject: Optional[str] = None
    chapter: Optional[str] = None
    topic: Optional[str] = None


class ExamResult(BaseModel):
    subject: str
    totalQuestions: int = Field(default=0, ge=0)
    correct: int = Field(default=0, ge=0)
    wrong: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    score: float = 0
    topicStats: List[TopicStat] = []
    mistakes: List[MistakeEntry] = []


# Saved questions Collection Schema
class SaveQuestionRequest(BaseModel):
    questionId: str = Field(min_length=1)
    folder: str = "General"


class MoveSavedQuestionRequest(BaseModel):
    folder: str = Field(min_length=1)


# Question bank Collection Schema
class QuestionBankEntry(BaseModel):
    subject: str
    chapter: str
    topic: Optional[str] = None
    question: str
    options: List[str]
    correctAnswerIndex: int
    explanation: Optional[str] = None
    difficulty: str = "MEDIUM"
    examRef: Optional[str] = None

    @field_validator("correctAnswerIndex")
    @classmethod
    def _index_in_options(cls, value: int, info):
        options = info.data.get("options") or []
        if not 0 <= value < len(options):
            raise ValueError("correctAnswerIndex must point into options")
        return value


# Question papers Collection Schema
class QuestionPaper(BaseModel):
    id: str = Field(min_length=1)  # e.g. medical_23_24
    title: str
    year: str
    source: str
    totalQuestions: int = Field(default=0, ge=0)
    time: int = Field(default=60, ge=1)  # minutes


class BulkQuestionsRequest(BaseModel):
    questions: List[QuestionBankEntry]
    metadata: Optional[QuestionPaper] = None


class GenerateQuizRequest(BaseModel):
    subject: str
    chapter: str = "Full Syllabus"
    topics: List[str] = []
    count: int = Field(default=10, ge=1, le=200)


# Payments Collection Schema
PaymentStatus = Literal["PENDING", "APPROVED", "REJECTED"]


class PaymentRequest(BaseModel):
    userId: str = Field(min_length=1)
    userName: Optional[str] = None
    userEmail: Optional[str] = None
    courseId: Optional[str] = None
    courseTitle: Optional[str] = None
    amount: float = Field(default=0, ge=0)
    trxId: str = Field(min_length=1)
    senderNumber: str = Field(min_length=1)


class PaymentStatusUpdate(BaseModel):
    status: PaymentStatus


# Notifications Collection Schema
class NotificationRequest(BaseModel):
    title: str
    message: str
    type: Literal["INFO", "WARNING", "SUCCESS", "BATTLE_CHALLENGE", "BATTLE_RESULT"] = "INFO"
    target: str = "ALL"
    actionLink: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


# Quests (embedded in Users)
QuestCategory = Literal["DAILY", "WEEKLY", "LIFETIME"]


class QuestUpdateRequest(BaseModel):
    userId: str = Field(min_length=1)
    actionType: str = Field(min_length=1)
    value: int = Field(default=1, ge=0)


class QuestClaimRequest(BaseModel):
    userId: str = Field(min_length=1)
    questId: str = Field(min_length=1)
    category: QuestCategory = "DAILY"
