"""Battle rooms: lifecycle, answer ledger, scoring and question progression.

A room moves WAITING -> ACTIVE -> FINISHED and never back. Every mutation
is a read-modify-write of one room performed under that room's lock, on a
copy handed out by the registry; the copy is saved only when the whole
operation succeeded.
"""

import logging
import random
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from config import BATTLE_ENFORCE_DEADLINE, BATTLE_GRACE_SECONDS, ROOM_CODE_ATTEMPTS
from errors import DuplicateAnswer, Forbidden, InvalidIndex, InvalidState, NotFound, RoomFull, RoomIdTaken
from questions import QuestionSource
from rooms import RoomLocks, RoomRegistry
from schemas import (
    ACTIVE, FINISHED, POINTS_PER_CORRECT, WAITING,
    Answer, BattleConfig, Player, Room, utcnow,
)

logger = logging.getLogger(__name__)


def generate_room_code() -> str:
    return str(random.randint(100000, 999999))


def pick_team(room: Room) -> str:
    if room.config.mode != "2v2":
        return "NONE"
    sizes = room.team_sizes()
    return "A" if sizes["A"] <= sizes["B"] else "B"


def question_deadline(room: Room) -> Optional[datetime]:
    if room.status != ACTIVE or room.startTime is None:
        return None
    return room.startTime + timedelta(seconds=room.config.timePerQuestion)


class BattleService:
    def __init__(self, registry: RoomRegistry, questions: QuestionSource,
                 clock: Callable[[], datetime] = utcnow,
                 enforce_deadline: bool = BATTLE_ENFORCE_DEADLINE,
                 grace_seconds: float = BATTLE_GRACE_SECONDS,
                 code_attempts: int = ROOM_CODE_ATTEMPTS,
                 code_factory: Callable[[], str] = generate_room_code):
        self.registry = registry
        self.questions = questions
        self.locks = RoomLocks()
        self.clock = clock
        self.enforce_deadline = enforce_deadline
        self.grace = timedelta(seconds=grace_seconds)
        self.code_attempts = code_attempts
        self.code_factory = code_factory

    def _load(self, room_id: str) -> Room:
        room = self.registry.get(room_id)
        if room is None:
            raise NotFound(f"room {room_id} not found")
        return room

    @contextmanager
    def _editing(self, room_id: str) -> Iterator[Room]:
        with self.locks.hold(room_id):
            room = self._load(room_id)
            yield room
            self.registry.save(room)

    def create(self, host_id: str, config: BattleConfig, name: str = "", avatar: str = "",
               college: str = "") -> Room:
        questions = self.questions.fetch(config.subject, config.questionCount, config.chapter)
        if not questions:
            raise InvalidState(f"no questions available for {config.subject}")
        for _ in range(self.code_attempts):
            room = Room(
                roomId=self.code_factory(),
                hostId=host_id,
                config=config,
                questions=questions,
                createdAt=self.clock(),
            )
            room.players.append(Player(uid=host_id, name=name, avatar=avatar, college=college,
                                       team=pick_team(room)))
            try:
                self.registry.create(room)
            except RoomIdTaken:
                logger.warning("Room code %s already taken, retrying", room.roomId)
                continue
            logger.info("Room %s created by %s (%s, %d questions)", room.roomId, host_id,
                        config.mode, len(questions))
            return room
        raise RoomIdTaken(f"no free room code after {self.code_attempts} attempts")

    def join(self, room_id: str, uid: str, name: str = "", avatar: str = "", college: str = "") -> Room:
        with self._editing(room_id) as room:
            if room.status != WAITING:
                raise InvalidState(f"room {room_id} is {room.status}")
            if room.find_player(uid) is None:
                if len(room.players) >= room.capacity:
                    raise RoomFull(f"room {room_id} is full ({room.capacity} players)")
                room.players.append(Player(uid=uid, name=name, avatar=avatar, college=college,
                                           team=pick_team(room)))
                logger.info("Player %s joined room %s", uid, room_id)
        return room

    def start(self, room_id: str, caller_id: str) -> Room:
        with self._editing(room_id) as room:
            if caller_id != room.hostId:
                raise Forbidden("only the host can start the battle")
            if room.status != WAITING:
                raise InvalidState(f"room {room_id} is already {room.status}")
            room.status = ACTIVE
            room.currentQuestionIndex = 0
            room.startTime = self.clock()
        logger.info("Room %s started with %d players", room_id, len(room.players))
        return room

    def submit_answer(self, room_id: str, user_id: str, question_index: int, selected_option: int,
                      time_taken: float) -> Answer:
        with self._editing(room_id) as room:
            if room.status != ACTIVE:
                raise InvalidState(f"room {room_id} is {room.status}")
            player = room.find_player(user_id)
            if player is None:
                raise Forbidden(f"{user_id} is not playing in room {room_id}")
            if not 0 <= question_index < len(room.questions):
                raise InvalidIndex(f"question {question_index} does not exist")
            if room.has_answered(user_id, question_index):
                raise DuplicateAnswer(f"{user_id} already answered question {question_index}")
            now = self.clock()
            if self.enforce_deadline:
                if question_index != room.currentQuestionIndex:
                    raise InvalidState(f"question {question_index} is not open")
                if now > question_deadline(room) + self.grace:
                    raise InvalidState(f"time is up for question {question_index}")

            is_correct = int(selected_option) == room.questions[question_index].correctAnswerIndex
            answer = Answer(userId=user_id, questionIndex=question_index, selectedOption=selected_option,
                            isCorrect=is_correct, timeTaken=time_taken, timestamp=now)
            room.answers.append(answer)
            if is_correct:
                player.score += POINTS_PER_CORRECT
            player.totalTime += time_taken
        return answer

    def advance(self, room_id: str, next_index: int, caller_id: Optional[str] = None) -> Room:
        """Move the room to ``next_index``, finishing it past the last question.

        Without ``caller_id`` the call comes from a trusted timer policy. A
        non-host caller may only advance once the question's time is up or
        everyone has answered. Stale indices are accepted as no-ops so that
        several pollers can race to advance the same question.
        """
        with self._editing(room_id) as room:
            if room.status != ACTIVE:
                raise InvalidState(f"room {room_id} is {room.status}")
            if next_index < 0:
                raise InvalidIndex(f"question {next_index} does not exist")
            if next_index <= room.currentQuestionIndex:
                return room
            if caller_id is not None and caller_id != room.hostId:
                expired = self.clock() >= question_deadline(room)
                if not (expired or room.all_answered()):
                    raise Forbidden("only the host can advance before time is up")
            if next_index >= len(room.questions):
                room.status = FINISHED
                logger.info("Room %s finished", room_id)
            else:
                room.currentQuestionIndex = next_index
                room.startTime = self.clock()
        return room

    def get_state(self, room_id: str) -> Room:
        return self._load(room_id)
