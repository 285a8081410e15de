"""Room registries: keyed storage of battle rooms by room code."""

import threading
import weakref
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from errors import RoomIdTaken
from schemas import Room

ROOM_COLLECTION = "battle"


class RoomRegistry(ABC):
    """Create, look up and save back rooms.

    ``get`` hands out an independent copy, so callers mutate it freely and
    persist it with ``save``; nothing is visible to other readers until then.
    """

    @abstractmethod
    def create(self, room: Room) -> None:
        """Store a new room, raising ``RoomIdTaken`` if the code is in use."""

    @abstractmethod
    def get(self, room_id: str) -> Optional[Room]: ...

    @abstractmethod
    def save(self, room: Room) -> None: ...


class MemoryRoomRegistry(RoomRegistry):
    def __init__(self):
        self._rooms: Dict[str, Room] = {}
        self._lock = threading.Lock()

    def create(self, room):
        with self._lock:
            if room.roomId in self._rooms:
                raise RoomIdTaken(f"room {room.roomId} already exists")
            self._rooms[room.roomId] = room.model_copy(deep=True)

    def get(self, room_id):
        with self._lock:
            room = self._rooms.get(room_id)
            return room.model_copy(deep=True) if room is not None else None

    def save(self, room):
        with self._lock:
            self._rooms[room.roomId] = room.model_copy(deep=True)


class MongoRoomRegistry(RoomRegistry):
    def __init__(self, db):
        self.collection = db[ROOM_COLLECTION]
        self.collection.create_index([("roomId", ASCENDING)], unique=True)

    def create(self, room):
        try:
            self.collection.insert_one(room.model_dump())
        except DuplicateKeyError:
            raise RoomIdTaken(f"room {room.roomId} already exists")

    def get(self, room_id):
        doc = self.collection.find_one({"roomId": room_id}, {"_id": 0})
        return Room.model_validate(doc) if doc else None

    def save(self, room):
        self.collection.replace_one({"roomId": room.roomId}, room.model_dump())


class RoomLocks:
    """One mutex per room code, so contention never crosses rooms.

    Entries are weakly held: a lock lives only while some caller holds a
    reference to it, so unknown or finished rooms leave nothing behind.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def get(self, room_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(room_id)
            if lock is None:
                lock = self._locks[room_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, room_id: str) -> Iterator[None]:
        lock = self.get(room_id)
        with lock:
            yield
