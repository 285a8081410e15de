import mongomock
import pytest

from database import MemoryStore, MongoStore, connect_store


@pytest.fixture(params=["memory", "mongo"])
def store(request):
    if request.param == "memory":
        return MemoryStore()
    return MongoStore(mongomock.MongoClient(tz_aware=True)["quiz_app"])


def test_insert_and_find(store):
    doc_id = store.insert("payment", {"userId": "u1", "amount": 100, "status": "PENDING"})
    store.insert("payment", {"userId": "u2", "amount": 50, "status": "APPROVED"})

    found = store.find_one("payment", {"_id": doc_id})
    assert found["userId"] == "u1"
    assert found["_id"] == doc_id
    assert "createdAt" in found
    assert [d["userId"] for d in store.find("payment", {"status": "APPROVED"})] == ["u2"]


def test_sort_skip_limit(store):
    for i in range(5):
        store.insert("user", {"uid": f"u{i}", "points": i * 10})
    top = store.find("user", sort=[("points", -1)], limit=2)
    assert [u["uid"] for u in top] == ["u4", "u3"]
    page = store.find("user", sort=[("points", 1)], skip=2, limit=2)
    assert [u["uid"] for u in page] == ["u2", "u3"]


def test_in_filter(store):
    store.insert("question", {"topic": "optics"})
    store.insert("question", {"topic": "waves"})
    store.insert("question", {"topic": "heat"})
    assert store.count("question", {"topic": {"$in": ["optics", "heat"]}}) == 2


def test_update_creates_nested_keys(store):
    store.insert("user", {"uid": "u1", "stats": {"subjectStats": {}}})
    assert store.update_one("user", {"uid": "u1"}, increments={
        "stats.subjectStats.Physics.correct": 3,
        "stats.subjectStats.Physics.total": 5,
    })
    store.update_one("user", {"uid": "u1"}, increments={"stats.subjectStats.Physics.correct": 1},
                     values={"displayName": "Rafi"})
    user = store.find_one("user", {"uid": "u1"})
    assert user["stats"]["subjectStats"]["Physics"] == {"correct": 4, "total": 5}
    assert user["displayName"] == "Rafi"


def test_upsert(store):
    assert not store.update_one("mistake", {"userId": "u1", "question": "q"}, increments={"wrongCount": 1})
    for _ in range(2):
        store.update_one("mistake", {"userId": "u1", "question": "q"}, increments={"wrongCount": 1},
                         on_insert={"subject": "Physics"}, upsert=True)
    docs = store.find("mistake", {"userId": "u1"})
    assert len(docs) == 1
    assert docs[0]["wrongCount"] == 2
    assert docs[0]["subject"] == "Physics"


def test_delete_and_count(store):
    doc_id = store.insert("notification", {"title": "hi"})
    assert store.count("notification") == 1
    assert not store.delete_one("notification", {"_id": "not-an-id"})
    assert store.delete_one("notification", {"_id": doc_id})
    assert store.count("notification") == 0


def test_total(store):
    store.insert("payment", {"amount": 100, "status": "APPROVED"})
    store.insert("payment", {"amount": 250, "status": "APPROVED"})
    store.insert("payment", {"amount": 999, "status": "PENDING"})
    assert store.total("payment", "amount", {"status": "APPROVED"}) == 350
    assert store.total("payment", "amount", {"status": "REJECTED"}) == 0


def test_group_count(store):
    store.insert("question", {"subject": "Physics", "chapter": "Optics", "topic": "Lenses"})
    store.insert("question", {"subject": "Physics", "chapter": "Optics", "topic": "Lenses"})
    store.insert("question", {"subject": "Physics", "chapter": "Heat"})
    store.insert("question", {"subject": "Biology", "chapter": "Cells", "topic": "Mitosis"})

    counts = dict(store.group_count("question", ("subject", "chapter", "topic")))
    assert counts == {
        ("Physics", "Optics", "Lenses"): 2,
        ("Physics", "Heat", None): 1,
        ("Biology", "Cells", "Mitosis"): 1,
    }
    assert dict(store.group_count("question", ("subject",), {"chapter": "Optics"})) == {("Physics",): 2}


def test_memory_sample_is_bounded():
    store = MemoryStore()
    for i in range(3):
        store.insert("question", {"subject": "Physics", "n": i})
    store.insert("question", {"subject": "Biology"})
    picked = store.sample("question", {"subject": "Physics"}, 10)
    assert sorted(q["n"] for q in picked) == [0, 1, 2]
    assert len(store.sample("question", {"subject": "Physics"}, 2)) == 2


def test_memory_backend_selected_explicitly():
    assert isinstance(connect_store("memory"), MemoryStore)
