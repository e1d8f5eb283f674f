from datetime import date, datetime

import pytest
from bson import ObjectId
from pydantic import BaseModel

import database


class FakeCollections:
    """In-memory stand-in for the Mongo helpers used by main."""

    def __init__(self):
        self.docs = {}

    def create_document(self, collection_name, data):
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="python", exclude_none=True)
        doc = database._to_bson(dict(data))
        doc.pop("id", None)
        doc["_id"] = ObjectId()
        self.docs.setdefault(collection_name, []).append(doc)
        return str(doc["_id"])

    def update_document(self, collection_name, filter_dict, updates):
        matched = [d for d in self.docs.get(collection_name, []) if _matches(d, filter_dict)][:1]
        for doc in matched:
            doc.update(database._to_bson(dict(updates)))
        return len(matched)

    def delete_document(self, collection_name, filter_dict):
        docs = self.docs.get(collection_name, [])
        for doc in docs:
            if _matches(doc, filter_dict):
                docs.remove(doc)
                return 1
        return 0

    def get_documents(self, collection_name, filter_dict=None, limit=None):
        found = [dict(d) for d in self.docs.get(collection_name, []) if _matches(d, filter_dict or {})]
        return found[:limit] if limit else found


def _matches(doc, filt):
    for key, cond in filt.items():
        value = doc.get(key)
        if isinstance(cond, dict):
            if "$gte" in cond and (value is None or value < cond["$gte"]):
                return False
            if "$lt" in cond and (value is None or value >= cond["$lt"]):
                return False
        elif value != cond:
            return False
    return True


@pytest.fixture
def fake_db(monkeypatch):
    import main

    fake = FakeCollections()
    monkeypatch.setattr(main, "create_document", fake.create_document)
    monkeypatch.setattr(main, "get_documents", fake.get_documents)
    monkeypatch.setattr(main, "update_document", fake.update_document)
    monkeypatch.setattr(main, "delete_document", fake.delete_document)
    return fake


@pytest.fixture
def frozen_now(monkeypatch):
    import main

    holder = {"now": datetime(2024, 6, 15, 9, 5)}
    monkeypatch.setattr(main, "current_time", lambda: holder["now"])
    return holder


@pytest.fixture
def client(fake_db, frozen_now):
    from fastapi.testclient import TestClient

    import main

    return TestClient(main.app)


@pytest.fixture
def twice_daily():
    return {
        "id": "reg-1",
        "medication_id": "med-1",
        "frequency": "twice_daily",
        "start_date": date(2024, 1, 1),
        "is_active": True,
        "dosage": {"amount": 1, "unit": "tablet"},
    }
