import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "testing"
os.environ["AUTO_CREATE_TABLES"] = "false"
os.environ["PROMETHEUS_ENABLED"] = "false"
os.environ["CONTENT_CACHE_ENABLED"] = "false"
os.environ["ROTATION_STRATEGY"] = "least_used"

import json
import pytest
from fastapi.testclient import TestClient
from examprep.core.auth import create_token
from examprep.core.database import engine, SessionLocal
from examprep.main import app
from examprep.models.orm import Base, User, Section, MockExam
from examprep.services.catalog import ContentCatalog, get_catalog

# (level, mode, json_id, title, sequence_index)
CATALOG = [
    ("A2", "Speaking", "a2_paper1", "A2 Paper 1", 1),
    ("A2", "Speaking", "a2_paper2", "A2 Paper 2", 2),
    ("A2", "Speaking", "a2_paper3", "A2 Paper 3", 3),
    ("A1", "Speaking", "a1_paper1", "A1 Paper 1", 1),
    ("A1", "Speaking", "a1_paper2", "A1 Paper 2", 2),
    ("B1", "Speaking", "b1_fete", "Organiser une fête", 1),
    ("B1", "Speaking", "b1_formation", "Choisir une formation", 2),
    ("B1", "Speaking", "b1_voyage", "Préparer un voyage", 3),
    ("A2", "Listening", "a2_listen1", "A2 Listening 1", 1),
    ("A2", "Listening", "a2_listen2", "A2 Listening 2", 2),
    ("A1", "Listening", "a1_listen1", "A1 Listening 1", 1),
    ("B1", "Listening", "b1_listen1", "B1 Listening 1", 1),
    ("B1", "Listening", "b1_listen2", "B1 Listening 2", 2),
]

TEMPLATES = {"fr": {"intro": {"instructions": "Présentez-vous", "prompt": "Parlez de vous", "duration": 60}}}


@pytest.fixture
def scenarios_dir(tmp_path):
    for level, mode, json_id, title, _ in CATALOG:
        folder = tmp_path / level.lower() / mode.lower()
        folder.mkdir(parents=True, exist_ok=True)
        body = {"title": title, "items": [
            {"id": f"{json_id}_q1", "template": "intro", "prompt": f"{title} question 1"},
            {"id": f"{json_id}_q2", "prompt": f"{title} question 2"},
        ]}
        (folder / f"{json_id}.json").write_text(json.dumps(body), encoding="utf-8")
    (tmp_path / "base_templates_oral.json").write_text(json.dumps(TEMPLATES), encoding="utf-8")
    return tmp_path


@pytest.fixture
def catalog(scenarios_dir):
    return ContentCatalog(str(scenarios_dir))


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def sections(db):
    """Seed the FR catalog; returns json_id -> section id."""
    rows = [Section(level=level, mode=mode, language="FR", json_id=json_id, title=title, sequence_index=seq)
            for level, mode, json_id, title, seq in CATALOG]
    db.add_all(rows)
    db.commit()
    return {row.json_id: row.id for row in rows}


@pytest.fixture
def client(db, catalog):
    app.dependency_overrides[get_catalog] = lambda: catalog
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(uid: str):
        user = User(uid=uid)
        db.add(user); db.commit()
        return user.id, {"Authorization": f"Bearer {create_token(uid)}"}
    return _make


@pytest.fixture
def load_exam():
    """Fresh read of a session, bypassing any identity map."""
    def _load(exam_id: int) -> MockExam:
        with SessionLocal() as s:
            exam = s.get(MockExam, exam_id)
            s.expunge(exam)
            return exam
    return _load
