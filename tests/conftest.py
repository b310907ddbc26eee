import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    db._pool.close_all()
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    yield str(db_path)
    db._pool.close_all()


def make_case_document(**overrides):
    """Two steps, three decisions across airway/oxygenation/safety."""
    document = {
        "id": "case-test",
        "moduleId": "mod-test",
        "title": "Test case",
        "intro": "A patient arrives short of breath.",
        "objectives": ["Secure the airway", "Correct hypoxaemia"],
        "steps": [
            {
                "id": "s1",
                "title": "Arrival",
                "narrative": "Initial assessment.",
                "decisions": [
                    {
                        "id": "d1",
                        "type": "single",
                        "prompt": "First action?",
                        "domain": "airway",
                        "options": [
                            {"id": "A", "label": "Jaw thrust", "rationale": "Opens the airway.", "isExpertChoice": True},
                            {"id": "B", "label": "Wait", "rationale": "Delays care."},
                            {"id": "C", "label": "Leave", "rationale": "Unsafe."},
                        ],
                        "weights": {"A": 10, "B": 5, "C": 0},
                        "feedback": "Airway first.",
                    }
                ],
            },
            {
                "id": "s2",
                "title": "Stabilisation",
                "narrative": "Saturation is falling.",
                "decisions": [
                    {
                        "id": "d2",
                        "type": "multi",
                        "prompt": "Select all appropriate measures.",
                        "domain": "oxygenation",
                        "options": [
                            {"id": "X", "label": "High-flow oxygen", "rationale": "Raises FiO2.", "isExpertChoice": True},
                            {"id": "Y", "label": "Sit upright", "rationale": "Improves mechanics.", "isExpertChoice": True},
                            {"id": "Z", "label": "Sedate", "rationale": "Depresses drive."},
                        ],
                        "weights": {"X": 3, "Y": 2, "Z": -1},
                    },
                    {
                        "id": "d3",
                        "type": "single",
                        "prompt": "Escalate?",
                        "options": [
                            {"id": "yes", "label": "Call ICU", "isExpertChoice": True},
                            {"id": "no", "label": "Observe"},
                        ],
                        "weights": {"yes": 1, "no": 0},
                    },
                ],
            },
        ],
    }
    document.update(overrides)
    return document


@pytest.fixture
def case_document():
    return make_case_document()


@pytest.fixture
def sample_case(case_document):
    from case_library import load_case

    return load_case(case_document)


@pytest.fixture
def case_file(tmp_path, case_document):
    import json

    path = tmp_path / "cases.json"
    path.write_text(json.dumps({"mod-test": case_document}), encoding="utf-8")
    return path


@pytest.fixture
def memory_store():
    from attempt_store import InMemoryAttemptStore

    return InMemoryAttemptStore()
