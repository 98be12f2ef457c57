"""Shared fixtures: an in-memory store, an API client and entity builders."""

from datetime import datetime, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import directory
import forms
import main
from database import Store
from schemas import Form, Group, Promotion, Student, SubGroup
from tests.helpers import auth, default_sections


class Seed:
    """Builds directory entities and forms through the service functions."""

    def __init__(self, store: Store):
        self.store = store
        self._numbers = 0

    def promotion(self, name="BUT2 Info", year="2025"):
        return directory.create_promotion(self.store, Promotion(name=name, year=year))

    def group(self, promotion_id, name="G1"):
        return directory.create_group(self.store, Group(name=name, promotion=str(promotion_id)))

    def subgroup(self, group_id, students=(), name="TP A", kind="TP"):
        payload = SubGroup(name=name, type=kind, group=str(group_id), students=[str(s) for s in students])
        return directory.create_subgroup(self.store, payload)

    def student(self, first_name="Ada", last_name="Lovelace", promotions=(), groups=(), **extra):
        self._numbers += 1
        payload = Student(
            first_name=first_name,
            last_name=last_name,
            year=extra.pop("year", "BUT2"),
            student_number=extra.pop("student_number", f"S{self._numbers:03d}"),
            promotions=[str(p) for p in promotions],
            groups=[str(g) for g in groups],
            **extra,
        )
        return directory.create_student(self.store, payload)

    def form(self, association_type="student", targets=(), sections=None, valid_from=None, valid_to=None, **extra):
        now = datetime.utcnow()
        targets = [str(t) for t in targets]
        if association_type == "promotion":
            association = {"promotion": targets[0] if targets else None}
        else:
            association = {f"{association_type}s": targets}
        payload = Form(
            title=extra.pop("title", "Projet tutoré"),
            professor=extra.pop("professor", "prof-1"),
            association_type=association_type,
            sections=default_sections() if sections is None else sections,
            valid_from=valid_from or now - timedelta(days=1),
            valid_to=valid_to or now + timedelta(days=30),
            **association,
            **extra,
        )
        return forms.create_form(self.store, payload)


@pytest.fixture
def store():
    s = Store(mongomock.MongoClient(), "evaluations_test")
    s.ensure_indexes()
    yield s
    s.close()


@pytest.fixture
def seed(store):
    return Seed(store)


@pytest.fixture
def client(store):
    main.app.state.store = store
    with TestClient(main.app) as c:
        yield c
    main.app.state.store = None


@pytest.fixture
def admin_headers():
    return auth("admin", "admin-1")


@pytest.fixture
def professor_headers():
    return auth("professor", "prof-1")
