"""
Shared fixtures: a fresh SQLite database per test, seeded accounts, and the
service graph wired to an in-memory realtime channel.
"""

import os
from dataclasses import dataclass
from typing import Dict

import pytest


@pytest.fixture
def sqlalchemy_db(tmp_path):
    """Configure a fresh SQLAlchemy SQLite DB for tests."""
    from mediation_service.db.session import reset_engine, init_db, drop_db
    from mediation_service.realtime import reset_realtime_channel

    old_db_url = os.environ.get("DATABASE_URL")
    db_path = tmp_path / "mediation.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    reset_engine()
    reset_realtime_channel()
    init_db()

    yield

    drop_db()
    reset_realtime_channel()
    if old_db_url is not None:
        os.environ["DATABASE_URL"] = old_db_url
    else:
        os.environ.pop("DATABASE_URL", None)
    reset_engine()


@pytest.fixture
def db(sqlalchemy_db):
    from mediation_service.db.session import SessionLocal, get_engine

    get_engine()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _seed_users() -> Dict[str, str]:
    from mediation_service.auth import get_password_hash
    from mediation_service.db.models import User, UserRole
    from mediation_service.db.session import get_db_session

    specs = {
        "admin": ("admin@example.org", "Admin User", UserRole.ADMIN, True),
        "plaintiff": ("plaintiff@example.org", "Plaintiff User", UserRole.USER, True),
        "defendant": ("defendant@example.org", "Defendant User", UserRole.USER, True),
        "lawyer": ("lawyer@example.org", "Lawyer Expert", UserRole.LAWYER, True),
        "scholar": ("scholar@example.org", "Scholar Expert", UserRole.RELIGIOUS_SCHOLAR, True),
        "social": ("social@example.org", "Social Expert", UserRole.SOCIAL_EXPERT, True),
        "outsider": ("outsider@example.org", "Outsider User", UserRole.USER, True),
        "unverified": ("new@example.org", "Unverified User", UserRole.USER, False),
    }
    password_hash = get_password_hash("secret123")
    ids = {}
    with get_db_session() as db:
        for key, (email, name, role, verified) in specs.items():
            user = User(
                email=email, name=name, role=role, is_verified=verified,
                is_active=True, password_hash=password_hash,
            )
            db.add(user)
            db.flush()
            ids[key] = user.id
    return ids


@pytest.fixture
def user_ids(sqlalchemy_db) -> Dict[str, str]:
    return _seed_users()


@pytest.fixture
def actors(db, user_ids):
    """AuthContext per seeded account, keyed like ``user_ids``."""
    from mediation_service.auth import AuthContext
    from mediation_service.db.models import User

    return {key: AuthContext.from_user(db.get(User, uid)) for key, uid in user_ids.items()}


@pytest.fixture
def channel(sqlalchemy_db):
    from mediation_service.realtime import RealtimeChannel

    return RealtimeChannel(queue_size=64)


@pytest.fixture
def fanout(channel):
    from mediation_service.config import FanoutMode
    from mediation_service.notifications import NotificationFanout

    return NotificationFanout(channel=channel, mode=FanoutMode.INLINE)


@dataclass
class Services:
    db: object
    cases: object
    panels: object
    agreements: object


@pytest.fixture
def make_services(fanout, channel):
    """Build the service graph around a session (one per thread in race tests)."""
    from mediation_service.agreements import AgreementConsensusEngine
    from mediation_service.lifecycle import CaseStateMachine
    from mediation_service.panels import PanelFormationService

    def build(session) -> Services:
        cases = CaseStateMachine(session, fanout=fanout, channel=channel, retries=1)
        return Services(
            db=session,
            cases=cases,
            panels=PanelFormationService(session, cases),
            agreements=AgreementConsensusEngine(session, cases),
        )

    return build


@pytest.fixture
def services(db, make_services) -> Services:
    return make_services(db)


class CaseFlow:
    """Drives a case through the happy path up to a requested stage."""

    def __init__(self, services: Services, actors):
        self.s = services
        self.a = actors

    def file(self, plaintiff: str = "plaintiff"):
        from mediation_service.db.models import CaseType

        return self.s.cases.file_case(
            self.a[plaintiff],
            case_type=CaseType.FAMILY,
            issue_description="Dispute over inherited land boundaries",
            opposite_party={"name": "Opposite Party", "phone": "+10000000000"},
        )

    def contacted(self):
        case = self.file()
        return self.s.cases.contact_opposite_party(case.id, self.a["admin"])

    def accepted(self, bind_defendant: bool = True):
        from mediation_service.db.models import CaseStatus

        case = self.contacted()
        defendant_id = self.a["defendant"].user_id if bind_defendant else None
        return self.s.cases.record_opposite_party_response(
            case.id, self.a["admin"], CaseStatus.ACCEPTED, defendant_id=defendant_id,
        )

    def panel_members(self):
        from mediation_service.db.models import PanelRole

        return [
            (self.a["lawyer"].user_id, PanelRole.LAWYER),
            (self.a["scholar"].user_id, PanelRole.RELIGIOUS_SCHOLAR),
            (self.a["social"].user_id, PanelRole.SOCIAL_EXPERT),
        ]

    def panel_created(self, bind_defendant: bool = True):
        case = self.accepted(bind_defendant)
        self.s.panels.form_panel(case.id, self.a["admin"], self.panel_members())
        return self.s.cases.load_case(case.id)

    def in_mediation(self, bind_defendant: bool = True):
        case = self.panel_created(bind_defendant)
        return self.s.cases.start_mediation(case.id, self.a["admin"])


@pytest.fixture
def flow(services, actors) -> CaseFlow:
    return CaseFlow(services, actors)


@pytest.fixture
def count_rows():
    """Count rows of a model in a fresh session, optionally filtered."""
    from mediation_service.db.session import get_db_session

    def count(model, *criteria) -> int:
        with get_db_session() as session:
            return session.query(model).filter(*criteria).count()

    return count
