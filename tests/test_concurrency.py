"""
Concurrency guard: retry combinator, retryable-error predicate,
TransactionGuard rollback/timeout behaviour, and racing transitions and bypasses
against a file-backed SQLite database from several threads.
"""

import threading

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from changeflow.core.exceptions import ConcurrencyError, ConflictError, TransactionTimeoutError
from changeflow.models import db
from changeflow.models.organization import Authorization, Line, Section, SectionHead
from changeflow.models.proposed_change import HistoryEntry, ProposedChange
from changeflow.models.template import ApprovalTemplate
from changeflow.services.approval_state_machine import ApprovalStateMachine
from changeflow.services.bypass_service import BypassController
from changeflow.services.concurrency import TransactionGuard, is_serialization_failure, retry_with_backoff
from changeflow.services.context import ApprovalContext, EngineSettings
from changeflow.services.proposed_change_service import ProposedChangeService


class _PgError(Exception):
    def __init__(self, pgcode):
        super().__init__(f"pg error {pgcode}")
        self.pgcode = pgcode


def _operational(message, orig=None):
    return OperationalError("UPDATE proposed_changes ...", {}, orig or Exception(message))


class TestRetryPredicate:
    def test_postgres_serialization_and_deadlock(self):
        assert is_serialization_failure(_operational("x", _PgError("40001")))
        assert is_serialization_failure(_operational("x", _PgError("40P01")))
        assert not is_serialization_failure(_operational("x", _PgError("23505")))

    def test_sqlite_lock(self):
        assert is_serialization_failure(_operational("database is locked"))

    def test_timeout_is_retryable(self):
        assert is_serialization_failure(TransactionTimeoutError("slow"))

    def test_domain_errors_are_not(self):
        assert not is_serialization_failure(ConflictError("nope"))
        assert not is_serialization_failure(ValueError("nope"))


class TestRetryWithBackoff:
    def test_returns_first_success(self):
        calls = []
        assert retry_with_backoff(lambda n: calls.append(n) or "ok", attempts=3, base_delay=0.5,
                                  sleep=lambda s: None) == "ok"
        assert calls == [1]

    def test_exponential_delays_then_success(self):
        delays = []

        def flaky(attempt):
            if attempt < 3:
                raise _operational("database is locked")
            return attempt

        assert retry_with_backoff(flaky, attempts=3, base_delay=0.5, sleep=delays.append) == 3
        assert delays == [0.5, 1.0]

    def test_exhaustion_raises_concurrency_error(self):
        delays = []
        last = _operational("database is locked")

        def always(attempt):
            raise last

        with pytest.raises(ConcurrencyError) as exc:
            retry_with_backoff(always, attempts=3, base_delay=0.1, sleep=delays.append)
        assert exc.value.__cause__ is last
        assert exc.value.details == {"attempts": 3}
        assert delays == [0.1, 0.2]

    def test_non_retryable_propagates_immediately(self):
        calls = []

        def conflict(attempt):
            calls.append(attempt)
            raise ConflictError("already approved")

        with pytest.raises(ConflictError):
            retry_with_backoff(conflict, attempts=3, base_delay=0.0, sleep=lambda s: None)
        assert calls == [1]

    def test_on_retry_hook(self):
        seen = []

        def flaky(attempt):
            if attempt == 1:
                raise TransactionTimeoutError("slow")
            return "ok"

        retry_with_backoff(flaky, attempts=2, base_delay=0.25, sleep=lambda s: None,
                           on_retry=lambda n, exc, delay: seen.append((n, type(exc).__name__, delay)))
        assert seen == [(1, "TransactionTimeoutError", 0.25)]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            retry_with_backoff(lambda n: None, attempts=0, base_delay=0.0)


class TestTransactionGuard:
    def test_commits_body(self, org):
        guard = TransactionGuard(db.session, EngineSettings(retry_base_delay=0.0))

        def body(session):
            session.add(Section(name="Paint Shop"))
            return "done"

        assert guard.run(body) == "done"
        db.session.rollback()
        assert db.session.execute(select(Section).where(Section.name == "Paint Shop")).scalar_one()

    def test_error_rolls_back_everything(self, org):
        guard = TransactionGuard(db.session, EngineSettings(retry_base_delay=0.0))

        def body(session):
            session.add(Section(name="Half Written"))
            session.flush()
            raise ConflictError("abort")

        with pytest.raises(ConflictError):
            guard.run(body)
        assert db.session.execute(select(Section).where(Section.name == "Half Written")).scalar_one_or_none() is None

    def test_retries_after_lock_error(self, org):
        attempts = []
        guard = TransactionGuard(db.session, EngineSettings(retry_base_delay=0.0), sleep=lambda s: None)

        def body(session):
            attempts.append(1)
            session.add(Section(name=f"Attempt {len(attempts)}"))
            session.flush()
            if len(attempts) == 1:
                raise _operational("database is locked")

        guard.run(body)
        names = db.session.execute(select(Section.name).where(Section.name.like("Attempt%"))).scalars().all()
        assert names == ["Attempt 2"]

    def test_slow_attempts_time_out_and_exhaust(self, org):
        ticks = iter(range(0, 1000, 10))
        guard = TransactionGuard(
            db.session,
            EngineSettings(retry_attempts=2, retry_base_delay=0.0, transaction_timeout=5),
            sleep=lambda s: None,
            monotonic=lambda: next(ticks),
        )

        def body(session):
            session.add(Section(name="Too Slow"))

        with pytest.raises(ConcurrencyError) as exc:
            guard.run(body)
        assert isinstance(exc.value.__cause__, TransactionTimeoutError)
        assert db.session.execute(select(Section).where(Section.name == "Too Slow")).scalar_one_or_none() is None

    def test_integrity_errors_are_not_retried(self, org):
        guard = TransactionGuard(db.session, EngineSettings(retry_base_delay=0.0), sleep=lambda s: None)
        calls = []

        def body(session):
            calls.append(1)
            session.add(Line(code="L01"))
            session.flush()

        with pytest.raises(IntegrityError):
            guard.run(body)
        assert calls == [1]


# ── Racing writers on a shared file database ─────────────────────────────


class _SilentMailer:
    def send(self, *, to_email, to_name, subject, html_body):
        return "<silent@test.local>"


_RACE_SETTINGS = EngineSettings(retry_attempts=8, retry_base_delay=0.01)


def _seed_race(engine, steps=2):
    """Chain of *steps* heads with no email addresses, so notifications never write."""
    with Session(engine) as s:
        submitter = Authorization(employee_code="R001", employee_name="Submitter", email=None)
        admin = Authorization(employee_code="R900", employee_name="Race Admin", email=None)
        heads = [
            Authorization(employee_code=f"R10{n}", employee_name=f"Head {n}", email=None)
            for n in range(1, steps + 1)
        ]
        sections = [Section(name=f"Section {n}") for n in range(1, steps + 1)]
        s.add_all([submitter, admin, *heads, *sections])
        s.flush()
        s.add(Line(code="RL1", manufacturing_section_id=sections[0].id))
        s.add_all(
            SectionHead(section_id=section.id, authorization_id=head.id)
            for section, head in zip(sections, heads)
        )
        s.add(ApprovalTemplate(template_name="T1", step_order=1, actor_name="Head", section_mode="line"))
        s.add_all(
            ApprovalTemplate(template_name=f"T{n}", step_order=n, actor_name=f"Head {n}",
                             section_mode="fixed", section_id=sections[n - 1].id)
            for n in range(2, steps + 1)
        )
        s.commit()
        submitter_id, first_id, admin_id = submitter.id, heads[0].id, admin.id

    with Session(engine) as s:
        ctx = ApprovalContext.create(s, _SilentMailer(), settings=_RACE_SETTINGS)
        result = ProposedChangeService(ctx).create(
            {
                "project_name": "Race", "line_code": "RL1", "department_id": 1, "section_department_id": 1,
                "plant_id": 1, "change_type": "Process", "description": "d", "reason": "r",
            },
            submitter_id=submitter_id,
        )
    return result["document"]["id"], first_id, admin_id


def _race(engine, doc_id, approver_id, notes):
    barrier = threading.Barrier(len(notes))
    outcomes = []
    lock = threading.Lock()

    def worker(note):
        with Session(engine) as s:
            machine = ApprovalStateMachine(ApprovalContext.create(s, _SilentMailer(), settings=_RACE_SETTINGS))
            barrier.wait()
            try:
                result = machine.transition(doc_id, approver_id, "approved", note)
                outcome = "duplicate" if result["duplicate"] else "applied"
            except ConflictError:
                outcome = "conflict"
            with lock:
                outcomes.append(outcome)

    threads = [threading.Thread(target=worker, args=(n,)) for n in notes]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return sorted(outcomes)


@pytest.fixture()
def race_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 5},
    )
    db.metadata.create_all(engine)
    yield engine
    engine.dispose()


class TestRacingTransitions:
    def test_concurrent_approvals_apply_once(self, race_engine):
        doc_id, approver_id, _ = _seed_race(race_engine)

        outcomes = _race(race_engine, doc_id, approver_id, ["from tab 1", "from tab 2", "from tab 3"])
        assert outcomes == ["applied", "conflict", "conflict"]

        with Session(race_engine) as s:
            doc = s.get(ProposedChange, doc_id)
            assert doc.progress == 50
            assert [step.status for step in doc.steps] == ["approved", "on_going"]
            decisions = s.execute(
                select(func.count(HistoryEntry.id)).where(HistoryEntry.action_type == "decision")
            ).scalar_one()
            assert decisions == 1

    def test_concurrent_identical_submissions_collapse(self, race_engine):
        doc_id, approver_id, _ = _seed_race(race_engine)

        outcomes = _race(race_engine, doc_id, approver_id, ["same note"] * 3)
        assert outcomes == ["applied", "duplicate", "duplicate"]

        with Session(race_engine) as s:
            active = [step for step in s.get(ProposedChange, doc_id).steps if step.status == "on_going"]
            assert len(active) == 1 and active[0].step == 2


class TestRacingOperations:
    def test_transition_and_bypass_serialize(self, race_engine):
        doc_id, approver_id, admin_id = _seed_race(race_engine, steps=3)
        barrier = threading.Barrier(2)
        outcomes = {}

        def approve():
            with Session(race_engine) as s:
                machine = ApprovalStateMachine(ApprovalContext.create(s, _SilentMailer(), settings=_RACE_SETTINGS))
                barrier.wait()
                try:
                    machine.transition(doc_id, approver_id, "approved", "signed off")
                    outcomes["transition"] = "applied"
                except ConflictError:
                    outcomes["transition"] = "conflict"

        def bypass():
            with Session(race_engine) as s:
                controller = BypassController(ApprovalContext.create(s, _SilentMailer(), settings=_RACE_SETTINGS))
                barrier.wait()
                controller.bypass(doc_id, admin_id, "approved", "Line stop", roles=["Super Admin"])
                outcomes["bypass"] = "applied"

        threads = [threading.Thread(target=approve), threading.Thread(target=bypass)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        with Session(race_engine) as s:
            doc = s.get(ProposedChange, doc_id)
            statuses = [step.status for step in doc.steps]
            progress, status = doc.progress, doc.status

        assert outcomes["bypass"] == "applied"
        if outcomes["transition"] == "applied":
            # approver first, then the bypass advanced step 2
            assert statuses == ["approved", "approved", "on_going"]
            assert progress == 67
        else:
            # bypass first, so the approver's step was no longer on-going
            assert outcomes["transition"] == "conflict"
            assert statuses == ["approved", "on_going", "pending"]
            assert progress == 33
        assert statuses.count("on_going") == 1
        assert progress == round(100 * statuses.count("approved") / len(statuses))
        assert status == "onprogress"
