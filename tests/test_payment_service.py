import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from educrm.api.v1.payments import service
from educrm.api.v1.payments.schemas import PaymentCreate, PaymentUpdate, RefundRequest
from educrm.api.v1.students.schemas import StudentCreate
from educrm.auth.models import User
from educrm.core.enums import PaymentMethod, PaymentStatus
from educrm.core.exceptions import (
    ConflictError,
    DependencyError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from educrm.core.models import Group, Organization, Payment, PaymentAuditLog, Student, student_groups
from tests.helpers import make_student


def _payment(student_id, amount="1000", **overrides) -> PaymentCreate:
    data = {
        "student_id": student_id,
        "amount": amount,
        "payment_method": "cash",
        "payment_for": {"type": "tuition", "month": "October", "year": 2026},
    }
    data.update(overrides)
    return PaymentCreate(**data)


async def _reload_student(db: AsyncSession, student_id) -> Student:
    return await db.get(Student, student_id, populate_existing=True)


async def _payment_count(db: AsyncSession) -> int:
    return (await db.execute(select(func.count(Payment.id)))).scalar()


def test_calculate_net_amount() -> None:
    assert service.calculate_net_amount(Decimal("1000"), Decimal("100"), Decimal("50")) == Decimal("950")
    assert service.calculate_net_amount(Decimal("1000"), Decimal("0"), Decimal("0")) == Decimal("1000")


@pytest.mark.asyncio
async def test_payment_and_partial_refund_update_balances(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    payment = await service.process_payment(
        db_session,
        organization.id,
        _payment(student.id, discount={"amount": "100"}, late_fee={"amount": "50", "days_late": 3}),
        collected_by=admin_user.id,
    )

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.net_amount == Decimal("950")
    assert payment.currency == "UZS"
    assert payment.receipt_number.startswith("RCP-")
    refreshed = await _reload_student(db_session, student.id)
    assert refreshed.total_paid == Decimal("950")
    assert refreshed.total_debt == Decimal("4050")

    refunded = await service.process_refund(
        db_session,
        organization.id,
        payment.id,
        RefundRequest(amount="500", reason="Course cancelled"),
        refunded_by=admin_user.id,
    )

    assert refunded.status == PaymentStatus.REFUNDED
    assert refunded.refund_amount == Decimal("500")
    assert refunded.refund_reason == "Course cancelled"
    assert refunded.refunded_by == admin_user.id
    assert refunded.refund_date is not None
    refreshed = await _reload_student(db_session, student.id)
    assert refreshed.total_paid == Decimal("450")
    assert refreshed.total_debt == Decimal("4550")


@pytest.mark.asyncio
async def test_overpayment_clamps_debt_at_zero(
    db_session: AsyncSession, organization: Organization, admin_user: User
) -> None:
    student = await make_student(db_session, organization, total_debt=Decimal("300"))

    await service.process_payment(db_session, organization.id, _payment(student.id), collected_by=admin_user.id)

    refreshed = await _reload_student(db_session, student.id)
    assert refreshed.total_paid == Decimal("1000")
    assert refreshed.total_debt == Decimal("0")


@pytest.mark.asyncio
async def test_update_student_financials_unknown_student(db_session: AsyncSession, organization: Organization) -> None:
    with pytest.raises(NotFoundError):
        await service.update_student_financials(db_session, uuid.uuid4(), Decimal("10"))


@pytest.mark.asyncio
async def test_payment_for_unknown_student_is_rejected(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    with pytest.raises(NotFoundError):
        await service.process_payment(
            db_session, organization.id, _payment(uuid.uuid4()), collected_by=admin_user.id
        )
    assert await _payment_count(db_session) == 0


@pytest.mark.asyncio
async def test_payment_for_unknown_group_is_rejected(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    payload = _payment(student.id, payment_for={"type": "tuition", "group_id": str(uuid.uuid4())})
    with pytest.raises(NotFoundError):
        await service.process_payment(db_session, organization.id, payload, collected_by=admin_user.id)


@pytest.mark.asyncio
async def test_discount_larger_than_amount_is_rejected(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    payload = _payment(student.id, amount="100", discount={"amount": "200"})
    with pytest.raises(ValidationError):
        await service.process_payment(db_session, organization.id, payload, collected_by=admin_user.id)
    assert await _payment_count(db_session) == 0


@pytest.mark.asyncio
async def test_payment_cannot_be_created_as_refunded(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    payload = _payment(student.id, status="refunded")
    with pytest.raises(ValidationError):
        await service.process_payment(db_session, organization.id, payload, collected_by=admin_user.id)


@pytest.mark.asyncio
async def test_pending_payment_applies_only_after_verification(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    payment = await service.process_payment(
        db_session,
        organization.id,
        _payment(student.id, status="pending", discount={"amount": "200"}),
        collected_by=admin_user.id,
    )
    assert payment.status == PaymentStatus.PENDING
    refreshed = await _reload_student(db_session, student.id)
    assert refreshed.total_paid == Decimal("0")
    assert refreshed.total_debt == Decimal("5000")

    verified = await service.verify_payment(db_session, organization.id, payment.id, verified_by=admin_user.id)

    assert verified.status == PaymentStatus.COMPLETED
    assert verified.verified_by == admin_user.id
    assert verified.verified_at is not None
    refreshed = await _reload_student(db_session, student.id)
    assert refreshed.total_paid == Decimal("800")
    assert refreshed.total_debt == Decimal("4200")

    with pytest.raises(InvalidStateError):
        await service.verify_payment(db_session, organization.id, payment.id, verified_by=admin_user.id)
    refreshed = await _reload_student(db_session, student.id)
    assert refreshed.total_paid == Decimal("800")


@pytest.mark.asyncio
async def test_refund_cannot_exceed_payment_amount(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    payment = await service.process_payment(
        db_session, organization.id, _payment(student.id), collected_by=admin_user.id
    )

    with pytest.raises(ValidationError):
        await service.process_refund(
            db_session, organization.id, payment.id,
            RefundRequest(amount="1001", reason="Too much"),
            refunded_by=admin_user.id,
        )
    unchanged = await service.get_payment(db_session, organization.id, payment.id)
    assert unchanged.status == PaymentStatus.COMPLETED

    refunded = await service.process_refund(
        db_session, organization.id, payment.id,
        RefundRequest(amount="1000", reason="Full refund"),
        refunded_by=admin_user.id,
    )
    assert refunded.refund_amount == Decimal("1000")
    refreshed = await _reload_student(db_session, student.id)
    assert refreshed.total_paid == Decimal("0")
    assert refreshed.total_debt == Decimal("5000")


@pytest.mark.asyncio
async def test_refund_of_pending_payment_is_rejected(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    payment = await service.process_payment(
        db_session, organization.id, _payment(student.id, status="pending"), collected_by=admin_user.id
    )

    with pytest.raises(InvalidStateError) as exc_info:
        await service.process_refund(
            db_session, organization.id, payment.id,
            RefundRequest(amount="100", reason="Changed mind"),
            refunded_by=admin_user.id,
        )
    assert exc_info.value.message == "Can only refund completed payments"

    unchanged = await service.get_payment(db_session, organization.id, payment.id)
    assert unchanged.status == PaymentStatus.PENDING
    assert unchanged.refund_amount is None
    refreshed = await _reload_student(db_session, student.id)
    assert refreshed.total_debt == Decimal("5000")


@pytest.mark.asyncio
async def test_refund_is_one_shot(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    payment = await service.process_payment(
        db_session, organization.id, _payment(student.id), collected_by=admin_user.id
    )
    await service.process_refund(
        db_session, organization.id, payment.id,
        RefundRequest(amount="300", reason="Partial"),
        refunded_by=admin_user.id,
    )

    with pytest.raises(InvalidStateError) as exc_info:
        await service.process_refund(
            db_session, organization.id, payment.id,
            RefundRequest(amount="300", reason="Again"),
            refunded_by=admin_user.id,
        )
    assert exc_info.value.message == "Payment already refunded"
    refreshed = await _reload_student(db_session, student.id)
    assert refreshed.total_paid == Decimal("700")
    assert refreshed.total_debt == Decimal("4300")


@pytest.mark.asyncio
async def test_refund_of_unknown_payment(
    db_session: AsyncSession, organization: Organization, admin_user: User
) -> None:
    with pytest.raises(NotFoundError):
        await service.process_refund(
            db_session, organization.id, admin_user.id,
            RefundRequest(amount="100", reason="Missing"),
            refunded_by=admin_user.id,
        )


@pytest.mark.asyncio
async def test_receipt_numbers_are_unique(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    first = await service.process_payment(db_session, organization.id, _payment(student.id), collected_by=admin_user.id)
    second = await service.process_payment(db_session, organization.id, _payment(student.id), collected_by=admin_user.id)

    assert first.receipt_number != second.receipt_number


@pytest.mark.asyncio
async def test_receipt_number_collision_is_retried(
    db_session: AsyncSession,
    organization: Organization,
    student: Student,
    admin_user: User,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    org_id, student_id, admin_id = organization.id, student.id, admin_user.id
    first = await service.process_payment(db_session, org_id, _payment(student_id), collected_by=admin_id)

    numbers = iter([first.receipt_number, first.receipt_number, "RCP-20261019-0001"])
    monkeypatch.setattr(service, "generate_receipt_number", lambda: next(numbers))

    second = await service.process_payment(db_session, org_id, _payment(student_id), collected_by=admin_id)

    assert second.receipt_number == "RCP-20261019-0001"
    assert await _payment_count(db_session) == 2
    refreshed = await _reload_student(db_session, student_id)
    assert refreshed.total_paid == Decimal("2000")
    assert refreshed.total_debt == Decimal("3000")


@pytest.mark.asyncio
async def test_receipt_number_collisions_exhaust_attempts(
    db_session: AsyncSession,
    organization: Organization,
    student: Student,
    admin_user: User,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    org_id, student_id, admin_id = organization.id, student.id, admin_user.id
    first = await service.process_payment(db_session, org_id, _payment(student_id), collected_by=admin_id)

    monkeypatch.setattr(service, "generate_receipt_number", lambda: first.receipt_number)
    monkeypatch.setattr(service.settings, "receipt_number_attempts", 3)

    with pytest.raises(ConflictError):
        await service.process_payment(db_session, org_id, _payment(student_id), collected_by=admin_id)

    assert await _payment_count(db_session) == 1
    refreshed = await _reload_student(db_session, student_id)
    assert refreshed.total_paid == Decimal("1000")
    assert refreshed.total_debt == Decimal("4000")


@pytest.mark.asyncio
async def test_failed_balance_update_rolls_back_payment(
    db_session: AsyncSession,
    organization: Organization,
    student: Student,
    admin_user: User,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    org_id, student_id, admin_id = organization.id, student.id, admin_user.id

    async def broken_update(db, student_id, amount):
        raise SQLAlchemyError("connection lost")

    monkeypatch.setattr(service, "update_student_financials", broken_update)

    with pytest.raises(DependencyError) as exc_info:
        await service.process_payment(db_session, org_id, _payment(student_id), collected_by=admin_id)

    assert exc_info.value.status_code == 503
    assert await _payment_count(db_session) == 0
    audit_rows = (await db_session.execute(select(func.count(PaymentAuditLog.id)))).scalar()
    assert audit_rows == 0
    refreshed = await _reload_student(db_session, student_id)
    assert refreshed.total_paid == Decimal("0")
    assert refreshed.total_debt == Decimal("5000")


@pytest.mark.asyncio
async def test_audit_log_records_create_and_refund(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    payment = await service.process_payment(
        db_session, organization.id, _payment(student.id), collected_by=admin_user.id
    )
    await service.process_refund(
        db_session, organization.id, payment.id,
        RefundRequest(amount="250", reason="Partial refund"),
        refunded_by=admin_user.id,
    )

    result = await db_session.execute(
        select(PaymentAuditLog).where(PaymentAuditLog.payment_id == payment.id).order_by(PaymentAuditLog.created_at)
    )
    rows = result.scalars().all()
    assert [r.action_type for r in rows] == ["CREATE", "REFUND"]
    assert rows[0].old_value is None
    assert rows[0].new_value["receipt_number"] == payment.receipt_number
    assert rows[1].old_value["status"] == "completed"
    assert rows[1].new_value == {"status": "refunded", "refund_amount": "250", "refund_reason": "Partial refund"}
    assert all(r.changed_by == admin_user.id for r in rows)


@pytest.mark.asyncio
async def test_statistics_empty(db_session: AsyncSession, organization: Organization) -> None:
    stats = await service.get_payment_statistics(db_session, organization.id)

    assert stats.summary.total_amount == Decimal("0")
    assert stats.summary.total_discount == Decimal("0")
    assert stats.summary.total_late_fee == Decimal("0")
    assert stats.summary.total_payments == 0
    assert stats.summary.average_payment == Decimal("0")
    assert stats.by_method == []


@pytest.mark.asyncio
async def test_statistics_count_completed_payments_only(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    await service.process_payment(
        db_session, organization.id,
        _payment(student.id, amount="1000", discount={"amount": "100"}),
        collected_by=admin_user.id,
    )
    await service.process_payment(
        db_session, organization.id,
        _payment(student.id, amount="500", payment_method="card", late_fee={"amount": "20"}),
        collected_by=admin_user.id,
    )
    await service.process_payment(
        db_session, organization.id,
        _payment(student.id, amount="700", status="pending"),
        collected_by=admin_user.id,
    )

    stats = await service.get_payment_statistics(db_session, organization.id)

    assert stats.summary.total_amount == Decimal("1500")
    assert stats.summary.total_discount == Decimal("100")
    assert stats.summary.total_late_fee == Decimal("20")
    assert stats.summary.total_payments == 2
    assert stats.summary.average_payment == Decimal("750.00")
    assert [(m.payment_method, m.count, m.amount) for m in stats.by_method] == [
        (PaymentMethod.CARD, 1, Decimal("500")),
        (PaymentMethod.CASH, 1, Decimal("1000")),
    ]


@pytest.mark.asyncio
async def test_statistics_date_range(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    await service.process_payment(
        db_session, organization.id,
        _payment(student.id, amount="400", payment_date=datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)),
        collected_by=admin_user.id,
    )
    await service.process_payment(
        db_session, organization.id,
        _payment(student.id, amount="600", payment_date=datetime(2026, 3, 31, 18, 30, tzinfo=timezone.utc)),
        collected_by=admin_user.id,
    )

    stats = await service.get_payment_statistics(
        db_session, organization.id, start_date=date(2026, 3, 1), end_date=date(2026, 3, 31)
    )

    assert stats.summary.total_payments == 1
    assert stats.summary.total_amount == Decimal("600")


@pytest.mark.asyncio
async def test_completed_payment_accepts_notes_only(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    payment = await service.process_payment(
        db_session, organization.id, _payment(student.id), collected_by=admin_user.id
    )

    with pytest.raises(InvalidStateError):
        await service.update_payment(
            db_session, organization.id, payment.id, PaymentUpdate(status="failed"), changed_by=admin_user.id
        )

    updated = await service.update_payment(
        db_session, organization.id, payment.id, PaymentUpdate(notes="Paid by parent"), changed_by=admin_user.id
    )
    assert updated.notes == "Paid by parent"
    assert updated.status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_pending_payment_status_changes(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    payment = await service.process_payment(
        db_session, organization.id, _payment(student.id, status="pending"), collected_by=admin_user.id
    )

    with pytest.raises(InvalidStateError):
        await service.update_payment(
            db_session, organization.id, payment.id, PaymentUpdate(status="completed"), changed_by=admin_user.id
        )

    failed = await service.update_payment(
        db_session, organization.id, payment.id, PaymentUpdate(status="failed"), changed_by=admin_user.id
    )
    assert failed.status == PaymentStatus.FAILED
    refreshed = await _reload_student(db_session, student.id)
    assert refreshed.total_debt == Decimal("5000")

    with pytest.raises(InvalidStateError):
        await service.verify_payment(db_session, organization.id, payment.id, verified_by=admin_user.id)


@pytest.mark.asyncio
async def test_delete_rules(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    completed = await service.process_payment(
        db_session, organization.id, _payment(student.id), collected_by=admin_user.id
    )
    pending = await service.process_payment(
        db_session, organization.id, _payment(student.id, status="pending"), collected_by=admin_user.id
    )

    with pytest.raises(InvalidStateError):
        await service.delete_payment(db_session, organization.id, completed.id, changed_by=admin_user.id)

    await service.delete_payment(db_session, organization.id, pending.id, changed_by=admin_user.id)

    with pytest.raises(NotFoundError):
        await service.get_payment(db_session, organization.id, pending.id)
    deleted_audit = (
        await db_session.execute(
            select(PaymentAuditLog).where(
                PaymentAuditLog.payment_id == pending.id, PaymentAuditLog.action_type == "DELETE"
            )
        )
    ).scalar_one()
    assert deleted_audit.old_value["receipt_number"] == pending.receipt_number


@pytest.mark.asyncio
async def test_list_payments_filters_and_pagination(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    other = await make_student(db_session, organization, full_name="Jasur Toshmatov", code="STD-20261019-5678")
    for _ in range(3):
        await service.process_payment(db_session, organization.id, _payment(student.id), collected_by=admin_user.id)
    await service.process_payment(
        db_session, organization.id, _payment(other.id, payment_method="click"), collected_by=admin_user.id
    )

    page = await service.list_payments(db_session, organization.id, page=1, limit=2)
    assert page.pagination.total == 4
    assert page.pagination.pages == 2
    assert len(page.items) == 2

    by_student = await service.get_payment_history(db_session, organization.id, student.id)
    assert by_student.pagination.total == 3

    by_method = await service.list_payments(db_session, organization.id, payment_method=PaymentMethod.CLICK)
    assert [p.student_id for p in by_method.items] == [other.id]

    with pytest.raises(NotFoundError):
        await service.get_payment_history(db_session, organization.id, admin_user.id)


@pytest.mark.asyncio
async def test_today_and_pending_payments(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    await service.process_payment(db_session, organization.id, _payment(student.id), collected_by=admin_user.id)
    pending = await service.process_payment(
        db_session, organization.id, _payment(student.id, amount="300", status="pending"), collected_by=admin_user.id
    )
    await service.process_payment(
        db_session, organization.id,
        _payment(student.id, amount="200", payment_date=datetime.now(timezone.utc) - timedelta(days=3)),
        collected_by=admin_user.id,
    )

    today = await service.get_today_payments(db_session, organization.id)
    assert today.summary.count == 2
    assert today.summary.completed == 1
    assert today.summary.pending == 1
    assert today.summary.total_amount == Decimal("1000")

    pending_list = await service.get_pending_payments(db_session, organization.id)
    assert [p.id for p in pending_list] == [pending.id]


@pytest.mark.asyncio
async def test_overdue_students(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    recent = await make_student(db_session, organization, full_name="Recent Payer", code="STD-20261019-2222")
    settled = await make_student(
        db_session, organization, full_name="Settled Payer", code="STD-20261019-3333", total_debt=Decimal("500")
    )
    long_ago = datetime.now(timezone.utc) - timedelta(days=40)
    await service.process_payment(
        db_session, organization.id, _payment(student.id, payment_date=long_ago), collected_by=admin_user.id
    )
    await service.process_payment(db_session, organization.id, _payment(recent.id), collected_by=admin_user.id)
    await service.process_payment(
        db_session, organization.id, _payment(settled.id, payment_date=long_ago), collected_by=admin_user.id
    )

    overdue = await service.get_overdue_students(db_session, organization.id)

    assert overdue.count == 1
    entry = overdue.overdue_payments[0]
    assert entry.student_id == student.id
    assert entry.debt == Decimal("4000")
    assert entry.days_overdue == 40
    assert overdue.total_debt == Decimal("4000")

    strict = await service.get_overdue_students(db_session, organization.id, overdue_after_days=50)
    assert strict.count == 0


@pytest.mark.asyncio
async def test_monthly_fee_sums_active_groups(
    db_session: AsyncSession, organization: Organization, student: Student
) -> None:
    english = Group(organization_id=organization.id, name="English B1", monthly_fee=Decimal("400000"))
    maths = Group(organization_id=organization.id, name="Maths", monthly_fee=Decimal("350000"))
    archived = Group(
        organization_id=organization.id, name="IELTS (old)", monthly_fee=Decimal("500000"), status="inactive"
    )
    db_session.add_all([english, maths, archived])
    await db_session.flush()
    for group in (english, maths, archived):
        await db_session.execute(student_groups.insert().values(student_id=student.id, group_id=group.id))
    await db_session.commit()

    fee = await service.calculate_monthly_fee(db_session, organization.id, student.id)

    assert fee.monthly_fee == Decimal("750000")
    assert fee.current_debt == Decimal("5000")


@pytest.mark.asyncio
async def test_late_fee_respects_grace_period(
    db_session: AsyncSession, organization: Organization, student: Student
) -> None:
    within_grace = await service.calculate_late_fee(db_session, organization.id, student.id, 3)
    assert within_grace.amount == Decimal("0")
    assert within_grace.days_late == 0

    late = await service.calculate_late_fee(db_session, organization.id, student.id, 8)
    assert late.days_late == 3
    assert late.amount == Decimal("3000")

    with pytest.raises(ValidationError):
        await service.calculate_late_fee(db_session, organization.id, student.id, -1)


@pytest.mark.parametrize(
    "build",
    [
        lambda: PaymentCreate(
            student_id=uuid.uuid4(), amount="0.004", payment_method="cash", payment_for={"type": "tuition"}
        ),
        lambda: PaymentCreate(
            student_id=uuid.uuid4(),
            amount="100",
            payment_method="cash",
            payment_for={"type": "tuition"},
            discount={"amount": "10.005"},
        ),
        lambda: PaymentCreate(
            student_id=uuid.uuid4(),
            amount="100",
            payment_method="cash",
            payment_for={"type": "tuition"},
            late_fee={"amount": "0.125"},
        ),
        lambda: RefundRequest(amount="10.001", reason="Sub-cent refund"),
        lambda: StudentCreate(full_name="Bekzod Aliyev", opening_debt="1.001"),
    ],
)
def test_money_fields_reject_sub_cent_precision(build) -> None:
    with pytest.raises(SchemaValidationError):
        build()


@pytest.mark.asyncio
async def test_total_paid_matches_stored_net_amounts(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    payments = [
        await service.process_payment(
            db_session, organization.id, _payment(student.id, amount="0.01"), collected_by=admin_user.id
        )
        for _ in range(3)
    ]

    stored = [(await db_session.get(Payment, p.id, populate_existing=True)).net_amount for p in payments]
    refreshed = await _reload_student(db_session, student.id)
    assert stored == [Decimal("0.01")] * 3
    assert refreshed.total_paid == sum(stored, Decimal("0"))


async def _verify_behind_the_back(db: AsyncSession, payment_id, student_id, net_amount: Decimal) -> None:
    """What a concurrent verify_payment commits; the caller's loaded Payment stays stale."""
    await db.execute(
        update(Payment)
        .where(Payment.id == payment_id)
        .values(status=PaymentStatus.COMPLETED.value)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(Student)
        .where(Student.id == student_id)
        .values(total_paid=Student.total_paid + net_amount)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


@pytest.mark.asyncio
async def test_update_does_not_overwrite_payment_verified_after_read(
    db_session: AsyncSession,
    organization: Organization,
    student: Student,
    admin_user: User,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    org_id, student_id, admin_id = organization.id, student.id, admin_user.id
    payment = await service.process_payment(
        db_session, org_id, _payment(student_id, status="pending"), collected_by=admin_id
    )
    read_payment = service._get_payment

    async def read_then_verify(db, organization_id, payment_id, student_id=None):
        found = await read_payment(db, organization_id, payment_id, student_id)
        await _verify_behind_the_back(db, payment_id, found.student_id, Decimal("1000"))
        return found

    monkeypatch.setattr(service, "_get_payment", read_then_verify)

    with pytest.raises(InvalidStateError):
        await service.update_payment(
            db_session, org_id, payment.id, PaymentUpdate(status="failed"), changed_by=admin_id
        )

    row = await db_session.get(Payment, payment.id, populate_existing=True)
    assert row.status == PaymentStatus.COMPLETED.value
    refreshed = await _reload_student(db_session, student_id)
    assert refreshed.total_paid == Decimal("1000")
    updates = (
        await db_session.execute(
            select(func.count(PaymentAuditLog.id)).where(PaymentAuditLog.action_type == "UPDATE")
        )
    ).scalar()
    assert updates == 0


@pytest.mark.asyncio
async def test_delete_keeps_payment_verified_after_read(
    db_session: AsyncSession,
    organization: Organization,
    student: Student,
    admin_user: User,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    org_id, student_id, admin_id = organization.id, student.id, admin_user.id
    payment = await service.process_payment(
        db_session, org_id, _payment(student_id, status="pending"), collected_by=admin_id
    )
    read_payment = service._get_payment

    async def read_then_verify(db, organization_id, payment_id, student_id=None):
        found = await read_payment(db, organization_id, payment_id, student_id)
        await _verify_behind_the_back(db, payment_id, found.student_id, Decimal("1000"))
        return found

    monkeypatch.setattr(service, "_get_payment", read_then_verify)

    with pytest.raises(InvalidStateError):
        await service.delete_payment(db_session, org_id, payment.id, changed_by=admin_id)

    row = await db_session.get(Payment, payment.id, populate_existing=True)
    assert row is not None
    assert row.status == PaymentStatus.COMPLETED.value
    refreshed = await _reload_student(db_session, student_id)
    assert refreshed.total_paid == Decimal("1000")


@pytest.mark.asyncio
async def test_pagination_is_stable_for_equal_payment_dates(
    db_session: AsyncSession, organization: Organization, student: Student, admin_user: User
) -> None:
    paid_at = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)
    created = {
        (
            await service.process_payment(
                db_session, organization.id, _payment(student.id, payment_date=paid_at), collected_by=admin_user.id
            )
        ).id
        for _ in range(5)
    }

    seen = []
    for page in range(1, 6):
        result = await service.list_payments(db_session, organization.id, page=page, limit=1)
        seen.extend(p.id for p in result.items)

    assert len(seen) == 5
    assert set(seen) == created
