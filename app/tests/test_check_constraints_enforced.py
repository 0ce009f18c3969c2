from datetime import date

import pytest
from sqlalchemy.exc import IntegrityError

from app.database import SessionLocal
from app.models.employee_mapping import EmployeeMapping
from app.models.pay_period import PayPeriod
from app.models.sync_queue_item import SyncQueueItem


def test_check_constraint_blocks_unknown_pay_period_status():
    db = SessionLocal()
    try:
        db.add(
            PayPeriod(
                company_id=1,
                start_date=date(2024, 1, 1),
                end_date=date(2024, 1, 14),
                status="POSTED",  # should fail ck_pay_period_status
            )
        )

        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    finally:
        db.close()


def test_check_constraint_blocks_inverted_pay_period_window():
    db = SessionLocal()
    try:
        db.add(PayPeriod(company_id=1, start_date=date(2024, 1, 14), end_date=date(2024, 1, 1)))

        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    finally:
        db.close()


def test_unique_constraint_blocks_duplicate_pay_period_window():
    db = SessionLocal()
    try:
        db.add(PayPeriod(company_id=1, start_date=date(2024, 1, 1), end_date=date(2024, 1, 14)))
        db.commit()

        db.add(PayPeriod(company_id=1, start_date=date(2024, 1, 1), end_date=date(2024, 1, 14)))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    finally:
        db.close()


def test_check_constraint_blocks_negative_sync_attempts():
    db = SessionLocal()
    try:
        db.add(
            SyncQueueItem(
                company_id=1,
                type="employee",
                action="query",
                reference_type="employee_roster",
                reference_id="1",
                payload={"active_only": True},
                attempts=-1,  # should fail ck_qb_sync_queue_attempts_nonnegative
            )
        )

        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    finally:
        db.close()


def test_partial_unique_index_allows_one_open_item_per_reference():
    db = SessionLocal()
    try:
        def _item(status):
            return SyncQueueItem(
                company_id=1,
                type="employee",
                action="query",
                reference_type="employee_roster",
                reference_id="1",
                payload={"active_only": True},
                status=status,
            )

        db.add_all([_item("completed"), _item("failed"), _item("pending")])
        db.commit()

        db.add(_item("processing"))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    finally:
        db.close()


def test_only_one_active_mapping_per_employee():
    db = SessionLocal()
    try:
        db.add(EmployeeMapping(company_id=1, employee_id=5, qb_name="A", is_active=False))
        db.add(EmployeeMapping(company_id=1, employee_id=5, qb_name="B", is_active=True))
        db.commit()

        db.add(EmployeeMapping(company_id=1, employee_id=5, qb_name="C", is_active=True))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    finally:
        db.close()
