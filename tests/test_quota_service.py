"""配额准入、原子增减与对账测试。"""

import pytest

from app.packages.drive.core.exceptions import AdmissionRejected
from app.packages.drive.crud.items import item_crud
from app.packages.drive.models.user import User
from app.packages.drive.services.quota_service import quota_service

GiB = 1024 ** 3


def _used(db, user_id: str) -> int:
    user = db.get(User, user_id)
    db.refresh(user)
    return user.storage_used


def test_admission_boundary_is_inclusive(db_session_fixture, make_user):
    user = make_user(storage_limit=1000, storage_used=400)
    exact = quota_service.admission_check(db_session_fixture, owner_id=user.id, size=600)
    assert exact.admitted is True
    assert exact.available_bytes == 600

    over = quota_service.admission_check(db_session_fixture, owner_id=user.id, size=601)
    assert over.admitted is False
    assert over.available_bytes == 600


def test_admission_of_large_file_near_limit(db_session_fixture, make_user):
    user = make_user(storage_limit=15 * GiB, storage_used=14 * GiB)
    admission = quota_service.admission_check(db_session_fixture, owner_id=user.id, size=2 * GiB)
    assert admission.admitted is False
    assert admission.available_bytes == 1 * GiB

    with pytest.raises(AdmissionRejected) as exc_info:
        quota_service.ensure_admitted(db_session_fixture, owner_id=user.id, size=2 * GiB)
    assert exc_info.value.status_code == 413
    assert exc_info.value.data == {"requiredBytes": 2 * GiB, "availableBytes": 1 * GiB}


def test_commit_adds_and_floors_at_zero(db_session_fixture, make_user):
    user = make_user(storage_limit=1000, storage_used=100)
    quota_service.commit(db_session_fixture, owner_id=user.id, delta=250, auto_commit=True)
    assert _used(db_session_fixture, user.id) == 350

    quota_service.commit(db_session_fixture, owner_id=user.id, delta=-10_000, auto_commit=True)
    assert _used(db_session_fixture, user.id) == 0


def test_usage_and_reconcile(db_session_fixture, make_user):
    user = make_user(storage_limit=1000, storage_used=999)
    item_crud.create(
        db_session_fixture,
        {"owner_id": user.id, "parent_id": None, "name": "a.bin", "kind": "file", "size_bytes": 120},
    )
    item_crud.create(
        db_session_fixture,
        {"owner_id": user.id, "parent_id": None, "name": "docs", "kind": "folder", "size_bytes": 0},
    )

    usage = quota_service.usage(db_session_fixture, owner_id=user.id)
    assert usage["storage_used"] == 999
    assert usage["available_bytes"] == 1
    assert usage["file_count"] == 1
    assert usage["folder_count"] == 1

    result = quota_service.reconcile(db_session_fixture, owner_id=user.id)
    assert result == {"previous": 999, "actual": 120, "drift": -879}
    assert _used(db_session_fixture, user.id) == 120
