"""分片上传协调测试：端到端流程、幂等完成、乱序分片、补偿与超时清理。"""

import asyncio
from datetime import timedelta

import pytest

from app.packages.drive.core.exceptions import (
    AdmissionRejected,
    AppException,
    ContentValidationRejected,
    IncompleteUpload,
    NotFoundError,
    ObjectStoreError,
    PartUploadFailed,
    UploadStateError,
)
from app.packages.drive.core.timezone import utcnow
from app.packages.drive.crud.items import item_crud
from app.packages.drive.crud.upload_sessions import upload_session_crud
from app.packages.drive.db import session as db_session
from app.packages.drive.models.item import Item
from app.packages.drive.models.upload_session import UploadSession
from app.packages.drive.models.user import User
from app.packages.drive.services.cleanup_task import StaleUploadSweeper
from app.packages.drive.services.storage_backends import LocalBackend
from app.packages.drive.services.upload_service import (
    UploadService,
    build_storage_key,
    progress_percent,
    upload_service,
)

PNG_HEADER = b"\x89PNG\r\n\x1a\n" + b"\x00" * 56


def _storage_used(db, owner_id: str) -> int:
    user = db.get(User, owner_id)
    db.refresh(user)
    return user.storage_used


def _session(db, upload_id: str) -> UploadSession:
    db.expire_all()
    return db.get(UploadSession, upload_id)


def _start(db, owner_id, name, chunks, *, service=upload_service, **kwargs):
    return service.init_upload(
        db,
        owner_id=owner_id,
        file_name=name,
        declared_size=sum(len(c) for c in chunks),
        **kwargs,
    )


def _send(db, owner_id, init, chunks, order=None, *, service=upload_service):
    results = []
    for index in order if order is not None else range(len(chunks)):
        results.append(
            service.upload_part(
                db,
                owner_id=owner_id,
                upload_id=init["upload_id"],
                storage_key=init["storage_key"],
                part_index=index,
                total_parts=len(chunks),
                chunk=chunks[index],
            )
        )
    return results


def test_progress_percent_rounds_half_up():
    assert [progress_percent(n, 3) for n in range(4)] == [0, 33, 67, 100]
    assert progress_percent(1, 8) == 13
    assert progress_percent(0, 0) == 0


def test_storage_key_hides_file_name():
    key = build_storage_key("owner-1", "Quarterly Report.PDF")
    prefix, owner_hash, leaf = key.split("/")
    assert prefix == "files"
    assert len(owner_hash) == 16
    assert leaf.endswith(".pdf")
    assert len(leaf) == 64 + len(".pdf")
    assert "Quarterly" not in key
    assert build_storage_key("owner-1", "a.pdf") != build_storage_key("owner-1", "a.pdf")


def test_folder_upload_end_to_end(db_session_fixture, make_user):
    db = db_session_fixture
    owner_id = make_user().id
    part_size = 4_000_000
    chunks = [
        b"%PDF-1.7\n" + b"\x00" * (part_size - 9),
        b"\x00" * part_size,
        b"\x00" * part_size,
    ]

    init = _start(db, owner_id, "report.pdf", chunks, relative_path="2024/Q1/report.pdf", mime_type="application/pdf")
    progress = [r["progress_percent"] for r in _send(db, owner_id, init, chunks)]
    assert progress == [33, 67, 100]

    item = upload_service.complete_upload(
        db,
        owner_id=owner_id,
        upload_id=init["upload_id"],
        storage_key=init["storage_key"],
        file_name="report.pdf",
        declared_size=12_000_000,
        total_parts=3,
        mime_type="application/pdf",
    )
    assert item.name == "report.pdf"
    assert item.size_bytes == 12_000_000
    assert item.mime_type == "application/pdf"
    assert item.file_type == "PDF"

    q1 = db.get(Item, item.parent_id)
    year = db.get(Item, q1.parent_id)
    assert (year.name, q1.name, year.parent_id) == ("2024", "Q1", None)
    assert _storage_used(db, owner_id) == 12_000_000

    session = _session(db, init["upload_id"])
    assert session.status == "completed"
    assert session.item_id == item.id
    assert upload_session_crud.count_parts(db, upload_id=init["upload_id"]) == 0

    stored = upload_service.backend.get_object_range(init["storage_key"], 0, 8)
    assert stored == b"%PDF-1.7\n"


def test_parts_may_arrive_in_any_order(db_session_fixture, make_user):
    db = db_session_fixture
    owner_id = make_user().id
    chunks = [b"first-", b"second-", b"third"]
    init = _start(db, owner_id, "story.txt", chunks, mime_type="text/plain")
    results = _send(db, owner_id, init, chunks, order=[2, 0, 1])
    assert [r["received_parts"] for r in results] == [1, 2, 3]
    assert results[-1]["is_complete"] is True

    item = upload_service.complete_upload(db, owner_id=owner_id, upload_id=init["upload_id"], storage_key=init["storage_key"])
    assert upload_service.backend.get_object(item.storage_key) == b"first-second-third"


def test_complete_is_idempotent(db_session_fixture, make_user):
    db = db_session_fixture
    owner_id = make_user().id
    chunks = [b"hello ", b"world"]
    init = _start(db, owner_id, "hello.txt", chunks)
    _send(db, owner_id, init, chunks)

    first = upload_service.complete_upload(db, owner_id=owner_id, upload_id=init["upload_id"], storage_key=init["storage_key"])
    second = upload_service.complete_upload(db, owner_id=owner_id, upload_id=init["upload_id"], storage_key=init["storage_key"])
    assert first.id == second.id
    assert _storage_used(db, owner_id) == 11
    assert db.query(Item).filter(Item.owner_id == owner_id, Item.kind == "file").count() == 1


def test_complete_reports_missing_parts(db_session_fixture, make_user):
    db = db_session_fixture
    owner_id = make_user().id
    chunks = [b"aa", b"bb", b"cc"]
    init = _start(db, owner_id, "gaps.txt", chunks)

    with pytest.raises(IncompleteUpload) as exc_info:
        upload_service.complete_upload(db, owner_id=owner_id, upload_id=init["upload_id"])
    assert exc_info.value.status_code == 400

    _send(db, owner_id, init, chunks, order=[0, 2])
    with pytest.raises(IncompleteUpload) as exc_info:
        upload_service.complete_upload(db, owner_id=owner_id, upload_id=init["upload_id"])
    assert exc_info.value.data == {"receivedParts": 2, "totalParts": 3, "missingParts": [1]}
    assert _session(db, init["upload_id"]).status == "uploading"

    _send(db, owner_id, init, chunks, order=[1])
    item = upload_service.complete_upload(db, owner_id=owner_id, upload_id=init["upload_id"])
    assert item.size_bytes == 6


def test_spoofed_content_is_rejected_and_cleaned_up(db_session_fixture, make_user):
    db = db_session_fixture
    owner_id = make_user().id
    chunks = [PNG_HEADER]
    init = _start(db, owner_id, "notes.txt", chunks, mime_type="text/plain")
    _send(db, owner_id, init, chunks)

    with pytest.raises(ContentValidationRejected) as exc_info:
        upload_service.complete_upload(db, owner_id=owner_id, upload_id=init["upload_id"], mime_type="text/plain")
    assert exc_info.value.status_code == 422
    assert exc_info.value.data["detectedType"] == "image/png"

    assert _session(db, init["upload_id"]).status == "aborted"
    assert _storage_used(db, owner_id) == 0
    assert db.query(Item).filter(Item.owner_id == owner_id).count() == 0
    with pytest.raises(NotFoundError):
        upload_service.backend.get_object(init["storage_key"])


def test_init_rejects_when_quota_is_exhausted(db_session_fixture, make_user):
    db = db_session_fixture
    owner_id = make_user(storage_limit=100, storage_used=40).id
    with pytest.raises(AdmissionRejected) as exc_info:
        upload_service.init_upload(db, owner_id=owner_id, file_name="big.bin", declared_size=61, relative_path="x/y/big.bin")
    assert exc_info.value.data == {"requiredBytes": 61, "availableBytes": 60}
    assert db.query(UploadSession).filter(UploadSession.owner_id == owner_id).count() == 0
    assert db.query(Item).filter(Item.owner_id == owner_id).count() == 0

    init = upload_service.init_upload(db, owner_id=owner_id, file_name="fits.bin", declared_size=60)
    assert init["upload_id"]


def test_init_validates_input(db_session_fixture, make_user):
    owner_id = make_user().id
    with pytest.raises(AppException):
        upload_service.init_upload(db_session_fixture, owner_id=owner_id, file_name="empty.bin", declared_size=0)
    with pytest.raises(AppException):
        upload_service.init_upload(db_session_fixture, owner_id=owner_id, file_name="  ", declared_size=10)
    with pytest.raises(NotFoundError):
        upload_service.init_upload(db_session_fixture, owner_id=owner_id, file_name="a.bin", declared_size=10, parent_id="missing")


class FlakyBackend(LocalBackend):
    def __init__(self, root, failures: int = 1, **kwargs):
        super().__init__(root, **kwargs)
        self.failures = failures

    def upload_part(self, key, upload_id, part_index, data):
        if self.failures > 0:
            self.failures -= 1
            raise ObjectStoreError("simulated outage")
        return super().upload_part(key, upload_id, part_index, data)


def test_store_failure_keeps_session_retryable(db_session_fixture, make_user, tmp_path):
    db = db_session_fixture
    owner_id = make_user().id
    service = UploadService(backend=FlakyBackend(tmp_path / "flaky"))
    chunks = [b"only-part"]
    init = _start(db, owner_id, "retry.txt", chunks, service=service)

    with pytest.raises(PartUploadFailed) as exc_info:
        _send(db, owner_id, init, chunks, service=service)
    assert exc_info.value.status_code == 502
    assert exc_info.value.data == {"uploadId": init["upload_id"], "partIndex": 0}
    assert _session(db, init["upload_id"]).status == "initiated"

    result = _send(db, owner_id, init, chunks, service=service)[0]
    assert result["is_complete"] is True
    item = service.complete_upload(db, owner_id=owner_id, upload_id=init["upload_id"])
    assert service.backend.get_object(item.storage_key) == b"only-part"


def test_small_non_final_part_is_rejected(db_session_fixture, make_user, tmp_path):
    db = db_session_fixture
    owner_id = make_user().id
    service = UploadService(backend=LocalBackend(tmp_path / "strict", min_part_size=4))
    chunks = [b"ab", b"cd"]
    init = _start(db, owner_id, "tiny.txt", chunks, service=service)

    with pytest.raises(PartUploadFailed) as exc_info:
        _send(db, owner_id, init, chunks, order=[0], service=service)
    assert exc_info.value.status_code == 400

    # 末尾分片不受最小尺寸限制
    assert _send(db, owner_id, init, chunks, order=[1], service=service)[0]["received_parts"] == 1


def test_part_validation(db_session_fixture, make_user):
    db = db_session_fixture
    owner_id = make_user().id
    init = _start(db, owner_id, "v.txt", [b"abc"])
    common = {"owner_id": owner_id, "upload_id": init["upload_id"], "chunk": b"abc"}

    with pytest.raises(AppException):
        upload_service.upload_part(db, storage_key=init["storage_key"], part_index=1, total_parts=1, **common)
    with pytest.raises(AppException):
        upload_service.upload_part(db, storage_key="files/forged", part_index=0, total_parts=1, **common)
    with pytest.raises(NotFoundError):
        upload_service.upload_part(
            db,
            owner_id=make_user().id,
            upload_id=init["upload_id"],
            storage_key=init["storage_key"],
            part_index=0,
            total_parts=1,
            chunk=b"abc",
        )


def test_name_collision_on_completion_gets_suffix(db_session_fixture, make_user):
    db = db_session_fixture
    owner_id = make_user().id
    item_crud.create(db, {"owner_id": owner_id, "parent_id": None, "name": "dup.txt", "kind": "file", "size_bytes": 1})

    chunks = [b"again"]
    init = _start(db, owner_id, "dup.txt", chunks)
    _send(db, owner_id, init, chunks)
    item = upload_service.complete_upload(db, owner_id=owner_id, upload_id=init["upload_id"])
    assert item.name == "dup (1).txt"


def test_abort_stops_further_parts(db_session_fixture, make_user):
    db = db_session_fixture
    owner_id = make_user().id
    chunks = [b"one", b"two"]
    init = _start(db, owner_id, "abort.txt", chunks)
    _send(db, owner_id, init, chunks, order=[0])

    assert upload_service.abort_upload(db, owner_id=owner_id, upload_id=init["upload_id"])["status"] == "aborted"
    assert upload_service.abort_upload(db, owner_id=owner_id, upload_id=init["upload_id"])["status"] == "aborted"
    assert upload_session_crud.count_parts(db, upload_id=init["upload_id"]) == 0

    with pytest.raises(UploadStateError):
        _send(db, owner_id, init, chunks, order=[1])
    with pytest.raises(UploadStateError):
        upload_service.complete_upload(db, owner_id=owner_id, upload_id=init["upload_id"])


def test_status_and_active_listing(db_session_fixture, make_user):
    db = db_session_fixture
    owner_id = make_user().id
    chunks = [b"1", b"2", b"3", b"4"]
    init = _start(db, owner_id, "s.txt", chunks)
    _send(db, owner_id, init, chunks, order=[3, 1])

    status = upload_service.get_status(db, owner_id=owner_id, upload_id=init["upload_id"])
    assert status["status"] == "uploading"
    assert status["received_parts"] == [1, 3]
    assert status["progress_percent"] == 50

    active = upload_service.list_active(db, owner_id=owner_id)
    assert [s["upload_id"] for s in active] == [init["upload_id"]]


def test_stale_sessions_are_swept(db_session_fixture, make_user):
    db = db_session_fixture
    owner_id = make_user().id
    stale = _start(db, owner_id, "stale.txt", [b"x"])
    fresh = _start(db, owner_id, "fresh.txt", [b"y"])
    db.query(UploadSession).filter(UploadSession.upload_id == stale["upload_id"]).update(
        {"last_activity_at": utcnow() - timedelta(hours=2)}
    )
    db.commit()

    sweeper = StaleUploadSweeper(interval_seconds=0, max_idle_seconds=3600)
    assert sweeper.sweep_once() >= 1
    assert _session(db, stale["upload_id"]).status == "aborted"
    assert _session(db, fresh["upload_id"]).status == "initiated"

    # 间隔为 0 时不启动后台任务
    asyncio.run(sweeper.start())
    assert sweeper.running is False


class FinalizeFailsOnceBackend(LocalBackend):
    def __init__(self, root, **kwargs):
        super().__init__(root, **kwargs)
        self.failures = 1

    def complete_multipart_upload(self, key, upload_id, parts):
        if self.failures > 0:
            self.failures -= 1
            raise ObjectStoreError("simulated outage")
        return super().complete_multipart_upload(key, upload_id, parts)


class SizeLookupFailsBackend(LocalBackend):
    def object_size(self, key):
        raise ObjectStoreError("head_object timed out")


def test_finalize_failure_keeps_parts_for_retry(db_session_fixture, make_user, tmp_path):
    db = db_session_fixture
    owner_id = make_user().id
    service = UploadService(backend=FinalizeFailsOnceBackend(tmp_path / "finalize"))
    chunks = [b"part-a ", b"part-b"]
    init = _start(db, owner_id, "merge.txt", chunks, service=service)
    _send(db, owner_id, init, chunks, service=service)

    with pytest.raises(ObjectStoreError):
        service.complete_upload(db, owner_id=owner_id, upload_id=init["upload_id"])
    assert _session(db, init["upload_id"]).status == "uploading"
    assert upload_session_crud.count_parts(db, upload_id=init["upload_id"]) == 2

    item = service.complete_upload(db, owner_id=owner_id, upload_id=init["upload_id"])
    assert service.backend.get_object(item.storage_key) == b"part-a part-b"


def test_failure_after_assembly_deletes_object(db_session_fixture, make_user, tmp_path):
    db = db_session_fixture
    owner_id = make_user().id
    service = UploadService(backend=SizeLookupFailsBackend(tmp_path / "assembled"))
    chunks = [b"assembled bytes"]
    init = _start(db, owner_id, "assembled.txt", chunks, service=service)
    _send(db, owner_id, init, chunks, service=service)

    with pytest.raises(ObjectStoreError):
        service.complete_upload(db, owner_id=owner_id, upload_id=init["upload_id"])

    assert _session(db, init["upload_id"]).status == "aborted"
    with pytest.raises(NotFoundError):
        service.backend.get_object(init["storage_key"])
    assert _storage_used(db, owner_id) == 0
    assert db.query(Item).filter(Item.owner_id == owner_id).count() == 0
    # 会话已终止，重试得到明确的状态错误
    with pytest.raises(UploadStateError):
        service.complete_upload(db, owner_id=owner_id, upload_id=init["upload_id"])


def test_sweeper_cleans_sessions_stuck_in_completing(db_session_fixture, make_user):
    db = db_session_fixture
    owner_id = make_user().id
    chunks = [b"interrupted"]
    init = _start(db, owner_id, "crash.txt", chunks)
    _send(db, owner_id, init, chunks)
    # 模拟合并完成后、条目入库前进程退出
    etags = {p.part_index: p.etag for p in upload_session_crud.list_parts(db, upload_id=init["upload_id"])}
    upload_service.backend.complete_multipart_upload(init["storage_key"], init["upload_id"], etags)
    db.query(UploadSession).filter(UploadSession.upload_id == init["upload_id"]).update(
        {"status": "completing", "last_activity_at": utcnow() - timedelta(hours=3)}
    )
    db.commit()

    cleaned = upload_service.abort_stale_sessions(db, max_idle_seconds=3600, max_completing_seconds=7200)
    assert cleaned >= 1
    assert _session(db, init["upload_id"]).status == "aborted"
    assert upload_session_crud.count_parts(db, upload_id=init["upload_id"]) == 0
    with pytest.raises(NotFoundError):
        upload_service.backend.get_object(init["storage_key"])


def test_recent_completing_session_is_left_alone(db_session_fixture, make_user):
    db = db_session_fixture
    owner_id = make_user().id
    init = _start(db, owner_id, "busy.txt", [b"busy"])
    _send(db, owner_id, init, [b"busy"])
    db.query(UploadSession).filter(UploadSession.upload_id == init["upload_id"]).update({"status": "completing"})
    db.commit()

    upload_service.abort_stale_sessions(db, max_idle_seconds=3600, max_completing_seconds=7200)
    assert _session(db, init["upload_id"]).status == "completing"


class AbortDuringPartBackend(LocalBackend):
    def __init__(self, root, **kwargs):
        super().__init__(root, **kwargs)
        self.on_part = None

    def upload_part(self, key, upload_id, part_index, data):
        etag = super().upload_part(key, upload_id, part_index, data)
        callback, self.on_part = self.on_part, None
        if callback is not None:
            callback()
        return etag


def test_part_racing_an_abort_leaves_no_rows(db_session_fixture, make_user, tmp_path):
    db = db_session_fixture
    owner_id = make_user().id
    service = UploadService(backend=AbortDuringPartBackend(tmp_path / "race"))
    chunks = [b"late part"]
    init = _start(db, owner_id, "late.txt", chunks, service=service)

    def abort_from_another_request():
        other = db_session.SessionLocal()
        try:
            service.abort_upload(other, owner_id=owner_id, upload_id=init["upload_id"])
        finally:
            other.close()

    service.backend.on_part = abort_from_another_request
    with pytest.raises(UploadStateError):
        _send(db, owner_id, init, chunks, service=service)

    assert _session(db, init["upload_id"]).status == "aborted"
    assert upload_session_crud.count_parts(db, upload_id=init["upload_id"]) == 0
