"""文件夹解析测试：按需创建、并发收敛与冲突。"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from app.packages.drive.core.exceptions import NameConflictError, NotFoundError
from app.packages.drive.db import session as db_session
from app.packages.drive.models.item import Item
from app.packages.drive.services.folder_resolver import folder_resolver, split_path


def test_split_path_drops_empty_and_dot_segments():
    assert split_path("/2024//Q1/./../report.pdf") == ["2024", "Q1", "report.pdf"]
    assert split_path("a\\b") == ["a", "b"]
    assert split_path(None) == []


def test_resolve_creates_missing_folders_once(db_session_fixture, make_user):
    user = make_user()
    first = folder_resolver.resolve_hierarchy(db_session_fixture, owner_id=user.id, root_parent_id=None, segments=["2024", "Q1"])
    second = folder_resolver.resolve_hierarchy(db_session_fixture, owner_id=user.id, root_parent_id=None, segments=["2024", "Q1"])
    assert first == second

    folders = db_session_fixture.query(Item).filter(Item.owner_id == user.id).all()
    assert sorted(f.name for f in folders) == ["2024", "Q1"]
    q1 = next(f for f in folders if f.name == "Q1")
    year = next(f for f in folders if f.name == "2024")
    assert q1.parent_id == year.id
    assert year.parent_id is None


def test_empty_segments_return_root_parent(db_session_fixture, make_user):
    user = make_user()
    assert folder_resolver.resolve_hierarchy(db_session_fixture, owner_id=user.id, root_parent_id=None, segments=[]) is None
    base = folder_resolver.resolve_hierarchy(db_session_fixture, owner_id=user.id, root_parent_id=None, segments=["base"])
    assert folder_resolver.resolve_hierarchy(db_session_fixture, owner_id=user.id, root_parent_id=base, segments=["", "."]) == base


def test_concurrent_resolution_converges(make_user):
    user = make_user()
    owner_id = user.id

    def resolve(_):
        with db_session.SessionLocal() as db:
            return folder_resolver.resolve_hierarchy(db, owner_id=owner_id, root_parent_id=None, segments=["shared", "deep", "leaf"])

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(resolve, range(12)))

    assert len(set(results)) == 1
    with db_session.SessionLocal() as db:
        names = sorted(i.name for i in db.query(Item).filter(Item.owner_id == owner_id).all())
    assert names == ["deep", "leaf", "shared"]


def test_sibling_file_is_a_name_conflict(db_session_fixture, make_user):
    user = make_user()
    db_session_fixture.add(Item(owner_id=user.id, parent_id=None, name="taken", kind="file", size_bytes=1))
    db_session_fixture.commit()
    with pytest.raises(NameConflictError):
        folder_resolver.resolve_hierarchy(db_session_fixture, owner_id=user.id, root_parent_id=None, segments=["taken", "child"])


def test_root_parent_must_belong_to_owner(db_session_fixture, make_user):
    alice = make_user()
    bob = make_user()
    folder = folder_resolver.resolve_hierarchy(db_session_fixture, owner_id=alice.id, root_parent_id=None, segments=["private"])
    with pytest.raises(NotFoundError):
        folder_resolver.resolve_hierarchy(db_session_fixture, owner_id=bob.id, root_parent_id=folder, segments=["x"])


def test_navigate_reports_invalid_prefix(db_session_fixture, make_user):
    user = make_user()
    leaf = folder_resolver.resolve_hierarchy(db_session_fixture, owner_id=user.id, root_parent_id=None, segments=["a", "b"])
    assert folder_resolver.navigate(db_session_fixture, owner_id=user.id, segments=["a", "b"]) == leaf
    with pytest.raises(NotFoundError) as exc_info:
        folder_resolver.navigate(db_session_fixture, owner_id=user.id, segments=["a", "missing", "c"])
    assert "a/missing" in exc_info.value.detail
