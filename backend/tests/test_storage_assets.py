"""
Upload policy, asset store and document store tests.

Why:
    Uploads are validated before anything is written, blob bytes never leak
    into projections, and the store enforces uniqueness and atomic counters
    that the lifecycle services rely on.
"""
from __future__ import annotations

import threading

import pytest

from backend.common.errors import AssetNotPresent, PayloadTooLarge, UnexpectedField, UnsupportedMediaType, ValidationFailed
from backend.storage import config as storage_config
from backend.storage.assets import Asset, AssetStore, Upload, describe_slot, sanitize_filename
from backend.storage.documents import (
    ASCENDING,
    DESCENDING,
    DocumentQuery,
    DuplicateKeyError,
    InMemoryDocumentStore,
    project,
)
from backend.storage.upload_policy import (
    ROLE_AUDIO,
    ROLE_COVER,
    ROLE_PRIMARY_DOCUMENT,
    ROLE_PRIMARY_FILE,
    DEFAULT_POLICY,
)

PNG = b"\x89PNG\r\n\x1a\n" + b"0" * 32


def _upload(data: bytes = PNG, media_type: str = "image/png", filename: str = "cover.png", field: str = "cover_image"):
    return Upload(field_name=field, data=data, media_type=media_type, filename=filename)


# --- upload policy ---------------------------------------------------------------


@pytest.mark.parametrize(
    "role,media_type",
    [
        (ROLE_COVER, "image/jpeg"),
        (ROLE_AUDIO, "audio/mpeg"),
        (ROLE_PRIMARY_DOCUMENT, "application/pdf"),
        (ROLE_PRIMARY_FILE, "video/mp4"),
        (ROLE_PRIMARY_FILE, "text/plain; charset=utf-8"),
        (ROLE_PRIMARY_FILE, "application/vnd.openxmlformats-officedocument.wordprocessingml.document"),
    ],
)
def test_policy_accepts_declared_families(role, media_type):
    assert DEFAULT_POLICY.validate(role, media_type, 10)


@pytest.mark.parametrize(
    "role,media_type",
    [
        (ROLE_COVER, "application/pdf"),
        (ROLE_AUDIO, "video/mp4"),
        (ROLE_PRIMARY_DOCUMENT, "image/png"),
        (ROLE_PRIMARY_FILE, "application/x-msdownload"),
        (ROLE_COVER, ""),
    ],
)
def test_policy_rejects_other_media(role, media_type):
    with pytest.raises(UnsupportedMediaType):
        DEFAULT_POLICY.validate(role, media_type, 10)


def test_policy_rejects_unknown_role():
    with pytest.raises(UnexpectedField):
        DEFAULT_POLICY.validate("banner", "image/png", 10)


def test_policy_rejects_empty_and_oversized_payloads():
    with pytest.raises(ValidationFailed):
        DEFAULT_POLICY.validate(ROLE_COVER, "image/png", 0)
    with pytest.raises(PayloadTooLarge):
        DEFAULT_POLICY.validate(ROLE_COVER, "image/png", 11, max_size_bytes=10)


def test_upload_ceilings_fall_back_on_invalid_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MEDIA_MAX_UPLOAD_BYTES", "not-a-number")
    assert storage_config.get_media_max_upload_bytes() == storage_config.MEDIA_MAX_BYTES_DEFAULT
    monkeypatch.setenv("MATERIALS_MAX_UPLOAD_BYTES", "-5")
    assert storage_config.get_materials_max_upload_bytes() == storage_config.MATERIALS_MAX_BYTES_DEFAULT
    monkeypatch.setenv("MEDIA_MAX_UPLOAD_BYTES", "1024")
    assert storage_config.get_media_max_upload_bytes() == 1024


# --- asset store -----------------------------------------------------------------


def test_prepare_normalizes_media_type_and_filename():
    assets = AssetStore(InMemoryDocumentStore())
    asset = assets.prepare(
        _upload(media_type="IMAGE/PNG; q=1", filename="../../My Cover (final).PNG"),
        field_role=ROLE_COVER,
    )
    assert asset.media_type == "image/png"
    assert asset.filename == "My Cover -final.png"
    assert asset.size == len(PNG)


@pytest.mark.parametrize("raw,expected", [(None, "file"), ("", "file"), ("/etc/passwd", "passwd"), ("ünï.pdf", "uni.pdf")])
def test_sanitize_filename(raw, expected):
    assert sanitize_filename(raw) == expected


def test_attach_replaces_slot_with_other_changes_in_one_write():
    store = InMemoryDocumentStore()
    assets = AssetStore(store)
    doc = store.create("books", {"title": "Old", "cover_image": None})
    asset = assets.prepare(_upload(), field_role=ROLE_COVER)

    updated = assets.attach("books", doc["id"], "cover_image", asset, changes={"title": "New"}, exclude=["cover_image.data"])

    assert updated["title"] == "New"
    assert "data" not in updated["cover_image"]
    stored = store.find_by_id("books", doc["id"])
    assert AssetStore.read(stored, "cover_image").data == PNG


def test_write_slots_clears_and_fills_in_one_write():
    store = InMemoryDocumentStore()
    assets = AssetStore(store)
    doc = store.create("books", {"cover_image": Asset(PNG, "image/png", "c.png", len(PNG)).to_document(), "pdf_file": None})
    pdf = Asset(b"%PDF-1.7", "application/pdf", "b.pdf", 8)

    updated = assets.write_slots(
        "books", doc["id"], attach={"pdf_file": pdf}, detach=["cover_image"], changes={"title": "T"}
    )

    assert updated["title"] == "T"
    assert updated["pdf_file"]["filename"] == "b.pdf"
    assert assets.write_slots("books", "missing", detach=["cover_image"]) is None
    with pytest.raises(AssetNotPresent):
        AssetStore.read(store.find_by_id("books", doc["id"]), "cover_image")


def test_describe_slot_never_carries_bytes():
    slot = Asset(PNG, "image/png", "c.png", len(PNG)).to_document()
    assert describe_slot(slot) == {"content_type": "image/png", "filename": "c.png", "size": len(PNG)}
    assert describe_slot(None) is None


# --- document store --------------------------------------------------------------


def test_project_drops_dotted_paths_without_touching_source():
    doc = {"a": {"data": b"x", "size": 1}, "b": 2}
    out = project(doc, ["a.data", "missing.path"])
    assert out == {"a": {"size": 1}, "b": 2}
    assert doc["a"]["data"] == b"x"


def test_query_filters_and_search():
    store = InMemoryDocumentStore()
    store.create("sermons", {"title": "Grace Abounds", "category": "Faith", "tags": ["grace", "hope"]})
    store.create("sermons", {"title": "On Patience", "category": "Faith", "tags": ["patience"]})
    store.create("sermons", {"title": "Mercy", "category": "Love", "tags": []})

    assert store.count_documents("sermons", DocumentQuery(equals={"category": "Faith"})) == 2
    assert store.count_documents("sermons", DocumentQuery(any_of={"tags": ["hope", "patience"]})) == 2
    hits = store.find("sermons", DocumentQuery(search="GRACE", search_fields=("title",)))
    assert [h["title"] for h in hits] == ["Grace Abounds"]


def test_find_sorts_and_pages():
    store = InMemoryDocumentStore()
    for n in range(5):
        store.create("prayers", {"title": f"p{n}", "rank": n})
    page = store.find("prayers", sort=[("rank", DESCENDING)], skip=1, limit=2)
    assert [d["rank"] for d in page] == [3, 2]
    asc = store.find("prayers", sort=[("rank", ASCENDING)], limit=1)
    assert asc[0]["rank"] == 0


def test_unique_constraint_on_create_and_update():
    store = InMemoryDocumentStore()
    store.ensure_unique("users", ["email"])
    first = store.create("users", {"email": "a@example.org"})
    second = store.create("users", {"email": "b@example.org"})
    with pytest.raises(DuplicateKeyError):
        store.create("users", {"email": "a@example.org"})
    with pytest.raises(DuplicateKeyError):
        store.update_by_id("users", second["id"], {"email": "a@example.org"})
    assert store.find_by_id("users", first["id"])["email"] == "a@example.org"


def test_update_merges_fields_and_increments_atomically():
    store = InMemoryDocumentStore()
    doc = store.create("materials", {"title": "Notes", "number_of_views": 0})

    def bump():
        for _ in range(50):
            store.update_by_id("materials", doc["id"], {}, increments={"number_of_views": 1})

    workers = [threading.Thread(target=bump) for _ in range(4)]
    for w in workers:
        w.start()
    for w in workers:
        w.join()

    store.update_by_id("materials", doc["id"], {"title": "Notes v2"})
    final = store.find_by_id("materials", doc["id"])
    assert final["number_of_views"] == 200
    assert final["title"] == "Notes v2"


def test_dotted_update_sets_one_field_of_a_sub_document():
    store = InMemoryDocumentStore()
    doc = store.create("users", {"profile": {"phone": "1", "bio": "hi"}, "other": None})

    store.update_by_id("users", doc["id"], {"profile.phone": "2"})
    store.update_by_id("users", doc["id"], {"other.church": "St. Mark"})

    final = store.find_by_id("users", doc["id"])
    assert final["profile"] == {"phone": "2", "bio": "hi"}
    assert final["other"] == {"church": "St. Mark"}


def test_update_and_delete_missing_document():
    store = InMemoryDocumentStore()
    assert store.update_by_id("books", "nope", {"title": "x"}) is None
    assert store.delete_by_id("books", "nope") is False


def test_delete_many_by_query():
    store = InMemoryDocumentStore()
    store.create("submissions", {"assignment_id": "a1"})
    store.create("submissions", {"assignment_id": "a1"})
    store.create("submissions", {"assignment_id": "a2"})
    assert store.delete_many("submissions", DocumentQuery(equals={"assignment_id": "a1"})) == 2
    assert store.count_documents("submissions") == 1
