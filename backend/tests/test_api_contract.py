"""
HTTP contract tests for the Excellence API.

Why:
    Pin the wire behavior the clients depend on: status codes per error
    class, `{"error", "detail"}` bodies, private caching, bearer-token
    handling, multipart uploads keyed by slot name and asset delivery
    headers.
"""
from __future__ import annotations

import json
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import anyio
import httpx
import pytest
from httpx import ASGITransport
from starlette.datastructures import UploadFile

from backend.identity_access.tokens import TokenService
from backend.web import main
from backend.web.wiring import build_platform, set_platform

pytestmark = pytest.mark.anyio("asyncio")

PDF = b"%PDF-1.7\n" + b"0" * 64
PNG = b"\x89PNG\r\n\x1a\n" + b"0" * 32


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test")


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


async def _register(c: httpx.AsyncClient, email: str, *, name: str = "User", **extra) -> dict:
    r = await c.post("/api/auth/register", json={"name": name, "email": email, "password": "s3cret!", **extra})
    assert r.status_code == 201, r.text
    return r.json()


@pytest.fixture
def secrets(platform):
    return platform.settings


async def test_health_is_public_and_not_cached(platform):
    async with _client() as c:
        r = await c.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}
    assert "no-store" in r.headers["Cache-Control"]
    assert r.headers["X-Content-Type-Options"] == "nosniff"


async def test_register_login_me_round_trip(platform):
    async with _client() as c:
        session = await _register(c, "ada@example.org", name="Ada")
        assert session["user"]["role"] == "student"
        assert "password_hash" not in session["user"]
        assert session["expires_in"] == platform.settings.token_ttl_seconds

        r = await c.post("/api/auth/login", json={"email": "ADA@example.org", "password": "s3cret!"})
        assert r.status_code == 200
        token = r.json()["token"]
        assert "private" in r.headers["Cache-Control"]

        me = await c.get("/api/auth/me", headers=_auth(token))
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "ada@example.org"


async def test_registration_errors(platform):
    async with _client() as c:
        await _register(c, "ada@example.org")
        dup = await c.post("/api/auth/register", json={"name": "A", "email": "ada@example.org", "password": "s3cret!"})
        short = await c.post("/api/auth/register", json={"name": "A", "email": "b@example.org", "password": "123"})
        bad_login = await c.post("/api/auth/login", json={"email": "ada@example.org", "password": "nope-nope"})
    assert dup.status_code == 400 and dup.json()["error"] == "duplicate_email"
    assert short.status_code == 400 and short.json() == {"error": "validation_failed", "detail": "password_too_short"}
    assert bad_login.status_code == 401 and bad_login.json()["error"] == "invalid_credentials"


async def test_elevation_secrets_assign_roles(platform, secrets):
    async with _client() as c:
        admin = await _register(c, "admin@example.org", admin_key=secrets.admin_secret)
        clergy = await _register(c, "pastor@example.org", clergy_key=secrets.clergy_secret)
        guess = await _register(c, "guess@example.org", admin_key="guess")
    assert admin["user"]["role"] == "admin"
    assert clergy["user"]["role"] == "clergy"
    assert guess["user"]["role"] == "student"


async def test_token_errors_are_distinguishable(platform):
    expired = TokenService(platform.settings, clock=lambda: 1_000_000.0).issue("someone", "student")
    async with _client() as c:
        missing = await c.get("/api/auth/me")
        garbage = await c.get("/api/auth/me", headers=_auth("not.a.token"))
        old = await c.get("/api/auth/me", headers=_auth(expired))
        public = await c.get("/api/sermons", headers=_auth("not.a.token"))
    assert missing.status_code == 401 and missing.json()["error"] == "unauthenticated"
    assert garbage.status_code == 401 and garbage.json()["detail"] == "invalid_token"
    assert old.status_code == 401 and old.json()["detail"] == "token_expired"
    assert public.status_code == 200


async def test_deactivated_account_is_rejected_immediately(platform, secrets):
    async with _client() as c:
        admin = await _register(c, "admin@example.org", admin_key=secrets.admin_secret)
        student = await _register(c, "student@example.org")
        r = await c.delete(f"/api/users/{student['user']['id']}", headers=_auth(admin["token"]))
        assert r.status_code == 200
        me = await c.get("/api/auth/me", headers=_auth(student["token"]))
        login = await c.post("/api/auth/login", json={"email": "student@example.org", "password": "s3cret!"})
    assert me.status_code == 401 and me.json()["error"] == "account_deactivated"
    assert login.status_code == 401 and login.json()["error"] == "account_deactivated"


async def test_role_change_applies_without_new_token(platform, secrets):
    async with _client() as c:
        admin = await _register(c, "admin@example.org", admin_key=secrets.admin_secret)
        user = await _register(c, "user@example.org")
        denied = await c.post("/api/sermons", json={"title": "T", "content": "C"}, headers=_auth(user["token"]))
        await c.patch(
            f"/api/users/{user['user']['id']}", json={"role": "clergy"}, headers=_auth(admin["token"])
        )
        allowed = await c.post("/api/sermons", json={"title": "T", "content": "C"}, headers=_auth(user["token"]))
    assert denied.status_code == 403
    assert allowed.status_code == 201


async def test_sermon_lifecycle_over_http(platform, secrets):
    async with _client() as c:
        pastor = await _register(c, "pastor@example.org", name="Pastor", clergy_key=secrets.clergy_secret)
        other = await _register(c, "other@example.org", clergy_key=secrets.clergy_secret)
        student = await _register(c, "student@example.org")

        created = await c.post(
            "/api/sermons",
            data={"title": "Grace", "content": "Full text", "tags": json.dumps(["grace", "hope"])},
            files={"image": ("grace.png", PNG, "image/png")},
            headers=_auth(pastor["token"]),
        )
        assert created.status_code == 201, created.text
        sermon = created.json()["sermon"]
        assert sermon["image"]["content_type"] == "image/png"
        assert sermon["tags"] == ["grace", "hope"]

        listing = await c.get("/api/sermons", params={"tags": "hope"})
        assert listing.json()["pagination"]["total"] == 1
        assert "content" not in listing.json()["items"][0]

        image = await c.get(f"/api/sermons/{sermon['id']}/image")
        assert image.status_code == 200
        assert image.content == PNG
        assert image.headers["content-type"] == "image/png"
        assert image.headers["content-disposition"].startswith("inline")

        hijack = await c.patch(f"/api/sermons/{sermon['id']}", json={"title": "Mine"}, headers=_auth(other["token"]))
        assert hijack.status_code == 404

        forbidden = await c.post("/api/sermons", json={"title": "T", "content": "C"}, headers=_auth(student["token"]))
        assert forbidden.status_code == 403 and forbidden.json()["error"] == "forbidden"

        unpublish = await c.patch(
            f"/api/sermons/{sermon['id']}", json={"is_published": False}, headers=_auth(pastor["token"])
        )
        assert unpublish.status_code == 200
        hidden = await c.get(f"/api/sermons/{sermon['id']}")
        assert hidden.status_code == 404 and hidden.json()["error"] == "not_found"
        by_author = await c.get(f"/api/sermons/author/{pastor['user']['id']}", headers=_auth(pastor["token"]))
        assert by_author.json()["pagination"]["total"] == 1

        gone = await c.delete(f"/api/sermons/{sermon['id']}", headers=_auth(pastor["token"]))
        assert gone.status_code == 200
        assert (await c.get(f"/api/sermons/{sermon['id']}", headers=_auth(pastor["token"]))).status_code == 404


async def test_upload_errors_map_to_statuses(platform, secrets, monkeypatch):
    async with _client() as c:
        pastor = await _register(c, "pastor@example.org", clergy_key=secrets.clergy_secret)
        wrong_type = await c.post(
            "/api/sermons",
            data={"title": "T", "content": "C"},
            files={"image": ("x.pdf", PDF, "application/pdf")},
            headers=_auth(pastor["token"]),
        )
        unexpected = await c.post(
            "/api/sermons",
            data={"title": "T", "content": "C"},
            files={"banner": ("x.png", PNG, "image/png")},
            headers=_auth(pastor["token"]),
        )
        bad_tags = await c.post(
            "/api/sermons",
            data={"title": "T", "content": "C", "tags": "a,b"},
            headers=_auth(pastor["token"]),
        )
    assert wrong_type.status_code == 415 and wrong_type.json()["error"] == "unsupported_media_type"
    assert unexpected.status_code == 400 and unexpected.json()["error"] == "unexpected_field"
    assert bad_tags.status_code == 400 and bad_tags.json()["detail"] == "invalid_tags"


async def test_book_download_is_attachment_and_counted(platform, secrets, store):
    async with _client() as c:
        admin = await _register(c, "admin@example.org", admin_key=secrets.admin_secret)
        created = await c.post(
            "/api/books",
            data={"title": "Confessions", "description": "Classic", "author_name": "Augustine"},
            files={"pdf_file": ("confessions.pdf", PDF, "application/pdf")},
            headers=_auth(admin["token"]),
        )
        assert created.status_code == 201, created.text
        book_id = created.json()["book"]["id"]

        download = await c.get(f"/api/books/{book_id}/download")
        cover = await c.get(f"/api/books/{book_id}/cover")
        detail = await c.get(f"/api/books/{book_id}")
    assert download.status_code == 200
    assert download.content == PDF
    assert download.headers["content-disposition"].startswith("attachment")
    assert 'filename="confessions.pdf"' in download.headers["content-disposition"]
    assert cover.status_code == 404
    assert detail.json()["book"]["number_of_downloads"] == 1


async def test_material_link_redirects_and_catalog(platform, secrets):
    async with _client() as c:
        admin = await _register(c, "admin@example.org", admin_key=secrets.admin_secret)
        created = await c.post(
            "/api/materials",
            json={
                "title": "Sermon on the Mount",
                "description": "Video lecture",
                "category": "Theology",
                "type": "video",
                "external_link": "https://video.example.org/watch/1",
                "tags": ["jesus", "teaching"],
            },
            headers=_auth(admin["token"]),
        )
        assert created.status_code == 201, created.text
        material_id = created.json()["material"]["id"]

        redirect = await c.get(f"/api/materials/{material_id}/download")
        categories = await c.get("/api/materials/categories")
        tags = await c.get("/api/materials/tags")
        filtered = await c.get("/api/materials", params={"type": "video", "category": "Theology"})
    assert redirect.status_code == 302
    assert redirect.headers["location"] == "https://video.example.org/watch/1"
    assert "Theology" in categories.json()["categories"]
    assert tags.json()["tags"] == ["jesus", "teaching"]
    assert filtered.json()["pagination"]["total"] == 1


async def test_assignment_submission_flow(platform, secrets):
    due = (datetime.now(timezone.utc) + timedelta(days=2)).isoformat()
    async with _client() as c:
        admin = await _register(c, "admin@example.org", admin_key=secrets.admin_secret)
        student = await _register(c, "student@example.org", name="Sam")
        created = await c.post(
            "/api/assignments",
            json={"title": "Essay", "description": "Write", "due_date": due},
            headers=_auth(admin["token"]),
        )
        assert created.status_code == 201, created.text
        assignment_id = created.json()["assignment"]["id"]

        anonymous = await c.post(f"/api/assignments/{assignment_id}/submit", data={"message": "hi"})
        assert anonymous.status_code == 401

        submitted = await c.post(
            f"/api/assignments/{assignment_id}/submit",
            data={"message": "See file"},
            files={"file_url": ("essay.pdf", PDF, "application/pdf")},
            headers=_auth(student["token"]),
        )
        assert submitted.status_code == 201, submitted.text
        submission_id = submitted.json()["submission"]["id"]

        again = await c.post(
            f"/api/assignments/{assignment_id}/submit", data={"message": "again"}, headers=_auth(student["token"])
        )
        assert again.status_code == 409

        by_admin = await c.post(
            f"/api/assignments/{assignment_id}/submit", data={"message": "x"}, headers=_auth(admin["token"])
        )
        assert by_admin.status_code == 403

        mine = await c.get("/api/assignments/submissions/my", headers=_auth(student["token"]))
        assert mine.json()["pagination"]["total"] == 1

        graded = await c.patch(
            f"/api/assignments/submissions/{submission_id}/grade",
            json={"grade": "A-", "feedback": "Well argued"},
            headers=_auth(admin["token"]),
        )
        assert graded.status_code == 200
        assert graded.json()["submission"]["grade"] == "A-"

        listing = await c.get(
            f"/api/assignments/{assignment_id}/submissions", params={"graded": "true"}, headers=_auth(admin["token"])
        )
        assert listing.json()["pagination"]["total"] == 1

        file = await c.get(f"/api/assignments/submissions/{submission_id}/download", headers=_auth(student["token"]))
        assert file.status_code == 200 and file.content == PDF


async def test_closed_assignment_rejects_submission(platform, secrets):
    due = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
    async with _client() as c:
        admin = await _register(c, "admin@example.org", admin_key=secrets.admin_secret)
        student = await _register(c, "student@example.org")
        created = await c.post(
            "/api/assignments",
            json={"title": "Essay", "description": "Write", "due_date": due},
            headers=_auth(admin["token"]),
        )
        r = await c.post(
            f"/api/assignments/{created.json()['assignment']['id']}/submit",
            data={"message": "late"},
            headers=_auth(student["token"]),
        )
    assert r.status_code == 400
    assert r.json()["error"] == "submission_closed"


async def test_users_admin_and_profile(platform, secrets):
    async with _client() as c:
        admin = await _register(c, "admin@example.org", admin_key=secrets.admin_secret)
        student = await _register(c, "student@example.org", name="Sam")

        denied = await c.get("/api/users", headers=_auth(student["token"]))
        assert denied.status_code == 403

        listing = await c.get("/api/users", params={"role": "student"}, headers=_auth(admin["token"]))
        assert listing.status_code == 200
        assert [u["email"] for u in listing.json()["items"]] == ["student@example.org"]
        assert all("password_hash" not in u for u in listing.json()["items"])

        profile = await c.patch(
            "/api/users/profile",
            data={"bio": "Seminary student", "church": "St. Mark"},
            files={"photo": ("me.png", PNG, "image/png")},
            headers=_auth(student["token"]),
        )
        assert profile.status_code == 200, profile.text
        body = profile.json()["user"]
        assert body["profile"]["bio"] == "Seminary student"
        assert body["profile"]["photo"]["content_type"] == "image/png"

        photo = await c.get(f"/api/users/{student['user']['id']}/photo")
        assert photo.status_code == 200 and photo.content == PNG


async def test_password_hashing_does_not_stall_the_event_loop(identity_settings, store):
    set_platform(build_platform(settings=replace(identity_settings, hash_rounds=13), store=store))
    gaps: list[float] = []
    finished = anyio.Event()

    async def ticker():
        last = time.perf_counter()
        while not finished.is_set():
            await anyio.sleep(0.01)
            now = time.perf_counter()
            gaps.append(now - last)
            last = now

    try:
        async with anyio.create_task_group() as tg:
            tg.start_soon(ticker)
            async with _client() as c:
                r = await c.post(
                    "/api/auth/register", json={"name": "Slow", "email": "slow@example.org", "password": "s3cret!"}
                )
            finished.set()
    finally:
        set_platform(None)

    assert r.status_code == 201
    assert gaps
    assert max(gaps) < 0.25


async def test_oversized_file_part_is_refused_before_buffering(identity_settings, store, monkeypatch):
    set_platform(build_platform(settings=identity_settings, store=store, media_max_bytes=16, materials_max_bytes=32))
    requested: list[int] = []
    original_read = UploadFile.read

    async def recording_read(self, size: int = -1):
        requested.append(size)
        return await original_read(self, size)

    monkeypatch.setattr(UploadFile, "read", recording_read)
    try:
        async with _client() as c:
            pastor = await _register(c, "pastor@example.org", clergy_key=identity_settings.clergy_secret)
            r = await c.post(
                "/api/sermons",
                headers=_auth(pastor["token"]),
                data={"title": "Big", "content": "Body"},
                files={"image": ("big.png", PNG * 100, "image/png")},
            )
            listed = await c.get("/api/sermons")
    finally:
        set_platform(None)

    assert r.status_code == 413
    assert r.json()["error"] == "payload_too_large"
    # Never an unbounded read: at most the largest ceiling plus one byte.
    assert all(size == 33 for size in requested)
    assert listed.json()["pagination"]["total"] == 0
