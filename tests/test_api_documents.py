"""
tests/test_api_documents.py -- Integration tests for story and document routes.

Coverage:
  - Role gate: viewers cannot create stories (403)
  - Story create / list / patch, ownership (another user's story is 404)
  - Document GET placeholder, PUT save, PUT risky -> 409 risky_overwrite with meta,
    PUT force=true, revision list and detail
  - published_at is three-state in the JSON body (omitted / null / value)
  - Publish preconditions (cover, non-empty) and status transitions
"""

from __future__ import annotations

import itertools

import pytest
from fastapi.testclient import TestClient


def _words(n: int) -> str:
    return " ".join(["word"] * n)


FIVE_CHAPTERS = [{"id": f"ch-{i}", "title": "", "body": _words(100)} for i in range(5)]
_handles = itertools.count(1)


@pytest.fixture
def writer(api_client, register_user) -> tuple[TestClient, dict]:
    """A freshly registered staff account with its own headers."""
    client, _token, _uid = api_client
    data = register_user(client, f"writer-{next(_handles)}")
    return client, {"Authorization": f"Bearer {data['tokens']['access_token']}"}


def _create_story(client: TestClient, headers: dict, cover: str | None = "covers/x.png") -> dict:
    resp = client.post("/api/v1/stories", json={"title": "The Long Road", "cover_image": cover}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestStories:
    def test_create_and_list(self, writer) -> None:
        client, headers = writer
        story = _create_story(client, headers)
        assert story["status"] == "Draft"
        listed = client.get("/api/v1/stories", headers=headers).json()
        assert [s["id"] for s in listed] == [story["id"]]

    def test_patch_title_and_cover(self, writer) -> None:
        client, headers = writer
        story = _create_story(client, headers)
        resp = client.patch(
            f"/api/v1/stories/{story['id']}", json={"title": "Renamed", "cover_image": ""}, headers=headers
        )
        assert resp.status_code == 200
        assert resp.json()["title"] == "Renamed"
        assert resp.json()["cover_image"] is None

    def test_empty_patch_is_rejected(self, writer) -> None:
        client, headers = writer
        story = _create_story(client, headers)
        resp = client.patch(f"/api/v1/stories/{story['id']}", json={}, headers=headers)
        assert resp.status_code == 400

    def test_viewer_cannot_write(self, api_client) -> None:
        client, admin_token, _uid = api_client
        admin = {"Authorization": f"Bearer {admin_token}"}
        created = client.post(
            "/api/v1/admin/users",
            json={"username": "reader", "password": "correct-horse", "role": "viewer"},
            headers=admin,
        )
        assert created.status_code == 201
        login = client.post("/api/v1/auth/login", json={"username": "reader", "password": "correct-horse"})
        headers = {"Authorization": f"Bearer {login.json()['tokens']['access_token']}"}
        resp = client.post("/api/v1/stories", json={"title": "Nope"}, headers=headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_unauthenticated(self, api_client) -> None:
        client, _token, _uid = api_client
        assert client.get("/api/v1/stories").status_code == 401


class TestDocuments:
    def test_first_read_is_placeholder(self, writer) -> None:
        client, headers = writer
        story = _create_story(client, headers)
        resp = client.get(f"/api/v1/stories/{story['id']}/document", headers=headers)
        assert resp.status_code == 200
        data = resp.json()
        assert len(data["chapters"]) == 1
        assert data["word_count"] == 0

    def test_other_users_story_is_not_found(self, writer, register_user) -> None:
        client, headers = writer
        story = _create_story(client, headers)
        intruder = register_user(client, "intruder")
        other = {"Authorization": f"Bearer {intruder['tokens']['access_token']}"}
        assert client.get(f"/api/v1/stories/{story['id']}/document", headers=other).status_code == 404
        resp = client.put(f"/api/v1/stories/{story['id']}/document", json={"chapters": []}, headers=other)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_risky_overwrite_flow(self, writer) -> None:
        client, headers = writer
        story = _create_story(client, headers)
        url = f"/api/v1/stories/{story['id']}/document"

        saved = client.put(url, json={"chapters": FIVE_CHAPTERS}, headers=headers)
        assert saved.status_code == 200
        assert saved.json()["word_count"] == 500

        blocked = client.put(url, json={"chapters": [{"title": "Chapter 1", "body": ""}]}, headers=headers)
        assert blocked.status_code == 409
        error = blocked.json()["error"]
        assert error["code"] == "risky_overwrite"
        assert error["meta"] == {
            "existingChapterCount": 5,
            "incomingChapterCount": 1,
            "existingWordCount": 500,
            "incomingWordCount": 2,
        }
        assert client.get(url, headers=headers).json()["word_count"] == 500

        forced = client.put(
            url, json={"chapters": [{"title": "Chapter 1", "body": ""}], "force": True}, headers=headers
        )
        assert forced.status_code == 200
        assert forced.json()["word_count"] == 2

        revisions = client.get(f"/api/v1/stories/{story['id']}/revisions", headers=headers).json()
        assert revisions[0]["word_count"] == 500
        assert revisions[0]["chapters"] is None
        detail = client.get(f"/api/v1/stories/{story['id']}/revisions/{revisions[0]['id']}", headers=headers)
        assert detail.status_code == 200
        assert [c["id"] for c in detail.json()["chapters"]] == [c["id"] for c in FIVE_CHAPTERS]

    def test_unknown_revision(self, writer) -> None:
        client, headers = writer
        story = _create_story(client, headers)
        resp = client.get(f"/api/v1/stories/{story['id']}/revisions/99999", headers=headers)
        assert resp.status_code == 404

    def test_published_at_three_states(self, writer) -> None:
        client, headers = writer
        story = _create_story(client, headers)
        url = f"/api/v1/stories/{story['id']}/document"
        chapters = [{"id": "a", "title": "One", "body": "text"}]

        set_resp = client.put(url, json={"chapters": chapters, "published_at": "2026-02-14T09:30:00Z"}, headers=headers)
        assert set_resp.json()["published_at"].startswith("2026-02-14T09:30:00")

        kept = client.put(url, json={"chapters": chapters}, headers=headers)
        assert kept.json()["published_at"].startswith("2026-02-14T09:30:00")

        cleared = client.put(url, json={"chapters": chapters, "published_at": None}, headers=headers)
        assert cleared.json()["published_at"] is None


class TestPublishing:
    def test_publish_requires_cover(self, writer) -> None:
        client, headers = writer
        story = _create_story(client, headers, cover=None)
        client.put(
            f"/api/v1/stories/{story['id']}/document", json={"chapters": [{"body": _words(10)}]}, headers=headers
        )
        resp = client.post(f"/api/v1/stories/{story['id']}/publish", headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "cover_required"

    def test_publish_empty_story(self, writer) -> None:
        client, headers = writer
        story = _create_story(client, headers)
        resp = client.post(f"/api/v1/stories/{story['id']}/publish", headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "empty_document"

    def test_publish_then_complete(self, writer) -> None:
        client, headers = writer
        story = _create_story(client, headers)
        client.put(
            f"/api/v1/stories/{story['id']}/document", json={"chapters": [{"body": _words(10)}]}, headers=headers
        )
        resp = client.post(f"/api/v1/stories/{story['id']}/publish", headers=headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["story"]["status"] == "Published"
        assert data["document"]["published_at"] is not None

        done = client.post(f"/api/v1/stories/{story['id']}/status", json={"status": "Completed"}, headers=headers)
        assert done.status_code == 200
        assert done.json()["status"] == "Completed"

    def test_invalid_transition_is_conflict(self, writer) -> None:
        client, headers = writer
        story = _create_story(client, headers)
        resp = client.post(f"/api/v1/stories/{story['id']}/status", json={"status": "Completed"}, headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "invalid_status_transition"

    def test_unknown_status_is_validation_error(self, writer) -> None:
        client, headers = writer
        story = _create_story(client, headers)
        resp = client.post(f"/api/v1/stories/{story['id']}/status", json={"status": "Deleted"}, headers=headers)
        assert resp.status_code == 422
