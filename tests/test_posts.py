"""
tests/test_posts.py
"""
from __future__ import annotations

import uuid

import pytest

from inkpress.blog import PAGE_MAX, get_db


# ───────────────────────── helpers ────────────────────────────────────
def _title() -> str:
    return f"Post {uuid.uuid4().hex[:8]}"


def _create(client, headers, **fields):
    body = {"title": _title(), "content": "Some *markdown*", **fields}
    rv = client.post("/api/posts", json=body, headers=headers)
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()["post"]


# ───────────────────────── tests ──────────────────────────────────────
def test_create_requires_auth(client):
    rv = client.post("/api/posts", json={"title": "t", "content": "c"})
    assert rv.status_code == 401


def test_create_returns_full_post(client, admin_headers):
    post = _create(client, admin_headers, summary="short")
    assert post["id"]
    assert post["published"] is False
    assert post["view_count"] == 0
    assert post["summary"] == "short"
    assert post["tags"] == []
    assert post["created_at"] == post["updated_at"]


@pytest.mark.parametrize(
    "body",
    [
        {"content": "no title"},
        {"title": "   ", "content": "blank title"},
        {"title": "no content"},
        {"title": "x" * 201, "content": "long title"},
        {"title": "ok", "content": "c", "summary": "s" * 501},
        {"title": "ok", "content": "c", "published": "yes"},
    ],
)
def test_create_validation(client, admin_headers, body):
    rv = client.post("/api/posts", json=body, headers=admin_headers)
    assert rv.status_code == 400
    assert "error" in rv.get_json()


def test_public_list_hides_drafts(client, admin_headers):
    live = _create(client, admin_headers, published=True)
    draft = _create(client, admin_headers)

    data = client.get("/api/posts?limit=100").get_json()
    ids = {p["id"] for p in data["posts"]}
    assert live["id"] in ids
    assert draft["id"] not in ids
    assert set(data["pagination"]) == {"page", "limit", "total", "total_pages"}


def test_admin_list_filters_by_published(client, admin_headers):
    draft = _create(client, admin_headers)
    rv = client.get("/api/admin/posts?published=false&limit=100", headers=admin_headers)
    posts = rv.get_json()["posts"]
    assert draft["id"] in {p["id"] for p in posts}
    assert all(p["published"] is False for p in posts)


def test_list_is_newest_first(client, admin_headers):
    first = _create(client, admin_headers, published=True)
    second = _create(client, admin_headers, published=True)
    ids = [p["id"] for p in client.get("/api/posts?limit=100").get_json()["posts"]]
    assert ids.index(second["id"]) < ids.index(first["id"])


def test_limit_is_clamped(client):
    assert client.get("/api/posts?limit=1000").get_json()["pagination"]["limit"] == 100
    assert client.get("/api/posts?limit=0").get_json()["pagination"]["limit"] == 1
    assert client.get("/api/posts?limit=abc").get_json()["pagination"]["limit"] == 10


def test_page_beyond_integer_range_is_clamped(client):
    rv = client.get(f"/api/posts?page={10**20}")
    assert rv.status_code == 200
    data = rv.get_json()
    assert data["posts"] == []
    assert data["pagination"]["page"] == PAGE_MAX
    assert client.get(f"/?page={10**20}").status_code == 200


def test_out_of_range_ids_are_not_found(client, admin_headers):
    huge = 10**20
    assert client.get(f"/api/posts/{huge}").status_code == 404
    rv = client.delete(f"/api/admin/files/{huge}", headers=admin_headers)
    assert rv.status_code == 404
    assert client.get(f"/api/admin/posts/{huge}", headers=admin_headers).status_code == 404


def test_public_get_counts_views(client, admin_headers):
    post = _create(client, admin_headers, published=True)
    client.get(f"/api/posts/{post['slug']}")
    rv = client.get(f"/api/posts/{post['id']}")
    assert rv.status_code == 200
    assert rv.get_json()["post"]["view_count"] == 2


def test_admin_get_does_not_count_views(client, admin_headers):
    post = _create(client, admin_headers, published=True)
    client.get(f"/api/admin/posts/{post['id']}", headers=admin_headers)
    rv = client.get(f"/api/admin/posts/{post['id']}", headers=admin_headers)
    assert rv.get_json()["post"]["view_count"] == 0


def test_drafts_are_not_public(client, admin_headers):
    draft = _create(client, admin_headers)
    assert client.get(f"/api/posts/{draft['slug']}").status_code == 404
    rv = client.get(f"/api/admin/posts/{draft['id']}", headers=admin_headers)
    assert rv.status_code == 200


def test_update_is_partial(client, admin_headers):
    post = _create(client, admin_headers, summary="keep me")
    rv = client.put(
        f"/api/posts/{post['id']}",
        json={"content": "new body", "published": True},
        headers=admin_headers,
    )
    assert rv.status_code == 200
    updated = rv.get_json()["post"]
    assert updated["content"] == "new body"
    assert updated["published"] is True
    assert updated["title"] == post["title"]
    assert updated["summary"] == "keep me"
    assert updated["slug"] == post["slug"]
    assert updated["updated_at"] > post["updated_at"]


def test_update_missing_post(client, admin_headers):
    rv = client.put("/api/posts/999999", json={"title": "x"}, headers=admin_headers)
    assert rv.status_code == 404
    assert rv.get_json() == {"error": "Post not found"}


def test_update_rejects_bad_body(client, admin_headers):
    post = _create(client, admin_headers)
    rv = client.put(f"/api/posts/{post['id']}", data="nope", headers=admin_headers)
    assert rv.status_code == 400
    rv = client.put(
        f"/api/posts/{post['id']}", json={"title": ""}, headers=admin_headers
    )
    assert rv.status_code == 400


def test_delete_is_soft(client, admin_headers):
    post = _create(client, admin_headers, published=True)
    assert client.delete(f"/api/posts/{post['id']}", headers=admin_headers).status_code == 200

    assert client.get(f"/api/posts/{post['slug']}").status_code == 404
    rv = client.get(f"/api/admin/posts/{post['id']}", headers=admin_headers)
    assert rv.status_code == 404
    assert client.delete(f"/api/posts/{post['id']}", headers=admin_headers).status_code == 404

    row = get_db().execute(
        "SELECT deleted_at FROM post WHERE id=?", (post["id"],)
    ).fetchone()
    assert row["deleted_at"] is not None


def test_numeric_slug_still_reachable(client, admin_headers):
    marker = str(900000 + uuid.uuid4().int % 99999)
    post = _create(client, admin_headers, title=marker, published=True)
    assert post["slug"] == marker
    rv = client.get(f"/api/posts/{marker}")
    assert rv.status_code == 200
    assert rv.get_json()["post"]["id"] == post["id"]
