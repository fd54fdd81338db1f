"""
tests/test_pages.py
"""
from __future__ import annotations

import sqlite3
import uuid

from inkpress import blog
from inkpress.blog import get_db, sanitize_slug


# ───────────────────────── helpers ────────────────────────────────────
def _post(client, headers, **fields):
    body = {
        "title": f"Page {uuid.uuid4().hex[:8]}",
        "content": "Hello **bold** world",
        "published": True,
        **fields,
    }
    rv = client.post("/api/posts", json=body, headers=headers)
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()["post"]


# ───────────────────────── tests ──────────────────────────────────────
def test_health(client):
    rv = client.get("/health")
    assert rv.status_code == 200
    assert rv.get_json() == {"status": "ok"}


def test_index_lists_published_posts(client, admin_headers):
    live = _post(client, admin_headers)
    draft = _post(client, admin_headers, published=False)
    html = client.get("/").get_data(as_text=True)
    assert live["title"] in html
    assert draft["title"] not in html
    assert '<html lang="en">' in html


def test_post_page_renders_markdown_and_counts_views(client, admin_headers):
    post = _post(client, admin_headers)
    rv = client.get(f"/posts/{post['slug']}")
    assert rv.status_code == 200
    html = rv.get_data(as_text=True)
    assert "<strong>bold</strong>" in html

    row = get_db().execute(
        "SELECT view_count FROM post WHERE id=?", (post["id"],)
    ).fetchone()
    assert row["view_count"] == 1


def test_post_page_shows_only_approved_comments(client, admin_headers):
    post = _post(client, admin_headers)
    ok = client.post(
        "/api/comments",
        json={"post_id": post["id"], "name": "Approved Alice", "content": "visible"},
    ).get_json()["comment"]
    client.post(
        "/api/comments",
        json={"post_id": post["id"], "name": "Pending Pat", "content": "invisible"},
    )
    client.put(
        f"/api/admin/comments/{ok['id']}/status",
        json={"status": "approved"},
        headers=admin_headers,
    )
    html = client.get(f"/posts/{post['slug']}").get_data(as_text=True)
    assert "Approved Alice" in html
    assert "Pending Pat" not in html


def test_post_page_escapes_comments(client, admin_headers):
    post = _post(client, admin_headers)
    c = client.post(
        "/api/comments",
        json={"post_id": post["id"], "name": "Mallory", "content": "<script>x()</script>"},
    ).get_json()["comment"]
    client.put(
        f"/api/admin/comments/{c['id']}/status",
        json={"status": "approved"},
        headers=admin_headers,
    )
    html = client.get(f"/posts/{post['slug']}").get_data(as_text=True)
    assert "<script>x()</script>" not in html
    assert "&lt;script&gt;" in html


def test_draft_page_is_themed_404(client, admin_headers):
    draft = _post(client, admin_headers, published=False)
    rv = client.get(f"/posts/{draft['slug']}")
    assert rv.status_code == 404
    assert "Page not found" in rv.get_data(as_text=True)


def test_unknown_page_is_html_404(client):
    rv = client.get("/definitely/not/here")
    assert rv.status_code == 404
    assert rv.mimetype == "text/html"
    assert "Page not found" in rv.get_data(as_text=True)


def test_unknown_api_path_is_json_404(client):
    rv = client.get("/api/definitely-not-here")
    assert rv.status_code == 404
    assert "error" in rv.get_json()


def test_wrong_method_on_api_is_json(client):
    rv = client.patch("/api/posts")
    assert rv.status_code == 405
    assert "error" in rv.get_json()


def test_tag_pages(client, admin_headers):
    name = f"page-tag-{uuid.uuid4().hex[:6]}"
    tag = client.post("/api/tags", json={"name": name}, headers=admin_headers).get_json()["tag"]
    post = _post(client, admin_headers, tag_ids=[tag["id"]])

    html = client.get("/tags").get_data(as_text=True)
    assert name in html

    html = client.get(f"/tags/{tag['id']}").get_data(as_text=True)
    assert post["title"] in html
    assert client.get("/tags/999999").status_code == 404


def test_store_error_is_a_generic_500(client, admin_headers, monkeypatch):
    def _broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(blog, "list_tags", _broken)
    rv = client.get("/api/tags")
    assert rv.status_code == 500
    assert rv.get_json() == {"error": "Internal server error"}


def test_slug_from_title_is_used_in_url(client, admin_headers):
    post = _post(client, admin_headers, title="Hello Page World")
    assert post["slug"].startswith(sanitize_slug("Hello Page World"))
    assert client.get(f"/posts/{post['slug']}").status_code == 200
