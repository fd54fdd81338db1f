"""
tests/test_settings.py
"""
from __future__ import annotations

import json
import logging
import sqlite3

import pytest

from inkpress.blog import (
    CONFIG_DEFAULTS,
    DEFAULT_FOOTER_LINKS,
    NotFound,
    ValidationError,
    get_all_configs,
    get_config,
    get_footer_links,
    set_footer_links,
    update_configs,
)


# ───────────────────────── helpers ────────────────────────────────────
def _put(client, headers, configs):
    return client.put(
        "/api/settings/config", json={"configs": configs}, headers=headers
    )


@pytest.fixture
def restore_configs(client):
    """Put the site settings back the way the session started."""
    yield
    update_configs(dict(CONFIG_DEFAULTS))


# ───────────────────────── tests ──────────────────────────────────────
def test_public_config_has_defaults_and_no_secret(client):
    configs = client.get("/api/config").get_json()["configs"]
    for key in CONFIG_DEFAULTS:
        assert key in configs
    assert "signing_secret" not in configs


def test_get_config_unknown_key(client):
    with pytest.raises(NotFound):
        get_config("no_such_key")
    assert get_config("language") == "en"


def test_admin_can_update_whitelisted_keys(client, admin_headers, restore_configs):
    rv = _put(
        client,
        admin_headers,
        {"blog_name": "  My Blog  ", "timezone": "Europe/Berlin", "language": "zh-CN"},
    )
    assert rv.status_code == 200
    configs = rv.get_json()["configs"]
    assert configs["blog_name"] == "My Blog"
    assert configs["timezone"] == "Europe/Berlin"
    assert configs["language"] == "zh-CN"


def test_settings_need_auth(client):
    rv = client.put("/api/settings/config", json={"configs": {"blog_name": "x"}})
    assert rv.status_code == 401


@pytest.mark.parametrize(
    "configs",
    [
        {"signing_secret": "leak"},
        {"unknown_key": "x"},
        {"timezone": "Mars/Olympus"},
        {"footer_links": "{not json"},
        {"footer_links": json.dumps({"text": "x"})},
        {"blog_name": ""},
        {"blog_name": 42},
        {},
    ],
)
def test_invalid_updates_are_rejected(client, admin_headers, configs):
    rv = _put(client, admin_headers, configs)
    assert rv.status_code == 400


def test_update_is_all_or_nothing(client, admin_headers):
    before = get_all_configs()
    rv = _put(
        client,
        admin_headers,
        {"blog_description": "changed", "timezone": "Not/AZone"},
    )
    assert rv.status_code == 400
    assert get_all_configs() == before


def test_store_failure_rolls_back_every_key(client):
    before = get_all_configs()
    with pytest.raises(sqlite3.IntegrityError):
        update_configs({"blog_description": "half-written", "custom_css": None})
    assert get_all_configs() == before


def test_footer_links_accept_a_list(client, admin_headers, restore_configs):
    links = [{"text": "About", "url": "/about"}]
    rv = _put(client, admin_headers, {"footer_links": links})
    assert rv.status_code == 200
    assert get_footer_links() == links


def test_footer_links_fall_back_on_bad_json(client, caplog, restore_configs):
    update_configs({"footer_links": "[oops"})
    with caplog.at_level(logging.WARNING):
        assert get_footer_links() == DEFAULT_FOOTER_LINKS
    assert "footer_links" in caplog.text


def test_footer_links_fall_back_when_empty(client, restore_configs):
    update_configs({"footer_links": ""})
    assert get_footer_links() == DEFAULT_FOOTER_LINKS


def test_set_footer_links_validates(client, restore_configs):
    set_footer_links([{"text": "Docs", "url": "/docs"}])
    assert get_footer_links() == [{"text": "Docs", "url": "/docs"}]
    with pytest.raises(ValidationError):
        set_footer_links([{"text": "no url"}])


def test_settings_show_up_on_pages(client, admin_headers, restore_configs):
    _put(
        client,
        admin_headers,
        {
            "blog_name": "Settings Probe",
            "custom_css": "body{outline:1px solid red}",
            "footer_links": [{"text": "Elsewhere", "url": "https://example.org"}],
        },
    )
    html = client.get("/").get_data(as_text=True)
    assert "Settings Probe" in html
    assert "body{outline:1px solid red}" in html
    assert 'href="https://example.org"' in html
