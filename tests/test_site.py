"""
tests/test_site.py
"""
from __future__ import annotations

import io
import json

import pytest

from folio import site
from folio.core import ADMIN, Folio, PersistenceError
from folio.site import app, get_folio

CSRF = "test-token"


def _login(client):
    """Admin mode in the database *and* in this browser's session."""
    folio = get_folio()
    folio.session.set_mode(ADMIN)
    with client.session_transaction() as sess:
        sess["admin"] = True
        sess["csrf"] = CSRF
    return folio


def _add_link(client, name="GitHub", url="github.com/someone"):
    return client.post(
        "/links/add",
        data={"name": name, "url": url, "action": "confirm", "csrf": CSRF},
    )


# ───────────────────────── public pages ─────────────────────────────
@pytest.mark.parametrize("path", ["/", "/login", "/?sort=clicks&q=x", "/?sort=bogus"])
def test_public_routes_ok(client, path):
    rv = client.get(path)
    assert rv.status_code == 200


def test_index_shows_defaults(client):
    html = client.get("/").data.decode()
    assert "Your Name" in html
    assert "View mode" in html
    assert "No links yet" in html
    assert 'name="csrf"' in html  # theme toggle form


def test_not_found(client):
    rv = client.get("/does/not/exist")
    assert rv.status_code == 404
    assert b"Page not found" in rv.data
    assert client.get("/widgets/add").status_code == 404


def test_500_handler_renders_friendly_page(client, monkeypatch):
    def _boom():
        raise RuntimeError("kaboom!")

    monkeypatch.setitem(app.view_functions, "index", _boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    rv = client.get("/")
    assert rv.status_code == 500
    assert b"Internal Server Error" in rv.data


def test_security_headers(client):
    rv = client.get("/")
    assert rv.headers["X-Frame-Options"] == "DENY"
    assert rv.headers["X-Content-Type-Options"] == "nosniff"


# ───────────────────────── login / logout ───────────────────────────
def test_login_form_success(client):
    rv = client.post("/login", data={"password": "admin", "action": "confirm"})
    assert rv.status_code == 302
    with client.session_transaction() as sess:
        assert sess["admin"] is True
    assert get_folio().session.is_admin
    assert b"Admin mode" in client.get("/").data


def test_login_form_wrong_password(client):
    rv = client.post("/login", data={"password": "nope", "action": "confirm"})
    assert rv.status_code == 200
    assert "Wrong password" in rv.data.decode()
    assert not get_folio().session.is_admin


def test_login_form_cancel(client):
    rv = client.post("/login", data={"password": "admin", "action": "escape"})
    assert rv.status_code == 302
    assert not get_folio().session.is_admin


def test_admin_mode_is_bound_to_the_browser(client):
    _login(client)
    with app.test_client() as other:
        html = other.get("/").data.decode()
        assert "View mode" in html
        assert other.post("/links/add", data={"name": "x", "url": "y"}).status_code == 403


def test_logout_from_another_process(client, db_path):
    _login(client)
    outside = Folio(db_path)
    outside.gate.logout(outside.session)

    assert "View mode" in client.get("/").data.decode()
    assert client.post("/links/add", data={"csrf": CSRF}).status_code == 403


def test_logout(client):
    folio = _login(client)
    rv = client.post("/logout", data={"csrf": CSRF})
    assert rv.status_code == 302
    assert not folio.session.is_admin
    with client.session_transaction() as sess:
        assert "admin" not in sess


def test_login_rate_limited(client):
    for _ in range(app.config["RATELIMIT_LOGIN"]):
        assert client.post("/login", data={"password": "x"}).status_code == 200
    rv = client.post("/login", data={"password": "admin"})
    assert rv.status_code == 429
    assert "Retry-After" in rv.headers


def test_change_password(client):
    folio = _login(client)
    assert client.get("/password").status_code == 200
    rv = client.post(
        "/password",
        data={"current": "admin", "new": "abc", "confirm": "abc", "csrf": CSRF},
    )
    assert rv.status_code == 400
    assert "at least 4 characters" in rv.data.decode()

    rv = client.post(
        "/password",
        data={"current": "admin", "new": "longer", "confirm": "longer", "csrf": CSRF},
    )
    assert rv.status_code == 302
    assert folio.gate.verify("longer")


# ───────────────────────── gated mutations ──────────────────────────
@pytest.mark.parametrize(
    "path",
    [
        "/links/add",
        "/contacts/0/delete",
        "/links/reorder",
        "/profile",
        "/profile/availability",
        "/profile/avatar/image",
    ],
)
def test_mutations_need_admin(client, path):
    assert client.post(path, data={}).status_code == 403


def test_csrf_required_in_admin_mode(client):
    _login(client)
    rv = client.post("/links/add", data={"name": "A", "url": "a.example"})
    assert rv.status_code == 403
    assert len(get_folio().links) == 0


def test_add_edit_delete_link(client):
    folio = _login(client)
    assert client.get("/links/add").status_code == 200

    assert _add_link(client).status_code == 302
    assert folio.links.get(0).name == "GitHub"
    assert "github.com" in client.get("/").data.decode()

    page = client.get("/links/0/edit").data.decode()
    assert 'value="GitHub"' in page
    rv = client.post(
        "/links/0/edit",
        data={"name": "GH", "url": "https://github.com/x", "action": "confirm", "csrf": CSRF},
    )
    assert rv.status_code == 302
    assert folio.links.get(0).name == "GH"

    assert client.post("/links/0/delete", data={"csrf": CSRF}).status_code == 302
    assert len(folio.links) == 0


def test_unreadable_level_falls_back_to_default(client):
    folio = _login(client)
    rv = client.post(
        "/skills/add",
        data={"name": "Go", "level": "nan", "action": "confirm", "csrf": CSRF},
    )
    assert rv.status_code == 302
    assert folio.skills.get(0).level == 80


def test_cancel_changes_nothing(client):
    folio = _login(client)
    rv = client.post(
        "/skills/add",
        data={"name": "Go", "level": "50", "action": "backdrop", "csrf": CSRF},
    )
    assert rv.status_code == 302
    assert len(folio.skills) == 0


def test_invalid_input_is_shown_again(client):
    folio = _login(client)
    rv = client.post(
        "/projects/add",
        data={"title": "", "tags": "a,b", "action": "confirm", "csrf": CSRF},
    )
    assert rv.status_code == 400
    html = rv.data.decode()
    assert "Title required" in html
    assert 'value="a,b"' in html
    assert len(folio.projects) == 0


def test_over_long_input_is_rejected_not_cut(client):
    folio = _login(client)
    rv = _add_link(client, name="x" * 41)
    assert rv.status_code == 400
    assert "limited to 40 characters" in rv.data.decode()
    assert len(folio.links) == 0


def test_project_markdown_and_tags(client):
    folio = _login(client)
    client.post(
        "/projects/add",
        data={
            "title": "Site",
            "description": "Built with **Flask**",
            "tags": "py, web, css, js, extra",
            "action": "confirm",
            "csrf": CSRF,
        },
    )
    assert folio.projects.get(0).tags == ["py", "web", "css", "js"]
    html = client.get("/").data.decode()
    assert "<strong>Flask</strong>" in html
    assert "extra" not in html


def test_contact_links(client):
    _login(client)
    client.post(
        "/contacts/add",
        data={"type": "telegram", "value": "@someone", "action": "confirm", "csrf": CSRF},
    )
    client.post(
        "/contacts/add",
        data={"type": "email", "value": "me@example.com", "action": "confirm", "csrf": CSRF},
    )
    html = client.get("/").data.decode()
    assert 'href="https://t.me/someone"' in html
    assert 'href="mailto:me@example.com"' in html


def test_edit_out_of_range_is_404(client):
    _login(client)
    assert client.get("/skills/3/edit").status_code == 404
    assert client.post("/skills/3/delete", data={"csrf": CSRF}).status_code == 404


def test_reorder_json(client):
    folio = _login(client)
    for n in "ABC":
        _add_link(client, n, f"{n}.example")
    rv = client.post(
        "/links/reorder",
        data=json.dumps({"from": 0, "to": 2}),
        content_type="application/json",
        headers={"X-CSRFToken": CSRF},
    )
    assert rv.status_code == 204
    assert [l.name for l in folio.links] == ["B", "C", "A"]

    rv = client.post(
        "/links/reorder",
        data=json.dumps({"from": "x"}),
        content_type="application/json",
        headers={"X-CSRFToken": CSRF},
    )
    assert rv.status_code == 400


def test_open_link_counts_clicks(client):
    folio = _login(client)
    _add_link(client, "Home", "home.example")
    client.post("/logout", data={"csrf": CSRF})

    rv = client.get("/links/0/open")
    assert rv.status_code == 302
    assert rv.headers["Location"] == "https://home.example"
    assert folio.clicks.count_for(0) == 1
    assert client.get("/links/1/open").status_code == 404


def test_failed_write_is_reported(client, monkeypatch):
    folio = _login(client)

    def _refuse(key, value):
        raise PersistenceError("disk full")

    with monkeypatch.context() as m:
        m.setattr(folio.kv, "set", _refuse)
        rv = _add_link(client)
    assert rv.status_code == 302
    assert "database refused the write" in client.get("/").data.decode()


# ───────────────────────── profile ──────────────────────────────────
def test_edit_profile(client):
    folio = _login(client)
    rv = client.post(
        "/profile",
        data={"nickname": "Ada", "profession": "Engineer", "bio": "*hi*", "csrf": CSRF},
    )
    assert rv.status_code == 302
    assert folio.profile.load().nickname == "Ada"
    assert "<em>hi</em>" in client.get("/").data.decode()


def test_toggle_availability(client):
    folio = _login(client)
    client.post("/profile/availability", data={"csrf": CSRF})
    assert folio.profile.load().available is False


def test_image_upload_without_r2(client, monkeypatch):
    monkeypatch.setattr(site, "r2_config", lambda: {})
    folio = _login(client)
    rv = client.post(
        "/profile/avatar/image",
        data={"file": (io.BytesIO(b"\x89PNG\r\n\x1a\nfake"), "me.png", "image/png"), "csrf": CSRF},
        content_type="multipart/form-data",
    )
    assert rv.status_code == 302
    assert folio.profile.load().avatar.startswith("data:image/png;base64,")

    client.post("/profile/avatar/image", data={"action": "clear", "csrf": CSRF})
    assert folio.profile.load().avatar is None


def test_image_upload_rejects_non_images(client, monkeypatch):
    monkeypatch.setattr(site, "r2_config", lambda: {})
    folio = _login(client)
    client.post(
        "/profile/background/image",
        data={"file": (io.BytesIO(b"#!/bin/sh"), "x.sh", "text/x-shellscript"), "csrf": CSRF},
        content_type="multipart/form-data",
    )
    assert folio.profile.load().background is None
    assert client.post("/profile/banner/image", data={"csrf": CSRF}).status_code == 404


# ───────────────────────── cosmetics / export ───────────────────────
def test_theme_cycles(client):
    assert 'data-theme="dark"' in client.get("/").data.decode()
    client.post("/theme")
    assert 'data-theme="light"' in client.get("/").data.decode()
    client.post("/theme")
    client.post("/theme")
    assert get_folio().kv.get("theme") == 0


def test_view_counter(client):
    client.get("/")
    client.get("/")
    assert get_folio().kv.get("viewCount") == 1

    with app.test_client() as other:
        other.get("/")
    assert get_folio().kv.get("viewCount") == 2


def test_admin_visits_do_not_count(client):
    _login(client)
    client.get("/")
    assert get_folio().kv.get("viewCount", 0) == 0


def test_export(client):
    assert client.get("/export.json").status_code == 403

    _login(client)
    _add_link(client)
    rv = client.get("/export.json")
    assert rv.status_code == 200
    assert rv.mimetype == "application/json"
    assert 'attachment; filename="profile-' in rv.headers["Content-Disposition"]
    data = json.loads(rv.data)
    assert data["links"] == [{"name": "GitHub", "url": "github.com/someone"}]
    assert data["_exported"].endswith("Z")
