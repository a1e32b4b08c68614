"""
tests/test_profile.py
"""
from __future__ import annotations

import pytest

from folio.core import Folio, Profile, ValidationError


def test_defaults(folio):
    p = folio.profile.load()
    assert p == Profile()
    assert p.nickname == "Your Name"
    assert p.profession == "Professional Title · Location"
    assert p.bio == "A short description about yourself."
    assert p.avatar is None and p.background is None
    assert p.available is True


def test_edit_fields(admin, db_path):
    admin.profile.edit_fields(
        {"nickname": " Ada ", "profession": "Engineer", "bio": "Hi"},
        session=admin.session,
    )
    p = Folio(db_path).profile.load()
    assert (p.nickname, p.profession, p.bio) == ("Ada", "Engineer", "Hi")


def test_blank_fields(admin):
    p = admin.profile.edit_fields(
        {"nickname": "   ", "profession": "", "bio": " "}, session=admin.session
    )
    assert p.nickname == "Your Name"
    assert p.profession == "" and p.bio == ""


def test_partial_patch_keeps_other_fields(admin):
    admin.profile.edit_fields({"nickname": "Ada"}, session=admin.session)
    p = admin.profile.edit_fields({"bio": "New bio"}, session=admin.session)
    assert p.nickname == "Ada" and p.bio == "New bio"


def test_toggle_availability(admin):
    assert admin.profile.toggle_availability(session=admin.session) is False
    assert admin.profile.load().available is False
    assert admin.profile.toggle_availability(session=admin.session) is True


def test_images(admin):
    admin.profile.set_image("avatar", "data:image/png;base64,AAAA", session=admin.session)
    admin.profile.set_image("background", "https://cdn.example/bg.jpg", session=admin.session)
    p = admin.profile.load()
    assert p.avatar.startswith("data:image/png")
    assert p.background == "https://cdn.example/bg.jpg"

    admin.profile.set_image("avatar", None, session=admin.session)
    assert admin.profile.load().avatar is None

    with pytest.raises(ValidationError):
        admin.profile.set_image("banner", "x", session=admin.session)


def test_corrupted_profile_falls_back(folio):
    folio.kv.set("profile", ["not", "a", "dict"])
    assert folio.profile.load() == Profile()

    folio.kv.set("profile", {"nickname": 7, "available": "yes", "bg": "https://bg"})
    p = folio.profile.load()
    assert p.nickname == "Your Name"
    assert p.available is True
    assert p.background == "https://bg"
