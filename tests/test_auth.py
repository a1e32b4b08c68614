"""
tests/test_auth.py
"""
from __future__ import annotations

import hashlib

import pytest
from werkzeug.security import generate_password_hash

from folio.core import (
    ADMIN,
    DEFAULT_PASSPHRASE,
    VIEW,
    AuthError,
    CredentialError,
    Folio,
    password_strength,
)


# ───────────────────────── verify / login ───────────────────────────
def test_default_passphrase_until_one_is_stored(folio):
    assert not folio.gate.has_credential
    assert folio.gate.verify(DEFAULT_PASSPHRASE)
    assert not folio.gate.verify("Admin")
    assert not folio.gate.verify(None)


def test_wrong_passphrase_never_changes_mode(folio):
    assert folio.gate.login(folio.session, "nope") is False
    assert folio.session.mode == VIEW

    folio.session.set_mode(ADMIN)
    assert folio.gate.login(folio.session, "nope") is False
    assert folio.session.mode == ADMIN


def test_login_and_logout(folio, db_path):
    assert folio.gate.login(folio.session, "admin") is True
    assert folio.session.is_admin
    assert folio.gate.can(folio.session, "add links")
    # mode is persisted
    assert Folio(db_path).session.is_admin

    folio.gate.logout(folio.session)
    assert not folio.gate.can(folio.session)
    assert Folio(db_path).session.mode == VIEW


def test_mode_changes_are_seen_by_every_instance(folio, db_path):
    other = Folio(db_path)
    assert other.gate.login(other.session, "admin")
    assert folio.session.is_admin

    other.gate.logout(other.session)
    assert folio.session.mode == VIEW
    with pytest.raises(AuthError):
        folio.links.add({"name": "A", "url": "a.example"}, session=folio.session)


def test_unknown_stored_mode_reads_as_view(folio, db_path):
    folio.kv.set("sessionMode", "root")
    assert Folio(db_path).session.mode == VIEW
    with pytest.raises(ValueError):
        folio.session.set_mode("root")


def test_legacy_sha256_credential_still_verifies(folio):
    folio.kv.set("credentialHash", hashlib.sha256(b"hunter2").hexdigest())
    assert folio.gate.verify("hunter2")
    assert not folio.gate.verify("admin")


def test_werkzeug_credential(folio):
    folio.kv.set("credentialHash", generate_password_hash("s3cret!"))
    assert folio.gate.verify("s3cret!")
    assert not folio.gate.verify("admin")


def test_unreadable_hash_fails_closed(folio):
    folio.kv.set("credentialHash", "garbage$not-a-hash")
    assert folio.gate.verify("garbage") is False


# ───────────────────────── change credential ────────────────────────
@pytest.mark.parametrize(
    "current, new, confirm, reason",
    [
        ("wrong", "abcd", "abcd", "wrong-current-credential"),
        ("wrong", "ab", "cd", "wrong-current-credential"),  # first failing check wins
        ("admin", "abc", "abc", "too-short"),
        ("admin", "abc", "xyz", "too-short"),
        ("admin", "abcd", "abce", "mismatch"),
    ],
)
def test_change_credential_reasons(folio, current, new, confirm, reason):
    with pytest.raises(CredentialError) as exc:
        folio.gate.change_credential(current, new, confirm)
    assert exc.value.reason == reason
    assert isinstance(exc.value, AuthError)
    assert not folio.gate.has_credential


def test_change_credential_success(folio):
    folio.gate.change_credential("admin", "abcd", "abcd")
    assert folio.gate.has_credential
    assert folio.gate.verify("abcd")
    assert not folio.gate.verify("admin")
    # stored value is a hash, never the passphrase itself
    assert folio.kv.get("credentialHash") != "abcd"


def test_reset_credential(folio):
    with pytest.raises(CredentialError):
        folio.gate.reset_credential("abc")
    folio.gate.reset_credential("longenough")
    assert folio.gate.verify("longenough")


# ───────────────────────── mutations in view mode ───────────────────
def test_every_mutation_needs_admin(folio):
    s = folio.session
    calls = [
        lambda: folio.contacts.add({"type": "email", "value": "a@b.c"}, session=s),
        lambda: folio.skills.update(0, {"level": 50}, session=s),
        lambda: folio.projects.remove(0, session=s),
        lambda: folio.links.reorder(0, 1, session=s),
        lambda: folio.profile.edit_fields({"nickname": "X"}, session=s),
        lambda: folio.profile.toggle_availability(session=s),
        lambda: folio.profile.set_image("avatar", "https://img", session=s),
    ]
    for call in calls:
        with pytest.raises(AuthError):
            call()
    assert folio.profile.load().nickname == "Your Name"


@pytest.mark.parametrize(
    "value, hint",
    [("", ""), ("abc", "weak"), ("abcdef", "medium"), ("abcdefghij", "strong")],
)
def test_password_strength(value, hint):
    assert password_strength(value) == hint
