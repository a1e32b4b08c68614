"""
Editor flows: gate check → one dialog round trip → store mutation.

Each flow takes the :class:`~folio.core.Folio` bundle and a broker and
returns ``None`` when the dialog was cancelled.  Validation and auth
failures propagate as :class:`~folio.core.FolioError` subclasses.
"""

from __future__ import annotations

from typing import Callable

from folio.core import (
    CONTACT_ICONS,
    CONTACT_TYPES,
    MAX_TAGS,
    MIN_PASSPHRASE_LEN,
    PROJECT_EMOJI,
    SKILL_EMOJI,
    BoundsError,
    Contact,
    Folio,
    Link,
    Project,
    Record,
    Skill,
)
from folio.modal import (
    Dialog,
    ModalBroker,
    PasswordField,
    RangeField,
    SelectField,
    TextAreaField,
    TextField,
)

################################################################################
# Dialogs
################################################################################
SINGULAR = {
    "contacts": "Contact",
    "skills": "Skill",
    "links": "Link",
    "projects": "Project",
}


def _title(kind: str, rec: Record | None) -> tuple[str, str]:
    noun = SINGULAR[kind]
    return (f"Edit {noun}", "Save") if rec else (f"Add {noun}", "Add")


def contact_dialog(rec: Contact | None = None) -> Dialog:
    title, confirm = _title("contacts", rec)
    return Dialog(
        title,
        (
            SelectField(
                "type",
                "Type",
                value=rec.type if rec else CONTACT_TYPES[0],
                choices=tuple(
                    (t, f"{CONTACT_ICONS[t]} {t.capitalize()}") for t in CONTACT_TYPES
                ),
            ),
            TextField(
                "value",
                "Value",
                value=rec.value if rec else "",
                placeholder="email, @handle, URL…",
            ),
        ),
        confirm,
    )


def skill_dialog(rec: Skill | None = None) -> Dialog:
    title, confirm = _title("skills", rec)
    return Dialog(
        title,
        (
            TextField("emoji", "Emoji", value=rec.emoji if rec else "",
                      placeholder=SKILL_EMOJI, max_length=4),
            TextField("category", "Category", value=rec.category if rec else "",
                      placeholder="Frontend", max_length=28),
            TextField("name", "Skill Name", value=rec.name if rec else "",
                      placeholder="e.g. React", max_length=40),
            RangeField("level", "Proficiency %", value=rec.level if rec else 80,
                       minimum=0, maximum=100, step=5),
        ),
        confirm,
    )


def link_dialog(rec: Link | None = None) -> Dialog:
    title, confirm = _title("links", rec)
    return Dialog(
        title,
        (
            TextField("name", "Name", value=rec.name if rec else "",
                      placeholder="e.g. GitHub", max_length=40),
            TextField("url", "URL", value=rec.url if rec else "",
                      placeholder="https://…", input_type="url"),
        ),
        confirm,
    )


def project_dialog(rec: Project | None = None) -> Dialog:
    title, confirm = _title("projects", rec)
    return Dialog(
        title,
        (
            TextField("emoji", "Emoji", value=rec.emoji if rec else "",
                      placeholder=PROJECT_EMOJI, max_length=4),
            TextField("url", "URL", value=rec.url if rec else "",
                      placeholder="https://…", input_type="url"),
            TextField("title", "Title", value=rec.title if rec else "",
                      placeholder="Project name", max_length=60),
            TextAreaField("description", "Description",
                          value=rec.description if rec else "",
                          placeholder="Short description…"),
            TextField("tags", "Tags", value=", ".join(rec.tags) if rec else "",
                      placeholder="React, TypeScript…",
                      hint=f"comma separated, max {MAX_TAGS}"),
        ),
        confirm,
    )


DIALOGS: dict[str, Callable[[Record | None], Dialog]] = {
    "contacts": contact_dialog,
    "skills": skill_dialog,
    "links": link_dialog,
    "projects": project_dialog,
}


def login_dialog() -> Dialog:
    return Dialog(
        "🔐 Admin Login",
        (PasswordField("password", "Password", placeholder="Password"),),
        "Login",
    )


def password_dialog() -> Dialog:
    return Dialog(
        "🔑 Change Password",
        (
            PasswordField("current", "Current", placeholder="Current password"),
            PasswordField("new", f"New (min {MIN_PASSPHRASE_LEN} chars)",
                          placeholder="New password", autocomplete="new-password"),
            PasswordField("confirm", "Confirm", placeholder="Repeat new password",
                          autocomplete="new-password"),
        ),
        "Update",
    )


################################################################################
# Flows
################################################################################
async def add_entry(folio: Folio, broker: ModalBroker, kind: str) -> Record | None:
    store = folio.collection(kind)
    folio.session.require_admin(f"add {kind}")
    outcome = await broker.open(DIALOGS[kind](None))
    if not outcome.confirmed:
        return None
    return store.add(outcome.values, session=folio.session)


async def edit_entry(
    folio: Folio, broker: ModalBroker, kind: str, position: int
) -> Record | None:
    store = folio.collection(kind)
    folio.session.require_admin(f"edit {kind}")
    rec = store.get(position)
    outcome = await broker.open(DIALOGS[kind](rec))
    if not outcome.confirmed:
        return None
    # the sequence may have shifted while the dialog was open
    current = store.position_of(rec.id)
    if current is None:
        raise BoundsError(kind, position, len(store))
    return store.update(current, outcome.values, session=folio.session)


async def login(folio: Folio, broker: ModalBroker) -> bool | None:
    outcome = await broker.open(login_dialog())
    if not outcome.confirmed:
        return None
    return folio.gate.login(folio.session, outcome.values["password"])


async def change_password(folio: Folio, broker: ModalBroker) -> bool | None:
    folio.session.require_admin("change the password")
    outcome = await broker.open(password_dialog())
    if not outcome.confirmed:
        return None
    v = outcome.values
    folio.gate.change_credential(v["current"], v["new"], v["confirm"])
    return True
