#!/usr/bin/env python3
"""
A single-page profile with an admin mode.

Visitors see the profile, contacts, skills, links and projects.  The
owner logs in with a passphrase and edits everything through small
dialogs; every edit is written straight to the SQLite file.
"""

import asyncio
import base64
import json
import os
import re
import secrets
import uuid
from collections import defaultdict, deque
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from urllib.parse import urlparse

import boto3
import click
import markdown
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    Response,
    abort,
    flash,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from folio import flows
from folio.core import (
    IMAGE_KINDS,
    LINK_SORTS,
    MIN_PASSPHRASE_LEN,
    RECORD_TYPES,
    AuthError,
    BoundsError,
    Contact,
    CredentialError,
    Folio,
    PersistenceError,
    ValidationError,
    export_filename,
    export_snapshot,
    utc_now,
)
from folio.modal import CANCEL_TRIGGERS, Dialog, PendingDialog, drive

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("FOLIO_DB") or ROOT / "folio.sqlite3")

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = os.environ.get("FOLIO_SECRET_KEY") or (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
if not os.environ.get("FOLIO_SECRET_KEY"):
    SECRET_FILE.write_text(SECRET_KEY)

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)
UPLOAD_MAX_BYTES = 8 * 1024 * 1024
INLINE_IMAGE_MAX_BYTES = 2 * 1024 * 1024  # data: URLs live in the kv table
IMAGE_MIMES = {
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
}

THEMES = (
    {"key": "dark", "label": "◐ Light", "meta": "#0b0f14"},
    {"key": "light", "label": "◑ Neon", "meta": "#f0f4f8"},
    {"key": "neon", "label": "◐ Dark", "meta": "#07000f"},
)

MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
]

try:
    __version__ = version("folio")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",  # blocks most CSRF on simple links
    SESSION_COOKIE_HTTPONLY=True,  # mitigate XSS → cookie theft
    SESSION_COOKIE_SECURE=os.environ.get("FOLIO_SECURE_COOKIES", "0") == "1",
    MAX_CONTENT_LENGTH=UPLOAD_MAX_BYTES,
    RATELIMIT_LOGIN=int(os.environ.get("FOLIO_LOGIN_ATTEMPTS", "5")),
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def render_markdown_html(text: str | None) -> str:
    return markdown.markdown(text or "", extensions=MD_EXTENSIONS)


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    return Markup(render_markdown_html(text))


@app.template_filter("mdinline")
def md_inline_filter(text: str | None) -> Markup:
    """
    Render Markdown like `md`, but if the result is exactly one
    <p>…</p> block, unwrap it so we get pure inline HTML.
    """
    s = render_markdown_html(text)
    if s.startswith("<p>") and s.endswith("</p>"):
        s = s[3:-4].strip()
    return Markup(s)


@app.template_filter("initials")
def initials_filter(name: str | None) -> str:
    return (name or "")[:2].upper()


###############################################################################
# Core access
###############################################################################
def get_folio() -> Folio:
    """
    One in-memory Folio per database file, shared by every request:
    the stores are the canonical state and write through on each change.
    """
    folio = app.extensions.get("folio")
    if folio is None or folio.kv.path != app.config["DATABASE"]:
        folio = app.extensions["folio"] = Folio(app.config["DATABASE"])
    return folio


def is_admin() -> bool:
    """
    Admin mode lives in the database, but only the browser that logged
    in gets to use it.
    """
    return bool(session.get("admin")) and get_folio().session.is_admin


def admin_required() -> None:
    if not is_admin():
        abort(403)


def collection_or_404(kind: str):
    if kind not in RECORD_TYPES:
        abort(404)
    return get_folio().collection(kind)


def theme() -> dict:
    idx = get_folio().kv.get("theme", 0)
    if not isinstance(idx, int) or not 0 <= idx < len(THEMES):
        idx = 0
    return THEMES[idx]


def link_href(url: str | None) -> str:
    url = (url or "").strip()
    if not url or re.match(r"^https?://", url, re.I):
        return url
    return "https://" + url


def link_host(url: str | None) -> str:
    """Return the hostname (sans www) for display next to external links."""
    if not url:
        return ""
    try:
        host = urlparse(link_href(url)).netloc
    except ValueError:
        return ""
    if host.startswith("www."):
        host = host[4:]
    return host.lower()


def contact_href(contact: Contact) -> str:
    value = contact.value
    if contact.type == "email":
        return "mailto:" + value
    if contact.type == "phone":
        return "tel:" + value
    if contact.type == "telegram":
        return value if value.startswith("http") else "https://t.me/" + value.replace("@", "", 1)
    return link_href(value)


def _csrf_token() -> str:
    """One token per browser session, minted on first use."""
    if "csrf" not in session:
        session["csrf"] = secrets.token_hex(16)
    return session["csrf"]


app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    is_admin=is_admin,
    theme=theme,
    link_href=link_href,
    link_host=link_host,
    contact_href=contact_href,
    link_sorts=LINK_SORTS,
    version=__version__,
)


###############################################################################
# R2 image storage
###############################################################################
def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        return f"{base.rstrip('/')}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en" data-theme="{{ theme().key }}">
<title>{{ title or 'Profile' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<meta name="theme-color" content="{{ theme().meta }}">
<meta name="description" content="{{ description or 'Professional profile' }}">
<style>
:root{--bg:#0b0f14;--fg:#d6dde6;--muted:#8593a3;--card:#131a22;--line:#243040;--accent:#5eead4}
[data-theme=light]{--bg:#f0f4f8;--fg:#17202a;--muted:#5d6b7a;--card:#fff;--line:#d5dde6;--accent:#0f766e}
[data-theme=neon]{--bg:#07000f;--fg:#f3e8ff;--muted:#a78bfa;--card:#140526;--line:#3b0a6b;--accent:#f0abfc}
html{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}
body{margin:0;background:var(--bg);color:var(--fg);line-height:1.55}
a{color:var(--accent);text-decoration:none}a:hover{text-decoration:underline}
.container{max-width:60rem;margin:0 auto;padding:1rem}
.topbar{display:flex;gap:.75rem;align-items:center;justify-content:space-between;padding:.5rem 0;border-bottom:1px solid var(--line)}
.topbar form{display:inline;margin:0}
.topbar__status{font-size:.8em;color:var(--muted)}.topbar__status.is-admin{color:var(--accent)}
button,.button{background:var(--card);color:var(--fg);border:1px solid var(--line);border-radius:6px;padding:.3rem .7rem;cursor:pointer;font:inherit}
button.primary{background:var(--accent);color:var(--bg);border-color:var(--accent)}
.icon-btn{padding:.1rem .45rem;font-size:.85em}.icon-btn.del{color:#f87171}
input,select,textarea{background:var(--card);color:var(--fg);border:1px solid var(--line);border-radius:6px;padding:.4rem .6rem;font:inherit;box-sizing:border-box;width:100%}
section{margin:2rem 0}section h2{display:flex;align-items:center;gap:.5rem;font-size:1.1em}
.count{font-size:.75em;color:var(--muted);border:1px solid var(--line);border-radius:1em;padding:0 .5em}
.card{background:var(--card);border:1px solid var(--line);border-radius:10px;padding:1rem}
.profile{position:relative;overflow:hidden;background-size:cover;background-position:center}
.avatar{width:88px;height:88px;border-radius:50%;object-fit:cover;background:var(--line);display:flex;align-items:center;justify-content:center;font-size:2em}
.avail-pill{display:inline-block;font-size:.75em;border-radius:1em;padding:.05em .7em}.avail--yes{background:#134e3a;color:#6ee7b7}.avail--no{background:#3f1d1d;color:#fca5a5}
.stats{display:flex;gap:1.5rem;color:var(--muted);font-size:.85em}
.grid{display:grid;grid-template-columns:repeat(auto-fill,minmax(14rem,1fr));gap:.75rem}
.skill-bar{height:6px;background:var(--line);border-radius:3px}.skill-bar__fill{height:100%;background:var(--accent);border-radius:3px}
.link-item{display:flex;align-items:center;gap:.75rem;list-style:none;padding:.5rem;border-bottom:1px solid var(--line)}
.link-item[draggable=true]{cursor:grab}.link-item.drag-over{outline:1px dashed var(--accent)}
.link-item__info{flex:1;min-width:0}.link-item__url{font-size:.8em;color:var(--muted);overflow:hidden;text-overflow:ellipsis}
.link-item__clicks{font-size:.75em;color:var(--muted)}
.tag{display:inline-block;font-size:.75em;border:1px solid var(--line);border-radius:1em;padding:0 .5em;margin:.15em .15em 0 0}
.empty{color:var(--muted);text-align:center;padding:1.5rem}
.toast{position:fixed;top:1rem;right:1rem;background:#323232;color:#fff;padding:.75rem 1rem;border-radius:.4rem;font-size:.9rem;box-shadow:0 2px 6px rgba(0,0,0,.4);max-width:24rem;z-index:999}
.modal-wrap{position:fixed;inset:0;display:flex;align-items:center;justify-content:center;z-index:100}
.modal-backdrop{position:absolute;inset:0;width:100%;height:100%;border:0;border-radius:0;background:rgba(0,0,0,.6);cursor:default}
.modal{position:relative;width:min(30rem,92vw);background:var(--card);border:1px solid var(--line);border-radius:12px;padding:1.25rem}
.modal__close{position:absolute;top:.75rem;right:.75rem}
.modal__foot{display:flex;flex-direction:row-reverse;gap:.5rem;margin-top:1rem}
.field{margin-bottom:.75rem}.field label{display:block;font-size:.8em;color:var(--muted);margin-bottom:.2rem}
.field-hint{font-size:.85em;color:var(--muted)}
.pw-bar{height:4px;margin-top:.3rem;border-radius:2px}.pw-bar.weak{background:#ef4444;width:33%}.pw-bar.medium{background:#f59e0b;width:66%}.pw-bar.strong{background:#22c55e;width:100%}
footer{margin-top:2rem;padding-top:1rem;font-size:.8em;color:var(--muted);border-top:1px solid var(--line)}
</style>
<body>
<div class="container">
  <div class="topbar">
    <a href="{{ url_for('index') }}">{{ title or 'Profile' }}</a>
    <span class="topbar__status{% if is_admin() %} is-admin{% endif %}">
      {% if is_admin() %}🛡 Admin mode{% else %}🔒 View mode{% endif %}
    </span>
    <span>
      <form method="post" action="{{ url_for('cycle_theme') }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button type="submit">{{ theme().label }}</button>
      </form>
      {% if is_admin() %}
        <a class="button" href="{{ url_for('change_password') }}">🔑</a>
        <a class="button" href="{{ url_for('export_json') }}">Export</a>
        <form method="post" action="{{ url_for('logout') }}">
          <input type="hidden" name="csrf" value="{{ csrf_token() }}">
          <button type="submit">Logout</button>
        </form>
      {% else %}
        <a class="button" href="{{ url_for('login') }}">Admin</a>
      {% endif %}
    </span>
  </div>
  {% with msgs = get_flashed_messages() %}
  {% if msgs %}
    <div class="toast" role="status" aria-live="polite" aria-atomic="true">
    {{ msgs|join('<br>')|safe }}
    </div>
  {% endif %}
  {% endwith %}
  <main id="main-content" role="main" tabindex="-1">
"""

TEMPL_EPILOG = """
  </main>
  <footer>
    {{ views }} view{{ '' if views == 1 else 's' }} · folio v{{ version }}
  </footer>
</div>
</body>
</html>
"""

TEMPL_INDEX = wrap("""
{% macro empty(icon, text, sub='') -%}
  <div class="empty"><div>{{ icon }}</div><div>{{ text }}</div>
  {% if sub %}<div class="field-hint">{{ sub }}</div>{% endif %}</div>
{%- endmacro %}
{% macro admin_bar(kind, pos) -%}
  {% if is_admin() %}
  <span>
    <a class="button icon-btn" href="{{ url_for('edit_entry', kind=kind, position=pos) }}" aria-label="Edit">✎</a>
    <form method="post" action="{{ url_for('delete_entry', kind=kind, position=pos) }}" style="display:inline">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <button class="icon-btn del" type="submit" aria-label="Delete">✕</button>
    </form>
  </span>
  {% endif %}
{%- endmacro %}

<section id="profile" class="card profile"
  {% if profile.background %}style="background-image:url('{{ profile.background }}')"{% endif %}>
  <div style="display:flex;gap:1rem;align-items:center">
    {% if profile.avatar %}
      <img class="avatar" src="{{ profile.avatar }}" alt="">
    {% else %}
      <div class="avatar" aria-hidden="true">👤</div>
    {% endif %}
    <div>
      <h1 style="margin:0">{{ profile.nickname }}</h1>
      <div>{{ profile.profession|mdinline }}</div>
      <span class="avail-pill {{ 'avail--yes' if profile.available else 'avail--no' }}">
        {{ 'Online' if profile.available else 'Offline' }}
      </span>
    </div>
  </div>
  <div class="bio">{{ profile.bio|md }}</div>
  <div class="stats">
    <span>{{ folio.skills|length }} skills</span>
    <span>{{ folio.projects|length }} projects</span>
    <span>{{ folio.links|length }} links</span>
    <span>{{ folio.contacts|length }} contacts</span>
  </div>
  {% if is_admin() %}
  <details style="margin-top:1rem">
    <summary>Edit profile</summary>
    <form method="post" action="{{ url_for('edit_profile') }}">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <div class="field"><label>Name</label><input name="nickname" value="{{ profile.nickname }}"></div>
      <div class="field"><label>Profession</label><input name="profession" value="{{ profile.profession }}"></div>
      <div class="field"><label>Bio</label><textarea name="bio" rows="3">{{ profile.bio }}</textarea></div>
      <button class="primary" type="submit">Save</button>
    </form>
    <form method="post" action="{{ url_for('toggle_availability') }}" style="margin-top:.5rem">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <button type="submit">{{ 'Set unavailable' if profile.available else 'Set available' }}</button>
    </form>
    {% for kind in ('avatar', 'background') %}
    <form method="post" action="{{ url_for('upload_image', kind=kind) }}" enctype="multipart/form-data" style="margin-top:.5rem">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <label>{{ kind|capitalize }} <input type="file" name="file" accept="image/*"></label>
      <button type="submit">Upload</button>
      <button type="submit" name="action" value="clear">Clear</button>
    </form>
    {% endfor %}
  </details>
  {% endif %}
</section>

<section id="contacts">
  <h2>Contacts <span class="count">{{ folio.contacts|length }}</span>
    {% if is_admin() %}<a class="button" href="{{ url_for('add_entry', kind='contacts') }}">+ Add</a>{% endif %}</h2>
  {% if folio.contacts|length %}
  <div class="grid">
    {% for c in folio.contacts %}
    <div class="card">
      <a href="{{ contact_href(c) }}" title="{{ c.value }}" rel="noopener" target="_blank">
        {{ c.icon }} <span class="field-hint">{{ c.type }}</span><br>{{ c.value }}
      </a>
      {{ admin_bar('contacts', loop.index0) }}
    </div>
    {% endfor %}
  </div>
  {% else %}{{ empty('📡', 'No contacts yet', 'Click + Add to start' if is_admin() else '') }}{% endif %}
</section>

<section id="skills">
  <h2>Skills <span class="count">{{ folio.skills|length }}</span>
    {% if is_admin() %}<a class="button" href="{{ url_for('add_entry', kind='skills') }}">+ Add</a>{% endif %}</h2>
  {% for s in folio.skills %}
  <div class="skill-row" style="margin-bottom:.75rem">
    <div style="display:flex;justify-content:space-between">
      <span>{{ s.emoji }} {{ s.name }}{% if s.category %} <span class="field-hint">{{ s.category }}</span>{% endif %}</span>
      <span>{{ s.level }}% {{ admin_bar('skills', loop.index0) }}</span>
    </div>
    <div class="skill-bar" role="progressbar" aria-valuenow="{{ s.level }}" aria-valuemin="0" aria-valuemax="100" aria-label="{{ s.name }} proficiency">
      <div class="skill-bar__fill" style="width:{{ s.level }}%"></div>
    </div>
  </div>
  {% else %}{{ empty('⚡', 'No skills listed', 'Add skills to showcase expertise' if is_admin() else '') }}{% endfor %}
</section>

<section id="links">
  <h2>Links <span class="count">{{ folio.links|length }}</span>
    {% if is_admin() %}<a class="button" href="{{ url_for('add_entry', kind='links') }}">+ Add</a>{% endif %}</h2>
  <form method="get" action="{{ url_for('index') }}#links" style="display:flex;gap:.5rem">
    <input type="search" name="q" value="{{ q }}" placeholder="Search links" aria-label="Search links">
    <select name="sort" onchange="this.form.submit()" style="width:auto">
      {% for s in link_sorts %}<option value="{{ s }}" {% if s == sort %}selected{% endif %}>{{ {'custom':'Custom','az':'A → Z','za':'Z → A','clicks':'Most clicked'}[s] }}</option>{% endfor %}
    </select>
  </form>
  <ul id="linksList" style="padding:0">
  {% for pos, l in link_rows %}
    <li class="link-item" data-li="{{ pos }}" {% if is_admin() and sort == 'custom' and not q %}draggable="true"{% endif %}>
      {% if is_admin() %}<span aria-hidden="true" title="Drag to reorder">⠿</span>{% endif %}
      <span aria-hidden="true">{{ l.name|initials }}</span>
      <div class="link-item__info">
        <a href="{{ url_for('open_link', position=pos) }}" target="_blank" rel="noopener">{{ l.name }}</a>
        <div class="link-item__url">{{ link_host(l.url) or l.url }}</div>
      </div>
      {% set n = folio.clicks.count_for(pos) %}
      {% if n %}<span class="link-item__clicks" title="Click count">{{ n }}</span>{% endif %}
      {{ admin_bar('links', pos) }}
    </li>
  {% else %}
    <li>{{ empty('🔗', 'No results' if q else 'No links yet', 'Add your first link' if is_admin() and not q else '') }}</li>
  {% endfor %}
  </ul>
  {% if is_admin() %}
  <script>
  (() => {
    let src = null;
    const list = document.getElementById('linksList');
    list.querySelectorAll('.link-item[draggable]').forEach(item => {
      item.addEventListener('dragstart', e => { src = +item.dataset.li; e.dataTransfer.effectAllowed = 'move'; });
      item.addEventListener('dragover', e => { e.preventDefault(); item.classList.add('drag-over'); });
      item.addEventListener('dragleave', () => item.classList.remove('drag-over'));
      item.addEventListener('drop', async e => {
        e.preventDefault(); item.classList.remove('drag-over');
        const target = +item.dataset.li;
        if (src === null || src === target) return;
        await fetch("{{ url_for('reorder_links') }}", {
          method: "POST",
          headers: {"Content-Type": "application/json", "X-CSRFToken": "{{ csrf_token() }}"},
          body: JSON.stringify({from: src, to: target}),
        });
        location.reload();
      });
    });
  })();
  </script>
  {% endif %}
</section>

<section id="projects">
  <h2>Portfolio <span class="count">{{ folio.projects|length }}</span>
    {% if is_admin() %}<a class="button" href="{{ url_for('add_entry', kind='projects') }}">+ Add</a>{% endif %}</h2>
  {% if folio.projects|length %}
  <div class="grid">
    {% for p in folio.projects %}
    <details class="card">
      <summary><span aria-hidden="true">{{ p.emoji }}</span> <strong>{{ p.title }}</strong></summary>
      <div>{{ (p.description or 'No description.')|md }}</div>
      {% if p.tags %}<div>{% for t in p.tags %}<span class="tag">{{ t }}</span>{% endfor %}</div>{% endif %}
      {% if p.url %}<a href="{{ link_href(p.url) }}" target="_blank" rel="noopener">Open Project ↗</a>{% endif %}
      {{ admin_bar('projects', loop.index0) }}
    </details>
    {% endfor %}
  </div>
  {% else %}{{ empty('🗂', 'No projects yet', 'Add your best work' if is_admin() else '') }}{% endif %}
</section>
""")

TEMPL_DIALOG = wrap("""
<div class="modal-wrap">
<form method="post" id="modal" role="dialog" aria-modal="true" aria-labelledby="modalTitle">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <button class="modal-backdrop" type="submit" name="action" value="backdrop" formnovalidate tabindex="-1" aria-hidden="true"></button>
  <div class="modal">
    <h2 id="modalTitle" style="margin-top:0">{{ dialog.title }}</h2>
    {% for f in dialog.fields %}
    <div class="field">
      <label for="f-{{ f.name }}">{{ f.label }}{% if f.hint %} <span class="field-hint">({{ f.hint }})</span>{% endif %}</label>
      {% if f.kind == 'select' %}
        <select id="f-{{ f.name }}" name="{{ f.name }}">
          {% for value, label in f.choices %}
          <option value="{{ value }}"{% if value == f.value %} selected{% endif %}>{{ label }}</option>
          {% endfor %}
        </select>
      {% elif f.kind == 'textarea' %}
        <textarea id="f-{{ f.name }}" name="{{ f.name }}" rows="{{ f.rows }}" placeholder="{{ f.placeholder }}">{{ f.value }}</textarea>
      {% elif f.kind == 'range' %}
        <input id="f-{{ f.name }}" name="{{ f.name }}" type="range" min="{{ f.minimum }}" max="{{ f.maximum }}" step="{{ f.step }}" value="{{ f.value }}"
               oninput="document.getElementById('f-{{ f.name }}-val').textContent=this.value+'%'">
        <span class="field-hint" id="f-{{ f.name }}-val">{{ f.value }}%</span>
      {% elif f.kind == 'password' %}
        <input id="f-{{ f.name }}" name="{{ f.name }}" type="password" placeholder="{{ f.placeholder }}" autocomplete="{{ f.autocomplete }}"
               {% if f.name == 'new' %}oninput="const n=this.value.length;document.getElementById('pwBar').className='pw-bar'+(n?(n<6?' weak':n<10?' medium':' strong'):'')"{% endif %}>
        {% if f.name == 'new' %}<div class="pw-bar" id="pwBar"></div>{% endif %}
      {% else %}
        <input id="f-{{ f.name }}" name="{{ f.name }}" type="{{ f.input_type }}" value="{{ f.value }}" placeholder="{{ f.placeholder }}"
               {% if f.max_length %}maxlength="{{ f.max_length }}"{% endif %}>
      {% endif %}
    </div>
    {% endfor %}
    <div class="modal__foot">
      <button class="primary" type="submit" name="action" value="confirm">{{ dialog.confirm_text }}</button>
      <button type="submit" name="action" value="cancel" formnovalidate>Cancel</button>
    </div>
    <button class="modal__close icon-btn" type="submit" name="action" value="close" formnovalidate aria-label="Close">✕</button>
  </div>
</form>
</div>
<script>
(() => {
  const form = document.getElementById('modal');
  const first = form.querySelector('input:not([type=hidden]),textarea,select');
  if (first) setTimeout(() => first.focus(), 80);
  document.addEventListener('keydown', e => {
    if (e.key !== 'Escape') return;
    const esc = document.createElement('input');
    esc.type = 'hidden'; esc.name = 'action'; esc.value = 'escape';
    form.appendChild(esc);
    form.noValidate = true;
    form.submit();
  });
})();
</script>
""")

TEMPL_403 = wrap("""
  <h2>Admin mode required</h2>
  <p>This action is only available to the site owner.
     <a href="{{ url_for('login') }}">Log in</a> or go
     <a href="{{ url_for('index') }}">back to the profile</a>.</p>
""")

TEMPL_404 = wrap("""
  <h2>Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="{{ url_for('index') }}">Back to the profile</a>.</p>
""")

TEMPL_500 = wrap("""
  <h2>Internal Server Error</h2>
  <p>Our fault, not yours. Please try again in a minute.</p>
""")


def _page_context() -> dict:
    folio = get_folio()
    profile = folio.profile.load()
    views = folio.kv.get("viewCount", 0)
    return {
        "folio": folio,
        "profile": profile,
        "title": f"{profile.nickname} — Profile",
        "description": (profile.bio or "")[:120] or "Professional profile",
        "views": views if isinstance(views, int) else 0,
    }


def render_page(template: str, status: int = 200, **ctx):
    return render_template_string(template, **{**_page_context(), **ctx}), status


def render_dialog(dialog: Dialog, status: int = 200):
    return render_page(TEMPL_DIALOG, status, dialog=dialog)


###############################################################################
# Request guards
###############################################################################
def rate_limit(max_requests: int | None = None, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            limit = max_requests or app.config["RATELIMIT_LOGIN"]
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= limit:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ visitors cannot change anything that matters ⇒ allow (covers /login POST)
    if not is_admin():
        return

    # ➌ in admin mode every write needs this browser's token
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


def _answer_from_form(pending: PendingDialog) -> None:
    """The posted form is the UI side of the dialog: which button, which values."""
    action = request.form.get("action", "confirm")
    if action in CANCEL_TRIGGERS:
        pending.cancel(action)
    else:
        pending.confirm(request.form)


def run_flow(flow):
    return asyncio.run(drive(flow, _answer_from_form))


def _back():
    return redirect(url_for("index"))


###############################################################################
# Views
###############################################################################
@app.route("/")
def index():
    folio = get_folio()
    if not is_admin() and not session.get("viewed"):
        views = folio.kv.get("viewCount", 0)
        folio.kv.set("viewCount", (views if isinstance(views, int) else 0) + 1)
        session["viewed"] = True

    q = request.args.get("q", "").strip()
    sort = request.args.get("sort", "custom")
    if sort not in LINK_SORTS:
        sort = "custom"
    rows = folio.links.view(q, sort, clicks=folio.clicks.count_for)
    return render_page(TEMPL_INDEX, q=q, sort=sort, link_rows=rows)


@app.route("/login", methods=["GET", "POST"])
@rate_limit(window=60)
def login():
    folio = get_folio()
    if request.method == "GET":
        return render_dialog(flows.login_dialog())

    ok = run_flow(lambda broker: flows.login(folio, broker))
    if ok is None:
        return _back()
    if ok:
        session["admin"] = True
        session["csrf"] = secrets.token_hex(16)
        flash("✓ Logged in as admin")
        return _back()
    flash("✗ Wrong password")
    return render_dialog(flows.login_dialog())


@app.route("/logout", methods=["POST"])
def logout():
    admin_required()
    folio = get_folio()
    folio.gate.logout(folio.session)
    session.pop("admin", None)
    flash("Logged out")
    return _back()


@app.route("/password", methods=["GET", "POST"])
def change_password():
    admin_required()
    folio = get_folio()
    dialog = flows.password_dialog()
    if request.method == "GET":
        return render_dialog(dialog)
    try:
        ok = run_flow(lambda broker: flows.change_password(folio, broker))
    except CredentialError as exc:
        flash(f"✗ {exc}")
        return render_dialog(dialog, 400)
    if ok:
        flash("✓ Password updated")
    return _back()


@app.route("/<kind>/add", methods=["GET", "POST"])
def add_entry(kind):
    collection_or_404(kind)
    admin_required()
    folio = get_folio()
    dialog = flows.DIALOGS[kind](None)
    if request.method == "GET":
        return render_dialog(dialog)
    try:
        rec = run_flow(lambda broker: flows.add_entry(folio, broker, kind))
    except ValidationError as exc:
        flash(f"✗ {exc}")
        return render_dialog(dialog.with_values(request.form), 400)
    if rec is not None:
        flash(f"✓ {flows.SINGULAR[kind]} added")
    return _back()


@app.route("/<kind>/<int:position>/edit", methods=["GET", "POST"])
def edit_entry(kind, position):
    store = collection_or_404(kind)
    admin_required()
    folio = get_folio()
    dialog = flows.DIALOGS[kind](store.get(position))
    if request.method == "GET":
        return render_dialog(dialog)
    try:
        rec = run_flow(lambda broker: flows.edit_entry(folio, broker, kind, position))
    except ValidationError as exc:
        flash(f"✗ {exc}")
        return render_dialog(dialog.with_values(request.form), 400)
    if rec is not None:
        flash(f"✓ {flows.SINGULAR[kind]} updated")
    return _back()


@app.route("/<kind>/<int:position>/delete", methods=["POST"])
def delete_entry(kind, position):
    store = collection_or_404(kind)
    admin_required()
    store.remove(position, session=get_folio().session)
    flash(f"{flows.SINGULAR[kind]} deleted")
    return _back()


@app.route("/links/reorder", methods=["POST"])
def reorder_links():
    admin_required()
    data = request.get_json(silent=True) or request.form
    try:
        source, target = int(data.get("from")), int(data.get("to"))
    except (TypeError, ValueError):
        abort(400)
    folio = get_folio()
    folio.links.reorder(source, target, session=folio.session)
    if request.is_json:
        return ("", 204)
    return redirect(url_for("index") + "#links")


@app.route("/links/<int:position>/open")
def open_link(position):
    folio = get_folio()
    link = folio.links.get(position)
    folio.clicks.record_click(position)
    return redirect(link_href(link.url))


@app.route("/profile", methods=["POST"])
def edit_profile():
    admin_required()
    folio = get_folio()
    patch = {k: request.form[k] for k in ("nickname", "profession", "bio") if k in request.form}
    folio.profile.edit_fields(patch, session=folio.session)
    flash("✓ Profile saved")
    return _back()


@app.route("/profile/availability", methods=["POST"])
def toggle_availability():
    admin_required()
    folio = get_folio()
    available = folio.profile.toggle_availability(session=folio.session)
    flash("✓ Available" if available else "Unavailable")
    return _back()


@app.route("/profile/<kind>/image", methods=["POST"])
def upload_image(kind):
    admin_required()
    if kind not in IMAGE_KINDS:
        abort(404)
    folio = get_folio()

    if request.form.get("action") == "clear":
        folio.profile.set_image(kind, None, session=folio.session)
        flash(f"{kind.capitalize()} removed")
        return _back()

    f = request.files.get("file")
    if f is None or not f.filename:
        flash("No file selected.")
        return _back()
    mime = (f.mimetype or "").lower()
    if mime not in IMAGE_MIMES:
        flash("Only image uploads are allowed.")
        return _back()

    cfg = r2_config()
    if r2_is_configured(cfg):
        ext = Path(secure_filename(f.filename)).suffix.lower()
        key = f"uploads/{utc_now().strftime('%Y/%m/%d')}/{uuid.uuid4().hex}{ext}"
        try:
            client = _r2_client(cfg)
            f.stream.seek(0)
            client.upload_fileobj(
                f.stream,
                cfg["R2_BUCKET"],
                key,
                ExtraArgs={"ContentType": mime},
            )
        except (BotoCoreError, ClientError):
            app.logger.exception("R2 upload failed")
            flash("Upload failed – check R2 credentials.")
            return _back()
        reference = r2_object_url(cfg, key)
    else:
        data = f.read()
        if len(data) > INLINE_IMAGE_MAX_BYTES:
            flash("Image too large (2 MiB max without R2).")
            return _back()
        reference = f"data:{mime};base64,{base64.b64encode(data).decode()}"

    folio.profile.set_image(kind, reference, session=folio.session)
    flash(f"✓ {kind.capitalize()} updated")
    return _back()


@app.route("/theme", methods=["POST"])
def cycle_theme():
    kv = get_folio().kv
    current = THEMES.index(theme())
    kv.set("theme", (current + 1) % len(THEMES))
    return redirect(request.referrer or url_for("index"))


@app.route("/export.json")
def export_json():
    admin_required()
    now = utc_now()
    body = json.dumps(export_snapshot(get_folio(), now=now), ensure_ascii=False, indent=2)
    return Response(
        body,
        mimetype="application/json",
        headers={
            "Content-Disposition": f'attachment; filename="{export_filename(now)}"'
        },
    )


###############################################################################
# Errors
###############################################################################
@app.errorhandler(AuthError)
@app.errorhandler(403)
def forbidden(exc):
    return render_page(TEMPL_403, 403)


@app.errorhandler(BoundsError)
@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_page(TEMPL_404, 404)


@app.errorhandler(ValidationError)
def invalid_input(exc):
    flash(f"✗ {exc}")
    return _back()


@app.errorhandler(PersistenceError)
def persistence_failed(exc):
    app.logger.error("write-through failed", exc_info=exc)
    flash("⚠ Change kept in memory only – the database refused the write.")
    return _back()


@app.errorhandler(500)
def internal_error(exc):
    return render_template_string(TEMPL_500, views=0, title="Profile"), 500


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
@click.option(
    "--password",
    prompt=True,
    hide_input=True,
    confirmation_prompt=True,
    help="Admin passphrase (replaces the default one).",
)
def cli_init(password: str):
    """Create the database and set the admin passphrase."""
    folio = get_folio()
    try:
        folio.gate.reset_credential(password)
    except CredentialError as exc:
        raise click.ClickException(str(exc)) from exc
    click.secho(f"\n✅  Database ready at {folio.kv.path}", fg="green")
    click.echo("Log in at /login with the new passphrase.")


@app.cli.command("passwd")
@click.option("--current", prompt=True, hide_input=True, help="Current passphrase.")
@click.option(
    "--new",
    prompt=True,
    hide_input=True,
    confirmation_prompt=True,
    help=f"New passphrase (min {MIN_PASSPHRASE_LEN} chars).",
)
def cli_passwd(current: str, new: str):
    """Change the admin passphrase."""
    try:
        get_folio().gate.change_credential(current, new, new)
    except CredentialError as exc:
        raise click.ClickException(str(exc)) from exc
    click.secho("\n🔑  Passphrase updated.", fg="yellow")


@app.cli.command("logout")
def cli_logout():
    """Drop admin mode (e.g. after leaving the page open somewhere)."""
    folio = get_folio()
    folio.gate.logout(folio.session)
    click.secho("🔒  Back in view mode.", fg="yellow")


@app.cli.command("export")
@click.option(
    "--out",
    type=click.Path(dir_okay=False, writable=True),
    default=None,
    help="Target file (default: profile-<ms>.json in the current directory).",
)
def cli_export(out: str | None):
    """Write the profile snapshot as JSON."""
    now = utc_now()
    target = Path(out or export_filename(now))
    target.write_text(
        json.dumps(export_snapshot(get_folio(), now=now), ensure_ascii=False, indent=2)
        + "\n"
    )
    click.echo(f"Exported to {target}")
