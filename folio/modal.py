"""
Single-flight dialog broker.

A flow ``await``s :meth:`ModalBroker.open` with a :class:`Dialog` and is
suspended until the UI side resolves the pending request exactly once:
confirmed (values read back from the UI at that moment) or cancelled by
the cancel button, the close button, the backdrop or Escape.

Only one dialog may be pending.  A second ``open()`` while one is
pending is rejected with :class:`ModalBusy`; the first caller keeps
waiting for its own answer.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, ClassVar, Mapping, TypeVar

log = logging.getLogger(__name__)

CONFIRM = "confirm"
CANCEL = "cancel"
CLOSE = "close"
BACKDROP = "backdrop"
ESCAPE = "escape"
CANCEL_TRIGGERS = (CANCEL, CLOSE, BACKDROP, ESCAPE)


class ModalError(Exception):
    pass


class ModalBusy(ModalError):
    """Another dialog is still waiting for an answer."""


################################################################################
# Field descriptors
################################################################################
@dataclass(frozen=True)
class Field:
    """
    One input of a dialog.  ``value`` is the initial value shown;
    :meth:`read` turns whatever the UI sends back into the field's type.
    """

    kind: ClassVar[str] = "text"

    name: str
    label: str
    value: Any = ""
    placeholder: str = ""
    hint: str = ""

    def read(self, raw: Any) -> Any:
        return "" if raw is None else str(raw)


@dataclass(frozen=True)
class TextField(Field):
    kind: ClassVar[str] = "text"

    max_length: int | None = None  # rendered as maxlength; the store enforces it
    input_type: str = "text"  # text | url | email

    def read(self, raw):
        return "" if raw is None else str(raw).strip()


@dataclass(frozen=True)
class PasswordField(Field):
    kind: ClassVar[str] = "password"

    autocomplete: str = "current-password"


@dataclass(frozen=True)
class TextAreaField(Field):
    kind: ClassVar[str] = "textarea"

    rows: int = 3

    def read(self, raw):
        return "" if raw is None else str(raw).strip()


@dataclass(frozen=True)
class SelectField(Field):
    kind: ClassVar[str] = "select"

    choices: tuple[tuple[str, str], ...] = ()  # (value, label)

    def read(self, raw):
        raw = "" if raw is None else str(raw)
        return raw if raw in {v for v, _ in self.choices} else ""


@dataclass(frozen=True)
class RangeField(Field):
    kind: ClassVar[str] = "range"

    minimum: int = 0
    maximum: int = 100
    step: int = 1

    def read(self, raw):
        try:
            n = float(raw)
        except (TypeError, ValueError):
            return self.value
        if not math.isfinite(n):
            return self.value
        n = min(max(n, self.minimum), self.maximum)
        return self.minimum + round((n - self.minimum) / self.step) * self.step


@dataclass(frozen=True)
class Dialog:
    title: str
    fields: tuple[Field, ...] = ()
    confirm_text: str = "Save"

    def read(self, values: Mapping[str, Any] | None) -> dict[str, Any]:
        """Field values as the UI reports them; absent ones keep their initial value."""
        values = values or {}
        return {f.name: f.read(values.get(f.name, f.value)) for f in self.fields}

    def with_values(self, values: Mapping[str, Any]) -> Dialog:
        """
        Same dialog, pre-filled with *values* (used to re-show rejected
        input).  Password fields are never echoed back.
        """
        return replace(
            self,
            fields=tuple(
                replace(f, value=f.read(values[f.name]))
                if f.name in values and f.kind != "password"
                else f
                for f in self.fields
            ),
        )


@dataclass(frozen=True)
class Outcome:
    confirmed: bool
    values: Mapping[str, Any] = field(default_factory=dict)
    trigger: str = CANCEL


################################################################################
# Broker
################################################################################
class PendingDialog:
    """The UI-side handle of an open dialog.  Resolves exactly once."""

    def __init__(self, broker: ModalBroker, dialog: Dialog, future: asyncio.Future):
        self._broker = broker
        self._future = future
        self.dialog = dialog

    @property
    def done(self) -> bool:
        return self._future.done()

    def _resolve(self, outcome: Outcome) -> Outcome:
        if self._future.done():
            raise ModalError(f"dialog {self.dialog.title!r} was already answered")
        self._future.set_result(outcome)
        self._broker._release(self)
        return outcome

    def confirm(self, values: Mapping[str, Any] | None = None) -> Outcome:
        return self._resolve(Outcome(True, self.dialog.read(values), CONFIRM))

    def cancel(self, trigger: str = CANCEL) -> Outcome:
        if trigger not in CANCEL_TRIGGERS:
            raise ValueError(f"not a cancel trigger: {trigger!r}")
        return self._resolve(Outcome(False, {}, trigger))

    def close(self) -> Outcome:
        return self.cancel(CLOSE)

    def backdrop(self) -> Outcome:
        return self.cancel(BACKDROP)

    def press(self, key: str, values: Mapping[str, Any] | None = None) -> Outcome | None:
        """Escape cancels; Enter (from a text input) confirms; other keys do nothing."""
        if key == "Escape":
            return self.cancel(ESCAPE)
        if key == "Enter":
            return self.confirm(values)
        return None

    def __repr__(self) -> str:
        state = "done" if self.done else "open"
        return f"<PendingDialog {self.dialog.title!r} {state}>"


class ModalBroker:
    def __init__(self):
        self._pending: PendingDialog | None = None
        self._watchers: list[asyncio.Future] = []

    @property
    def pending(self) -> PendingDialog | None:
        return self._pending

    @property
    def is_open(self) -> bool:
        return self._pending is not None

    async def open(self, dialog: Dialog) -> Outcome:
        if self._pending is not None:
            raise ModalBusy(
                f"cannot open {dialog.title!r}: "
                f"{self._pending.dialog.title!r} is still open"
            )
        future = asyncio.get_running_loop().create_future()
        pending = PendingDialog(self, dialog, future)
        self._pending = pending
        log.debug("dialog opened: %s", dialog.title)

        watchers, self._watchers = self._watchers, []
        for w in watchers:
            if not w.done():
                w.set_result(pending)
        try:
            return await future
        finally:
            # also reached when the waiting flow itself is cancelled
            self._release(pending)

    async def next_request(self) -> PendingDialog:
        """Wait until a dialog is open and return its handle."""
        if self._pending is not None:
            return self._pending
        watcher = asyncio.get_running_loop().create_future()
        self._watchers.append(watcher)
        return await watcher

    def press(self, key: str, values: Mapping[str, Any] | None = None) -> Outcome | None:
        if self._pending is None:
            return None
        return self._pending.press(key, values)

    def _release(self, pending: PendingDialog) -> None:
        if self._pending is pending:
            self._pending = None


T = TypeVar("T")


async def drive(
    flow: Callable[[ModalBroker], Awaitable[T]],
    respond: Callable[[PendingDialog], Any],
) -> T:
    """
    Run *flow* on a fresh broker, answering every dialog it opens with
    *respond* (which must resolve the handle it is given).  This is how
    one HTML form post plays the UI side of a dialog round trip.
    """
    broker = ModalBroker()
    task = asyncio.ensure_future(flow(broker))
    while True:
        request = asyncio.ensure_future(broker.next_request())
        done, _ = await asyncio.wait(
            {task, request}, return_when=asyncio.FIRST_COMPLETED
        )
        if task in done:
            request.cancel()
            return task.result()
        pending = request.result()
        respond(pending)
        if not pending.done:
            task.cancel()
            raise ModalError(f"dialog {pending.dialog.title!r} was left unanswered")
