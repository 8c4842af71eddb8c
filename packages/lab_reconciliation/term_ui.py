"""Tiny terminal UI helpers (prompt_toolkit-based).

Kept apart from the session logic so they can be tested with a pipe input in
isolation. The CLI uses :func:`select_category` when ``set-category`` is run
without an explicit category.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggest, Suggestion
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.styles import Style
from prompt_toolkit.validation import ValidationError, Validator

from .models import Category


def _best_prefix_match(words: Sequence[str], text: str) -> str | None:
    if not text:
        return None
    lower = text.lower()
    for w in words:
        wl = w.lower()
        if wl == lower:
            return None
        if wl.startswith(lower):
            return w
    return None


class _PrefixSuggest(AutoSuggest):
    def __init__(self, vocab: Sequence[str]) -> None:
        self._vocab = list(vocab)

    def get_suggestion(self, buffer, document):
        cand = _best_prefix_match(self._vocab, document.text)
        if cand is None:
            return None
        remainder = cand[len(document.text) :]
        return Suggestion(remainder) if remainder else None


class _ChoiceValidator(Validator):
    def __init__(self, allowed_lower: set[str]) -> None:
        self._allowed_lower = allowed_lower

    def validate(self, document) -> None:
        if document.text.strip().lower() not in self._allowed_lower:
            raise ValidationError(message="Pick one of the listed categories.")


def select_category(
    choices: Sequence[Category] | Iterable[Category],
    *,
    default: Category,
    message: str = "Category (Tab to complete, Enter to accept, Esc to cancel): ",
    session: PromptSession | None = None,
) -> Category | None:
    """Prompt for one of ``choices``; the current category is pre-filled.

    Typing a prefix shows the completion inline; Tab inserts it and Enter
    applies it before accepting. Returns ``None`` when canceled with Esc.
    """

    options = [Category(c) for c in choices]
    # Keeping the current value is always allowed.
    if Category(default) not in options:
        options.insert(0, Category(default))
    words = [c.value for c in options]
    canonical = {w.lower(): c for w, c in zip(words, options, strict=True)}

    completer = WordCompleter(words, ignore_case=True, match_middle=True, sentence=False)
    kb = KeyBindings()

    @kb.add("escape")
    def _(event) -> None:  # pragma: no cover - exercised indirectly
        event.app.exit(result=None)

    @kb.add("tab", eager=True)
    def _(event) -> None:  # pragma: no cover - integration path
        b = event.app.current_buffer
        if not b.document.text:
            # Empty buffer: take the first choice right away.
            b.insert_text(words[0])
            return
        cand = _best_prefix_match(words, b.document.text)
        if cand:
            b.insert_text(cand[len(b.document.text) :])
        elif b.complete_state is None:
            b.start_completion(select_first=True)
        else:
            b.complete_next()

    @kb.add("enter", eager=True)
    def _(event) -> None:  # pragma: no cover - integration path
        b = event.app.current_buffer
        cs = b.complete_state
        if cs is not None and cs.current_completion is not None:
            b.apply_completion(cs.current_completion)
        else:
            cand = _best_prefix_match(words, b.document.text)
            if cand:
                b.insert_text(cand[len(b.document.text) :])
        b.validate_and_handle()

    if session is None:
        sess: PromptSession = PromptSession(key_bindings=kb)
    else:
        sess = PromptSession(
            input=getattr(session, "input", None),
            output=getattr(session, "output", None),
            key_bindings=kb,
        )

    value = sess.prompt(
        message,
        default=Category(default).value,
        completer=completer,
        auto_suggest=_PrefixSuggest(words),
        validator=_ChoiceValidator(set(canonical)),
        validate_while_typing=False,
        style=Style.from_dict({"auto-suggestion": "fg:#888888"}),
    )
    if value is None:
        return None
    return canonical[value.strip().lower()]


__all__ = ["select_category"]
