import contextlib

from prompt_toolkit import PromptSession
from prompt_toolkit.input import create_pipe_input
from prompt_toolkit.output import DummyOutput

from lab_reconciliation.models import Category
from lab_reconciliation.term_ui import select_category

CHOICES = [Category.IMPLANT, Category.PERIO, Category.PROSTHO]


@contextlib.contextmanager
def pipe_session():
    with create_pipe_input() as pipe:
        sess = PromptSession(input=pipe, output=DummyOutput())
        yield pipe, sess


def test_enter_accepts_prefilled_current_category():
    with pipe_session() as (pipe, sess):
        pipe.send_text("\r")
        assert select_category(CHOICES, default=Category.PERIO, session=sess) is Category.PERIO


def test_typing_full_value_selects_it():
    with pipe_session() as (pipe, sess):
        # Ctrl-A (home), Ctrl-K (kill to end), type, Enter
        pipe.send_text("\x01\x0bprostho\r")
        result = select_category(CHOICES, default=Category.IMPLANT, session=sess)
        assert result is Category.PROSTHO


def test_tab_completes_prefix():
    with pipe_session() as (pipe, sess):
        pipe.send_text("\x01\x0bpe\t\r")
        assert select_category(CHOICES, default=Category.IMPLANT, session=sess) is Category.PERIO


def test_enter_commits_prefix_completion():
    with pipe_session() as (pipe, sess):
        pipe.send_text("\x01\x0bPro\r")
        result = select_category(CHOICES, default=Category.IMPLANT, session=sess)
        assert result is Category.PROSTHO


def test_tab_on_empty_buffer_picks_first_choice():
    with pipe_session() as (pipe, sess):
        pipe.send_text("\x01\x0b")
        pipe.send_text("\t\r")
        result = select_category(CHOICES, default=Category.PERIO, session=sess)
        assert result is Category.IMPLANT


def test_current_category_is_offered_even_when_not_a_choice():
    # A saved category outside the row's treatments stays selectable.
    with pipe_session() as (pipe, sess):
        pipe.send_text("\r")
        result = select_category(CHOICES, default=Category.ORTHO, session=sess)
        assert result is Category.ORTHO
