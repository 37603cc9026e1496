"""Operator prompts.

Engines ask through a Prompter so confirmation gates can be driven by
tests and by non-interactive wrappers.
"""

from __future__ import annotations

import click


class Prompter:
    """Interactive prompts on the controlling terminal."""

    def confirm(self, question: str, default: bool = False) -> bool:
        return click.confirm(question, default=default)

    def prompt(self, question: str, default: str | None = None) -> str:
        value = click.prompt(question, default=default, show_default=default is not None)
        return str(value).strip()

    def confirm_phrase(self, question: str, phrase: str) -> bool:
        """Typed confirmation: the answer must equal ``phrase`` exactly."""
        return self.prompt(question, default="") == phrase
