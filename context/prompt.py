"""
Reply policy — turns a rendered transcript into model instructions + input.

Kept apart from the queue engine: the worker only sees `PromptBuilder.build`.
Conversation-state heuristics are `NudgeStrategy` objects, each inspecting the
parsed turns and optionally returning a short director note that is appended
to the system prompt. Strategies are evaluated in order; the first note wins.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

NO_REPLY_SENTINEL = "[NO_REPLY]"

DEFAULT_SYSTEM_PROMPT = """You are replying to a text message conversation.
- Keep replies short and conversational, like a real text message.
- To send more than one message, separate them with a blank line.
- When no reply is needed (bare acknowledgments such as "ok", "k", "lol", "thanks"),
  output exactly {no_reply_sentinel} and nothing else."""

_USER_PREFIX = re.compile(r"^user\s*:", re.IGNORECASE)
_ASSISTANT_PREFIX = re.compile(r"^(assistant|agent)\s*:", re.IGNORECASE)


@dataclass(frozen=True)
class Prompt:
    instructions: str
    input: str


@dataclass(frozen=True)
class Turn:
    who: str          # "user" | "assistant" | "other"
    text: str


def parse_turns(context: str) -> list[Turn]:
    """Parse `USER: …` / `ASSISTANT: …` transcript lines into turns."""
    turns: list[Turn] = []
    for raw in (context or "").split("\n"):
        line = raw.strip()
        if not line:
            continue
        if _USER_PREFIX.match(line):
            turns.append(Turn("user", _USER_PREFIX.sub("", line, count=1).strip()))
        elif _ASSISTANT_PREFIX.match(line):
            turns.append(Turn("assistant", _ASSISTANT_PREFIX.sub("", line, count=1).strip()))
        else:
            turns.append(Turn("other", line))
    return turns


# ──────────────────────────────────────────────────────────────
#  Nudge strategies
# ──────────────────────────────────────────────────────────────

class NudgeStrategy(ABC):
    """Inspects the conversation and optionally returns a director note."""

    @abstractmethod
    def nudge(self, turns: list[Turn]) -> Optional[str]:
        ...


class FirstMessageNudge(NudgeStrategy):
    """The correspondent has written once and nobody has answered yet."""

    def nudge(self, turns: list[Turn]) -> Optional[str]:
        users = sum(1 for t in turns if t.who == "user")
        assistants = sum(1 for t in turns if t.who == "assistant")
        if users == 1 and assistants == 0:
            return "First message. Reply like a normal text: say hi and ask who this is. Keep it short."
        return None


class RepeatedQuestionNudge(NudgeStrategy):
    """The last two user turns are the same question; answer it directly."""

    def nudge(self, turns: list[Turn]) -> Optional[str]:
        user_turns = [t.text.strip().lower() for t in turns if t.who == "user"]
        if len(user_turns) >= 2 and user_turns[-1] == user_turns[-2] and user_turns[-1].endswith("?"):
            return "They asked the same question twice. Answer it directly in one line."
        return None


# ──────────────────────────────────────────────────────────────
#  Builders
# ──────────────────────────────────────────────────────────────

class PromptBuilder(ABC):
    @abstractmethod
    def build(self, context: str) -> Prompt:
        ...


class DefaultPromptBuilder(PromptBuilder):
    def __init__(
        self,
        system_prompt: str = "",
        nudges: list[NudgeStrategy] = None,
        assistant_label: str = "ASSISTANT",
        no_reply_sentinel: str = NO_REPLY_SENTINEL,
    ):
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT.format(no_reply_sentinel=no_reply_sentinel)
        self.nudges = nudges if nudges is not None else [FirstMessageNudge(), RepeatedQuestionNudge()]
        self.assistant_label = assistant_label

    def director_note(self, context: str) -> Optional[str]:
        turns = parse_turns(context)
        for strategy in self.nudges:
            note = strategy.nudge(turns)
            if note:
                return note
        return None

    def build(self, context: str) -> Prompt:
        context = (context or "").strip()
        note = self.director_note(context)
        instructions = (
            f"{self.system_prompt}\n\nDIRECTOR NOTE:\n{note}" if note else self.system_prompt
        )
        text = "\n".join([
            context,
            "",
            f"Reply as {self.assistant_label} to the most recent USER message above. "
            "Output only your response text.",
        ])
        return Prompt(instructions=instructions, input=text)
