"""Conversation transcript: turn types and the append-only Transcript.

A transcript for one chat() call looks like

    UserText, AssistantTurn, ToolResultTurn, AssistantTurn, ..., AssistantTurn

where every ToolResultTurn answers exactly the tool requests of the
AssistantTurn right before it, and the last AssistantTurn carries no tool
requests at all.
"""

from dataclasses import dataclass, field

from .report import StateError


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolRequestBlock:
    """A tool invocation requested by the model.

    input is normally a dict. When the backend sent arguments that are not
    a JSON object, the raw value is kept so the turn can be replayed
    unchanged; the registry rejects it at dispatch.
    """

    id: str
    name: str
    input: dict | str = field(default_factory=dict)


@dataclass(frozen=True)
class UserText:
    text: str


@dataclass(frozen=True)
class AssistantTurn:
    """One model response; block order is exactly what the backend returned."""

    blocks: tuple = ()
    finish_reason: str | None = None

    @property
    def text_blocks(self) -> list[TextBlock]:
        return [b for b in self.blocks if isinstance(b, TextBlock)]

    @property
    def tool_requests(self) -> list[ToolRequestBlock]:
        return [b for b in self.blocks if isinstance(b, ToolRequestBlock)]

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.text_blocks)


@dataclass(frozen=True)
class ToolResult:
    request_id: str
    content: str
    is_error: bool = False


@dataclass(frozen=True)
class ToolResultTurn:
    results: tuple = ()


class Transcript:
    """Append-only, invariant-checked sequence of turns."""

    def __init__(self, seed: UserText | str | None = None):
        self._turns: list = []
        if seed is not None:
            self.append(seed if isinstance(seed, UserText) else UserText(seed))

    def append(self, turn) -> None:
        """Append one turn, raising StateError if it breaks the alternation."""
        prev = self._turns[-1] if self._turns else None

        if isinstance(turn, UserText):
            if prev is not None:
                raise StateError("a transcript holds exactly one UserText, at the start")
        elif isinstance(turn, AssistantTurn):
            if prev is None:
                raise StateError("transcript must start with a UserText")
            if isinstance(prev, AssistantTurn):
                if prev.tool_requests:
                    raise StateError(
                        "previous assistant turn has unanswered tool requests"
                    )
                raise StateError("conversation already finished with a final answer")
            _check_unique_request_ids(turn)
        elif isinstance(turn, ToolResultTurn):
            if not isinstance(prev, AssistantTurn) or not prev.tool_requests:
                raise StateError(
                    "tool results must follow an assistant turn that requested tools"
                )
            _check_results_match(prev, turn)
        else:
            raise StateError(f"not a transcript turn: {type(turn).__name__}")

        self._turns.append(turn)

    def snapshot(self) -> tuple:
        """Return the turns in append order."""
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self):
        return iter(tuple(self._turns))

    def __repr__(self) -> str:
        kinds = ", ".join(type(t).__name__ for t in self._turns)
        return f"Transcript([{kinds}])"


def _check_unique_request_ids(turn: AssistantTurn) -> None:
    seen: set[str] = set()
    for block in turn.tool_requests:
        if block.id in seen:
            raise StateError(f"duplicate tool request id {block.id!r}")
        seen.add(block.id)


def _check_results_match(assistant: AssistantTurn, results: ToolResultTurn) -> None:
    expected = {b.id for b in assistant.tool_requests}
    got: list[str] = [r.request_id for r in results.results]

    duplicates = sorted({i for i in got if got.count(i) > 1})
    if duplicates:
        raise StateError(f"duplicate tool results for ids: {', '.join(duplicates)}")
    unknown = sorted(set(got) - expected)
    if unknown:
        raise StateError(f"tool results for unknown request ids: {', '.join(unknown)}")
    missing = sorted(expected - set(got))
    if missing:
        raise StateError(f"missing tool results for request ids: {', '.join(missing)}")
