"""Assembly of the role-tagged payload for a model call."""

from typing import List, Optional, Sequence

from ..domain.models import ContentPart, Message, Role, TextPart, Turn, normalize_role


def assemble_context(
    instruction: str,
    history: Sequence[Message],
    text: str,
    attachment: Optional[ContentPart] = None,
) -> List[Turn]:
    """Build ``[instruction turn, *history turns, new user turn]``.

    The instruction is sent as a leading user turn. History roles are
    re-normalized here rather than trusted. The attachment, if any, is appended
    to the new user turn after its text.
    """
    if not isinstance(instruction, str) or not isinstance(text, str):
        raise TypeError("instruction and text must be strings")

    contents = [Turn(role=Role.USER, parts=[TextPart(text=instruction)])]
    for message in history:
        if not isinstance(message, Message):
            raise TypeError(f"history entries must be Message, got {type(message).__name__}")
        contents.append(
            Turn(role=normalize_role(message.role), parts=[TextPart(text=message.content)])
        )

    parts: List[ContentPart] = [TextPart(text=text)]
    if attachment is not None:
        parts.append(attachment)
    contents.append(Turn(role=Role.USER, parts=parts))
    return contents


def title_prompt(message: str) -> List[Turn]:
    """Payload asking the model for a short conversation title."""
    prompt = (
        "Generate a short, catchy title (2-5 words) for a conversation that starts "
        f'with this message: "{message}". Respond with only the title, no additional text.'
    )
    return [Turn(role=Role.USER, parts=[TextPart(text=prompt)])]


def clean_title(raw: str, fallback: str, max_words: int = 5) -> str:
    """Trim a generated title to at most ``max_words`` words."""
    words = raw.strip().strip('"').split()
    if not words:
        words = fallback.split() or ["New", "conversation"]
    return " ".join(words[:max_words])
