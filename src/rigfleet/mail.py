"""Message beads with YAML frontmatter.

Messages are plain work items of type ``message`` addressed to an agent id.
They carry lifecycle requests (``LIFECYCLE:Shutdown <name>``) and notices
(``POLECAT_DONE <name>``) between roles.
"""

from __future__ import annotations

from dataclasses import dataclass

from .beads import MESSAGE_LABEL, UNREAD_LABEL
from .ports import WorkStore

FRONTMATTER_DELIMITER = "---"
MESSAGE_ISSUE_TYPE = "message"


@dataclass(frozen=True)
class MessagePayload:
    metadata: dict[str, object]
    body: str


def _format_value(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, list):
        items = ", ".join(str(item) for item in value)
        return f"[{items}]"
    return str(value)


def render_message(metadata: dict[str, object], body: str) -> str:
    """Render a message description with YAML frontmatter.

    Example:
        >>> print(render_message({"to": "web/witness", "cc": None}, "hi"), end="")
        ---
        to: web/witness
        cc: null
        ---
        <BLANKLINE>
        hi
    """
    lines = [FRONTMATTER_DELIMITER]
    for key, value in metadata.items():
        lines.append(f"{key}: {_format_value(value)}")
    lines.append(FRONTMATTER_DELIMITER)
    lines.append("")
    body_text = body.rstrip("\n")
    if body_text:
        lines.append(body_text)
    return "\n".join(lines).rstrip("\n") + "\n"


def parse_message(description: str) -> MessagePayload:
    """Split a message description into frontmatter metadata and body."""
    raw = description.strip("\n")
    lines = raw.splitlines()
    if len(lines) < 2 or lines[0].strip() != FRONTMATTER_DELIMITER:
        return MessagePayload(metadata={}, body=description)
    try:
        end_index = lines[1:].index(FRONTMATTER_DELIMITER) + 1
    except ValueError:
        return MessagePayload(metadata={}, body=description)
    metadata: dict[str, object] = {}
    for line in lines[1:end_index]:
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip()
        if not key:
            continue
        value = value.strip()
        metadata[key] = None if value.lower() == "null" else value
    body_lines = lines[end_index + 1 :]
    if body_lines and body_lines[0] == "":
        body_lines = body_lines[1:]
    return MessagePayload(metadata=metadata, body="\n".join(body_lines).rstrip("\n"))


def send_message(
    store: WorkStore,
    *,
    to: str,
    subject: str,
    body: str = "",
    sender: str | None = None,
) -> str:
    """Create an unread message bead addressed to ``to``; return its id."""
    description = render_message({"from": sender, "to": to}, body)
    return store.create(
        subject,
        issue_type=MESSAGE_ISSUE_TYPE,
        description=description,
        labels=(MESSAGE_LABEL, UNREAD_LABEL),
        assignee=to,
    )


def shutdown_subject(worker_name: str) -> str:
    """Return the subject that asks a rig supervisor to stop a worker.

    Example:
        >>> shutdown_subject("nux")
        'LIFECYCLE:Shutdown nux'
    """
    return f"LIFECYCLE:Shutdown {worker_name}"


def done_subject(worker_name: str) -> str:
    return f"POLECAT_DONE {worker_name}"
