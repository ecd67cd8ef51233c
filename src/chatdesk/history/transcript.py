"""CSV transcript export."""

import csv
import io
from typing import Iterable, Iterator

from chatdesk.history.models import ConversationModel, MessageModel

HEADER = ("timestamp", "sender_role", "sender_id", "kind", "body")


def transcript_filename(conversation: ConversationModel) -> str:
    return f"transcript-{conversation.id}.csv"


def render_transcript(
    conversation: ConversationModel, messages: Iterable[MessageModel]
) -> Iterator[bytes]:
    """Yield the transcript as UTF-8 CSV chunks, one row at a time."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)

    def flush() -> bytes:
        chunk = buffer.getvalue().encode("utf-8")
        buffer.seek(0)
        buffer.truncate(0)
        return chunk

    writer.writerow(["# conversation", conversation.id, conversation.subject or ""])
    writer.writerow(HEADER)
    yield flush()
    for message in messages:
        writer.writerow([
            message.created_at.isoformat() if message.created_at else "",
            message.sender_role,
            message.sender_id or "",
            message.kind,
            message.body,
        ])
        yield flush()
