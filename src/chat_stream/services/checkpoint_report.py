from __future__ import annotations

from chat_stream.persistence import CheckpointRecord


class CheckpointReport:
    def __init__(self, *, line_prefix: str, short_id_len: int = 8, preview_chars: int = 60):
        self._line_prefix = line_prefix
        self._short_id_len = short_id_len
        self._preview_chars = preview_chars

    def short_id(self, value: str) -> str:
        if len(value) <= self._short_id_len:
            return value
        return value[: self._short_id_len]

    def preview(self, text: str) -> str:
        flat = " ".join(text.split())
        if len(flat) <= self._preview_chars:
            return flat
        return flat[: self._preview_chars - 3] + "..."

    def format_list_entry(self, record: CheckpointRecord) -> str:
        preview = self.preview(record.text)
        preview_text = f', text="{preview}"' if preview else ""
        return (
            f"{self._line_prefix}- [{self.short_id(record.session_id)}] (id={record.session_id}, "
            f"status={record.status}, revision={record.revision}, updated={record.updated_at}{preview_text})"
        )

    def format_detail_lines(self, record: CheckpointRecord) -> list[str]:
        lines = [f"{self._line_prefix}Checkpoint {record.session_id}:"]
        lines.append(
            f"{self._line_prefix}- Status: {record.status} | Revision: {record.revision} | "
            f"Created: {record.created_at} | Updated: {record.updated_at}"
        )
        if record.attachments:
            lines.append(f"{self._line_prefix}- Attachments: {len(record.attachments)}")
        lines.append(f"{self._line_prefix}- Text ({len(record.text):,} chars):")
        lines.append(record.text)
        return lines
