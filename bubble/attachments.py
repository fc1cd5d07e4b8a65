import base64
import io
import logging
from pathlib import Path
from typing import Any, Dict, List, Sequence

from pypdf import PdfReader

from .schemas import Attachment


logger = logging.getLogger("uvicorn.error")

TEXT_EXTENSIONS = (".js", ".ts", ".jsx", ".tsx", ".html", ".css", ".json", ".md", ".py", ".lua")
PDF_MAX_CHARS = 20000


def is_text_like(attachment: Attachment) -> bool:
    return attachment.mime_type.startswith("text/") or attachment.name.lower().endswith(TEXT_EXTENSIONS)


def is_pdf(attachment: Attachment) -> bool:
    return attachment.mime_type == "application/pdf" or attachment.name.lower().endswith(".pdf")


def pdf_text(data: bytes, max_chars: int = PDF_MAX_CHARS) -> str:
    reader = PdfReader(io.BytesIO(data))
    parts: List[str] = []
    for page in reader.pages:
        text = page.extract_text() or ""
        if text:
            parts.append(text)
        if sum(len(p) for p in parts) > max_chars:
            break
    return "\n".join(parts)[:max_chars]


def read_text(attachment: Attachment) -> str:
    """Decode a text-like or PDF attachment; raises ValueError when unreadable."""
    if is_pdf(attachment):
        try:
            return pdf_text(attachment.data)
        except Exception as exc:
            raise ValueError(f"unreadable PDF {attachment.name}") from exc
    try:
        return attachment.data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{attachment.name} is not valid UTF-8") from exc


def native_user_parts(prompt: str, attachments: Sequence[Attachment]) -> List[Dict[str, Any]]:
    """Parts for the current user turn sent to a native model: prompt first, then files."""
    parts: List[Dict[str, Any]] = [{"text": prompt}]
    for attachment in attachments:
        if attachment.is_image:
            if not attachment.data:
                parts.append({"text": f"[Error attaching image: {attachment.name}]"})
                continue
            parts.append(
                {
                    "inlineData": {
                        "mimeType": attachment.mime_type,
                        "data": base64.b64encode(attachment.data).decode("ascii"),
                    }
                }
            )
        elif is_text_like(attachment) or is_pdf(attachment):
            try:
                content = read_text(attachment)
            except ValueError as exc:
                logger.warning("Failed to read attachment: %s", exc)
                parts.append({"text": f"[Error reading text file: {attachment.name}]"})
                continue
            parts.append({"text": f"\n\n--- FILE: {attachment.name} ---\n{content}\n--- END FILE ---\n"})
    return parts


INSTANT_IMAGE_NOTE = (
    '\n[User attached an image: "{name}". Note: I cannot see images in Instant Mode, '
    "so I should ask the user to describe it if needed.]"
)
TEXT_ONLY_IMAGE_NOTE = (
    '\n[User attached an image: "{name}". Note: the current model cannot view images, '
    "so I should ask the user to describe it if needed.]"
)


def linearize_attachments(prompt: str, attachments: Sequence[Attachment], image_note: str = INSTANT_IMAGE_NOTE) -> str:
    """Fold attachments into one plain-text user message for text-only providers."""
    image_notes = ""
    file_context = ""
    for attachment in attachments:
        if attachment.is_image:
            image_notes += image_note.format(name=attachment.name)
        elif is_text_like(attachment) or is_pdf(attachment):
            try:
                content = read_text(attachment)
            except ValueError as exc:
                logger.warning("Failed to read attachment: %s", exc)
                file_context += f"\n[Error reading file: {attachment.name}]"
                continue
            file_context += f"\n\n--- FILE CONTENT: {attachment.name} ---\n{content}\n--- END FILE ---\n"
        else:
            file_context += f"\n[Attached file: {attachment.name} (Binary/Unsupported for read)]"
    return f"{prompt}{image_notes}{file_context}"


def attachment_from_upload(upload: Dict[str, Any]) -> Attachment:
    path = Path(upload["storage_path"])
    return Attachment(
        name=upload.get("original_name") or path.name,
        mime_type=upload.get("mime") or "application/octet-stream",
        data=path.read_bytes(),
    )
