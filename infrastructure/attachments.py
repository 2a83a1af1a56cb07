"""
LABBUDDY ATTACHMENTS - Links, Images and Files Hung on Nodes

AttachmentStore keeps attachment metadata; FileUploadService puts uploaded
bytes on disk under a random name and works out what kind of file it is.
Neither takes part in the graph invariants: deleting a node leaves its
attachments alone.
"""
import uuid
from pathlib import Path
from typing import Dict, List, Optional

import msgspec

from core.ontology import FileType
from core.schemas import Attachment, AttachmentInput, AttachmentUpdate, ValidationError


# =============================================================================
# FILE TYPE DETECTION
# =============================================================================

FILE_TYPES: Dict[str, FileType] = {
    # Documents
    **{ext: FileType.DOCUMENT for ext in (".pdf", ".doc", ".docx", ".txt", ".md", ".rtf")},
    # Code
    **{ext: FileType.CODE for ext in (
        ".js", ".ts", ".jsx", ".tsx", ".py", ".java", ".cpp", ".c", ".h", ".css",
        ".html", ".php", ".rb", ".go", ".rs", ".swift", ".kt", ".scala", ".sh",
        ".bat", ".sql", ".json", ".xml", ".yaml", ".yml",
    )},
    # Data
    **{ext: FileType.DATA for ext in (".csv", ".xlsx", ".xls", ".tsv", ".parquet", ".avro")},
    # Images
    **{ext: FileType.IMAGE for ext in (
        ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".bmp", ".tiff", ".ico",
    )},
}

MIME_TYPES: Dict[str, str] = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".js": "application/javascript",
    ".ts": "application/typescript",
    ".json": "application/json",
    ".xml": "application/xml",
    ".csv": "text/csv",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".webp": "image/webp",
}

DEFAULT_MIME_TYPE = "application/octet-stream"


def get_file_type(filename: str) -> FileType:
    return FILE_TYPES.get(Path(filename).suffix.lower(), FileType.OTHER)


def get_mime_type(filename: str) -> str:
    return MIME_TYPES.get(Path(filename).suffix.lower(), DEFAULT_MIME_TYPE)


# =============================================================================
# METADATA STORE
# =============================================================================

class AttachmentStore:
    """In-memory attachment metadata, insertion ordered."""

    def __init__(self):
        self._attachments: Dict[str, Attachment] = {}

    def list_for_node(self, node_id: str) -> List[Attachment]:
        return [a for a in self._attachments.values() if a.node_id == node_id]

    def get(self, attachment_id: str) -> Optional[Attachment]:
        return self._attachments.get(attachment_id)

    def create(self, data: AttachmentInput) -> Attachment:
        """
        Raises:
            ValidationError: Blank name or url
        """
        if not data.name.strip():
            raise ValidationError("Attachment name is required", field="name")
        if not data.url.strip():
            raise ValidationError("Attachment url is required", field="url")

        attachment = Attachment(
            id=str(uuid.uuid4()),
            node_id=data.node_id,
            type=data.type,
            name=data.name,
            url=data.url,
            file_type=data.file_type,
            file_size=data.file_size,
            mime_type=data.mime_type,
        )
        self._attachments[attachment.id] = attachment
        return attachment

    def update(self, attachment_id: str, changes: AttachmentUpdate) -> Optional[Attachment]:
        """Apply the non-None fields of changes; None if the id is unknown."""
        existing = self._attachments.get(attachment_id)
        if existing is None:
            return None
        fields = {
            f: getattr(changes, f)
            for f in changes.__struct_fields__
            if getattr(changes, f) is not None
        }
        updated = msgspec.structs.replace(existing, **fields)
        self._attachments[attachment_id] = updated
        return updated

    def delete(self, attachment_id: str) -> bool:
        return self._attachments.pop(attachment_id, None) is not None

    def delete_for_node(self, node_id: str) -> int:
        doomed = [a.id for a in self.list_for_node(node_id)]
        for attachment_id in doomed:
            del self._attachments[attachment_id]
        return len(doomed)


# =============================================================================
# FILE UPLOADS
# =============================================================================

class UploadedFile(msgspec.Struct, kw_only=True, rename="camel"):
    original_name: str
    file_name: str
    url: str
    file_type: FileType
    mime_type: str
    size: int


class FileUploadService:
    """
    Writes uploads to upload_dir as <uuid><ext> and serves them at
    base_url/<uuid><ext>.
    """

    def __init__(self, upload_dir: Path | str = "./uploads", base_url: str = "/uploads"):
        self.upload_dir = Path(upload_dir)
        self.base_url = base_url.rstrip("/")

    def ensure_upload_dir(self) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    def upload_file(
        self,
        content: bytes,
        original_name: str,
        mime_type: Optional[str] = None,
    ) -> UploadedFile:
        self.ensure_upload_dir()

        # Only the extension of the client-supplied name reaches the filesystem
        ext = Path(original_name).suffix.lower()
        file_name = f"{uuid.uuid4()}{ext}"
        (self.upload_dir / file_name).write_bytes(content)

        return UploadedFile(
            original_name=original_name,
            file_name=file_name,
            url=f"{self.base_url}/{file_name}",
            file_type=get_file_type(original_name),
            mime_type=mime_type or get_mime_type(original_name),
            size=len(content),
        )

    def resolve(self, file_name: str) -> Optional[Path]:
        """Path of a stored upload, or None if the name is not one of ours."""
        path = (self.upload_dir / file_name).resolve()
        if path.parent != self.upload_dir.resolve() or not path.is_file():
            return None
        return path
