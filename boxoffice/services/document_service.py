from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from boxoffice.config import Config
from boxoffice.database import utcnow
from boxoffice.models import DocumentStatus, DocumentType, PromoterDocument


def allowed_file(filename: str, allowed: Iterable[str]) -> bool:
    return "." in filename and filename.rsplit(".", 1)[1].lower() in set(allowed)


class DocumentService:
    """Tax, contract and insurance paperwork uploaded by promoters."""

    def __init__(self, db_session: Session, upload_dir: Optional[Path] = None,
                 allowed_extensions: Optional[Iterable[str]] = None) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.upload_dir = Path(upload_dir or Config.DOCUMENT_UPLOAD_DIR)
        self.allowed_extensions = tuple(allowed_extensions or Config.DOCUMENT_ALLOWED_EXTENSIONS)

    def _path_for(self, document: PromoterDocument) -> Path:
        return self.upload_dir / str(document.promoterID) / document.stored_filename

    def upload(self, promoter_id: int, file: Any, document_type: Optional[str] = None,
               user_id: Optional[int] = None) -> Tuple[bool, str, Optional[PromoterDocument]]:
        """``file`` is a werkzeug ``FileStorage``."""
        if file is None or not file.filename:
            return False, "No file uploaded", None
        filename = secure_filename(file.filename)
        if not filename or not allowed_file(filename, self.allowed_extensions):
            return False, f"File type not allowed. Allowed: {', '.join(self.allowed_extensions)}", None
        try:
            doc_type = DocumentType(document_type or DocumentType.OTHER.value)
        except ValueError:
            return False, f"Unknown document type: {document_type}", None

        target_dir = self.upload_dir / str(promoter_id)
        target_dir.mkdir(parents=True, exist_ok=True)
        stored = f"{uuid.uuid4().hex}_{filename}"
        path = target_dir / stored
        file.save(str(path))

        document = PromoterDocument(
            promoterID=promoter_id,
            document_type=doc_type,
            original_filename=filename,
            stored_filename=stored,
            content_type=getattr(file, "mimetype", None),
            size_bytes=path.stat().st_size,
            status=DocumentStatus.PENDING,
            uploaded_by=user_id,
            uploaded_at=utcnow(),
        )
        self.db.add(document)
        self.db.commit()
        self.logger.info("Document uploaded", extra={"promoter": promoter_id, "document_type": doc_type.value})
        return True, "Document uploaded", document

    def list_documents(self, promoter_id: Optional[int], status: Optional[str] = None) -> List[PromoterDocument]:
        query = self.db.query(PromoterDocument)
        if promoter_id is not None:
            query = query.filter(PromoterDocument.promoterID == promoter_id)
        if status:
            query = query.filter(PromoterDocument.status == DocumentStatus(status))
        return query.order_by(PromoterDocument.uploaded_at.desc()).all()

    def get_document(self, document_id: int) -> Optional[PromoterDocument]:
        return self.db.get(PromoterDocument, document_id)

    def file_path(self, document: PromoterDocument) -> Path:
        return self._path_for(document)

    def review(self, document_id: int, approved: bool, notes: Optional[str] = None) -> Tuple[bool, str, Optional[PromoterDocument]]:
        document = self.get_document(document_id)
        if document is None:
            return False, "Document not found", None
        document.status = DocumentStatus.APPROVED if approved else DocumentStatus.REJECTED
        document.notes = notes
        document.reviewed_at = utcnow()
        self.db.commit()
        return True, f"Document {document.status.value}", document

    def delete(self, document_id: int) -> Tuple[bool, str, None]:
        document = self.get_document(document_id)
        if document is None:
            return False, "Document not found", None
        path = self._path_for(document)
        if path.exists():
            path.unlink()
        self.db.delete(document)
        self.db.commit()
        return True, "Document deleted", None
