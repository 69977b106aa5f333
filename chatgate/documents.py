"""
Default document text extractor (PDF via PyPDF2, DOCX via python-docx).

Plugged into AttachmentValidator as its ``extractor``. It is synchronous;
the validator runs it in a worker thread under the extraction timeout.
Legacy binary .doc files are not supported and raise ValueError.
"""

import io
import logging

import PyPDF2
from docx import Document

from chatgate.attachments import DOC, DOCX, PDF

logger = logging.getLogger(__name__)


def extract_pdf_text(data: bytes) -> str:
    reader = PyPDF2.PdfReader(io.BytesIO(data))
    pages = []
    for page in reader.pages:
        pages.append(page.extract_text() or "")
    return "\n".join(pages).strip()


def extract_docx_text(data: bytes) -> str:
    doc = Document(io.BytesIO(data))
    paragraphs = [p.text for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [c.text.strip() for c in row.cells if c.text.strip()]
            if cells:
                paragraphs.append(" | ".join(cells))
    return "\n".join(paragraphs).strip()


def extract_text(data: bytes, mime_type: str) -> str:
    """Extract plain text from a document's bytes."""
    if mime_type == PDF:
        text = extract_pdf_text(data)
    elif mime_type == DOCX:
        text = extract_docx_text(data)
    elif mime_type == DOC:
        raise ValueError("legacy .doc files are not supported, save as .docx")
    else:
        raise ValueError(f"no extractor for {mime_type}")
    logger.debug("Extracted %d chars from %s document", len(text), mime_type)
    return text
