"""
AttachmentValidator — turns uploaded attachments into model-ready parts.

Every attachment goes through the same checks, in order:

  1. category from the declared MIME type (or file extension): image,
     document or text. Anything else is rejected as unsupported.
  2. true binary size from the base64 length, checked against the
     category's limit before anything is decoded.
  3. strict base64 decode.
  4. magic-byte signature must match the declared type.
  5. images: raster dimensions parsed from the header and bounded.
     documents: text extracted by the injected extractor under a timeout.
     text: strict UTF-8 decode.

Validation is fail-closed. If a header can't be parsed, a signature is
unknown or an extractor misbehaves, the attachment is rejected with a
human-readable reason and the message goes ahead without it.

Attachments replayed from conversation history use this same entry point.
The ``categories`` argument restricts what is admitted for a call, which
is how history replay is limited to images by default.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import inspect
import logging
import mimetypes
import re
import struct
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Union

from chatgate.errors import AttachmentInvalid
from chatgate.models import AttachmentRef, ValidatedPart

logger = logging.getLogger(__name__)

MB = 1024 * 1024

DEFAULT_MAX_COUNT = 5
DEFAULT_IMAGE_MAX_BYTES = 10 * MB
DEFAULT_DOCUMENT_MAX_BYTES = 10 * MB
DEFAULT_TEXT_MAX_BYTES = 1 * MB
DEFAULT_MAX_DIMENSION = 4096
DEFAULT_EXTRACTION_TIMEOUT = 30.0
DEFAULT_MAX_TEXT_CHARS = 8000

TRUNCATION_MARKER = "\n\n[Text truncated due to length]"

CATEGORIES = ("image", "document", "text")

IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
_MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}

PDF = "application/pdf"
DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
DOC = "application/msword"
DOCUMENT_TYPES = {PDF, DOCX, DOC}
DOCUMENT_EXTENSIONS = {".pdf": PDF, ".docx": DOCX, ".doc": DOC}

TEXT_APPLICATION_TYPES = {
    "application/json", "application/xml", "application/x-yaml",
    "application/yaml", "application/csv", "application/x-ndjson",
}
TEXT_EXTENSIONS = {
    ".txt", ".md", ".markdown", ".csv", ".tsv", ".json", ".xml", ".yaml",
    ".yml", ".log", ".ini", ".toml", ".py", ".js", ".ts", ".html", ".css", ".sql",
}

_DOCUMENT_SIGNATURES = {
    PDF: (b"%PDF",),
    DOCX: (b"PK\x03\x04",),
    DOC: (b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1",),
}

# JPEG start-of-frame markers carry the raster size. C4 (DHT), C8 (JPG
# extension) and CC (DAC) share the range but are not frames.
_JPEG_SOF_MARKERS = frozenset(range(0xC0, 0xD0)) - {0xC4, 0xC8, 0xCC}
_DATA_URL_RE = re.compile(r"^data:[^,]*,", re.IGNORECASE)

Extractor = Callable[[bytes, str], Union[str, Awaitable[str]]]


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class AttachmentOutcome:
    file_name: str
    category: str | None
    ok: bool
    reason: str = ""


@dataclass
class ValidationResult:
    accepted_parts: list[ValidatedPart] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    outcomes: list[AttachmentOutcome] = field(default_factory=list)

    @property
    def rejected(self) -> list[AttachmentOutcome]:
        return [o for o in self.outcomes if not o.ok]


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------

def strip_data_url(payload: str) -> str:
    """Drop a ``data:<mime>;base64,`` prefix and any whitespace."""
    payload = _DATA_URL_RE.sub("", payload.strip(), count=1)
    return "".join(payload.split())


def calculate_binary_size(encoded: str) -> int:
    """
    Decoded size of a base64 string: floor(len * 3 / 4) - padding.

    The encoded length over-states the binary size by a third, so limits
    are always checked against this value, never against len(encoded).
    """
    encoded = strip_data_url(encoded)
    if not encoded:
        return 0
    padding = 0
    if encoded.endswith("=="):
        padding = 2
    elif encoded.endswith("="):
        padding = 1
    return max(0, (len(encoded) * 3) // 4 - padding)


def _decode(encoded: str) -> bytes:
    try:
        return base64.b64decode(strip_data_url(encoded), validate=True)
    except (binascii.Error, ValueError) as e:
        raise AttachmentInvalid("File data is not valid base64") from e


def _fmt_bytes(n: int) -> str:
    if n >= MB:
        return f"{n / MB:g}MB"
    return f"{n / 1024:g}KB"


# ---------------------------------------------------------------------------
# Image sniffing
# ---------------------------------------------------------------------------

def sniff_image_type(data: bytes) -> str | None:
    """Identify an image from its magic bytes."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def _jpeg_dimensions(data: bytes) -> tuple[int, int] | None:
    i = 2
    n = len(data)
    while i < n:
        if data[i] != 0xFF:
            return None
        while i < n and data[i] == 0xFF:
            i += 1
        if i >= n:
            return None
        marker = data[i]
        i += 1
        if marker == 0x01 or 0xD0 <= marker <= 0xD8:
            continue
        if marker in (0xD9, 0xDA):
            # End of image / start of scan before any frame header
            return None
        if i + 2 > n:
            return None
        (length,) = struct.unpack(">H", data[i:i + 2])
        if length < 2:
            return None
        if marker in _JPEG_SOF_MARKERS:
            if i + 7 > n:
                return None
            height, width = struct.unpack(">HH", data[i + 3:i + 7])
            return width, height
        i += length
    return None


def _png_dimensions(data: bytes) -> tuple[int, int] | None:
    if len(data) < 24 or data[12:16] != b"IHDR":
        return None
    return struct.unpack(">II", data[16:24])


def _gif_dimensions(data: bytes) -> tuple[int, int] | None:
    if len(data) < 10:
        return None
    return struct.unpack("<HH", data[6:10])


def _webp_dimensions(data: bytes) -> tuple[int, int] | None:
    if len(data) < 30:
        return None
    chunk = data[12:16]
    if chunk == b"VP8 ":
        if data[23:26] != b"\x9d\x01\x2a":
            return None
        w, h = struct.unpack("<HH", data[26:30])
        return w & 0x3FFF, h & 0x3FFF
    if chunk == b"VP8L":
        if data[20] != 0x2F:
            return None
        (bits,) = struct.unpack("<I", data[21:25])
        return (bits & 0x3FFF) + 1, ((bits >> 14) & 0x3FFF) + 1
    if chunk == b"VP8X":
        w = int.from_bytes(data[24:27], "little") + 1
        h = int.from_bytes(data[27:30], "little") + 1
        return w, h
    return None


_DIMENSION_PARSERS = {
    "image/jpeg": _jpeg_dimensions,
    "image/png": _png_dimensions,
    "image/gif": _gif_dimensions,
    "image/webp": _webp_dimensions,
}


def image_dimensions(data: bytes, mime_type: str) -> tuple[int, int] | None:
    """(width, height) from the image header, or None if it can't be parsed."""
    parser = _DIMENSION_PARSERS.get(mime_type)
    if parser is None:
        return None
    try:
        dims = parser(data)
    except (struct.error, IndexError):
        return None
    if not dims or dims[0] <= 0 or dims[1] <= 0:
        return None
    return dims


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------

class AttachmentValidator:
    """Validates attachments and converts them to ValidatedParts."""

    def __init__(
        self,
        extractor: Extractor | None = None,
        max_count: int = DEFAULT_MAX_COUNT,
        image_max_bytes: int = DEFAULT_IMAGE_MAX_BYTES,
        document_max_bytes: int = DEFAULT_DOCUMENT_MAX_BYTES,
        text_max_bytes: int = DEFAULT_TEXT_MAX_BYTES,
        max_dimension: int = DEFAULT_MAX_DIMENSION,
        extraction_timeout: float = DEFAULT_EXTRACTION_TIMEOUT,
        max_text_chars: int = DEFAULT_MAX_TEXT_CHARS,
    ):
        self.extractor = extractor
        self.max_count = max_count
        self.limits = {
            "image": image_max_bytes,
            "document": document_max_bytes,
            "text": text_max_bytes,
        }
        self.max_dimension = max_dimension
        self.extraction_timeout = extraction_timeout
        self.max_text_chars = max_text_chars

    @classmethod
    def from_config(cls, cfg: dict, extractor: Extractor | None = None) -> "AttachmentValidator":
        a = cfg.get("attachments") or {}
        return cls(
            extractor=extractor,
            max_count=int(a.get("max_count", DEFAULT_MAX_COUNT)),
            image_max_bytes=int(a.get("image_max_bytes", DEFAULT_IMAGE_MAX_BYTES)),
            document_max_bytes=int(a.get("document_max_bytes", DEFAULT_DOCUMENT_MAX_BYTES)),
            text_max_bytes=int(a.get("text_max_bytes", DEFAULT_TEXT_MAX_BYTES)),
            max_dimension=int(a.get("max_image_dimension", DEFAULT_MAX_DIMENSION)),
            extraction_timeout=float(a.get("extraction_timeout", DEFAULT_EXTRACTION_TIMEOUT)),
            max_text_chars=int(a.get("max_text_chars", DEFAULT_MAX_TEXT_CHARS)),
        )

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    @staticmethod
    def classify(ref: AttachmentRef) -> tuple[str | None, str]:
        """Return (category, effective mime type). Category None = unsupported."""
        mime = (ref.declared_mime_type or "").split(";")[0].strip().lower()
        mime = _MIME_ALIASES.get(mime, mime)
        name = (ref.file_name or "").lower()
        ext = name[name.rfind("."):] if "." in name else ""
        if not mime and name:
            guessed = mimetypes.guess_type(name)[0] or ""
            mime = _MIME_ALIASES.get(guessed, guessed)

        if mime in IMAGE_TYPES:
            return "image", mime
        if mime in DOCUMENT_TYPES:
            return "document", mime
        if ext in DOCUMENT_EXTENSIONS:
            return "document", DOCUMENT_EXTENSIONS[ext]
        if mime.startswith("text/") or mime in TEXT_APPLICATION_TYPES or ext in TEXT_EXTENSIONS:
            return "text", mime or "text/plain"
        return None, mime

    def _cap_text(self, text: str) -> str:
        if len(text) > self.max_text_chars:
            return text[:self.max_text_chars] + TRUNCATION_MARKER
        return text

    # ------------------------------------------------------------------
    # Per-category checks
    # ------------------------------------------------------------------

    def _check_size(self, ref: AttachmentRef, category: str) -> None:
        size = calculate_binary_size(ref.encoded_payload)
        if size == 0:
            raise AttachmentInvalid("No file data found")
        limit = self.limits[category]
        if size > limit:
            noun = {"image": "Image", "document": "Document", "text": "Text file"}[category]
            raise AttachmentInvalid(f"{noun} too large to process - please use a file under {_fmt_bytes(limit)}")

    def _validate_image(self, ref: AttachmentRef, mime: str) -> ValidatedPart:
        data = _decode(ref.encoded_payload)
        actual = sniff_image_type(data)
        if actual is None:
            raise AttachmentInvalid("Unrecognized image format")
        if actual != mime:
            raise AttachmentInvalid(f"File contents do not match declared type {mime}")
        dims = image_dimensions(data, actual)
        if dims is None:
            raise AttachmentInvalid("Could not read image dimensions")
        width, height = dims
        if width > self.max_dimension or height > self.max_dimension:
            raise AttachmentInvalid(
                f"Image dimensions {width}x{height} exceed the maximum of "
                f"{self.max_dimension}x{self.max_dimension}"
            )
        return ValidatedPart(
            kind="inline",
            mime_type=actual,
            data=base64.b64encode(data).decode("ascii"),
            file_name=ref.file_name,
        )

    async def _run_extractor(self, data: bytes, mime: str) -> str:
        if self.extractor is None:
            raise AttachmentInvalid("Document text extraction is not available")
        if inspect.iscoroutinefunction(self.extractor):
            pending = self.extractor(data, mime)
        else:
            pending = asyncio.to_thread(self.extractor, data, mime)
        # wait_for cancels the pending work on expiry; no timer outlives the call
        return await asyncio.wait_for(pending, timeout=self.extraction_timeout)

    async def _validate_document(self, ref: AttachmentRef, mime: str) -> ValidatedPart:
        data = _decode(ref.encoded_payload)
        if not data.startswith(_DOCUMENT_SIGNATURES[mime]):
            raise AttachmentInvalid(f"File contents do not match declared type {mime}")
        try:
            text = await self._run_extractor(data, mime)
        except asyncio.TimeoutError as e:
            logger.warning(
                "Document extraction timed out after %.0fs: %s", self.extraction_timeout, ref.file_name
            )
            raise AttachmentInvalid(
                f"Document processing timed out after {self.extraction_timeout:g} seconds"
            ) from e
        except AttachmentInvalid:
            raise
        except Exception as e:
            logger.error("Document extraction failed for %s: %s", ref.file_name, e)
            raise AttachmentInvalid("Could not extract text from this document") from e
        if not isinstance(text, str) or not text.strip():
            raise AttachmentInvalid("No readable text found in this document")
        return ValidatedPart(
            kind="text",
            mime_type=mime,
            text=self._cap_text(text.strip()),
            file_name=ref.file_name,
        )

    def _validate_text(self, ref: AttachmentRef, mime: str) -> ValidatedPart:
        data = _decode(ref.encoded_payload)
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AttachmentInvalid("File is not valid UTF-8 text") from e
        if "\x00" in text:
            raise AttachmentInvalid("File does not look like text")
        return ValidatedPart(kind="text", mime_type=mime, text=self._cap_text(text), file_name=ref.file_name)

    async def validate_one(self, ref: AttachmentRef, categories: Iterable[str] | None = None) -> tuple[ValidatedPart | None, AttachmentOutcome]:
        name = ref.file_name or "attachment"
        category, mime = self.classify(ref)
        try:
            if category is None:
                raise AttachmentInvalid(f"Unsupported file type{f' ({mime})' if mime else ''}")
            if categories is not None and category not in categories:
                raise AttachmentInvalid(f"{category.capitalize()} attachments are not accepted here")
            self._check_size(ref, category)
            if category == "image":
                part = self._validate_image(ref, mime)
            elif category == "document":
                part = await self._validate_document(ref, mime)
            else:
                part = self._validate_text(ref, mime)
        except AttachmentInvalid as e:
            logger.info("Attachment rejected: %s (%s)", name, e.reason)
            return None, AttachmentOutcome(name, category, False, e.reason)
        return part, AttachmentOutcome(name, category, True)

    async def validate(
        self,
        attachments: Iterable[AttachmentRef] | None,
        max_count: int | None = None,
        categories: Iterable[str] | None = None,
    ) -> ValidationResult:
        """
        Validate a batch. Excess attachments beyond max_count are dropped
        with a warning; each rejected attachment adds a warning too.
        """
        result = ValidationResult()
        refs = list(attachments or [])
        limit = self.max_count if max_count is None else max_count
        if len(refs) > limit:
            dropped = len(refs) - limit
            result.warnings.append(
                f"Only {limit} attachment{'s' if limit != 1 else ''} can be sent per message; "
                f"{dropped} {'was' if dropped == 1 else 'were'} ignored."
            )
            logger.warning("Dropping %d attachments over the limit of %d", dropped, limit)
            refs = refs[:limit]

        allowed = set(categories) if categories is not None else None
        for ref in refs:
            part, outcome = await self.validate_one(ref, allowed)
            result.outcomes.append(outcome)
            if part is not None:
                result.accepted_parts.append(part)
            else:
                result.warnings.append(f"{outcome.file_name}: {outcome.reason}")
        return result


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _label(part: ValidatedPart) -> str:
    if part.mime_type == PDF:
        return "PDF Document"
    if part.mime_type in (DOCX, DOC):
        return "Word Document"
    return "File"


def render_message(text: str, result: ValidationResult | None, include_rejections: bool = True) -> list[dict]:
    """
    Build the outgoing parts for one turn: inline images first, then one
    text part holding the message body plus any extracted document/text
    content and a note for each rejected attachment.
    """
    parts: list[dict] = []
    body = text or ""
    if result is not None:
        for part in result.accepted_parts:
            if part.kind == "inline":
                parts.append(part.to_part())
            else:
                body += f"\n\n**{_label(part)}: {part.file_name or 'attachment'}**\n{part.text}"
        if include_rejections:
            for outcome in result.rejected:
                body += f"\n\n**Attachment: {outcome.file_name}**\n[{outcome.reason}]"
    if body:
        parts.append({"text": body})
    return parts
