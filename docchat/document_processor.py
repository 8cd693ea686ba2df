import io
from typing import List, Dict, Any, Tuple, Optional
from pathlib import Path
import fitz  # PyMuPDF
import PyPDF2
from dataclasses import dataclass, field
from loguru import logger
from .config import get_settings

settings = get_settings()

PDF_MAGIC = b"%PDF"
PDF_CONTENT_TYPE = "application/pdf"


@dataclass
class PageText:
    page_number: int
    text: str


@dataclass
class TextChunk:
    content: str
    page_number: Optional[int] = None
    chunk_index: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProcessedDocument:
    filename: str
    file_size: int
    pages: List[PageText]
    chunks: List[TextChunk]
    preview: str
    extraction_method: str


class DocumentProcessor:
    """PDF text extraction and chunking"""

    # Boundaries tried in order when a chunk has to be cut short
    separators = ["\n\n", "\n", ". ", "! ", "? ", " "]

    def __init__(self, chunk_size: int = None, chunk_overlap: int = None,
                 preview_chars: int = None):
        self.chunk_size = chunk_size or settings.chunk_size
        self.chunk_overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap
        self.preview_chars = preview_chars or settings.content_preview_chars

        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")

    def validate_file(self, data: bytes, filename: str,
                      content_type: Optional[str] = None) -> Tuple[bool, str]:
        """Validate uploaded file"""
        is_pdf_name = Path(filename or "").suffix.lower() == ".pdf"
        if not is_pdf_name and content_type != PDF_CONTENT_TYPE:
            return False, "Only PDF files are allowed"

        if not data:
            return False, "File is empty"

        max_size_bytes = settings.max_file_size_mb * 1024 * 1024
        if len(data) > max_size_bytes:
            return False, f"File size ({len(data) / 1024 / 1024:.1f}MB) exceeds limit ({settings.max_file_size_mb}MB)"

        if not data.startswith(PDF_MAGIC):
            return False, "File is not a valid PDF"

        return True, "File is valid"

    def process_bytes(self, data: bytes, filename: str) -> ProcessedDocument:
        """Extract pages, build the preview and split into chunks"""
        pages, method = self.extract_pages(data)
        chunks = self.split_pages(pages)

        return ProcessedDocument(
            filename=filename,
            file_size=len(data),
            pages=pages,
            chunks=chunks,
            preview=self.build_preview(pages),
            extraction_method=method
        )

    def extract_pages(self, data: bytes) -> Tuple[List[PageText], str]:
        """Extract text per page using PyMuPDF, falling back to PyPDF2"""
        try:
            pages = []
            with fitz.open(stream=data, filetype="pdf") as doc:
                for page_num in range(len(doc)):
                    pages.append(PageText(page_num + 1, doc[page_num].get_text()))
            return pages, "PyMuPDF"

        except Exception as e:
            logger.warning(f"PyMuPDF extraction failed: {e}, trying PyPDF2")

            try:
                reader = PyPDF2.PdfReader(io.BytesIO(data))
                pages = [
                    PageText(page_num + 1, page.extract_text() or "")
                    for page_num, page in enumerate(reader.pages)
                ]
                return pages, "PyPDF2"

            except Exception as e2:
                raise ValueError(f"PDF extraction failed with both methods: {e}, {e2}")

    def build_preview(self, pages: List[PageText]) -> str:
        """Joined page text without NUL bytes, capped for storage"""
        text = "\n".join(page.text for page in pages)
        return text.replace("\0", "")[:self.preview_chars]

    def split_pages(self, pages: List[PageText]) -> List[TextChunk]:
        """Split every page into overlapping chunks, numbered across the document"""
        chunks = []
        for page in pages:
            for piece in self.split_text(page.text):
                chunks.append(TextChunk(
                    content=piece,
                    page_number=page.page_number,
                    chunk_index=len(chunks),
                    metadata={"pageNumber": page.page_number, "chunkIndex": len(chunks)}
                ))

        logger.info(f"Created {len(chunks)} chunks from {len(pages)} pages")
        return chunks

    def split_text(self, text: str) -> List[str]:
        """Create overlapping text chunks no longer than chunk_size"""
        text = text.replace("\0", "")
        if not text.strip():
            return []

        pieces = []
        content_length = len(text)
        current_pos = 0

        while current_pos < content_length:
            chunk_end = min(current_pos + self.chunk_size, content_length)

            # Avoid cutting through words, prefer the coarsest boundary past the midpoint
            if chunk_end < content_length:
                for separator in self.separators:
                    boundary = text.rfind(separator, current_pos, chunk_end)
                    if boundary > current_pos + self.chunk_size // 2:
                        chunk_end = boundary + len(separator)
                        break

            piece = text[current_pos:chunk_end].strip()
            if piece:
                pieces.append(piece)

            if chunk_end >= content_length:
                break

            next_pos = chunk_end - self.chunk_overlap
            current_pos = next_pos if next_pos > current_pos else chunk_end

        return pieces
