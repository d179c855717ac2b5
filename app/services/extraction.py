# =============================================================================
# Extraction — Document Classification & Structured Content Extraction
# =============================================================================
#
# Turns a stored file into ExtractedData (see app/models/extraction.py).
#
# PIPELINE POSITION: stages (b) and (c) of an analysis run:
#   classify_document(filename, mime) → template  ("invoice"/"receipt"/"general")
#   extractor.extract(handle, template) → ExtractedData
#   minimal_extraction(...)           → degraded fallback when (c) fails
#
# DESIGN DECISION: Classification is an ordered rule table.
# The first matching rule wins and `general` is the explicit fallback, so
# the behaviour is observable and unit-testable instead of being buried
# in conditionals inside the pipeline.
#
# DESIGN DECISION: Docling over vendor OCR/forms APIs.
# Docling runs locally, understands tables, and converts PDF, DOCX, XLSX
# and CSV. Legacy binary formats (.doc, .xls) are not supported by Docling
# and fail with ExtractionFailed, which the orchestrator turns into the
# degraded fallback.
#
# DESIGN DECISION: Template fields are mapped from key/value pairs.
# Docling has no prebuilt invoice/receipt models, so "Invoice No: 42"
# style lines are collected as key/value pairs and mapped onto the
# template's typed fields through an alias table.
# =============================================================================

from __future__ import annotations

import asyncio
import importlib.util
import logging
import re
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from app.config import ExtractionConfig
from app.errors import ExtractionFailed, ExtractionUnavailable
from app.models.extraction import (
    Entity,
    ExtractedData,
    ExtractedTable,
    GenericFields,
    InvoiceFields,
    ReceiptFields,
    TableCell,
)
from app.services.storage import BlobHandle

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClassificationRule:
    template: str
    keyword: str
    mime_types: frozenset[str]

    def matches(self, filename: str, mime_type: str) -> bool:
        return mime_type in self.mime_types and self.keyword in filename.lower()


# Evaluated in order; first match wins
CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule("invoice", "invoice", frozenset({PDF_MIME})),
    ClassificationRule("receipt", "receipt", frozenset({PDF_MIME})),
)

DEFAULT_TEMPLATE = "general"


def classify_document(filename: str, mime_type: str) -> str:
    """Pick the extraction template for a document from its name and type."""
    for rule in CLASSIFICATION_RULES:
        if rule.matches(filename, mime_type):
            return rule.template
    return DEFAULT_TEMPLATE


_CATEGORY_BY_MIME = {
    PDF_MIME: "financial",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "spreadsheet",
    "application/vnd.ms-excel": "spreadsheet",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "document",
    "application/msword": "document",
    "text/csv": "data",
}


def document_category(mime_type: str) -> str:
    """Category passed to the summarizer, derived from the MIME type."""
    return _CATEGORY_BY_MIME.get(mime_type, "general")


# ---------------------------------------------------------------------------
# Degraded fallback
# ---------------------------------------------------------------------------


def minimal_extraction(filename: str, mime_type: str, reason: str) -> ExtractedData:
    """Content built from filename and MIME type only, flagged as degraded."""
    return ExtractedData(
        content=f"Document: {filename} (type: {mime_type})",
        pages=0,
        fields=GenericFields(),
        degraded=True,
        degraded_reason=reason,
        raw={"filename": filename, "mime_type": mime_type},
    )


# ---------------------------------------------------------------------------
# Field mapping helpers
# ---------------------------------------------------------------------------

_KEY_VALUE_RE = re.compile(r"^\s*([A-Za-z][A-Za-z0-9 #./()&-]{0,60}?)\s*:\s*(\S.*?)\s*$")

_AMOUNT_RE = re.compile(
    r"(?:[$€£¥]\s?\d[\d,]*(?:\.\d{1,2})?|\b\d[\d,]*\.\d{2}\s?(?:USD|EUR|GBP|AUD|CAD)\b)"
)
_DATE_RE = re.compile(
    r"\b(?:\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{2,4}|"
    r"\d{1,2} (?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]* \d{4})\b"
)

_INVOICE_ALIASES: dict[str, tuple[str, ...]] = {
    "invoice_id": ("invoice no", "invoice number", "invoice #", "invoice id", "invoice"),
    "invoice_date": ("invoice date", "date of issue", "issue date", "date"),
    "due_date": ("due date", "payment due", "due"),
    "vendor_name": ("vendor", "supplier", "from", "seller"),
    "vendor_address": ("vendor address", "supplier address"),
    "customer_name": ("customer", "bill to", "billed to", "client", "sold to"),
    "customer_address": ("customer address", "billing address"),
    "subtotal": ("subtotal", "sub total", "sub-total", "net amount"),
    "total_tax": ("tax", "vat", "gst", "total tax", "sales tax"),
    "invoice_total": ("total", "invoice total", "amount due", "total due", "balance due"),
}

_RECEIPT_ALIASES: dict[str, tuple[str, ...]] = {
    "merchant_name": ("merchant", "store", "vendor", "seller"),
    "merchant_address": ("merchant address", "store address", "address"),
    "transaction_date": ("date", "transaction date", "purchase date"),
    "transaction_time": ("time", "transaction time"),
    "subtotal": ("subtotal", "sub total", "sub-total"),
    "tax": ("tax", "vat", "gst", "sales tax"),
    "total": ("total", "amount paid", "total paid", "grand total"),
}


def parse_key_values(lines: list[str]) -> dict[str, str]:
    """Collect "Label: value" lines. The first occurrence of a label wins."""
    pairs: dict[str, str] = {}
    for line in lines:
        for part in line.splitlines():
            match = _KEY_VALUE_RE.match(part)
            if match:
                pairs.setdefault(match.group(1).strip(), match.group(2))
    return pairs


def find_entities(text: str) -> list[Entity]:
    entities = [Entity(category="Amount", content=m.group(0)) for m in _AMOUNT_RE.finditer(text)]
    entities.extend(Entity(category="Date", content=m.group(0)) for m in _DATE_RE.finditer(text))
    return entities


def _pick(pairs: dict[str, str], aliases: dict[str, tuple[str, ...]]) -> dict[str, str]:
    normalised = {key.lower().rstrip(" .#").strip(): value for key, value in pairs.items()}
    picked: dict[str, str] = {}
    for field_name, names in aliases.items():
        for name in names:
            if name in normalised:
                picked[field_name] = normalised[name]
                break
    return picked


def build_fields(template: str, pairs: dict[str, str]):
    """Map key/value pairs onto the template's typed field variant."""
    if template == "invoice":
        return InvoiceFields(**_pick(pairs, _INVOICE_ALIASES))
    if template == "receipt":
        return ReceiptFields(**_pick(pairs, _RECEIPT_ALIASES))
    return GenericFields(values=dict(pairs))


# ---------------------------------------------------------------------------
# Extractor protocol & Docling implementation
# ---------------------------------------------------------------------------


@runtime_checkable
class Extractor(Protocol):
    @property
    def available(self) -> bool: ...

    async def extract(self, handle: BlobHandle, template: str) -> ExtractedData: ...


class DoclingExtractor:
    """
    Extractor backed by Docling's DocumentConverter.

    The converter loads ML models on first use (a few seconds), so one
    instance is created lazily and reused. Conversion is CPU-bound and runs
    in a worker thread.
    """

    def __init__(self, config: ExtractionConfig) -> None:
        self.config = config
        self._converter = None

    @property
    def available(self) -> bool:
        return self.config.enabled and importlib.util.find_spec("docling") is not None

    def _get_converter(self):
        if self._converter is None:
            from docling.datamodel.base_models import InputFormat
            from docling.datamodel.pipeline_options import PdfPipelineOptions
            from docling.document_converter import DocumentConverter, PdfFormatOption

            logger.info(
                "Initializing Docling DocumentConverter "
                "(first use, may take a few seconds)..."
            )
            pipeline_options = PdfPipelineOptions()
            pipeline_options.do_table_structure = self.config.do_table_structure
            pipeline_options.do_ocr = self.config.do_ocr
            self._converter = DocumentConverter(
                format_options={
                    InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options),
                }
            )
        return self._converter

    async def extract(self, handle: BlobHandle, template: str) -> ExtractedData:
        if not self.available:
            raise ExtractionUnavailable("Docling extraction is not enabled")
        if not handle.source:
            raise ExtractionFailed(f"No readable source for {handle.path}")
        try:
            return await asyncio.to_thread(self._convert, handle.source, template)
        except ExtractionFailed:
            raise
        except Exception as exc:
            raise ExtractionFailed(
                f"Docling failed to convert '{handle.path}': {exc}"
            ) from exc

    def _convert(self, source: str, template: str) -> ExtractedData:
        from docling_core.types.doc.labels import DocItemLabel

        result = self._get_converter().convert(source)
        document = result.document

        text_blocks: list[str] = []
        tables: list[ExtractedTable] = []
        pages_seen: set[int] = set()

        for item, _level in document.iterate_items():
            if getattr(item, "prov", None):
                pages_seen.add(item.prov[0].page_no)
            label = getattr(item, "label", None)
            if label == DocItemLabel.TABLE:
                table = _table_from_item(item)
                if table is not None:
                    tables.append(table)
            else:
                text = (getattr(item, "text", "") or "").strip()
                if text:
                    text_blocks.append(text)

        content = "\n".join(text_blocks)
        # Two-column tables are commonly label/value layouts
        table_lines = [
            row for t in tables if t.column_count == 2 for row in _two_column_rows(t)
        ]
        pairs = parse_key_values(text_blocks + table_lines)

        page_count = len(getattr(document, "pages", {}) or {}) or len(pages_seen - {0})

        logger.info(
            "Extracted %d text blocks, %d tables, %d key/value pairs, %d pages",
            len(text_blocks), len(tables), len(pairs), page_count,
        )
        return ExtractedData(
            content=content,
            pages=page_count,
            tables=tables,
            key_value_pairs=pairs,
            entities=find_entities(content),
            fields=build_fields(template, pairs),
            raw={"extractor": "docling", "template": template},
        )


def _table_from_item(item: object) -> ExtractedTable | None:
    data = getattr(item, "data", None)
    if data is None:
        return None
    cells = [
        TableCell(
            content=(cell.text or "").strip(),
            row_index=cell.start_row_offset_idx,
            column_index=cell.start_col_offset_idx,
        )
        for cell in data.table_cells
    ]
    return ExtractedTable(row_count=data.num_rows, column_count=data.num_cols, cells=cells)


def _two_column_rows(table: ExtractedTable) -> list[str]:
    rows: dict[int, dict[int, str]] = {}
    for cell in table.cells:
        rows.setdefault(cell.row_index, {})[cell.column_index] = cell.content
    return [
        f"{cols.get(0, '')}: {cols.get(1, '')}"
        for _, cols in sorted(rows.items())
        if cols.get(0) and cols.get(1)
    ]
