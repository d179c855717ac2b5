# =============================================================================
# Extracted Data — Typed Extraction Output
# =============================================================================
#
# DESIGN DECISION: Tagged union instead of an untyped JSON blob.
# `ExtractedData.fields` holds the template-specific structured fields and
# is discriminated by `kind`:
#
#   kind="invoice"  → InvoiceFields   (vendor, customer, totals, line items)
#   kind="receipt"  → ReceiptFields   (merchant, transaction, totals)
#   kind="generic"  → GenericFields   (free key-value map)
#
# The common members (content, pages, tables, key/value pairs, entities)
# are shared by every variant. `raw` is a passthrough for whatever extra
# payload the extractor produced, so new extractor output survives a
# round-trip through the database before the schema learns about it.
#
# The whole model is stored as JSON in `analysis_results.extracted_data`.
# =============================================================================

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class TableCell(BaseModel):
    content: str
    row_index: int
    column_index: int


class ExtractedTable(BaseModel):
    row_count: int
    column_count: int
    cells: list[TableCell] = Field(default_factory=list)

    def as_text(self) -> str:
        """Render the table as pipe-delimited rows (row-major)."""
        rows: list[list[str]] = [
            [""] * self.column_count for _ in range(self.row_count)
        ]
        for cell in self.cells:
            if cell.row_index < self.row_count and cell.column_index < self.column_count:
                rows[cell.row_index][cell.column_index] = cell.content
        return "\n".join("| " + " | ".join(row) + " |" for row in rows)


class Entity(BaseModel):
    category: str
    content: str
    confidence: float | None = None


class LineItem(BaseModel):
    description: str | None = None
    quantity: str | None = None
    unit_price: str | None = None
    amount: str | None = None


class InvoiceFields(BaseModel):
    kind: Literal["invoice"] = "invoice"
    invoice_id: str | None = None
    invoice_date: str | None = None
    due_date: str | None = None
    vendor_name: str | None = None
    vendor_address: str | None = None
    customer_name: str | None = None
    customer_address: str | None = None
    subtotal: str | None = None
    total_tax: str | None = None
    invoice_total: str | None = None
    items: list[LineItem] = Field(default_factory=list)


class ReceiptFields(BaseModel):
    kind: Literal["receipt"] = "receipt"
    merchant_name: str | None = None
    merchant_address: str | None = None
    transaction_date: str | None = None
    transaction_time: str | None = None
    subtotal: str | None = None
    tax: str | None = None
    total: str | None = None
    items: list[LineItem] = Field(default_factory=list)


class GenericFields(BaseModel):
    kind: Literal["generic"] = "generic"
    values: dict[str, str] = Field(default_factory=dict)


DocumentFields = Annotated[
    InvoiceFields | ReceiptFields | GenericFields,
    Field(discriminator="kind"),
]


class ExtractedData(BaseModel):
    """Structured content of one document, as produced by an Extractor."""

    content: str = ""
    pages: int = 0
    tables: list[ExtractedTable] = Field(default_factory=list)
    key_value_pairs: dict[str, str] = Field(default_factory=dict)
    entities: list[Entity] = Field(default_factory=list)
    fields: DocumentFields = Field(default_factory=GenericFields)

    # True when this is the filename/MIME-only fallback, not a real extraction
    degraded: bool = False
    degraded_reason: str | None = None

    raw: dict[str, Any] = Field(default_factory=dict)

    def full_text(self) -> str:
        """Content followed by table text; the body that gets indexed."""
        parts = [self.content] if self.content else []
        parts.extend(t.as_text() for t in self.tables if t.cells)
        return "\n\n".join(parts)

    def for_prompt(self, max_chars: int) -> str:
        """
        Compact rendering for the language model, truncated to `max_chars`.

        Structured fields and key/value pairs come first so that truncation
        cuts the long free text, not the facts.
        """
        lines: list[str] = []
        field_values = self.fields.model_dump(exclude_none=True, exclude={"kind"})
        if field_values:
            lines.append(f"Fields ({self.fields.kind}): {field_values}")
        if self.key_value_pairs:
            lines.append("Key values:")
            lines.extend(f"- {k}: {v}" for k, v in self.key_value_pairs.items())
        if self.entities:
            lines.append(
                "Entities: " + ", ".join(f"{e.category}={e.content}" for e in self.entities)
            )
        lines.append(f"Pages: {self.pages}")
        body = self.full_text()
        if body:
            lines.append("Content:")
            lines.append(body)
        text = "\n".join(lines)
        return text[:max_chars]
