"""Pydantic models for request/response schemas and job manifests."""

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class InputType(str, Enum):
    """Document types recognised from the uploaded file extension."""

    DOCX = "docx"
    MARKDOWN = "markdown"
    HTML = "html"


class OutputFormat(str, Enum):
    """Formats the conversion script can produce."""

    DOCX = "docx"
    MD = "md"
    PDF = "pdf"
    HTML = "html"
    PPTX = "pptx"


# Allowed targets per detected input type
FORMAT_SUPPORT: dict[InputType, tuple[OutputFormat, ...]] = {
    InputType.DOCX: (
        OutputFormat.DOCX,
        OutputFormat.MD,
        OutputFormat.PDF,
        OutputFormat.HTML,
        OutputFormat.PPTX,
    ),
    InputType.MARKDOWN: (
        OutputFormat.DOCX,
        OutputFormat.MD,
        OutputFormat.PDF,
        OutputFormat.HTML,
        OutputFormat.PPTX,
    ),
    InputType.HTML: (
        OutputFormat.DOCX,
        OutputFormat.PDF,
        OutputFormat.HTML,
        OutputFormat.PPTX,
    ),
}


# ============================================================================
# API Request/Response Models
# ============================================================================


class ConvertRequest(BaseModel):
    """Request body for POST /api/convert."""

    fileName: str = Field(..., min_length=1, description="Uploaded file name")
    fileData: str = Field(
        ..., min_length=1, description="File bytes as base64 or a data URL")
    formats: list[str] = Field(
        ..., min_length=1, description="Requested output formats")

    @field_validator("formats", mode="before")
    @classmethod
    def stringify_formats(cls, value):
        # Non-string entries are matched by their text form; null matches nothing
        if isinstance(value, list):
            return ["" if item is None else str(item) for item in value]
        return value


# ============================================================================
# Manifest Models
# ============================================================================


class OutputInfo(BaseModel):
    """One produced artifact of a job."""

    format: OutputFormat
    fileName: str
    size: int
    url: str


class StepLog(BaseModel):
    """Captured output of one conversion script invocation."""

    step: str
    stdout: str = ""
    stderr: str = ""


class JobManifest(BaseModel):
    """Manifest written to meta.json once all outputs exist."""

    jobId: str
    originalName: str
    createdAt: str
    outputs: list[OutputInfo]
    logs: list[StepLog] = Field(default_factory=list)


class ConvertResponse(JobManifest):
    """Response for POST /api/convert and GET /api/jobs/{jobId}."""

    requestId: str
    fromCache: bool | None = None
