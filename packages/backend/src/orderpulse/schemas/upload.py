"""Progress reports from the image processing pipeline."""

from typing import Optional

from pydantic import BaseModel, Field


class UploadProgressReport(BaseModel):
    status: str = Field(..., pattern=r"^(uploading|processing|completed|failed)$")
    progress: int = Field(..., ge=0, le=100)
    error_message: Optional[str] = None


class UploadStart(BaseModel):
    """Metadata for a new menu image; the bytes go to the processing pipeline."""

    menu_item_id: int
    original_filename: str = Field(..., min_length=1, max_length=255)
    content_type: str = Field("image/jpeg", pattern=r"^image/(jpeg|jpg|png|webp)$")
    file_size: Optional[int] = Field(None, ge=0, le=10 * 1024 * 1024)
