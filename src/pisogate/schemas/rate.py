# src/pisogate/schemas/rate.py
"""Rate table Pydantic schemas."""

from pydantic import BaseModel, ConfigDict, Field


class RateCreate(BaseModel):
    """Schema for adding a rate row."""

    pesos: int = Field(..., gt=0)
    minutes: int = Field(..., gt=0)
    download_limit: int = Field(0, ge=0, description="kbit/s, 0 for unlimited")
    upload_limit: int = Field(0, ge=0, description="kbit/s, 0 for unlimited")


class RateUpdate(BaseModel):
    """Partial update of a rate row."""

    pesos: int | None = Field(None, gt=0)
    minutes: int | None = Field(None, gt=0)
    download_limit: int | None = Field(None, ge=0)
    upload_limit: int | None = Field(None, ge=0)


class RateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pesos: int
    minutes: int
    download_limit: int
    upload_limit: int
