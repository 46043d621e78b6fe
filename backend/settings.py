"""Runtime-adjustable settings shared by the services."""

import os

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import DEFAULT_CHUNK_SIZE, DEFAULT_SAVE_DIR, DEVICE_NAME

MAX_CHUNK_SIZE = 16 * 1024 * 1024


class Settings(BaseModel):
    """Values the presentation layer may change while the node is running."""
    model_config = ConfigDict(validate_assignment=True)

    device_name: str = DEVICE_NAME
    save_dir: str = DEFAULT_SAVE_DIR
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, ge=1, le=MAX_CHUNK_SIZE)

    @field_validator("device_name")
    @classmethod
    def _non_empty_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("device name must not be empty")
        return value

    def ensure_save_dir(self) -> str:
        os.makedirs(self.save_dir, exist_ok=True)
        return self.save_dir
