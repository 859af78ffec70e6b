from __future__ import annotations

from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class StudentFields(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    roll: str | None = Field(default=None, max_length=100)
    section: str | None = Field(default=None, max_length=50)
    department: str | None = Field(default=None, max_length=255)
    course: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=50)
    year: int | None = None
    semester: int | None = None
    email: str | None = Field(default=None, max_length=255)

    @field_validator("name", "roll", "section", "department", "course", "phone", "email", mode="before")
    @classmethod
    def _strip(cls, value):
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("year", "semester", mode="before")
    @classmethod
    def _blank_int(cls, value):
        if value == "":
            return None
        return value


class StudentCreate(StudentFields):
    name: str = Field(min_length=1, max_length=255)


class StudentUpdate(StudentFields):
    pass


class StudentImportRequest(BaseModel):
    students: list[StudentCreate] = Field(default_factory=list)


class StudentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    roll: str | None = None
    section: str | None = None
    department: str | None = None
    course: str | None = None
    phone: str | None = None
    year: int | None = None
    semester: int | None = None
    email: str | None = None
    created_at: datetime | None = None
    face_preview: str | None = Field(default=None, validation_alias="face_preview_data")


class FacePreviewRequest(BaseModel):
    data_url: str = Field(validation_alias=AliasChoices("data_url", "dataUrl"))

    @field_validator("data_url")
    @classmethod
    def _image_data_url(cls, value: str) -> str:
        text = value.strip()
        if not text.startswith("data:image/"):
            raise ValueError("data_url must be a data:image/... URL")
        return text
