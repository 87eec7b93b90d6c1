from typing import Any, Literal

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=120)
    password: str = Field(..., min_length=1, max_length=200)


class CozeConfigRequest(BaseModel):
    token: str = Field(..., min_length=1)


class PdfToStorageRequest(BaseModel):
    pdf_url: str = Field(..., min_length=1)
    file_name: str = Field(..., min_length=1, max_length=255)


class MarkdownToPdfRequest(BaseModel):
    markdown: str = Field(..., min_length=1)


class FileCompareRequest(BaseModel):
    file1_id: str = Field(..., min_length=1)
    file2_id: str = Field(..., min_length=1)
    prompt: str | None = Field(default=None, max_length=2000)


class PolicyCompareRequest(BaseModel):
    company: str = Field(..., min_length=1, max_length=120)
    old_file_name: str = Field(..., min_length=1, max_length=255)
    new_file_name: str = Field(..., min_length=1, max_length=255)
    old_file_url: str = Field(..., min_length=1)
    new_file_url: str = Field(..., min_length=1)
    username: str | None = None
    queue: bool = False


class PolicyRecordCreateRequest(BaseModel):
    company: str = Field(..., min_length=1, max_length=120)
    old_file_name: str = Field(..., min_length=1, max_length=255)
    new_file_name: str = Field(..., min_length=1, max_length=255)
    old_file_url: str = ""
    new_file_url: str = ""
    raw_coze_response: Any = None
    username: str | None = None


class PolicyRecordUpdateRequest(BaseModel):
    username: str | None = None
    status: Literal["pending", "processing", "retrying", "done", "error"] | None = None
    comparison_result: Any = None
    is_verified: bool | None = None
    company: str | None = Field(default=None, min_length=1, max_length=120)
    old_file_name: str | None = None
    new_file_name: str | None = None
    old_file_url: str | None = None
    new_file_url: str | None = None
    raw_coze_response: Any = None
    add_time: str | None = None


class StandardCompareRequest(BaseModel):
    file_url: str = Field(..., min_length=1)
    city: str | None = None
    file_name: str | None = None
    mode: Literal["create", "overwrite"] = "create"
    record_id: str | None = None
    username: str | None = None


class StandardRecordCreateRequest(BaseModel):
    city: str = Field(..., min_length=1, max_length=120)
    file_name: str = Field(..., min_length=1, max_length=255)
    file_url: str = Field(..., min_length=1)
    standard_items: Any = None
    raw_coze_response: Any = None
    username: str | None = None


class StandardRecordUpdateRequest(BaseModel):
    username: str | None = None
    status: Literal["done", "error"] | None = None
    city: str | None = Field(default=None, min_length=1, max_length=120)
    file_name: str | None = None
    file_url: str | None = None
    standard_items: Any = None
    raw_coze_response: Any = None
    is_verified: bool | None = None
