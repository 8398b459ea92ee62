from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class FileIdInput(BaseModel):
    file_id: str = Field(..., description="Id returned by upload_file or POST /upload")


class FileContentInput(BaseModel):
    content: str = Field(..., description="Base64 encoded file content")
    filename: str


class FilePathInput(BaseModel):
    path: str = Field(..., description="Path readable by the server process")


class Categorization(BaseModel):
    category_name: str = Field(..., alias="categoryName")
    selected_options: List[str] = Field(default_factory=list, alias="selectedOptions")

    model_config = {"populate_by_name": True}

    def to_vendor(self) -> Dict[str, Any]:
        return {"categoryName": self.category_name, "selectedOptions": self.selected_options}


# ---------- Tool arguments ----------


class SessionArgs(BaseModel):
    session_id: Optional[str] = None


class AuthLoginArgs(BaseModel):
    platform_url: Optional[str] = None


class BrowserLoginStartArgs(BaseModel):
    platform_url: str


class BrowserLoginCompleteArgs(BaseModel):
    session_id: str


class ApiCallArgs(BaseModel):
    session_id: Optional[str] = None
    method: str = "GET"
    path: str
    body: Optional[Any] = None
    headers: Optional[Dict[str, str]] = None


class UploadFileArgs(BaseModel):
    file: Union[FileContentInput, FilePathInput]


class ComplianceReviewArgs(BaseModel):
    session_id: Optional[str] = None
    file: Union[FileIdInput, FileContentInput, FilePathInput, str]
    categorization: List[Categorization] = Field(default_factory=list)
    max_wait_time: Optional[float] = Field(None, ge=0)
    poll_interval: Optional[float] = Field(None, gt=0)


# ---------- HTTP responses ----------


class UploadResponse(BaseModel):
    file_id: str
    filename: str
    size: int
    expires_at: float


class HealthResponse(BaseModel):
    status: str
    sessions: int
    uploads: Dict[str, Any]
