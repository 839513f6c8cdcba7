from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from ..engine import API_KEY_PARAM

# Parameters echoed back as **** in API responses
SECRET_PARAMS = frozenset({API_KEY_PARAM})


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    filename: str
    status: str
    lang_in: Optional[str] = None
    lang_out: Optional[str] = None
    pages: Optional[str] = None
    params: Optional[Dict[str, str]] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    output_file: Optional[str] = None
    output_files: Optional[List[str]] = None

    @classmethod
    def from_job(cls, job) -> "JobOut":
        out = cls.model_validate(job)
        # Columns hold NULL for rows written before they existed
        out.params = {
            k: ("****" if k in SECRET_PARAMS and v else v)
            for k, v in (out.params or {}).items()
        }
        out.output_files = list(out.output_files or [])
        return out


class SubmitResponse(BaseModel):
    success: bool = True
    task_id: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    retry_after: Optional[int] = None
