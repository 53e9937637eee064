from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class UserCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    studentID: Optional[str] = None
    department: Optional[str] = None
    role: str = "student"
