from datetime import date, datetime
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from services.overlap_service import normalize_date_key


class CreateReservationItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    quantity: int = Field(1, ge=1)
    name: Optional[str] = None


class CreateReservationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userID: int
    purpose: str = Field(..., min_length=1)
    purposeDetail: str = ""
    startDate: str
    endDate: str
    items: List[CreateReservationItemDto] = Field(..., min_length=1)

    @field_validator("startDate", "endDate", mode="before")
    @classmethod
    def _to_date_key(cls, value: Union[str, date, datetime]) -> str:
        return normalize_date_key(value)

    @model_validator(mode="after")
    def _check_range(self):
        if self.endDate <= self.startDate:
            raise ValueError("endDate must be after startDate")
        return self


class StatusChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    repairNote: Optional[str] = None
    operatorUserID: Optional[int] = None


class ReturnItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assetID: int
    condition: str = "normal"
    note: Optional[str] = None


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    operatorUserID: Optional[int] = None
    returns: List[ReturnItemDto] = []


class AssignmentUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reservationItemID: int
    assetIDs: List[int] = []
    operatorUserID: Optional[int] = None
