from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EquipmentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentName: str = Field(..., min_length=1)
    categoryName: Optional[str] = None
    manufacturer: Optional[str] = None
    description: Optional[str] = None
    sortOrder: Optional[int] = None


class AssetCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    serialNumber: Optional[str] = None
    managementCode: Optional[str] = None
    status: Optional[str] = "available"
    note: Optional[str] = None


class AssetBatchCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    serialNumbers: List[str] = []
    count: int = Field(0, ge=0)


class AssetUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    serialNumber: Optional[str] = None
    managementCode: Optional[str] = None
    status: Optional[str] = None
    note: Optional[str] = None
