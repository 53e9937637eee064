from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class RepairCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    damageType: Literal["damaged", "lost", "missing_parts"] = "damaged"
    damageDescription: Optional[str] = None
    reservationID: Optional[int] = None
    equipmentID: Optional[int] = None
    assetID: Optional[int] = None
    operatorUserID: Optional[int] = None


class ChargeDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    chargeType: Literal["student_charge", "department_handle"]
    operatorUserID: Optional[int] = None


class EstimateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    estimateMemo: str = Field(..., min_length=1)
    operatorUserID: Optional[int] = None


class PaymentConfirmationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    finalAmount: float = Field(0, ge=0)
    operatorUserID: Optional[int] = None


class RepairCompletionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    repairResult: Literal["repaired", "replaced", "disposed"] = "repaired"
    adminMemo: Optional[str] = None
    operatorUserID: Optional[int] = None


class StageRevertRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    targetStage: Literal["damage_confirmed", "charge_decided", "estimate_requested", "payment_confirmed"]
    operatorUserID: Optional[int] = None
