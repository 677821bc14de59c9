from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class BloodPressure(BaseModel):
    systolic: int = Field(ge=30, le=300)
    diastolic: int = Field(ge=10, le=200)

    @model_validator(mode="after")
    def _systolic_above_diastolic(self) -> "BloodPressure":
        if self.systolic <= self.diastolic:
            raise ValueError("systolic pressure must be greater than diastolic")
        return self


class VitalSigns(BaseModel):
    """Vital signs captured with a note. Temperature is in Fahrenheit."""

    blood_pressure: Optional[BloodPressure] = None
    heart_rate: Optional[int] = Field(default=None, ge=20, le=300)
    temperature: Optional[float] = Field(default=None, ge=80, le=115)
    respiratory_rate: Optional[int] = Field(default=None, ge=4, le=80)
    oxygen_saturation: Optional[int] = Field(default=None, ge=50, le=100)
    weight_kg: Optional[float] = Field(default=None, gt=0, le=700)
    height_cm: Optional[float] = Field(default=None, gt=0, le=300)
    bmi: Optional[float] = Field(default=None, gt=0, le=150)
    pain_score: Optional[int] = Field(default=None, ge=0, le=10)
    glucose_level: Optional[float] = Field(default=None, gt=0)


class DiagnosisType(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    DIFFERENTIAL = "differential"


class DiagnosisCertainty(str, Enum):
    CONFIRMED = "confirmed"
    SUSPECTED = "suspected"
    RULED_OUT = "ruled-out"


class Diagnosis(BaseModel):
    code: str = Field(min_length=1)  # ICD-10
    description: str = Field(min_length=1)
    type: DiagnosisType = DiagnosisType.PRIMARY
    certainty: Optional[DiagnosisCertainty] = None


class MedicationAction(str, Enum):
    CONTINUE = "continue"
    START = "start"
    STOP = "stop"
    MODIFY = "modify"


class MedicationEntry(BaseModel):
    name: str = Field(min_length=1)
    dosage: str
    frequency: str
    route: Optional[str] = None
    action: MedicationAction = MedicationAction.CONTINUE
    reason: Optional[str] = None


class OrderType(str, Enum):
    LAB = "lab"
    IMAGING = "imaging"
    PROCEDURE = "procedure"
    REFERRAL = "referral"


class OrderUrgency(str, Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    STAT = "stat"


class ClinicalOrder(BaseModel):
    type: OrderType
    description: str = Field(min_length=1)
    urgency: OrderUrgency = OrderUrgency.ROUTINE
    ordered_date: Optional[datetime] = None


class FollowUp(BaseModel):
    interval: str  # e.g. "2 weeks"
    instructions: str
    provider: Optional[str] = None


class MedicationAdministration(BaseModel):
    name: str = Field(min_length=1)
    dose: str
    time: datetime
    administered: bool = False
    administered_by: Optional[str] = None
    reaction: Optional[str] = None


class Intervention(BaseModel):
    type: str
    description: str
    time: datetime
    performed_by: Optional[str] = None
    outcome: Optional[str] = None


class ShiftType(str, Enum):
    DAY = "day"
    EVENING = "evening"
    NIGHT = "night"


class Handoff(BaseModel):
    to: str
    summary: str
    pending: List[str] = Field(default_factory=list)


class ShiftDetails(BaseModel):
    # All optional while drafting; completeness is checked at finalize time.
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    shift_type: Optional[ShiftType] = None
    handoff: Optional[Handoff] = None

    @model_validator(mode="after")
    def _end_after_start(self) -> "ShiftDetails":
        if self.start is not None and self.end is not None and self.end <= self.start:
            raise ValueError("shift end must be after shift start")
        return self


class ProcedureDetails(BaseModel):
    procedure_name: Optional[str] = None
    procedure_code: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    complications: Optional[str] = None
    specimens: List[str] = Field(default_factory=list)


class Disposition(str, Enum):
    HOME = "home"
    TRANSFER = "transfer"
    HOSPICE = "hospice"
    DECEASED = "deceased"
    AMA = "ama"
    OTHER = "other"


class FollowUpAppointment(BaseModel):
    provider: str
    appointment_date: Optional[date] = None
    reason: str


class DischargeDetails(BaseModel):
    disposition: Optional[Disposition] = None
    instructions: Optional[str] = None
    medications: List[str] = Field(default_factory=list)
    follow_up_appointments: List[FollowUpAppointment] = Field(default_factory=list)
    restrictions: List[str] = Field(default_factory=list)


class ConsultationDetails(BaseModel):
    consultant_id: str
    consultant_name: Optional[str] = None
    specialty: str
    reason: str
    recommendations: List[str] = Field(default_factory=list)


class Addendum(BaseModel):
    content: str = Field(min_length=1)
    reason: str
    added_by: str
    added_at: datetime
