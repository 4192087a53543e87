from datetime import date
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from ai import ANALYSIS_TYPES, MAX_COUNTRY_LENGTH
from models import DocumentType, OrgRole


class DocumentIn(BaseModel):
    name: str
    document_type: DocumentType
    issuing_authority: Optional[str] = None
    expiry_date: date
    renewal_period_days: Optional[int] = 30
    notes: Optional[str] = None
    organization_id: Optional[int] = None
    custom_reminder_date: Optional[date] = None

    @field_validator("name")
    def _name_required(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Document name is required")
        return v

    @field_validator("renewal_period_days")
    def _renewal_range(cls, v):
        if v is None:
            return v
        if v < 1:
            raise ValueError("Renewal period must be at least 1 day")
        if v > 365:
            raise ValueError("Renewal period cannot exceed 365 days")
        return v

    def fields(self):
        data = self.model_dump(exclude={"custom_reminder_date"})
        data["document_type"] = self.document_type.value
        if "organization_id" not in self.model_fields_set:
            data.pop("organization_id")
        return data


class BulkDocumentsIn(BaseModel):
    organization_id: Optional[int] = None
    documents: List[DocumentIn] = Field(min_length=1)


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    country: Optional[str] = Field(default=None, max_length=MAX_COUNTRY_LENGTH)
    email_notifications_enabled: Optional[bool] = None
    push_notifications_enabled: Optional[bool] = None
    expiry_reminders_enabled: Optional[bool] = None
    renewal_reminders_enabled: Optional[bool] = None
    weekly_digest_enabled: Optional[bool] = None


class FeedbackIn(BaseModel):
    category: str = "general"
    feedback: str

    @field_validator("feedback")
    def _not_blank(cls, v):
        if not v.strip():
            raise ValueError("Please enter your feedback")
        return v


class OrganizationIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)


class MemberIn(BaseModel):
    email: str = Field(min_length=3)
    role: OrgRole = OrgRole.VIEWER


class RoleUpdate(BaseModel):
    role: OrgRole


class AnalysisRequest(BaseModel):
    document_id: Optional[int] = None
    analysis_type: str

    @field_validator("analysis_type")
    def _known_type(cls, v):
        if v not in ANALYSIS_TYPES:
            raise ValueError("Invalid analysis type")
        return v


class ScanRequest(BaseModel):
    imageBase64: str = Field(min_length=1)
    country: Optional[str] = Field(default=None, max_length=MAX_COUNTRY_LENGTH)


class AdvisorRequest(BaseModel):
    question: Optional[str] = None
    documentType: Optional[str] = None
    documentName: Optional[str] = None
    expiryDate: Optional[date] = None
