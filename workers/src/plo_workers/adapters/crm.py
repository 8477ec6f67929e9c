"""CRM adapter: project closure, quality surveys, after-sales tickets."""

from typing import Literal

from pydantic import Field

from .base import BaseSourceAdapter, IsoDatetime, PayloadSchema


class ProjectClosed(PayloadSchema):
    crm_ticket_ref: str | None = None
    closed_by: str | None = None
    closure_reason: str | None = None


class ProjectClosedWithIssue(PayloadSchema):
    crm_ticket_ref: str | None = None
    issue_description: str | None = None
    resolution: str | None = None


class ProjectReopened(PayloadSchema):
    crm_ticket_ref: str | None = None
    reason: str | None = None
    reopened_by: str | None = None


class SurveySent(PayloadSchema):
    channel: Literal["email", "sms"] | None = None
    recipient: str | None = None


class SurveyCompleted(PayloadSchema):
    score: int | None = Field(default=None, ge=0, le=10)
    nps: int | None = Field(default=None, ge=-100, le=100)
    verbatim: str | None = None
    submitted_at: IsoDatetime | None = None


class QualityIssueRaised(PayloadSchema):
    score: int | None = Field(default=None, ge=0, le=10)
    description: str | None = None
    category: str | None = None


class SavTicket(PayloadSchema):
    crm_ticket_ref: str


class SavTicketCreated(SavTicket):
    category: str | None = None
    description: str | None = None
    created_by: str | None = None


class SavTicketResolved(SavTicket):
    resolution: str | None = None
    resolved_by: str | None = None
    resolved_at: IsoDatetime | None = None


class SavTicketEscalated(SavTicket):
    escalated_to: str | None = None
    reason: str | None = None


class PartialDeliveryApproved(PayloadSchema):
    approved_by: str | None = None
    missing_order_ids: list[str] | None = None
    approved_at: IsoDatetime | None = None


class PartialDeliveryRefused(PayloadSchema):
    refused_by: str | None = None
    reason: str | None = None


class CrmAdapter(BaseSourceAdapter):
    source = "crm"
    label = "CRM"
    allowed_event_types = frozenset({
        "project.closed",
        "project.closed_with_issue",
        "project.reopened",
        "quality.survey_sent",
        "quality.survey_completed",
        "quality.issue_raised",
        "sav.ticket_created",
        "sav.ticket_resolved",
        "sav.ticket_escalated",
        "partial_delivery.customer_approved",
        "partial_delivery.customer_refused",
    })
    payload_schemas = {
        "project.closed": ProjectClosed,
        "project.closed_with_issue": ProjectClosedWithIssue,
        "project.reopened": ProjectReopened,
        "quality.survey_sent": SurveySent,
        "quality.survey_completed": SurveyCompleted,
        "quality.issue_raised": QualityIssueRaised,
        "sav.ticket_created": SavTicketCreated,
        "sav.ticket_resolved": SavTicketResolved,
        "sav.ticket_escalated": SavTicketEscalated,
        "partial_delivery.customer_approved": PartialDeliveryApproved,
        "partial_delivery.customer_refused": PartialDeliveryRefused,
    }
