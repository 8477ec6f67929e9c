"""Workforce-management adapter: installation planning and field work."""

from typing import Literal

from .base import Address, BaseSourceAdapter, IsoDatetime, PayloadSchema, TimeSlot


class InstallationScheduled(PayloadSchema):
    wfm_job_ref: str
    technician_id: str | None = None
    technician_name: str | None = None
    scheduled_date: IsoDatetime
    scheduled_slot: TimeSlot | None = None
    installation_address: Address | None = None


class InstallationRescheduled(PayloadSchema):
    wfm_job_ref: str
    new_scheduled_date: IsoDatetime
    new_scheduled_slot: TimeSlot | None = None
    reason: str | None = None
    technician_id: str | None = None


class InstallationCancelled(PayloadSchema):
    wfm_job_ref: str | None = None
    reason: str | None = None


class InstallationStarted(PayloadSchema):
    wfm_job_ref: str | None = None
    technician_id: str | None = None
    started_at: IsoDatetime | None = None


class InstallationCompleted(PayloadSchema):
    wfm_job_ref: str | None = None
    technician_id: str | None = None
    completed_at: IsoDatetime | None = None
    report_pending: bool | None = None


class InstallationIssue(PayloadSchema):
    wfm_job_ref: str | None = None
    technician_id: str | None = None
    severity: Literal["blocking", "minor"] | None = None
    description: str | None = None
    missing_skus: list[str] | None = None
    photos_url: list[str] | None = None


class InstallationPartial(PayloadSchema):
    wfm_job_ref: str | None = None
    completed_steps: list[str] | None = None
    remaining_steps: list[str] | None = None
    follow_up_required: bool | None = None


class ReportSubmitted(PayloadSchema):
    wfm_job_ref: str | None = None
    technician_id: str | None = None
    submitted_at: IsoDatetime | None = None
    report_url: str | None = None


class CustomerSignature(PayloadSchema):
    wfm_job_ref: str | None = None
    signed: bool
    refusal_reason: str | None = None
    signature_url: str | None = None


class WfmAdapter(BaseSourceAdapter):
    source = "wfm"
    label = "WFM"
    allowed_event_types = frozenset({
        "installation.scheduled",
        "installation.rescheduled",
        "installation.cancelled",
        "installation.started",
        "installation.completed",
        "installation.issue",
        "installation.partial",
        "installation.report_submitted",
        "customer_signature.signed",
    })
    payload_schemas = {
        "installation.scheduled": InstallationScheduled,
        "installation.rescheduled": InstallationRescheduled,
        "installation.cancelled": InstallationCancelled,
        "installation.started": InstallationStarted,
        "installation.completed": InstallationCompleted,
        "installation.issue": InstallationIssue,
        "installation.partial": InstallationPartial,
        "installation.report_submitted": ReportSubmitted,
        "customer_signature.signed": CustomerSignature,
    }
