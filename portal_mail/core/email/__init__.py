"""Outbound email: send pipeline, retry scanners and label actions"""
from .models import SendParams, AttachmentParams
from .send_pipeline import SendPipeline, SendResult, ScheduleResult, params_from_draft, record_send_failure
from .retry_scanner import RetryScanner, ScheduledSendScanner, RetryScanResult
from .label_actions import LabelActions

__all__ = [
    "SendParams",
    "AttachmentParams",
    "SendPipeline",
    "SendResult",
    "ScheduleResult",
    "params_from_draft",
    "record_send_failure",
    "RetryScanner",
    "ScheduledSendScanner",
    "RetryScanResult",
    "LabelActions",
]
