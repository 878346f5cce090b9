"""SQLAlchemy models."""

from replywatch.models.alert_delivery import AlertDelivery
from replywatch.models.anomaly import Anomaly
from replywatch.models.contact import Contact, ContactAlias
from replywatch.models.dead_letter import DeadLetterEntry
from replywatch.models.detection_job import DetectionJob
from replywatch.models.detection_run import DetectionRun
from replywatch.models.history_candidate import HistoryCandidate
from replywatch.models.mailbox_checkpoint import MailboxCheckpoint
from replywatch.models.metrics_snapshot import MetricsSnapshot
from replywatch.models.outbound_message import OutboundMessage
from replywatch.models.reconciliation_run import ReconciliationRun
from replywatch.models.reply import Reply

__all__ = [
    "AlertDelivery",
    "Anomaly",
    "Contact",
    "ContactAlias",
    "DeadLetterEntry",
    "DetectionJob",
    "DetectionRun",
    "HistoryCandidate",
    "MailboxCheckpoint",
    "MetricsSnapshot",
    "OutboundMessage",
    "ReconciliationRun",
    "Reply",
]
