"""Detection layer implementations."""

from replywatch.detection.layers.alias_match import AliasMatchLayer
from replywatch.detection.layers.history_scan import HistoryScanLayer
from replywatch.detection.layers.inbox_sweep import InboxSweepLayer
from replywatch.detection.layers.message_id_lineage import MessageIdLineageLayer
from replywatch.detection.layers.thread_continuity import ThreadContinuityLayer

__all__ = [
    "AliasMatchLayer",
    "HistoryScanLayer",
    "InboxSweepLayer",
    "MessageIdLineageLayer",
    "ThreadContinuityLayer",
]
