"""Trigger types and the trigger manager."""

from .base import ManualTrigger, Trigger, TriggerFactory, TriggerSpec, WebhookTrigger
from .event import EventTrigger
from .file_watch import FileWatchTrigger
from .manager import TriggerManager, make_dedup_key
from .schedule import ScheduleTrigger

__all__ = [
    "EventTrigger",
    "FileWatchTrigger",
    "ManualTrigger",
    "ScheduleTrigger",
    "Trigger",
    "TriggerFactory",
    "TriggerManager",
    "TriggerSpec",
    "WebhookTrigger",
    "make_dedup_key",
]
