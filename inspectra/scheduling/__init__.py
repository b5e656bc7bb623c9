"""Recurring instance generation and the reminder sweep.

Due dates are computed from a template frequency, one open instance is kept
per template, and assignees are reminded on a configurable cadence.
"""

from inspectra.scheduling.due_dates import FREQUENCIES, next_due_date
from inspectra.scheduling.generator import InstanceGenerator
from inspectra.scheduling.reminders import ReminderCadence, ReminderSweep, reminder_type_for

__all__ = [
    "FREQUENCIES",
    "InstanceGenerator",
    "ReminderCadence",
    "ReminderSweep",
    "next_due_date",
    "reminder_type_for",
]
