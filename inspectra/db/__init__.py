"""Database layer for Inspectra with async SQLAlchemy."""

from inspectra.db.connection import Database
from inspectra.db.models import (
    Base,
    BinderAssignmentModel,
    EventModel,
    InstanceModel,
    LocationModel,
    NotificationOutboxModel,
    ProfileLocationModel,
    ProfileModel,
    PushSubscriptionModel,
    ReminderSettingsModel,
    SignatureModel,
    TemplateModel,
)

__all__ = [
    "Base",
    "Database",
    "LocationModel",
    "ProfileModel",
    "ProfileLocationModel",
    "TemplateModel",
    "InstanceModel",
    "EventModel",
    "SignatureModel",
    "BinderAssignmentModel",
    "PushSubscriptionModel",
    "NotificationOutboxModel",
    "ReminderSettingsModel",
]
