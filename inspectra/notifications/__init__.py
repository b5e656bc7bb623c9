"""Outbound notifications: web push, signed webhooks and the email outbox."""
