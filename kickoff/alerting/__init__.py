"""Alerting module for Kickoff Notifier."""

from kickoff.alerting.email import AlertType, send_alert_email

__all__ = ["send_alert_email", "AlertType"]
